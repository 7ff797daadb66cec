"""Stable names and defaults shared across imagepatcher."""

STAGING_REGISTRY_HOST = "localhost:5000"
STAGING_REGISTRY_IMAGE = "registry:2"
STAGING_REGISTRY_CONTAINER = "imagepatcher-staging-registry"

STAGED_SOURCE_REPOSITORY = "source"
STAGED_PATCHER_REPOSITORY = "falcon"
STAGED_TARGET_REPOSITORY = "target"
STAGED_TAG = "latest"

DOCKER_SOCKET = "/var/run/docker.sock"
BINFMT_DIR = "/proc/sys/fs/binfmt_misc"
HOST_LOCK_FILE = "/tmp/imagepatcher.lock"

CLOUD_SERVICES = ("ECS_FARGATE", "ACA", "ACI", "CLOUDRUN")
PULL_POLICIES = ("Always", "IfNotPresent", "Never")
PLATFORM_ALIASES = {
    "arm64": "linux/arm64",
    "aarch64": "linux/arm64",
    "amd64": "linux/amd64",
    "x86_64": "linux/amd64",
}
QEMU_ARCH_NAMES = {
    "arm64": "aarch64",
    "amd64": "x86_64",
}
ECS_CPU_ARCHITECTURES = {
    "arm64": "ARM64",
    "amd64": "X86_64",
}

FALCON_API_HOSTS = {
    "us-1": "api.crowdstrike.com",
    "us-2": "api.us-2.crowdstrike.com",
    "eu-1": "api.eu-1.crowdstrike.com",
    "us-gov-1": "api.laggar.gcw.crowdstrike.com",
}
FALCON_REGISTRY_HOSTS = {
    "us-1": "registry.crowdstrike.com",
    "us-2": "registry.crowdstrike.com",
    "eu-1": "registry.crowdstrike.com",
    "us-gov-1": "registry.laggar.gcw.crowdstrike.com",
}

ECR_TOKEN_TTL_SECONDS = 12 * 60 * 60
FALCON_TOKEN_TTL_SECONDS = 30 * 60
OUTPUT_TAIL_LINES = 40
CLEANUP_COMMAND_TIMEOUT_SECONDS = 120
PATCHED_TAG_SUFFIX = "-patched"

EXIT_SUCCESS = 0
EXIT_PATCH_FAILED = 1
EXIT_STEP_FAILED = 2
EXIT_CANCELLED = 130
