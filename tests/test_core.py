import json
import os
import subprocess

import pytest

import imagepatcher.core as core_module
from imagepatcher.core import ImagePatcher, PatcherError
from imagepatcher.models import RunPhase, RunStatus, StepStatus
from imagepatcher.services.command_runner import CommandRunner
from imagepatcher.services.host_lock import HostLock
from imagepatcher.services.registry import EcrCredentialProvider, FalconCredentialProvider

from conftest import DummyLogger, FakeRequests

ECR_HOST = "acct.dkr.ecr.us-east-1.amazonaws.com"
SOURCE_URI = f"{ECR_HOST}/app:arm64"
TARGET_URI = f"{ECR_HOST}/app:arm64-patched"
PATCHER_URI = f"{ECR_HOST}/containersensor:7.31.0"
AWS_ENV = {
    "AWS_ACCESS_KEY_ID": "AKIAEXAMPLEKEY",
    "AWS_SECRET_ACCESS_KEY": "aws-secret-access-value",
}


@pytest.fixture
def host(tmp_path, monkeypatch):
    monkeypatch.setattr(core_module.tempfile, "gettempdir", lambda: str(tmp_path))
    socket = tmp_path / "docker.sock"
    socket.write_text("", encoding="utf-8")
    binfmt_dir = tmp_path / "binfmt_misc"
    binfmt_dir.mkdir()
    (binfmt_dir / "qemu-aarch64").write_text("enabled\n", encoding="utf-8")
    return tmp_path


def build_patcher(host, fake_docker, **kwargs):
    options = {
        "region": "us-east-1",
        "account_id": "acct",
        "source_repo": f"{ECR_HOST}/app",
        "source_tag": "arm64",
        "patcher_image": PATCHER_URI,
        "cid": "CID123",
        "platform": "arm64",
        "cloud_service": "ECS_FARGATE",
        "output_dir": str(host / "output"),
        "command_runner": CommandRunner(logger=DummyLogger(), subprocess_module=fake_docker),
        "requests_module": FakeRequests(),
        "host_lock": HostLock(str(host / "imagepatcher.lock")),
        "environment": dict(AWS_ENV),
    }
    options.update(kwargs)
    patcher = ImagePatcher(**options)
    patcher.environment_service.docker_socket = str(host / "docker.sock")
    patcher.environment_service.binfmt_dir = str(host / "binfmt_misc")
    patcher.environment_service.machine = lambda: "x86_64"
    return patcher


def read_manifest(host):
    return json.loads((host / "output" / "run-manifest.json").read_text(encoding="utf-8"))


def target_pushes(fake_docker):
    return [call for call in fake_docker.commands("docker", "push") if call[-1] == TARGET_URI]


def test_successful_run_publishes_patched_target(host, fake_docker):
    patcher = build_patcher(host, fake_docker)

    exit_code = patcher.run()

    assert exit_code == 0
    assert patcher.last_run.status == RunStatus.SUCCEEDED
    assert patcher.published_uri == TARGET_URI
    assert target_pushes(fake_docker) == [["docker", "push", TARGET_URI]]
    assert ["docker", "pull", "--platform", "linux/arm64", SOURCE_URI] in fake_docker.calls
    assert patcher.last_run.phases == [
        RunPhase.INIT,
        RunPhase.SETUP,
        RunPhase.AUTHENTICATED,
        RunPhase.STAGED,
        RunPhase.PATCHING,
        RunPhase.PUBLISHED,
        RunPhase.CLEANED_UP,
    ]

    patch_command = next(call for call in fake_docker.calls if "falconutil" in call)
    assert patch_command[patch_command.index("--cid") + 1] == "CID123"
    assert patch_command[patch_command.index("--source-image-uri") + 1] == "localhost:5000/source:latest"
    assert patch_command[patch_command.index("--falcon-image-uri") + 1] == "localhost:5000/falcon:latest"

    manifest = read_manifest(host)
    assert manifest["status"] == "succeeded"
    assert manifest["artifacts"]["published_image"] == TARGET_URI
    assert manifest["phases"][-1] == "CleanedUp"
    assert [step["name"] for step in manifest["steps"]] == [
        "validate_environment",
        "authenticate_registries",
        "start_staging_registry",
        "stage_images",
        "patch_image",
        "publish_image",
        "cleanup",
    ]


def test_run_uses_a_run_scoped_docker_config_and_removes_it(host, fake_docker):
    patcher = build_patcher(host, fake_docker)
    docker_config_dir = patcher.run_context.docker_config_dir

    patcher.run()

    assert docker_config_dir.startswith(str(host))
    assert all(env["DOCKER_CONFIG"] == docker_config_dir for env in fake_docker.envs)
    assert not os.path.exists(os.path.dirname(docker_config_dir))


def test_secrets_never_reach_the_manifest(host, fake_docker):
    fake_docker.on("docker", "login", stdout="Login Succeeded with ecr-login-token-0001")
    patcher = build_patcher(host, fake_docker)

    patcher.run()

    manifest_text = (host / "output" / "run-manifest.json").read_text(encoding="utf-8")
    assert "ecr-login-token-0001" not in manifest_text
    assert "CID123" not in manifest_text
    assert "aws-secret-access-value" not in manifest_text
    assert "ecr-login-token-0001" not in " ".join(" ".join(call) for call in fake_docker.calls)


def test_patch_failure_never_publishes_and_reports_logs(host, fake_docker):
    fake_docker.on("falconutil", returncode=1, stderr="patch-image failed")
    fake_docker.on("docker", "ps", "-lq", stdout="c0ffee\n")
    fake_docker.on("docker", "logs", stdout="error: unsupported base image\n")
    patcher = build_patcher(host, fake_docker)

    exit_code = patcher.run()

    run = patcher.last_run
    assert exit_code == 1
    assert run.status == RunStatus.FAILED
    assert run.failure.name == "patch_image"
    assert run.failure.error_kind == "PatchFailed"
    assert run.failure.output == ("error: unsupported base image",)
    assert target_pushes(fake_docker) == []
    assert run.event("publish_image").status == StepStatus.SKIPPED
    assert run.event("cleanup").status == StepStatus.SUCCEEDED
    assert RunPhase.PATCH_FAILED in run.phases
    assert run.phase == RunPhase.CLEANED_UP

    manifest = read_manifest(host)
    assert manifest["status"] == "failed"
    assert manifest["failure"]["kind"] == "PatchFailed"
    assert manifest["failure"]["output"] == ["error: unsupported base image"]


def test_expired_token_mid_run_is_not_retried(host, fake_docker):
    fake_docker.on(
        "docker",
        "pull",
        after=1,
        returncode=1,
        stderr="denied: Your authorization token has expired. Reauthenticate and try again.",
    )
    patcher = build_patcher(host, fake_docker, retry_count=3, retry_backoff_seconds=0)

    exit_code = patcher.run()

    run = patcher.last_run
    assert exit_code == 2
    assert run.failure.name == "stage_images"
    assert run.failure.error_kind == "AuthExpired"
    assert run.failure.attempts == 1
    assert len(fake_docker.commands("docker", "pull")) == 2
    assert not any("falconutil" in call for call in fake_docker.calls)
    assert run.event("cleanup").status == StepStatus.SUCCEEDED
    assert fake_docker.commands("docker", "rm")[-1] == [
        "docker",
        "rm",
        "-f",
        "-v",
        "imagepatcher-staging-registry",
    ]


def test_cancellation_after_staging_skips_patch_and_cleans_up(host, fake_docker):
    patcher = build_patcher(host, fake_docker)
    fake_docker.on("docker", "push", "localhost:5000/falcon:latest", effect=patcher.cancel_token.cancel)

    exit_code = patcher.run()

    run = patcher.last_run
    assert exit_code == 130
    assert run.status == RunStatus.CANCELLED
    assert not any("falconutil" in call for call in fake_docker.calls)
    assert run.event("patch_image").status == StepStatus.SKIPPED
    assert run.event("patch_image").error == "cancelled"
    assert run.phases == [
        RunPhase.INIT,
        RunPhase.SETUP,
        RunPhase.AUTHENTICATED,
        RunPhase.STAGED,
        RunPhase.CLEANED_UP,
    ]
    assert read_manifest(host)["status"] == "cancelled"


def test_missing_aws_keys_fail_authentication(host, fake_docker):
    patcher = build_patcher(host, fake_docker, environment={})

    exit_code = patcher.run()

    assert exit_code == 2
    assert patcher.last_run.failure.name == "authenticate_registries"
    assert patcher.last_run.failure.error_kind == "Configuration"
    assert fake_docker.commands("aws", "ecr") == []


def test_instance_role_does_not_require_aws_keys(host, fake_docker):
    patcher = build_patcher(host, fake_docker, environment={}, use_instance_role=True)

    assert patcher.run() == 0
    assert fake_docker.commands("aws", "ecr", "get-login-password")


def test_aws_commands_receive_the_run_region(host, fake_docker):
    patcher = build_patcher(host, fake_docker)

    patcher.run()

    index = fake_docker.calls.index(["aws", "ecr", "get-login-password", "--region", "us-east-1"])
    assert fake_docker.envs[index]["AWS_DEFAULT_REGION"] == "us-east-1"


def test_second_run_on_the_same_host_is_refused(host, fake_docker):
    patcher = build_patcher(host, fake_docker)

    with HostLock(str(host / "imagepatcher.lock")):
        exit_code = patcher.run()

    assert exit_code == 2
    assert fake_docker.calls == []


def test_dry_run_executes_nothing(host, fake_docker):
    patcher = build_patcher(host, fake_docker, dry_run=True)

    assert patcher.run() == 0
    assert fake_docker.calls == []
    assert not (host / "output" / "run-manifest.json").exists()


def test_render_descriptor_writes_task_definition(host, fake_docker):
    patcher = build_patcher(host, fake_docker, render_descriptor=True)

    assert patcher.run() == 0

    descriptor = json.loads((host / "output" / "task-definition.json").read_text(encoding="utf-8"))
    assert descriptor["containerDefinitions"][0]["image"] == TARGET_URI
    assert descriptor["runtimePlatform"]["cpuArchitecture"] == "ARM64"
    assert read_manifest(host)["artifacts"]["task_definition"].endswith("task-definition.json")


def test_bare_repository_names_resolve_to_the_account_registry(host, fake_docker):
    patcher = build_patcher(host, fake_docker, source_repo="app", target_repo="app-patched", target_tag="v2")

    assert patcher.source.uri == SOURCE_URI
    assert patcher.target.uri == f"{ECR_HOST}/app-patched:v2"


def test_target_must_differ_from_source(host, fake_docker):
    with pytest.raises(PatcherError, match="must differ"):
        build_patcher(host, fake_docker, target_tag="arm64")


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"cid": ""}, "CID"),
        ({"cloud_service": "LAMBDA"}, "Invalid cloud service"),
        ({"pull_policy": "Sometimes"}, "Invalid pull policy"),
        ({"platform": "s390x"}, "Unsupported platform"),
        ({"retry_count": -1}, "must not be negative"),
    ],
)
def test_invalid_options_are_rejected(host, fake_docker, overrides, message):
    with pytest.raises(PatcherError, match=message):
        build_patcher(host, fake_docker, **overrides)


def test_falcon_registry_uses_client_credentials(host, fake_docker):
    patcher = build_patcher(
        host,
        fake_docker,
        patcher_image="registry.crowdstrike.com/falcon-container/us-1/release/falcon-sensor:7.31.0",
        falcon_client_id="client",
        falcon_client_secret="falcon-client-secret",
    )

    providers = dict(patcher._registry_providers())

    assert isinstance(providers[ECR_HOST], EcrCredentialProvider)
    assert isinstance(providers["registry.crowdstrike.com"], FalconCredentialProvider)
    assert "falcon-client-secret" in patcher.redactor


def test_patcher_registry_without_credentials_is_pulled_anonymously(host, fake_docker):
    patcher = build_patcher(host, fake_docker, patcher_image="quay.io/acme/patcher:1.0")

    assert [host_name for host_name, _ in patcher._registry_providers()] == [ECR_HOST]
    assert "quay.io" in patcher.registry_session.anonymous_hosts
    assert patcher.run() == 0


def test_publish_refuses_without_a_successful_patch(host, fake_docker):
    patcher = build_patcher(host, fake_docker)

    with pytest.raises(PatcherError, match="Refusing to publish"):
        patcher.publish_image()

    assert fake_docker.commands("docker", "push") == []


def test_cleanup_keeps_going_when_removing_the_patch_container_fails(host, fake_docker):
    patcher = build_patcher(host, fake_docker)
    patch_container = f"imagepatcher-patch-{patcher.run_context.run_id}"
    fake_docker.on(
        "docker",
        "rm",
        patch_container,
        after=1,
        raises=subprocess.TimeoutExpired(["docker", "rm", "-f", patch_container], 120),
    )
    docker_config_dir = patcher.run_context.docker_config_dir

    exit_code = patcher.run()

    assert exit_code == 0
    assert patcher.last_run.event("cleanup").status == StepStatus.SUCCEEDED
    assert ["docker", "rm", "-f", "-v", "imagepatcher-staging-registry"] in fake_docker.calls
    assert ["docker", "logout", ECR_HOST] in fake_docker.calls
    assert not patcher.registry_session.is_authenticated(ECR_HOST)
    assert not os.path.exists(os.path.dirname(docker_config_dir))


def test_cleanup_removes_staged_and_published_images(host, fake_docker):
    patcher = build_patcher(host, fake_docker)

    patcher.run()

    image_rm = fake_docker.commands("docker", "image", "rm")
    assert len(image_rm) == 1
    for uri in ("localhost:5000/source:latest", "localhost:5000/falcon:latest", SOURCE_URI, TARGET_URI):
        assert uri in image_rm[0]


def test_unopenable_host_lock_fails_before_any_command(host, fake_docker):
    patcher = build_patcher(host, fake_docker, host_lock=HostLock(str(host / "missing" / "imagepatcher.lock")))

    assert patcher.run() == 2
    assert fake_docker.calls == []
