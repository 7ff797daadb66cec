"""Registry authentication and image pull/push for imagepatcher."""

import time
from typing import Dict, Optional

import requests

from imagepatcher.constants import (
    CLEANUP_COMMAND_TIMEOUT_SECONDS,
    ECR_TOKEN_TTL_SECONDS,
    FALCON_API_HOSTS,
    FALCON_REGISTRY_HOSTS,
    FALCON_TOKEN_TTL_SECONDS,
    PLATFORM_ALIASES,
    STAGING_REGISTRY_HOST,
)
from imagepatcher.errors import (
    AuthExpired,
    ConfigurationError,
    ExternalCommandFailure,
    ImageNotFound,
    PatcherError,
    RegistryUnreachable,
)
from imagepatcher.errors_catalog import actionable_error
from imagepatcher.models import ImageReference, RegistryCredential


def normalize_platform(value: str) -> str:
    """Return an `os/arch` platform string, e.g. `arm64` -> `linux/arm64`."""
    cleaned = (value or "").strip().lower()
    if cleaned in PLATFORM_ALIASES:
        return PLATFORM_ALIASES[cleaned]
    if "/" in cleaned:
        os_name, _, arch = cleaned.partition("/")
        if os_name == "linux" and arch in PLATFORM_ALIASES:
            return PLATFORM_ALIASES[arch]
    supported = ", ".join(sorted(PLATFORM_ALIASES))
    raise ConfigurationError(f"Unsupported platform '{value}'. Supported: {supported}.")


def platform_arch(platform: str) -> str:
    return normalize_platform(platform).split("/", 1)[1]


def ecr_registry_host(account_id: str, region: str) -> str:
    return f"{account_id}.dkr.ecr.{region}.amazonaws.com"


class EcrCredentialProvider:
    """Exchanges the ambient AWS credentials for an ECR registry password."""

    username = "AWS"

    def __init__(self, region: str):
        self.region = region

    def fetch(self, host: str, run_cmd, clock) -> RegistryCredential:
        result = run_cmd(
            ["aws", "ecr", "get-login-password", "--region", self.region],
            capture_output=True,
            log_output=False,
        )
        password = (result.stdout or "").strip()
        if not password:
            raise AuthExpired(f"ECR returned an empty login password for {host}.")
        return RegistryCredential(
            host=host,
            username=self.username,
            password=password,
            expires_at=clock() + ECR_TOKEN_TTL_SECONDS,
        )


class FalconCredentialProvider:
    """OAuth2 client-credentials exchange for the CrowdStrike registry."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        cid: str,
        cloud: str = "us-1",
        requests_module=requests,
        timeout: float = 30.0,
    ):
        if cloud not in FALCON_API_HOSTS:
            raise ConfigurationError(
                f"Unknown Falcon cloud '{cloud}'. Supported: {', '.join(FALCON_API_HOSTS)}."
            )
        self.client_id = client_id
        self.client_secret = client_secret
        self.cid = cid
        self.cloud = cloud
        self.requests = requests_module
        self.timeout = timeout

    @property
    def registry_host(self) -> str:
        return FALCON_REGISTRY_HOSTS[self.cloud]

    @property
    def username(self) -> str:
        return "fc-" + self.cid.lower().split("-", 1)[0]

    def fetch(self, host: str, run_cmd, clock) -> RegistryCredential:
        base_url = f"https://{FALCON_API_HOSTS[self.cloud]}"
        try:
            token_response = self.requests.post(
                f"{base_url}/oauth2/token",
                data={"client_id": self.client_id, "client_secret": self.client_secret},
                timeout=self.timeout,
            )
            if token_response.status_code in (401, 403):
                raise AuthExpired(f"Falcon API rejected the client credentials for {host}.")
            token_response.raise_for_status()
            access_token = token_response.json()["access_token"]

            registry_response = self.requests.get(
                f"{base_url}/container-security/entities/image-registry-credentials/v1",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
            registry_response.raise_for_status()
            password = registry_response.json()["resources"][0]["token"]
        except self.requests.RequestException as exc:
            raise RegistryUnreachable(f"Falcon API is not reachable: {exc}") from exc
        except (KeyError, IndexError, ValueError) as exc:
            raise PatcherError(f"Unexpected Falcon API response: {exc}") from exc

        return RegistryCredential(
            host=host,
            username=self.username,
            password=password,
            expires_at=clock() + FALCON_TOKEN_TTL_SECONDS,
        )


class StaticCredentialProvider:
    def __init__(self, username: str, password: str, ttl_seconds: float = ECR_TOKEN_TTL_SECONDS):
        self.username = username
        self.password = password
        self.ttl_seconds = ttl_seconds

    def fetch(self, host: str, run_cmd, clock) -> RegistryCredential:
        return RegistryCredential(
            host=host,
            username=self.username,
            password=self.password,
            expires_at=clock() + self.ttl_seconds,
        )


class RegistrySession:
    """Holds short-lived registry credentials and performs pulls and pushes."""

    AUTH_FAILURE_PATTERNS = (
        "no basic auth credentials",
        "authorization token has expired",
        "unauthorized",
        "authentication required",
        "denied: requested access to the resource is denied",
        "expiredtokenexception",
    )
    NOT_FOUND_PATTERNS = (
        "manifest unknown",
        "not found",
        "repository does not exist",
        "does not exist",
        "repositorynotfoundexception",
        "no matching manifest",
    )
    NETWORK_FAILURE_PATTERNS = (
        "connection refused",
        "connection reset",
        "no such host",
        "i/o timeout",
        "tls handshake timeout",
        "network is unreachable",
        "dial tcp",
        "could not connect to the endpoint url",
        "service unavailable",
        "context deadline exceeded",
    )

    def __init__(self, command_runner, logger, clock=time.time, anonymous_hosts=None):
        self.command_runner = command_runner
        self.logger = logger
        self.clock = clock
        self.anonymous_hosts = {STAGING_REGISTRY_HOST} | set(anonymous_hosts or ())
        self._credentials: Dict[str, RegistryCredential] = {}

    def authenticate(self, host: str, provider) -> RegistryCredential:
        self.logger.info("Authenticating to registry %s", host)
        try:
            credential = provider.fetch(host, self.command_runner.run, self.clock)
        except ExternalCommandFailure as exc:
            raise self._classify(exc, host) from exc

        self.command_runner.redactor.add(credential.password)
        try:
            self.command_runner.run(
                ["docker", "login", "--username", credential.username, "--password-stdin", host],
                capture_output=True,
                input_text=credential.password,
            )
        except ExternalCommandFailure as exc:
            raise self._classify(exc, host) from exc

        self._credentials[host] = credential
        return credential

    def credential_for(self, host: str) -> RegistryCredential:
        credential = self._credentials.get(host)
        if credential is None or credential.is_expired(self.clock()):
            self._credentials.pop(host, None)
            raise AuthExpired(actionable_error("auth_expired", host=host))
        return credential

    def is_authenticated(self, host: str) -> bool:
        credential = self._credentials.get(host)
        return credential is not None and not credential.is_expired(self.clock())

    def _require_auth(self, ref: ImageReference):
        if ref.registry and ref.registry not in self.anonymous_hosts:
            self.credential_for(ref.registry)

    def pull(self, ref: ImageReference, platform: str) -> str:
        self._require_auth(ref)
        normalized = normalize_platform(platform)
        self.logger.info("Pulling %s for %s", ref.uri, normalized)
        try:
            self.command_runner.run(
                ["docker", "pull", "--platform", normalized, ref.uri],
                capture_output=True,
            )
        except ExternalCommandFailure as exc:
            raise self._classify(exc, ref.registry, image=ref.uri) from exc
        return ref.uri

    def tag(self, source: str, target: ImageReference) -> str:
        self.command_runner.run(["docker", "tag", source, target.uri], capture_output=True)
        return target.uri

    def image_platform(self, image: str) -> str:
        result = self.command_runner.run(
            ["docker", "image", "inspect", "--format", "{{.Os}}/{{.Architecture}}", image],
            capture_output=True,
        )
        return (result.stdout or "").strip()

    def push(self, ref: ImageReference, source: str, platform: str) -> str:
        self._require_auth(ref)
        normalized = normalize_platform(platform)
        actual = self.image_platform(source)
        if actual and actual != normalized:
            raise PatcherError(
                f"Refusing to push {source} as {ref.uri}: image platform is {actual}, "
                f"expected {normalized}."
            )

        if source != ref.uri:
            self.tag(source, ref)
        self.logger.info("Pushing %s", ref.uri)
        try:
            self.command_runner.run(["docker", "push", ref.uri], capture_output=True)
        except ExternalCommandFailure as exc:
            raise self._classify(exc, ref.registry, image=ref.uri) from exc
        return ref.uri

    def invalidate_all(self):
        try:
            for host in list(self._credentials):
                try:
                    self.command_runner.run(
                        ["docker", "logout", host],
                        check=False,
                        capture_output=True,
                        timeout=CLEANUP_COMMAND_TIMEOUT_SECONDS,
                    )
                except PatcherError as exc:
                    self.logger.warning("Could not log out of %s: %s", host, exc)
        finally:
            self._credentials.clear()

    def _classify(
        self,
        exc: ExternalCommandFailure,
        host: str,
        image: Optional[str] = None,
    ) -> ExternalCommandFailure:
        if type(exc) is not ExternalCommandFailure:
            return exc

        text = "\n".join([str(exc)] + list(exc.output)).lower()
        if any(pattern in text for pattern in self.AUTH_FAILURE_PATTERNS):
            self._credentials.pop(host, None)
            return AuthExpired(
                f"{actionable_error('auth_expired', host=host)}\n{exc}",
                exit_code=exc.exit_code,
                output=exc.output,
            )
        if image and any(pattern in text for pattern in self.NOT_FOUND_PATTERNS):
            return ImageNotFound(
                f"{actionable_error('image_not_found', image=image)}\n{exc}",
                exit_code=exc.exit_code,
                output=exc.output,
            )
        if any(pattern in text for pattern in self.NETWORK_FAILURE_PATTERNS):
            return RegistryUnreachable(
                f"Registry {host} is unreachable.\n{exc}",
                exit_code=exc.exit_code,
                output=exc.output,
            )
        return exc
