"""Invocation of the external `falconutil patch-image` tool."""

import threading
from typing import List, Optional

from imagepatcher.constants import (
    CLEANUP_COMMAND_TIMEOUT_SECONDS,
    DOCKER_SOCKET,
    STAGED_TAG,
    STAGED_TARGET_REPOSITORY,
    STAGING_REGISTRY_HOST,
)
from imagepatcher.errors import PatchFailed, PatcherError
from imagepatcher.errors_catalog import actionable_error
from imagepatcher.models import ImageReference, PatchInvocation
from imagepatcher.services.registry import normalize_platform


class PatchInvocationAdapter:
    """Runs the patch tool container and maps its exit status to a result."""

    LOG_TAIL_LINES = 200

    def __init__(
        self,
        command_runner,
        logger,
        console,
        docker_config_dir: str,
        docker_socket: str = DOCKER_SOCKET,
        staging_host: str = STAGING_REGISTRY_HOST,
        container_name: str = "imagepatcher-patch",
    ):
        self.command_runner = command_runner
        self.logger = logger
        self.console = console
        self.docker_config_dir = docker_config_dir
        self.docker_socket = docker_socket
        self.staging_host = staging_host
        self.container_name = container_name
        self._in_flight = threading.Lock()

    @property
    def staged_target(self) -> ImageReference:
        return ImageReference(self.staging_host, STAGED_TARGET_REPOSITORY, STAGED_TAG)

    def build_command(self, invocation: PatchInvocation) -> List[str]:
        # The tool drives the host engine and pushes to the staging registry,
        # so it needs privilege, host networking, the socket and the login config.
        return [
            "docker",
            "run",
            "--name",
            self.container_name,
            "--privileged",
            "--user",
            "0:0",
            "--network=host",
            "--platform",
            normalize_platform(invocation.platform),
            "-v",
            f"{self.docker_socket}:/var/run/docker.sock",
            "-v",
            f"{self.docker_config_dir}:/root/.docker",
            invocation.patcher.uri,
            "falconutil",
            "patch-image",
            "--source-image-uri",
            invocation.source.uri,
            "--target-image-uri",
            invocation.target.uri,
            "--falcon-image-uri",
            invocation.patcher.uri,
            "--cid",
            invocation.tenant_id,
            "--cloud-service",
            invocation.cloud_service,
            "--image-pull-policy",
            invocation.pull_policy,
        ]

    def invoke(
        self,
        source: ImageReference,
        patcher: ImageReference,
        tenant_id: str,
        cloud_service: str,
        pull_policy: str,
        platform: str,
        target: Optional[ImageReference] = None,
    ) -> PatchInvocation:
        if not self._in_flight.acquire(blocking=False):
            raise PatcherError("A patch invocation is already in flight for this run.")

        try:
            invocation = PatchInvocation(
                source=source,
                target=target or self.staged_target,
                patcher=patcher,
                tenant_id=tenant_id,
                cloud_service=cloud_service,
                pull_policy=pull_policy,
                platform=platform,
            )
            self.remove_container()
            self.console.print("[bold magenta]Patching image...[/bold magenta]")
            result = self.command_runner.run(
                self.build_command(invocation),
                check=False,
                capture_output=True,
            )
            invocation.exit_code = result.returncode
            captured = self._lines(f"{result.stdout or ''}\n{result.stderr or ''}")

            if result.returncode != 0:
                log_lines = self.collect_last_container_logs() or captured
                invocation.log_lines = log_lines
                if log_lines:
                    self.logger.error("Patch tool logs:\n%s", "\n".join(log_lines))
                raise PatchFailed(
                    actionable_error("patch_failed", exit_code=str(result.returncode)),
                    exit_code=result.returncode,
                    log_lines=log_lines,
                )

            invocation.log_lines = captured
            self.console.print(f"[green]Patched image available as {invocation.target.uri}.[/green]")
            return invocation
        finally:
            self._in_flight.release()

    def collect_last_container_logs(self) -> List[str]:
        """Return the logs of the most recently created container."""
        latest = self.command_runner.run(
            ["docker", "ps", "-lq"],
            check=False,
            capture_output=True,
        )
        container_id = (latest.stdout or "").strip()
        if latest.returncode != 0 or not container_id:
            self.logger.warning("Could not determine the patch tool container.")
            return []

        logs = self.command_runner.run(
            ["docker", "logs", "--tail", str(self.LOG_TAIL_LINES), container_id],
            check=False,
            capture_output=True,
        )
        return self._lines(f"{logs.stdout or ''}\n{logs.stderr or ''}")

    def remove_container(self):
        self.command_runner.run(
            ["docker", "rm", "-f", self.container_name],
            check=False,
            capture_output=True,
            timeout=CLEANUP_COMMAND_TIMEOUT_SECONDS,
        )

    def _lines(self, text: str) -> List[str]:
        redact = self.command_runner.redactor.redact
        return [redact(line.rstrip()) for line in text.splitlines() if line.strip()]
