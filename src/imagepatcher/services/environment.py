"""Host precondition checks performed during Setup."""

import os
import platform as host_platform
from typing import Callable

from imagepatcher.constants import BINFMT_DIR, DOCKER_SOCKET, QEMU_ARCH_NAMES
from imagepatcher.errors import PreconditionError
from imagepatcher.errors_catalog import actionable_error
from imagepatcher.services.registry import platform_arch

_HOST_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class EnvironmentService:
    """Verifies, never installs, the host capabilities a run relies on."""

    def __init__(
        self,
        command_runner,
        logger,
        console,
        docker_socket: str = DOCKER_SOCKET,
        binfmt_dir: str = BINFMT_DIR,
        machine: Callable[[], str] = host_platform.machine,
    ):
        self.command_runner = command_runner
        self.logger = logger
        self.console = console
        self.docker_socket = docker_socket
        self.binfmt_dir = binfmt_dir
        self.machine = machine

    def host_arch(self) -> str:
        machine = self.machine().lower()
        return _HOST_ARCH_ALIASES.get(machine, machine)

    def validate(self, platform: str, require_aws: bool = True):
        self.console.print("[blue]Validating host environment...[/blue]")
        self.command_runner.run(["docker", "--version"], capture_output=True)
        self.command_runner.run(["docker", "buildx", "version"], capture_output=True)
        if require_aws:
            self.command_runner.run(["aws", "--version"], capture_output=True)

        if not os.path.exists(self.docker_socket):
            raise PreconditionError(f"Container engine socket not found at {self.docker_socket}.")

        self.validate_emulation(platform)
        self.console.print("[green]Host environment is ready.[/green]")

    def validate_emulation(self, platform: str):
        target_arch = platform_arch(platform)
        host_arch = self.host_arch()
        if target_arch == host_arch:
            self.logger.info("Target platform matches host architecture %s.", host_arch)
            return

        qemu_name = QEMU_ARCH_NAMES.get(target_arch, target_arch)
        handler = os.path.join(self.binfmt_dir, f"qemu-{qemu_name}")
        if not os.path.exists(handler):
            raise PreconditionError(actionable_error("binfmt_missing", arch=target_arch))
        self.logger.info("Emulation for %s is registered at %s.", target_arch, handler)
