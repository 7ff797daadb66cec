"""Staging and publishing of images around the patch step."""

import time
from typing import Iterable, List, Tuple

import requests

from imagepatcher.constants import (
    CLEANUP_COMMAND_TIMEOUT_SECONDS,
    STAGED_PATCHER_REPOSITORY,
    STAGED_SOURCE_REPOSITORY,
    STAGED_TAG,
    STAGING_REGISTRY_CONTAINER,
    STAGING_REGISTRY_HOST,
    STAGING_REGISTRY_IMAGE,
)
from imagepatcher.errors import RegistryUnreachable
from imagepatcher.models import ImageReference


class ImageTransferCoordinator:
    """Moves images between the real registries and the ephemeral staging registry.

    The staging registry listens on a fixed port, so only one run per host can
    use it at a time.
    """

    def __init__(
        self,
        registry_session,
        command_runner,
        logger,
        console,
        staging_host: str = STAGING_REGISTRY_HOST,
        requests_module=requests,
        sleep=time.sleep,
    ):
        self.registry_session = registry_session
        self.command_runner = command_runner
        self.logger = logger
        self.console = console
        self.staging_host = staging_host
        self.requests = requests_module
        self.sleep = sleep

    @property
    def staged_source(self) -> ImageReference:
        return ImageReference(self.staging_host, STAGED_SOURCE_REPOSITORY, STAGED_TAG)

    @property
    def staged_patcher(self) -> ImageReference:
        return ImageReference(self.staging_host, STAGED_PATCHER_REPOSITORY, STAGED_TAG)

    def start_staging_registry(self, max_retries: int = 15, interval_seconds: float = 1.0):
        self.console.print("[blue]Starting staging registry...[/blue]")
        # A leftover registry from an interrupted run would leak stale tags.
        self.stop_staging_registry()

        port = self.staging_host.rsplit(":", 1)[-1]
        self.command_runner.run(
            [
                "docker",
                "run",
                "-d",
                "-p",
                f"{port}:5000",
                "--name",
                STAGING_REGISTRY_CONTAINER,
                STAGING_REGISTRY_IMAGE,
            ],
            capture_output=True,
        )
        self.wait_for_staging_registry(max_retries=max_retries, interval_seconds=interval_seconds)

    def wait_for_staging_registry(self, max_retries: int = 15, interval_seconds: float = 1.0):
        url = f"http://{self.staging_host}/v2/"
        last_error = None
        for _ in range(max_retries):
            try:
                response = self.requests.get(url, timeout=5)
                if response.status_code == 200:
                    self.console.print("[green]Staging registry is ready.[/green]")
                    return
                last_error = f"HTTP {response.status_code}"
            except self.requests.RequestException as exc:
                last_error = str(exc)
            self.sleep(interval_seconds)

        raise RegistryUnreachable(
            f"Staging registry at {self.staging_host} failed to become ready: {last_error}"
        )

    def stop_staging_registry(self):
        # -v drops the anonymous /var/lib/registry volume holding the staged layers.
        self.command_runner.run(
            ["docker", "rm", "-f", "-v", STAGING_REGISTRY_CONTAINER],
            check=False,
            capture_output=True,
            timeout=CLEANUP_COMMAND_TIMEOUT_SECONDS,
        )

    def remove_local_images(self, images: Iterable[ImageReference]) -> List[str]:
        """Untag the local copies a run pulled or tagged. Missing images are ignored."""
        uris = list(dict.fromkeys(image.uri for image in images))
        if not uris:
            return []
        self.command_runner.run(
            ["docker", "image", "rm"] + uris,
            check=False,
            capture_output=True,
            timeout=CLEANUP_COMMAND_TIMEOUT_SECONDS,
        )
        return uris

    def stage(
        self,
        source: ImageReference,
        patcher: ImageReference,
        platform: str,
    ) -> Tuple[ImageReference, ImageReference]:
        """Pull both images for `platform` and push them under the stable staged names."""
        self.console.print(f"[blue]Staging images for {platform}...[/blue]")
        pairs = ((source, self.staged_source), (patcher, self.staged_patcher))
        for remote, staged in pairs:
            local = self.registry_session.pull(remote, platform)
            self.registry_session.push(staged, local, platform)
            self.logger.info("Staged %s as %s", remote.uri, staged.uri)

        self.console.print("[green]Images staged.[/green]")
        return self.staged_source, self.staged_patcher

    def publish(self, local_result: ImageReference, target: ImageReference, platform: str) -> str:
        self.console.print(f"[blue]Publishing {target.uri}...[/blue]")
        # The patch tool writes its result to the staging registry.
        local = self.registry_session.pull(local_result, platform)
        pushed = self.registry_session.push(target, local, platform)
        self.console.print(f"[green]Published {pushed}.[/green]")
        return pushed
