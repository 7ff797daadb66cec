import logging
import os
import re
import shutil
import signal
import tempfile
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests
from rich.console import Console

from .constants import (
    CLOUD_SERVICES,
    ECS_CPU_ARCHITECTURES,
    EXIT_CANCELLED,
    EXIT_PATCH_FAILED,
    EXIT_STEP_FAILED,
    EXIT_SUCCESS,
    PATCHED_TAG_SUFFIX,
    PULL_POLICIES,
)
from .errors import ConfigurationError, PatcherError, PatchFailed
from .models import (
    ImageReference,
    PatchInvocation,
    PipelineRun,
    RetryPolicy,
    RunContext,
    RunPhase,
    RunStatus,
    Step,
    StepCondition,
    StepEvent,
    StepStatus,
)
from .redaction import SecretRedactor
from .services.command_runner import CommandRunner
from .services.descriptor import DescriptorService
from .services.environment import EnvironmentService
from .services.host_lock import HostLock
from .services.manifest import ManifestService
from .services.patch import PatchInvocationAdapter
from .services.registry import (
    EcrCredentialProvider,
    FalconCredentialProvider,
    RegistrySession,
    ecr_registry_host,
    normalize_platform,
    platform_arch,
)
from .services.step_executor import CancellationToken, StepExecutor
from .services.transfer import ImageTransferCoordinator

console = Console()
logger = logging.getLogger("imagepatcher")

ECR_HOST_PATTERN = re.compile(r"^[^./]+\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com(\.cn)?$")
AWS_SECRET_ENV = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")


class ImagePatcher:
    """Cross-architecture patch-and-publish run for one source image."""

    def __init__(
        self,
        region: str,
        account_id: str,
        source_repo: str,
        source_tag: str,
        patcher_image: str,
        cid: str,
        platform: str,
        target_repo: Optional[str] = None,
        target_tag: Optional[str] = None,
        pull_policy: str = "IfNotPresent",
        cloud_service: str = "ECS_FARGATE",
        falcon_client_id: Optional[str] = None,
        falcon_client_secret: Optional[str] = None,
        falcon_cloud: str = "us-1",
        use_instance_role: bool = False,
        verbose: bool = False,
        output_dir: Optional[str] = None,
        step_timeout_minutes: Optional[int] = 30,
        retry_count: int = 0,
        retry_backoff_seconds: float = 2.0,
        render_descriptor: bool = False,
        descriptor_template: Optional[str] = None,
        dry_run: bool = False,
        command_runner: Optional[CommandRunner] = None,
        requests_module=requests,
        host_lock: Optional[HostLock] = None,
        environment: Optional[Mapping[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        if not cid:
            raise ConfigurationError("Tenant identifier (CID) is required.")
        if cloud_service not in CLOUD_SERVICES:
            raise ConfigurationError(
                f"Invalid cloud service '{cloud_service}'. Supported: {', '.join(CLOUD_SERVICES)}."
            )
        if pull_policy not in PULL_POLICIES:
            raise ConfigurationError(
                f"Invalid pull policy '{pull_policy}'. Supported: {', '.join(PULL_POLICIES)}."
            )
        if retry_count < 0:
            raise ConfigurationError("Retry count must not be negative.")

        self.region = region
        self.account_id = account_id
        self.platform = normalize_platform(platform)
        self.cid = cid
        self.pull_policy = pull_policy
        self.cloud_service = cloud_service
        self.use_instance_role = use_instance_role
        self.verbose = verbose
        self.dry_run = dry_run
        self.render_descriptor_enabled = render_descriptor
        self.descriptor_template = descriptor_template
        self.step_timeout_seconds = step_timeout_minutes * 60 if step_timeout_minutes else None
        self.retry_policy = RetryPolicy(
            max_attempts=retry_count + 1,
            backoff_seconds=retry_backoff_seconds,
        )
        self.environment = environment if environment is not None else os.environ

        self.ecr_host = ecr_registry_host(account_id, region)
        self.source = self._resolve_reference(source_repo, source_tag)
        self.target = self._resolve_reference(
            target_repo or source_repo,
            target_tag or f"{self.source.tag}{PATCHED_TAG_SUFFIX}",
        )
        self.patcher = ImageReference.parse(patcher_image)
        if self.target == self.source:
            raise ConfigurationError("Target image must differ from the source image.")

        self.redactor = SecretRedactor(
            [cid, falcon_client_secret] + [self.environment.get(name) for name in AWS_SECRET_ENV]
        )
        self.falcon_provider = None
        if falcon_client_id and falcon_client_secret:
            self.falcon_provider = FalconCredentialProvider(
                client_id=falcon_client_id,
                client_secret=falcon_client_secret,
                cid=cid,
                cloud=falcon_cloud,
                requests_module=requests_module,
            )

        run_id = uuid.uuid4().hex[:10]
        self.output_dir = output_dir or os.path.join(os.getcwd(), "output")
        self.run_context = RunContext(
            run_id=run_id,
            docker_config_dir=os.path.join(tempfile.gettempdir(), f"imagepatcher-{run_id}", "docker"),
            output_dir=self.output_dir,
        )

        self.command_runner = command_runner or CommandRunner(logger=logger, redactor=self.redactor)
        self.command_runner.redactor = self.redactor
        self.command_runner.base_env["DOCKER_CONFIG"] = self.run_context.docker_config_dir

        self.registry_session = RegistrySession(
            command_runner=self.command_runner,
            logger=logger,
            anonymous_hosts=self._anonymous_hosts(),
        )
        self.transfer = ImageTransferCoordinator(
            registry_session=self.registry_session,
            command_runner=self.command_runner,
            logger=logger,
            console=console,
            requests_module=requests_module,
        )
        self.patch_adapter = PatchInvocationAdapter(
            command_runner=self.command_runner,
            logger=logger,
            console=console,
            docker_config_dir=self.run_context.docker_config_dir,
            container_name=f"imagepatcher-patch-{run_id}",
        )
        self.environment_service = EnvironmentService(
            command_runner=self.command_runner,
            logger=logger,
            console=console,
        )
        self.descriptor_service = DescriptorService(logger=logger, redactor=self.redactor)
        self.manifest_service = ManifestService(
            manifest_file=os.path.join(self.output_dir, "run-manifest.json"),
            logger=logger,
        )
        self.executor = StepExecutor(
            logger=logger,
            command_runner=self.command_runner,
            environment=self.environment,
        )
        self.host_lock = host_lock or HostLock()
        self.cancel_token = cancel_token or CancellationToken()

        self.staged: Optional[Tuple[ImageReference, ImageReference]] = None
        self.patch_invocation: Optional[PatchInvocation] = None
        self.published_uri: Optional[str] = None
        self.last_run: Optional[PipelineRun] = None

    def _resolve_reference(self, repository: str, tag: str) -> ImageReference:
        parsed = ImageReference.parse(repository)
        registry = parsed.registry or self.ecr_host
        resolved_tag = tag or parsed.tag
        return ImageReference(registry, parsed.repository, resolved_tag)

    def _anonymous_hosts(self) -> List[str]:
        authenticated = {host for host, _ in self._registry_providers()}
        if self.patcher.registry and self.patcher.registry not in authenticated:
            return [self.patcher.registry]
        return []

    def _registry_providers(self) -> List[Tuple[str, Any]]:
        providers: Dict[str, Any] = {}
        for ref in (self.source, self.target, self.patcher):
            match = ECR_HOST_PATTERN.match(ref.registry)
            if match and ref.registry not in providers:
                providers[ref.registry] = EcrCredentialProvider(region=match.group(1))
        if self.falcon_provider and self.patcher.registry == self.falcon_provider.registry_host:
            providers[self.patcher.registry] = self.falcon_provider
        return list(providers.items())

    def _aws_required_env(self) -> Tuple[str, ...]:
        if self.use_instance_role:
            return ()
        return ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")

    def build_steps(self) -> List[Step]:
        timeout = self.step_timeout_seconds
        aws_env = {"AWS_DEFAULT_REGION": self.region}
        steps = [
            Step(
                name="validate_environment",
                action=self.validate_environment,
                timeout_seconds=timeout,
                reaches=RunPhase.SETUP,
            ),
            Step(
                name="authenticate_registries",
                action=self.authenticate_registries,
                timeout_seconds=timeout,
                env=aws_env,
                required_env=self._aws_required_env(),
                retry=self.retry_policy,
                reaches=RunPhase.AUTHENTICATED,
            ),
            Step(
                name="start_staging_registry",
                action=self.transfer.start_staging_registry,
                timeout_seconds=timeout,
                retry=self.retry_policy,
            ),
            Step(
                name="stage_images",
                action=self.stage_images,
                timeout_seconds=timeout,
                retry=self.retry_policy,
                reaches=RunPhase.STAGED,
            ),
            Step(
                name="patch_image",
                action=self.patch_image,
                timeout_seconds=timeout,
                reaches=RunPhase.PATCHING,
            ),
            Step(
                name="publish_image",
                action=self.publish_image,
                timeout_seconds=timeout,
                env=aws_env,
                retry=self.retry_policy,
                reaches=RunPhase.PUBLISHED,
            ),
        ]
        if self.render_descriptor_enabled:
            steps.append(Step(name="render_descriptor", action=self.render_descriptor))
        steps.append(
            Step(
                name="cleanup",
                action=self.cleanup,
                condition=StepCondition.ALWAYS,
                reaches=RunPhase.CLEANED_UP,
            )
        )
        return steps

    def validate_environment(self):
        self.environment_service.validate(
            self.platform,
            require_aws=any(
                isinstance(provider, EcrCredentialProvider)
                for _, provider in self._registry_providers()
            ),
        )
        os.makedirs(self.run_context.docker_config_dir, mode=0o700, exist_ok=True)

    def authenticate_registries(self) -> List[str]:
        hosts = []
        for host, provider in self._registry_providers():
            self.registry_session.authenticate(host, provider)
            hosts.append(host)
        console.print(f"[green]Authenticated to {len(hosts)} registr{'y' if len(hosts) == 1 else 'ies'}.[/green]")
        return hosts

    def stage_images(self) -> Dict[str, str]:
        self.staged = self.transfer.stage(self.source, self.patcher, self.platform)
        staged_source, staged_patcher = self.staged
        return {"source": staged_source.uri, "patcher": staged_patcher.uri}

    def patch_image(self) -> Dict[str, Any]:
        if not self.staged:
            raise PatcherError("Images must be staged before patching.")
        staged_source, staged_patcher = self.staged
        self.patch_invocation = self.patch_adapter.invoke(
            source=staged_source,
            patcher=staged_patcher,
            tenant_id=self.cid,
            cloud_service=self.cloud_service,
            pull_policy=self.pull_policy,
            platform=self.platform,
        )
        return {"target": self.patch_invocation.target.uri, "exit_code": self.patch_invocation.exit_code}

    def publish_image(self) -> str:
        if not self.patch_invocation or not self.patch_invocation.succeeded:
            raise PatcherError("Refusing to publish: the patch step did not succeed.")
        self.published_uri = self.transfer.publish(
            self.patch_invocation.target,
            self.target,
            self.platform,
        )
        self.manifest_service.add_artifact("published_image", self.published_uri)
        return self.published_uri

    def descriptor_values(self) -> Dict[str, str]:
        return {
            "FAMILY": self.target.repository.replace("/", "-"),
            "CONTAINER_NAME": self.target.repository.rsplit("/", 1)[-1],
            "TARGET_IMAGE_URI": self.published_uri or self.target.uri,
            "CPU_ARCHITECTURE": ECS_CPU_ARCHITECTURES[platform_arch(self.platform)],
            "AWS_REGION": self.region,
            "AWS_ACCOUNT_ID": self.account_id,
            "LOG_GROUP": f"/ecs/{self.target.repository.replace('/', '-')}",
        }

    def render_descriptor(self) -> str:
        descriptor = self.descriptor_service.render(
            self.descriptor_values(),
            template_path=self.descriptor_template,
        )
        path = self.descriptor_service.write(
            os.path.join(self.output_dir, "task-definition.json"),
            descriptor,
        )
        self.manifest_service.add_artifact("task_definition", path)
        return path

    def cleanup(self):
        console.print("[dim]Cleaning up...[/dim]")
        logger.info("Cleaning up patch container, staging registry, local images and credentials...")
        staged_images = [
            self.transfer.staged_source,
            self.transfer.staged_patcher,
            self.patch_adapter.staged_target,
            self.source,
            self.patcher,
            self.target,
        ]
        actions = [
            ("patch container", self.patch_adapter.remove_container),
            ("staging registry", self.transfer.stop_staging_registry),
            ("local images", lambda: self.transfer.remove_local_images(staged_images)),
            ("registry logins", self.registry_session.invalidate_all),
        ]
        try:
            for label, action in actions:
                try:
                    action()
                except PatcherError as exc:
                    logger.warning("Could not clean up %s: %s", label, exc)
        finally:
            # The run directory holds the docker login config.
            run_dir = os.path.dirname(self.run_context.docker_config_dir)
            if os.path.exists(run_dir):
                try:
                    shutil.rmtree(run_dir)
                except OSError as exc:
                    logger.warning("Could not remove %s: %s", run_dir, exc)

    def _on_step_event(self, event: StepEvent):
        self.manifest_service.on_step_event(event)
        if event.status == StepStatus.SUCCEEDED:
            console.print(f"[green]✔ {event.name}[/green] [dim]({event.duration_seconds:.1f}s)[/dim]")
        elif event.status == StepStatus.SKIPPED:
            console.print(f"[yellow]- {event.name} skipped ({event.error})[/yellow]")
        else:
            console.print(f"[bold red]✘ {event.name} ({event.error_kind})[/bold red]")

    def _install_signal_handlers(self) -> Dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def request_cancel(signum, _frame):
            console.print("[bold red]Cancellation requested. Finishing the current step...[/bold red]")
            logger.warning("Received signal %s. Cancelling after the current step.", signum)
            self.cancel_token.cancel()

        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, request_cancel)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]):
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _manifest_metadata(self) -> Dict[str, Any]:
        return {
            "source": self.source.uri,
            "target": self.target.uri,
            "patcher": self.patcher.uri,
            "platform": self.platform,
            "cloud_service": self.cloud_service,
            "pull_policy": self.pull_policy,
            "region": self.region,
            "account_id": self.account_id,
        }

    def print_plan(self):
        console.print("[bold blue]Dry run: no commands will be executed.[/bold blue]")
        console.print(f"Source:   {self.source.uri}")
        console.print(f"Patcher:  {self.patcher.uri}")
        console.print(f"Target:   {self.target.uri}")
        console.print(f"Platform: {self.platform}")
        for position, step in enumerate(self.build_steps(), start=1):
            console.print(f"  {position}. {step.name} [dim]({step.condition.value})[/dim]")

        staged_source, staged_patcher = self.transfer.staged_source, self.transfer.staged_patcher
        preview = PatchInvocation(
            source=staged_source,
            target=self.patch_adapter.staged_target,
            patcher=staged_patcher,
            tenant_id=self.cid,
            cloud_service=self.cloud_service,
            pull_policy=self.pull_policy,
            platform=self.platform,
        )
        command = " ".join(self.patch_adapter.build_command(preview))
        console.print(f"Patch command: {self.redactor.redact(command)}")

    def exit_code_for(self, run: PipelineRun) -> int:
        if run.status == RunStatus.SUCCEEDED:
            return EXIT_SUCCESS
        if run.status == RunStatus.CANCELLED:
            return EXIT_CANCELLED
        if run.failure and run.failure.error_kind == PatchFailed.kind:
            return EXIT_PATCH_FAILED
        return EXIT_STEP_FAILED

    def run(self) -> int:
        if self.dry_run:
            self.print_plan()
            return EXIT_SUCCESS

        try:
            self.host_lock.acquire()
        except PatcherError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return EXIT_STEP_FAILED

        previous_handlers = self._install_signal_handlers()
        try:
            logger.info("Starting imagepatcher run %s...", self.run_context.run_id)
            self.manifest_service.start_run(self.run_context.run_id, self._manifest_metadata())
            run = self.executor.run(
                self.build_steps(),
                observer=self._on_step_event,
                cancel_token=self.cancel_token,
                run_id=self.run_context.run_id,
            )
            self.last_run = run
            for phase in run.phases:
                self.manifest_service.set_phase(phase)

            failure = None
            if run.failure:
                failure = {
                    "step": run.failure.name,
                    "kind": run.failure.error_kind,
                    "error": run.failure.error,
                    "output": list(run.failure.output),
                }
                console.print(
                    f"[bold red]Run failed at {run.failure.name} "
                    f"({run.failure.error_kind}):[/bold red] {run.failure.error}"
                )
            elif run.status == RunStatus.CANCELLED:
                console.print("[bold yellow]Run cancelled.[/bold yellow]")
            else:
                console.print(f"[bold green]Published {self.published_uri}[/bold green]")
            self.manifest_service.finalize(run.status.value, failure=failure)
            return self.exit_code_for(run)
        finally:
            self._restore_signal_handlers(previous_handlers)
            self.host_lock.release()
