"""Sequential step execution for one pipeline run."""

import os
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Sequence

from imagepatcher.errors import ExternalCommandFailure, PatchFailed, PatcherError
from imagepatcher.models import (
    PipelineRun,
    RunPhase,
    RunStatus,
    Step,
    StepCondition,
    StepEvent,
    StepStatus,
)

StepObserver = Callable[[StepEvent], None]


class CancellationToken:
    """Cancellation request honoured between steps, never mid-step."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StepExecutor:
    """Runs an ordered list of steps and records one event per step."""

    def __init__(
        self,
        logger,
        command_runner,
        environment: Optional[Mapping[str, str]] = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.logger = logger
        self.command_runner = command_runner
        self.environment = environment if environment is not None else os.environ
        self.sleep = sleep
        self.clock = clock

    def run(
        self,
        steps: Sequence[Step],
        observer: Optional[StepObserver] = None,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        run = PipelineRun(
            run_id=run_id or uuid.uuid4().hex[:10],
            started_at=datetime.now(timezone.utc),
        )
        self.logger.info("Starting run %s with %s steps", run.run_id, len(steps))
        failed = False

        for position, step in enumerate(steps):
            if cancel_token and cancel_token.cancelled and not run.cancelled:
                self.logger.warning("Cancellation requested. Skipping pending steps.")
                run.cancelled = True

            if step.condition == StepCondition.ON_SUCCESS and (failed or run.cancelled):
                reason = "cancelled" if run.cancelled and not failed else "prior step failed"
                self.logger.info("Skipping step %s (%s)", step.name, reason)
                event = StepEvent(
                    name=step.name,
                    position=position,
                    status=StepStatus.SKIPPED,
                    error=reason,
                )
            else:
                event = self._execute(step, position, run)

            required = step.condition != StepCondition.ALWAYS
            if event.status == StepStatus.FAILED:
                if event.error_kind == PatchFailed.kind:
                    run.phases.append(RunPhase.PATCH_FAILED)
                if required:
                    failed = True
                    if run.failure is None:
                        run.failure = event
                else:
                    self.logger.warning("Step %s failed and does not affect run status.", step.name)
            elif event.status == StepStatus.SUCCEEDED and step.reaches:
                run.phases.append(step.reaches)

            if not required:
                event = replace(event, required=False)
            run.events.append(event)
            self._emit(observer, event)

        if failed:
            run.status = RunStatus.FAILED
        elif run.cancelled:
            run.status = RunStatus.CANCELLED
        else:
            run.status = RunStatus.SUCCEEDED
        run.finished_at = datetime.now(timezone.utc)
        self.logger.info("Run %s finished with status %s", run.run_id, run.status.value)
        return run

    def _execute(self, step: Step, position: int, run: PipelineRun) -> StepEvent:
        missing = [name for name in step.required_env if not self._has_env(step, name)]
        if missing:
            message = f"Step {step.name} requires environment variables: {', '.join(missing)}"
            self.logger.error(message)
            return StepEvent(
                name=step.name,
                position=position,
                status=StepStatus.FAILED,
                error_kind="Configuration",
                error=message,
            )

        max_attempts = max(1, step.retry.max_attempts)
        started = self.clock()
        output = ()
        self.logger.info("Running step %s", step.name)

        for attempt in range(1, max_attempts + 1):
            with self.command_runner.step_scope(step.timeout_seconds, step.env) as capture:
                try:
                    result = step.action()
                except PatcherError as exc:
                    error = exc
                except Exception as exc:
                    self.logger.exception("Unexpected error in step %s", step.name)
                    error = exc
                else:
                    if result is not None:
                        run.results[step.name] = result
                    return StepEvent(
                        name=step.name,
                        position=position,
                        status=StepStatus.SUCCEEDED,
                        duration_seconds=self.clock() - started,
                        output=tuple(capture.lines),
                        attempts=attempt,
                    )
                output = tuple(capture.lines)

            kind = getattr(error, "kind", "Unexpected")
            retryable = isinstance(error, PatcherError) and error.retryable
            if retryable and attempt < max_attempts:
                delay = step.retry.delay_for(attempt)
                self.logger.warning(
                    "Step %s failed on attempt %s/%s (%s). Retrying in %.1fs.",
                    step.name,
                    attempt,
                    max_attempts,
                    kind,
                    delay,
                )
                self.sleep(delay)
                continue

            if isinstance(error, ExternalCommandFailure) and error.output:
                output = tuple(error.output)
            self.logger.error("Step %s failed (%s): %s", step.name, kind, error)
            return StepEvent(
                name=step.name,
                position=position,
                status=StepStatus.FAILED,
                duration_seconds=self.clock() - started,
                output=output,
                error_kind=kind,
                error=str(error),
                attempts=attempt,
            )

    def _has_env(self, step: Step, name: str) -> bool:
        return bool(step.env.get(name) or self.environment.get(name))

    def _emit(self, observer: Optional[StepObserver], event: StepEvent):
        if observer is None:
            return
        try:
            observer(event)
        except Exception:
            self.logger.exception("Step observer failed for %s", event.name)
