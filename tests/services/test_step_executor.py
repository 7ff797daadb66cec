import subprocess

import pytest

from imagepatcher.errors import (
    AuthExpired,
    ExternalCommandFailure,
    ImageNotFound,
    PatchFailed,
    RegistryUnreachable,
)
from imagepatcher.models import RetryPolicy, RunPhase, RunStatus, Step, StepCondition, StepStatus
from imagepatcher.services.command_runner import CommandRunner
from imagepatcher.services.step_executor import CancellationToken, StepExecutor

from conftest import DummyLogger


@pytest.fixture
def runner(fake_docker):
    return CommandRunner(logger=DummyLogger(), subprocess_module=fake_docker)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(runner, sleeps):
    return StepExecutor(
        logger=DummyLogger(),
        command_runner=runner,
        environment={},
        sleep=sleeps.append,
    )


def _failing(error):
    def action():
        raise error

    return action


def test_steps_run_in_declared_order(executor):
    calls = []
    steps = [Step(name=name, action=lambda name=name: calls.append(name)) for name in "abc"]

    run = executor.run(steps)

    assert calls == ["a", "b", "c"]
    assert run.status == RunStatus.SUCCEEDED
    assert [event.name for event in run.events] == ["a", "b", "c"]


def test_failure_skips_on_success_steps_but_runs_always_steps(executor):
    calls = []
    steps = [
        Step(name="stage", action=_failing(ExternalCommandFailure("pull failed", exit_code=1))),
        Step(name="patch", action=lambda: calls.append("patch")),
        Step(name="cleanup", action=lambda: calls.append("cleanup"), condition=StepCondition.ALWAYS),
    ]

    run = executor.run(steps)

    assert calls == ["cleanup"]
    assert run.status == RunStatus.FAILED
    assert run.failure.name == "stage"
    assert run.failure.error_kind == "ExternalCommandFailure"
    assert [event.status for event in run.events] == [
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.SUCCEEDED,
    ]


def test_always_step_failure_does_not_change_run_status(executor):
    steps = [
        Step(name="work", action=lambda: None),
        Step(
            name="cleanup",
            action=_failing(ExternalCommandFailure("rm failed")),
            condition=StepCondition.ALWAYS,
        ),
    ]

    run = executor.run(steps)

    assert run.status == RunStatus.SUCCEEDED
    assert run.failure is None
    assert run.events[1].status == StepStatus.FAILED
    assert run.events[1].required is False


def test_retry_reinvokes_whole_step_with_exponential_backoff(executor, sleeps):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RegistryUnreachable("dial tcp: i/o timeout")
        return "ok"

    step = Step(name="stage", action=flaky, retry=RetryPolicy(max_attempts=3, backoff_seconds=1.0))

    run = executor.run([step])

    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]
    assert run.status == RunStatus.SUCCEEDED
    assert run.events[0].attempts == 3
    assert run.results["stage"] == "ok"


@pytest.mark.parametrize("error", [AuthExpired("token expired"), ImageNotFound("manifest unknown")])
def test_fatal_errors_are_never_retried(executor, sleeps, error):
    attempts = []

    def action():
        attempts.append(1)
        raise error

    step = Step(name="stage", action=action, retry=RetryPolicy(max_attempts=5))

    run = executor.run([step])

    assert len(attempts) == 1
    assert sleeps == []
    assert run.failure.error_kind == error.kind


def test_no_retry_without_policy(executor):
    attempts = []

    def action():
        attempts.append(1)
        raise RegistryUnreachable("connection refused")

    run = executor.run([Step(name="push", action=action)])

    assert len(attempts) == 1
    assert run.failure.attempts == 1


def test_timeout_marks_step_failed_with_timeout_kind(fake_docker, executor):
    fake_docker.on("docker", "pull", raises=subprocess.TimeoutExpired(["docker", "pull"], 5))

    def action():
        executor.command_runner.run(["docker", "pull", "alpine"], capture_output=True)

    run = executor.run([Step(name="stage", action=action, timeout_seconds=5)])

    assert run.status == RunStatus.FAILED
    assert run.failure.error_kind == "Timeout"


def test_external_command_failure_carries_output_tail(fake_docker, executor):
    fake_docker.on("docker", "push", returncode=1, stderr="line one\nline two")

    def action():
        executor.command_runner.run(["docker", "push", "x"], capture_output=True)

    run = executor.run([Step(name="publish", action=action)])

    assert run.failure.output == ("line one", "line two")
    assert "Command failed (1)" in run.failure.error


def test_missing_required_environment_fails_without_running(executor):
    calls = []
    step = Step(
        name="authenticate",
        action=lambda: calls.append("ran"),
        required_env=("AWS_ACCESS_KEY_ID",),
    )

    run = executor.run([step])

    assert calls == []
    assert run.failure.error_kind == "Configuration"
    assert "AWS_ACCESS_KEY_ID" in run.failure.error


def test_step_env_is_injected_into_commands(fake_docker, executor):
    step = Step(
        name="authenticate",
        action=lambda: executor.command_runner.run(["aws", "--version"]),
        env={"AWS_DEFAULT_REGION": "us-east-1"},
        required_env=("AWS_DEFAULT_REGION",),
    )

    run = executor.run([step])

    assert run.status == RunStatus.SUCCEEDED
    assert fake_docker.envs[-1]["AWS_DEFAULT_REGION"] == "us-east-1"


def test_cancellation_between_steps_skips_pending_and_runs_cleanup(executor):
    token = CancellationToken()
    calls = []
    steps = [
        Step(name="stage", action=lambda: (calls.append("stage"), token.cancel())),
        Step(name="patch", action=lambda: calls.append("patch")),
        Step(name="cleanup", action=lambda: calls.append("cleanup"), condition=StepCondition.ALWAYS),
    ]

    run = executor.run(steps, cancel_token=token)

    assert calls == ["stage", "cleanup"]
    assert run.status == RunStatus.CANCELLED
    assert run.events[1].status == StepStatus.SKIPPED
    assert run.events[1].error == "cancelled"


def test_observer_receives_one_event_per_step_in_completion_order(executor):
    events = []
    steps = [
        Step(name="a", action=lambda: None),
        Step(name="b", action=_failing(RuntimeError("unexpected"))),
        Step(name="c", action=lambda: None),
    ]

    run = executor.run(steps, observer=events.append)

    assert [(event.name, event.status) for event in events] == [
        ("a", StepStatus.SUCCEEDED),
        ("b", StepStatus.FAILED),
        ("c", StepStatus.SKIPPED),
    ]
    assert events[1].error_kind == "Unexpected"
    assert run.events == events


def test_observer_errors_do_not_break_the_run(executor):
    def broken_observer(_event):
        raise ValueError("observer failure")

    run = executor.run([Step(name="a", action=lambda: None)], observer=broken_observer)

    assert run.status == RunStatus.SUCCEEDED


def test_phases_follow_successful_steps_and_patch_failure(executor):
    steps = [
        Step(name="setup", action=lambda: None, reaches=RunPhase.SETUP),
        Step(name="patch", action=_failing(PatchFailed("exit 1", exit_code=1, log_lines=["x"]))),
        Step(name="publish", action=lambda: None, reaches=RunPhase.PUBLISHED),
        Step(
            name="cleanup",
            action=lambda: None,
            condition=StepCondition.ALWAYS,
            reaches=RunPhase.CLEANED_UP,
        ),
    ]

    run = executor.run(steps)

    assert run.phases == [
        RunPhase.INIT,
        RunPhase.SETUP,
        RunPhase.PATCH_FAILED,
        RunPhase.CLEANED_UP,
    ]
    assert run.phase == RunPhase.CLEANED_UP
    assert run.failure.output == ("x",)
