"""Subprocess execution service for imagepatcher."""

import os
import subprocess
import time
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, List, Optional

from imagepatcher.constants import OUTPUT_TAIL_LINES
from imagepatcher.errors import ExternalCommandFailure, PatcherError, PreconditionError, StepTimeout
from imagepatcher.redaction import SecretRedactor


class StepCapture:
    """Per-step execution bounds and the tail of everything the step printed."""

    def __init__(
        self,
        deadline: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        max_lines: int = OUTPUT_TAIL_LINES,
    ):
        self.deadline = deadline
        self.env = dict(env or {})
        self.lines: Deque[str] = deque(maxlen=max_lines)

    def extend(self, text: Optional[str]):
        if not text:
            return
        for line in text.splitlines():
            cleaned = line.rstrip()
            if cleaned:
                self.lines.append(cleaned)


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(
        self,
        logger,
        default_timeout: Optional[float] = None,
        redactor: Optional[SecretRedactor] = None,
        base_env: Optional[Dict[str, str]] = None,
        subprocess_module=subprocess,
        clock=time.monotonic,
    ):
        self.logger = logger
        self.default_timeout = default_timeout
        self.redactor = redactor or SecretRedactor()
        self.base_env = dict(base_env or {})
        self.subprocess = subprocess_module
        self.clock = clock
        self._scope: Optional[StepCapture] = None

    @contextmanager
    def step_scope(
        self,
        timeout_seconds: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Iterator[StepCapture]:
        deadline = self.clock() + timeout_seconds if timeout_seconds else None
        previous = self._scope
        self._scope = StepCapture(deadline=deadline, env=env)
        try:
            yield self._scope
        finally:
            self._scope = previous

    def build_env(self, env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.base_env)
        if self._scope:
            merged.update(self._scope.env)
        if env:
            merged.update(env)
        return merged

    def _effective_timeout(self, cmd_str: str, timeout: Optional[float]) -> Optional[float]:
        candidates = [value for value in (timeout, self.default_timeout) if value is not None]
        if self._scope and self._scope.deadline is not None:
            remaining = self._scope.deadline - self.clock()
            if remaining <= 0:
                raise StepTimeout(f"Step time budget exhausted before running: {cmd_str}")
            candidates.append(remaining)
        return min(candidates) if candidates else None

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd_str = self.redactor.redact(" ".join(cmd))
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = self._effective_timeout(cmd_str, timeout)

        try:
            result = self.subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
                input=input_text,
                env=self.build_env(env),
            )
        except FileNotFoundError as exc:
            raise PreconditionError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout if isinstance(exc.stdout, str) else ""
            raise StepTimeout(
                f"Command timed out after {exc.timeout}s: {cmd_str}",
                output=self._tail(partial),
            ) from exc
        except PatcherError:
            raise
        except Exception as exc:
            raise PatcherError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        stdout = self.redactor.redact(result.stdout or "") if capture_output and log_output else ""
        stderr = self.redactor.redact(result.stderr or "") if capture_output else ""
        if self._scope:
            self._scope.extend(stdout)
            self._scope.extend(stderr)

        if stdout:
            self.logger.debug("Command output: %s", stdout.strip())

        if result.returncode == 0:
            return result

        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr.strip():
            message = f"{message}\n{stderr.strip()}"

        if check:
            raise ExternalCommandFailure(
                message,
                exit_code=result.returncode,
                output=self._tail(f"{stdout}\n{stderr}"),
            )

        self.logger.warning(message)
        return result

    @staticmethod
    def _tail(text: str, max_lines: int = OUTPUT_TAIL_LINES) -> List[str]:
        lines = [line.rstrip() for line in (text or "").splitlines() if line.strip()]
        return lines[-max_lines:]
