"""Domain errors for imagepatcher."""

from typing import Optional, Sequence


class PatcherError(RuntimeError):
    """Raised when the patch pipeline cannot continue safely."""

    kind = "Error"
    retryable = False


class ConfigurationError(PatcherError):
    """Invalid or missing run configuration."""

    kind = "Configuration"


class PreconditionError(PatcherError):
    """The host does not provide a capability the run depends on."""

    kind = "Precondition"


class ExternalCommandFailure(PatcherError):
    """A delegated tool exited non-zero."""

    kind = "ExternalCommandFailure"
    retryable = True

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        output: Optional[Sequence[str]] = None,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = list(output or [])


class AuthExpired(ExternalCommandFailure):
    """Registry rejected the credential. Re-authentication is required."""

    kind = "AuthExpired"
    retryable = False


class RegistryUnreachable(ExternalCommandFailure):
    """Network failure talking to a registry."""

    kind = "RegistryUnreachable"
    retryable = True


class ImageNotFound(ExternalCommandFailure):
    """The requested image does not exist in the registry."""

    kind = "ImageNotFound"
    retryable = False


class StepTimeout(ExternalCommandFailure):
    kind = "Timeout"
    retryable = True


class PatchFailed(ExternalCommandFailure):
    """The patch tool exited non-zero."""

    kind = "PatchFailed"
    retryable = False

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        log_lines: Optional[Sequence[str]] = None,
    ):
        super().__init__(message, exit_code=exit_code, output=log_lines)
        self.log_lines = list(log_lines or [])
