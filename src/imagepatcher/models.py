"""Shared domain models for imagepatcher."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from imagepatcher.errors import ConfigurationError


def _is_registry_host(value: str) -> bool:
    return value == "localhost" or "." in value or ":" in value


class StepCondition(str, Enum):
    ON_SUCCESS = "on-success"
    ALWAYS = "always"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunPhase(str, Enum):
    INIT = "Init"
    SETUP = "Setup"
    AUTHENTICATED = "Authenticated"
    STAGED = "Staged"
    PATCHING = "Patching"
    PUBLISHED = "Published"
    PATCH_FAILED = "PatchFailed"
    CLEANED_UP = "CleanedUp"


@dataclass(frozen=True)
class ImageReference:
    """A (registry, repository, tag) triple identifying one image."""

    registry: str
    repository: str
    tag: str = "latest"

    def __post_init__(self):
        if not self.repository:
            raise ConfigurationError("Image reference requires a repository.")
        if not self.tag or ":" in self.tag or "/" in self.tag or "@" in self.tag:
            raise ConfigurationError(f"Invalid image tag: {self.tag!r}")
        if "/" in self.registry or (self.registry and not _is_registry_host(self.registry)):
            raise ConfigurationError(f"Invalid registry host: {self.registry!r}")
        head, sep, _ = self.repository.partition("/")
        if not self.registry and sep and _is_registry_host(head):
            raise ConfigurationError(
                f"Repository {self.repository!r} starts with a registry host; pass it as the registry."
            )

    @property
    def uri(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}:{self.tag}"
        return f"{self.repository}:{self.tag}"

    def with_tag(self, tag: str) -> "ImageReference":
        return ImageReference(self.registry, self.repository, tag)

    @classmethod
    def parse(cls, uri: str) -> "ImageReference":
        value = (uri or "").strip()
        if not value:
            raise ConfigurationError("Image reference must not be empty.")
        if "@" in value:
            raise ConfigurationError(f"Digest references are not supported: {value}")

        registry = ""
        remainder = value
        head, sep, tail = value.partition("/")
        if sep and _is_registry_host(head):
            registry, remainder = head, tail

        repository, tag = remainder, "latest"
        last_slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        if colon > last_slash:
            repository, tag = remainder[:colon], remainder[colon + 1 :]

        return cls(registry=registry, repository=repository, tag=tag)

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before re-running after the given failed attempt (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True)
class Step:
    """A named unit of work. Immutable once the run starts."""

    name: str
    action: Callable[[], object]
    condition: StepCondition = StepCondition.ON_SUCCESS
    timeout_seconds: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    required_env: Tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    reaches: Optional[RunPhase] = None


@dataclass(frozen=True)
class StepEvent:
    """Structured record emitted once per step, in completion order."""

    name: str
    position: int
    status: StepStatus
    duration_seconds: float = 0.0
    output: Tuple[str, ...] = ()
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    required: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "position": self.position,
            "status": self.status.value,
            "duration_seconds": round(self.duration_seconds, 3),
            "output": list(self.output),
            "error_kind": self.error_kind,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class PipelineRun:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: Optional[RunStatus] = None
    events: List[StepEvent] = field(default_factory=list)
    failure: Optional[StepEvent] = None
    phases: List[RunPhase] = field(default_factory=lambda: [RunPhase.INIT])
    cancelled: bool = False
    results: Dict[str, object] = field(default_factory=dict)

    @property
    def phase(self) -> RunPhase:
        return self.phases[-1]

    def event(self, name: str) -> Optional[StepEvent]:
        for event in self.events:
            if event.name == name:
                return event
        return None


@dataclass(frozen=True)
class RunContext:
    """Runtime identifiers isolated per execution."""

    run_id: str
    docker_config_dir: str
    output_dir: str


@dataclass
class PatchInvocation:
    source: ImageReference
    target: ImageReference
    patcher: ImageReference
    tenant_id: str
    cloud_service: str
    pull_policy: str
    platform: str
    exit_code: Optional[int] = None
    log_lines: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class RegistryCredential:
    """Short-lived registry password, held in memory only."""

    host: str
    username: str
    password: str = field(repr=False)
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
