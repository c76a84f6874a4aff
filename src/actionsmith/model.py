# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Status(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------
# Declarations (inputs / secrets / outputs of a callable unit)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InputSpec:
    name: str
    required: bool = False
    default: Optional[str] = None
    type: str = "string"
    description: str = ""


@dataclass(frozen=True)
class SecretSpec:
    name: str
    required: bool = True
    description: str = ""


@dataclass(frozen=True)
class OutputSpec:
    """`value` is an expression evaluated in the callee's context."""
    name: str
    value: str
    description: str = ""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for command steps.

    attempts=1 means no retry. Delay before attempt n+1 is
    min(backoff * multiplier ** (n - 1), max_backoff).
    An empty retry_on_exit_codes retries any non-zero exit.
    """
    attempts: int = 1
    backoff: float = 2.0
    multiplier: float = 2.0
    max_backoff: float = 60.0
    retry_on_exit_codes: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"RetryPolicy.attempts must be >= 1, got {self.attempts}")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("RetryPolicy backoff values must be >= 0")

    def delay(self, attempt: int) -> float:
        return min(self.backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)

    def should_retry(self, exit_code: int, timed_out: bool = False) -> bool:
        if timed_out:
            return True
        if not self.retry_on_exit_codes:
            return exit_code != 0
        return exit_code in self.retry_on_exit_codes


# ---------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job or composite action.

    Exactly one of `run` (shell command) or `uses` (action call) is set.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    with_: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    working_directory: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must set exactly one of run= or uses=")
        if self.run is not None and (self.with_ or self.secrets):
            raise ValueError(f"step {self.name!r}: with_/secrets only apply to uses= steps")

    @property
    def is_action_call(self) -> bool:
        return self.uses is not None


@dataclass
class Job:
    """
    A CI job: either a list of steps, or a call to a reusable workflow
    (`uses` + `with_` + `secrets`, no steps).
    """
    name: str
    steps: List[Step] = field(default_factory=list)
    needs: List[str] = field(default_factory=list)
    if_: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    # output name -> expression over the `steps` scope
    outputs: Dict[str, str] = field(default_factory=dict)
    environment: Optional[str] = None
    continue_on_error: bool = False

    uses: Optional[str] = None
    with_: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.uses is not None and self.steps:
            raise ValueError(f"job {self.name!r}: a workflow call (uses=) cannot have steps")
        if self.uses is None and not self.steps:
            raise ValueError(f"job {self.name!r} must have at least one step")
        if self.uses is None and (self.with_ or self.secrets):
            raise ValueError(f"job {self.name!r}: with_/secrets only apply to workflow calls")

    @property
    def is_workflow_call(self) -> bool:
        return self.uses is not None


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    inputs: List[InputSpec] = field(default_factory=list)
    secrets: List[SecretSpec] = field(default_factory=list)
    outputs: List[OutputSpec] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    # accepted trigger events; empty accepts anything
    on: List[str] = field(default_factory=list)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass
class Action:
    """A composite action: a reusable sequence of steps."""
    name: str
    steps: List[Step]
    inputs: List[InputSpec] = field(default_factory=list)
    secrets: List[SecretSpec] = field(default_factory=list)
    outputs: List[OutputSpec] = field(default_factory=list)
    description: str = ""

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"action {self.name!r} must have at least one step")


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: Status
    id: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    log: str = ""
    duration: float = 0.0
    attempts: int = 0
    error: Optional[str] = None
    # redacted context snapshot taken where the error surfaced
    context: Optional[Dict[str, Any]] = None
    # False for continue_on_error steps: the failure is reported but does not stop the job
    blocking: bool = True
    # steps of a composite action call
    children: List["StepResult"] = field(default_factory=list)

    @property
    def conclusion(self) -> Status:
        if self.status is Status.FAILURE and not self.blocking:
            return Status.SUCCESS
        return self.status


@dataclass
class JobResult:
    name: str
    status: Status
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    blocking: bool = True
    # jobs of a reusable workflow call
    jobs: Dict[str, "JobResult"] = field(default_factory=dict)

    @property
    def satisfied(self) -> bool:
        """True when dependents may treat this job as having passed."""
        return self.status is Status.SUCCESS or (
            self.status is Status.FAILURE and not self.blocking
        )


@dataclass
class RunResult:
    run_id: str
    workflow: str
    status: Status
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    event_type: str = ""
    ref: str = ""
    environment: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    secret_values: List[str] = field(default_factory=list, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCESS
