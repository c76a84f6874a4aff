# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional


@dataclass(eq=False)
class WorkflowError(Exception):
    """
    Structured workflow error with enough context for:
      - clean CLI output
      - the persisted run tree
      - debugging without full tracebacks

    `path` is the job/step location ("deploy/2" or "ci/build/setup").
    `context` is a redacted snapshot of the evaluation context, if one was
    available where the error surfaced.
    """
    message: str
    path: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None

    kind: ClassVar[str] = "workflow_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.path:
            lines.append(f"path={self.path}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def locate(self, path: str | None, context: Dict[str, Any] | None = None) -> "WorkflowError":
        """Fill in location info if the raiser didn't know it. Returns self."""
        if self.path is None and path:
            self.path = path
        if self.context is None and context is not None:
            self.context = context
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "path": self.path,
            "details": dict(self.details),
            "context": self.context,
        }


# ----------------------------------------------------------------------
# Pre-run (fatal) errors
# ----------------------------------------------------------------------

class InvalidWorkflowError(WorkflowError):
    kind = "invalid_workflow"


class CyclicDependencyError(InvalidWorkflowError):
    kind = "cyclic_dependency"


class MissingRequiredInputError(WorkflowError):
    kind = "missing_required_input"


class UnknownReferenceError(WorkflowError):
    kind = "unknown_reference"


class InvalidCallError(WorkflowError):
    kind = "invalid_call"


class TriggerMismatchError(WorkflowError):
    kind = "trigger_mismatch"


class WorkflowLoadError(WorkflowError):
    kind = "workflow_load"


class ProtectedEnvironmentError(WorkflowError):
    kind = "protected_environment"


# ----------------------------------------------------------------------
# Runtime errors (local to a step / job)
# ----------------------------------------------------------------------

class ExpressionSyntaxError(WorkflowError):
    kind = "expression_syntax"


class UnresolvedReferenceError(WorkflowError):
    kind = "unresolved_reference"


class SecretNotFoundError(WorkflowError):
    kind = "secret_not_found"


class StepExecutionFailure(WorkflowError):
    kind = "step_failed"

    @property
    def exit_code(self) -> Optional[int]:
        return self.details.get("exit_code")


class TransientCommandError(StepExecutionFailure):
    """A failed attempt the step's retry policy allows to be repeated."""
    kind = "transient_command"


class CancelledError(WorkflowError):
    kind = "cancelled"
