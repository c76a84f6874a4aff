from .dsl import action, build, call, input_, job, output, retry, secret, sh, uses, wf, JobBuilder
from .composer import Composer, Registry
from .model import Action, Job, RunResult, Status, Step, Workflow
from .orchestrator import Environment, Orchestrator, Trigger

__all__ = [
    "action", "build", "call", "input_", "job", "output", "retry", "secret", "sh", "uses", "wf",
    "JobBuilder", "Composer", "Registry", "Action", "Job", "RunResult", "Status", "Step", "Workflow",
    "Environment", "Orchestrator", "Trigger",
]
