"""
Run and report types for the deployment controller.

A Run is one pipeline execution triggered by a push or a manual dispatch.
Runs sharing a serialization key (workflow, ref) never deploy concurrently.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from sitedeploy.deploy.base import SyncResult


class TriggerEvent(str, Enum):
    PUSH = "push"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"


# CLI exit codes (2 is left to argparse usage errors)
EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_SUPERSEDED = 3

EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_SUCCESS,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.SUPERSEDED: EXIT_SUPERSEDED,
}


def normalize_ref(ref: str) -> str:
    """Expand a bare branch name to a full ref ("main" -> "refs/heads/main")."""
    if ref.startswith("refs/"):
        return ref
    return f"refs/heads/{ref}"


@dataclass(frozen=True)
class Run:
    """
    One pipeline execution.

    Attributes:
        workflow: Pipeline identity (first half of the serialization key)
        ref: Full branch ref, e.g. "refs/heads/main"
        commit: Commit that triggered the run
        event: push or workflow_dispatch
        run_id: Unique id, generated when not supplied by the CI system
    """
    workflow: str
    ref: str
    commit: str
    event: TriggerEvent = TriggerEvent.PUSH
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def key(self) -> Tuple[str, str]:
        """Serialization key: runs with equal keys are mutually exclusive."""
        return (self.workflow, self.ref)

    @property
    def key_string(self) -> str:
        """Key rendered as a concurrency group name ("Build and Deploy-refs/heads/main")."""
        return f"{self.workflow}-{self.ref}"

    @property
    def branch(self) -> str:
        return self.ref[len("refs/heads/"):] if self.ref.startswith("refs/heads/") else self.ref


def accepts_trigger(event: TriggerEvent, ref: str, branches) -> bool:
    """
    Decide whether an event should start a deployment.

    Pushes deploy only for the configured branches; a manual dispatch
    deploys whatever ref it was started on.
    """
    if event == TriggerEvent.WORKFLOW_DISPATCH:
        return True
    return normalize_ref(ref) in {normalize_ref(b) for b in branches}


@dataclass
class RunReport:
    """
    Outcome of one run.

    Attributes:
        run: The run this report describes
        status: succeeded, failed or superseded
        failed_stage: Stage that aborted the run (None unless failed)
        error_kind: Exception class name of the failure (None unless failed)
        message: Human-readable summary
        sync_result: Files moved by the synchronizer, when it completed
        remote_converged: False when a sync started and failed, i.e. the
            target may hold a mix of old and new files until the next
            successful run
    """
    run: Run
    status: RunStatus
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ""
    sync_result: Optional[SyncResult] = None
    remote_converged: bool = True

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]
