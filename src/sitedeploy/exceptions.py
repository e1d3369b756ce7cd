"""
Pipeline exceptions.

One exception per failure kind so a failed run can report which stage
failed and why. Every stage fails fast: nothing here is retried locally,
a later run re-executes the whole sequence instead.
"""


class PipelineError(Exception):
    """
    Base class for a stage failure that aborts the run.

    Attributes:
        stage: Pipeline stage that raised ("admission", "credentials",
               "snapshot", "build", "sync")
        kind: Error kind reported to the user (class name by default)
    """
    stage = "pipeline"

    @property
    def kind(self) -> str:
        return type(self).__name__


class QueueingFailure(PipelineError):
    """
    Raised when admission cannot be evaluated.

    Examples:
        - Coordination database cannot be opened or is locked
        - Queue wait exceeded queue_timeout_seconds

    The run fails closed: it never proceeds without a positive admission.
    """
    stage = "admission"


class CredentialError(PipelineError):
    """
    Raised when the run credential cannot be provisioned.

    Examples:
        - Key material is not a private key, or is passphrase protected
        - No known-hosts entry trusts the target host
    """
    stage = "credentials"


class SnapshotError(PipelineError):
    """
    Raised when a complete source tree cannot be materialized.

    Examples:
        - Clone or checkout failed
        - Theme submodule could not be resolved at its pinned revision
        - History is shallow but full history is required
    """
    stage = "snapshot"


class BuildError(PipelineError):
    """Raised when the external site builder fails or exceeds its budget."""
    stage = "build"


class SyncError(PipelineError):
    """
    Raised when mirroring to the target fails.

    The target may hold a subset of the new files. There is no rollback;
    the next successful run converges it again.
    """
    stage = "sync"


class RunSuperseded(Exception):
    """
    Raised to a waiting run that a newer run for the same key replaced.

    Not a failure: the run is cancelled before any external action.
    """

    def __init__(self, run_id: str, key: str):
        super().__init__(f"Run {run_id} superseded by a newer run for {key}")
        self.run_id = run_id
        self.key = key
