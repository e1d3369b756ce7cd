"""Deployment controller: admission and the fail-fast stage sequence.

    admit -> provision credential -> fetch snapshot -> build -> sync mirror

Each stage runs only if every earlier stage succeeded. No stage retries; a
later run repeats the whole sequence and the mirror converges again.
Credential and snapshot are released on every exit path. The admission
lease is renewed at each stage boundary.
"""

from contextlib import ExitStack
from dataclasses import dataclass
from typing import Optional

from sitedeploy.builder import SiteBuilder
from sitedeploy.core.protocols import Logger
from sitedeploy.credentials import CredentialProvisioner
from sitedeploy.deploy.base import Synchronizer, Target
from sitedeploy.exceptions import CredentialError, PipelineError, RunSuperseded, SyncError
from sitedeploy.models import Run, RunReport, RunStatus
from sitedeploy.serializer import RunSerializer
from sitedeploy.snapshot import SnapshotFetcher

STAGE_COUNT = 4


@dataclass
class Secrets:
    """Out-of-band credential inputs. Never logged."""
    key_material: str
    known_hosts: str

    def __repr__(self) -> str:
        return "Secrets(<redacted>)"


class DeploymentController:
    """Executes runs with injected stages.

    Args:
        serializer: Admission control per serialization key
        provisioner: Run-scoped credential installer
        fetcher: Source snapshot fetcher
        builder: External site builder
        synchronizer: Mirror strategy for target
        logger: Logging abstraction
        repository: Repository URL or path to snapshot
        target: Mirror destination
    """

    def __init__(
        self,
        serializer: RunSerializer,
        provisioner: CredentialProvisioner,
        fetcher: SnapshotFetcher,
        builder: SiteBuilder,
        synchronizer: Synchronizer,
        logger: Logger,
        repository: str,
        target: Target
    ):
        self.serializer = serializer
        self.provisioner = provisioner
        self.fetcher = fetcher
        self.builder = builder
        self.synchronizer = synchronizer
        self.log = logger
        self.repository = repository
        self.target = target

    def execute(self, run: Run, secrets: Optional[Secrets] = None) -> RunReport:
        """Run the pipeline for run and report its outcome.

        Never raises PipelineError or RunSuperseded; both become reports.
        """
        self.log.info(f"Run {run.run_id}: {run.event.value} of {run.commit[:12]} on {run.ref}")
        try:
            with self.serializer.admit(run):
                report = self._run_stages(run, secrets)
        except RunSuperseded as e:
            report = RunReport(run=run, status=RunStatus.SUPERSEDED, message=str(e))
        except PipelineError as e:
            report = self._failure(run, e)

        self._log_report(report)
        return report

    def _run_stages(self, run: Run, secrets: Optional[Secrets]) -> RunReport:
        try:
            with ExitStack() as stack:
                credential = None
                if self.synchronizer.requires_credential:
                    self.log.info(f"[1/{STAGE_COUNT}] Provisioning credential for {self.target}...")
                    if secrets is None:
                        raise CredentialError("No SSH key or known_hosts supplied for a remote target")
                    credential = stack.enter_context(self.provisioner.provision(
                        secrets.key_material,
                        secrets.known_hosts,
                        self.target.host,
                        self.target.port
                    ))
                else:
                    self.log.info(f"[1/{STAGE_COUNT}] Local target {self.target}, no credential needed")

                self.serializer.renew(run)
                self.log.info(f"[2/{STAGE_COUNT}] Fetching source snapshot...")
                snapshot = stack.enter_context(self.fetcher.fetch(self.repository, run.commit))

                self.serializer.renew(run)
                self.log.info(f"[3/{STAGE_COUNT}] Building site...")
                build = self.builder.build(snapshot.root)

                # Last check before the target changes: fail closed if the key was lost
                self.serializer.renew(run)
                self.log.info(f"[4/{STAGE_COUNT}] Mirroring to {self.target}...")
                result = self.synchronizer.sync_mirror(str(build.output_root), self.target, credential)
        except PipelineError as e:
            return self._failure(run, e)

        return RunReport(
            run=run,
            status=RunStatus.SUCCEEDED,
            message=(
                f"{len(result.transferred)} transferred, {len(result.deleted)} deleted, "
                f"{result.unchanged} unchanged"
            ),
            sync_result=result
        )

    @staticmethod
    def _failure(run: Run, error: PipelineError) -> RunReport:
        return RunReport(
            run=run,
            status=RunStatus.FAILED,
            failed_stage=error.stage,
            error_kind=error.kind,
            message=str(error),
            remote_converged=not isinstance(error, SyncError)
        )

    def _log_report(self, report: RunReport) -> None:
        if report.status == RunStatus.SUCCEEDED:
            self.log.info(f"✓ Run {report.run.run_id} succeeded: {report.message}")
            return
        if report.status == RunStatus.SUPERSEDED:
            self.log.info(f"⊙ {report.message}; nothing was deployed")
            return
        self.log.error(
            f"✗ Run {report.run.run_id} failed at stage '{report.failed_stage}' "
            f"({report.error_kind})\n{report.message}"
        )
        if not report.remote_converged:
            self.log.warning(
                "Target was partially updated and is not converged; "
                "the next successful run restores it"
            )
