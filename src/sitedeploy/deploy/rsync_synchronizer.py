"""
RsyncSynchronizer - mirror a build output to a remote host over SSH.

Targets: web servers reachable as user@host:/absolute/path
Strategy: rsync --checksum --delete-after through the run credential
"""

import subprocess
from typing import List, Optional

from sitedeploy.core.implementations import SubprocessExecutor
from sitedeploy.core.protocols import Logger, ProcessExecutor
from sitedeploy.deploy.base import RemoteTarget, SyncResult, Target, enumerate_artifacts
from sitedeploy.exceptions import SyncError

# rsync(1) EXIT VALUES
RSYNC_EXIT_CODES = {
    1: "syntax or usage error",
    2: "protocol incompatibility",
    3: "errors selecting input/output files, dirs",
    5: "error starting client-server protocol",
    10: "error in socket I/O",
    11: "error in file I/O",
    12: "error in rsync protocol data stream",
    20: "received SIGUSR1 or SIGINT",
    23: "partial transfer due to error",
    24: "partial transfer due to vanished source files",
    30: "timeout in data send/receive",
    35: "timeout waiting for daemon connection",
    255: "ssh connection failed (authentication, host key or network)",
}


def parse_itemized_output(output: str) -> SyncResult:
    """
    Parse `--out-format='%i %n'` lines into a SyncResult.

    Only sent regular files ("<f...") count as transfers; directory
    creation and attribute-only lines are ignored.
    """
    result = SyncResult()
    for line in output.splitlines():
        if line.startswith('*deleting'):
            result.deleted.append(line[len('*deleting'):].strip())
            continue
        if ' ' not in line:
            continue
        flags, name = line.split(' ', 1)
        if len(flags) >= 2 and flags[0] == '<' and flags[1] == 'f':
            result.transferred.append(name)
    return result


class RsyncSynchronizer:
    """
    Mirrors via rsync over SSH.

    --checksum compares content instead of size+mtime, so rebuilt but
    identical files are skipped and a repeated run transfers nothing.
    rsync writes each file to a temporary name and renames it into place.

    Requirements: rsync on both ends, ssh client locally.
    """

    requires_credential = True

    def __init__(
        self,
        process_executor: Optional[ProcessExecutor] = None,
        logger: Optional[Logger] = None,
        timeout_seconds: Optional[float] = None,
        compress: bool = True,
        extra_args: Optional[List[str]] = None
    ):
        """
        Initialize rsync synchronizer.

        Args:
            process_executor: Subprocess abstraction
            logger: Logging abstraction (receives itemized lines at debug level)
            timeout_seconds: Wall-clock budget for one sync (None: unlimited)
            compress: Pass --compress (-z)
            extra_args: Appended verbatim before source/destination
        """
        self.process = process_executor or SubprocessExecutor()
        self.log = logger
        self.timeout_seconds = timeout_seconds
        self.compress = compress
        self.extra_args = list(extra_args or [])

    def build_command(self, local_root: str, target: RemoteTarget, credential) -> List[str]:
        """Build the rsync command; trailing slashes mirror contents, not the dir."""
        cmd = [
            "rsync",
            "--recursive",
            "--checksum",
            "--delete-after",
            "--human-readable",
            "--out-format=%i %n",
        ]
        if self.compress:
            cmd.append("--compress")
        cmd.extend(self.extra_args)
        cmd.extend([
            "-e", credential.ssh_command(target.port),
            f"{local_root.rstrip('/')}/",
            target.rsync_destination,
        ])
        return cmd

    def sync_mirror(self, local_root: str, target: Target, credential=None) -> SyncResult:
        if not isinstance(target, RemoteTarget):
            raise SyncError(f"RsyncSynchronizer requires a remote target, got {target}")
        if credential is None:
            raise SyncError(f"No credential provisioned for {target}")

        try:
            artifacts = enumerate_artifacts(local_root)
        except (FileNotFoundError, OSError) as e:
            raise SyncError(f"Cannot enumerate build output {local_root}: {e}")

        cmd = self.build_command(local_root, target, credential)
        if self.log:
            self.log.debug(f"Running: {' '.join(cmd)}")

        try:
            proc = self.process.run(cmd, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            raise SyncError(
                f"rsync to {target.host} exceeded its budget of {self.timeout_seconds}s\n"
                f"The target may hold a mix of old and new files; rerun to converge."
            )
        except FileNotFoundError:
            raise SyncError("rsync not found in PATH\nInstall it: sudo apt install rsync")

        if proc.returncode != 0:
            reason = RSYNC_EXIT_CODES.get(proc.returncode, "unknown error")
            raise SyncError(
                f"rsync to {target} failed (exit {proc.returncode}: {reason})\n"
                f"Error: {proc.stderr.strip()[-1000:]}\n\n"
                f"The target may hold a mix of old and new files; rerun to converge.\n\n"
                f"Troubleshooting:\n"
                f"  1. Verify SSH access: ssh -p {target.port} {target.user}@{target.host}\n"
                f"  2. Verify the known-hosts entry matches the host key\n"
                f"  3. Verify write permissions: ssh {target.user}@{target.host} ls -ld {target.path}"
            )

        result = parse_itemized_output(proc.stdout)
        result.unchanged = max(len(artifacts) - len(result.transferred), 0)
        if self.log:
            for line in proc.stdout.splitlines():
                self.log.debug(line)
        return result
