"""Source snapshot fetcher.

Materializes the complete source tree for one commit: full history (the site
builder derives per-page last-modified dates from it) and every submodule
(the theme) at its pinned revision. A partial tree is an error, never a
silent degradation.
"""

import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from sitedeploy.core.implementations import SystemEnvironmentProvider
from sitedeploy.core.protocols import EnvironmentProvider, FileSystemService, Logger, ProcessExecutor
from sitedeploy.credentials import DEFAULT_SECRET_ENV, scrub_environ
from sitedeploy.exceptions import SnapshotError

CHECKOUT_DIR = 'source'


@dataclass
class SourceSnapshot:
    """
    Materialized source tree owned by one run.

    Attributes:
        root: Checkout directory
        commit: Full sha of HEAD
        submodules: Submodule path -> pinned sha
        full_history: False when the clone is shallow
    """
    root: Path
    commit: str
    submodules: Dict[str, str] = field(default_factory=dict)
    full_history: bool = True


def parse_submodule_status(output: str) -> Dict[str, str]:
    """
    Parse `git submodule status --recursive`.

    Raises:
        SnapshotError: Any submodule not initialized ('-'), not at its
            pinned revision ('+'), or with merge conflicts ('U')
    """
    submodules = {}
    problems = []
    for line in output.splitlines():
        if not line.strip():
            continue
        state, rest = line[0], line[1:].split()
        if len(rest) < 2:
            raise SnapshotError(f"Unexpected submodule status line: {line}")
        sha, path = rest[0], rest[1]
        if state == '-':
            problems.append(f"{path}: not initialized")
        elif state == '+':
            problems.append(f"{path}: checked out {sha}, not the pinned revision")
        elif state == 'U':
            problems.append(f"{path}: merge conflicts")
        submodules[path] = sha
    if problems:
        raise SnapshotError(
            "Submodules could not be resolved:\n" + '\n'.join(f"  - {p}" for p in problems)
        )
    return submodules


class SnapshotFetcher:
    """Clones a repository at one commit into a run-private directory.

    Args:
        filesystem: Filesystem abstraction (temp dir creation and removal)
        process_executor: Subprocess abstraction for git
        logger: Logging abstraction
        full_history: Require unshallow history (fetch-depth 0)
        submodules: Initialize submodules recursively
        timeout_seconds: Budget for each git invocation
        env_provider: Environment for git (default: os.environ)
        secret_env_names: Credential input variables withheld from git
    """

    def __init__(
        self,
        filesystem: FileSystemService,
        process_executor: ProcessExecutor,
        logger: Logger,
        full_history: bool = True,
        submodules: bool = True,
        timeout_seconds: Optional[float] = 600,
        env_provider: Optional[EnvironmentProvider] = None,
        secret_env_names: Iterable[str] = DEFAULT_SECRET_ENV
    ):
        self.fs = filesystem
        self.process = process_executor
        self.log = logger
        self.full_history = full_history
        self.submodules = submodules
        self.timeout_seconds = timeout_seconds
        self.env_provider = env_provider or SystemEnvironmentProvider()
        self.secret_env_names = tuple(secret_env_names)

    def _git(self, args: List[str], cwd: Optional[Path] = None, what: str = "git") -> str:
        cmd = ['git'] + args
        env = scrub_environ(self.env_provider.get_environ(), self.secret_env_names)
        try:
            result = self.process.run(cmd, cwd=str(cwd) if cwd else None, env=env, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            raise SnapshotError(f"{what} timed out after {self.timeout_seconds}s")
        except FileNotFoundError:
            raise SnapshotError("git not found in PATH\nInstall it: sudo apt install git")
        if result.returncode != 0:
            raise SnapshotError(
                f"{what} failed (exit {result.returncode})\n"
                f"Command: {' '.join(cmd)}\n"
                f"Error: {result.stderr.strip()[-1000:]}"
            )
        return result.stdout

    @contextmanager
    def fetch(self, repository: str, commit: str) -> Iterator[SourceSnapshot]:
        """
        Materialize repository at commit; remove it when the context exits.

        Raises:
            SnapshotError: Clone, checkout, submodule or history check failed
        """
        try:
            workdir = Path(self.fs.make_temp_dir(prefix='sitedeploy-src-'))
        except OSError as e:
            raise SnapshotError(f"Cannot create snapshot directory: {e}")

        try:
            yield self._materialize(repository, commit, workdir / CHECKOUT_DIR)
        finally:
            try:
                self.fs.rmtree(workdir)
            except OSError as e:
                self.log.warning(f"Could not remove snapshot directory {workdir}: {e}")

    def _materialize(self, repository: str, commit: str, root: Path) -> SourceSnapshot:
        self.log.info(f"Fetching {repository} at {commit[:12]}...")

        clone = ['clone', '--no-checkout']
        if not self.full_history:
            clone.extend(['--depth', '1', '--no-single-branch'])
        self._git(clone + [repository, str(root)], what="Clone")

        if not self.full_history:
            # A shallow clone only has branch tips; fetch the exact commit
            self._git(['fetch', '--depth', '1', 'origin', commit], cwd=root, what="Fetch of commit")

        self._git(['checkout', '--quiet', '--detach', commit], cwd=root, what=f"Checkout of {commit}")

        head = self._git(['rev-parse', 'HEAD'], cwd=root, what="rev-parse").strip()
        if not head.startswith(commit.lower()):
            raise SnapshotError(f"HEAD is {head}, expected {commit}")

        shallow = self._git(['rev-parse', '--is-shallow-repository'], cwd=root, what="History check").strip()
        full_history = shallow == 'false'
        if self.full_history and not full_history:
            raise SnapshotError(
                "Clone is shallow but full history is required "
                "(per-page last-modified dates come from commit history)"
            )

        submodules = {}
        if self.submodules:
            self._git(
                ['submodule', 'update', '--init', '--recursive', '--checkout'],
                cwd=root,
                what="Submodule update"
            )
            status = self._git(['submodule', 'status', '--recursive'], cwd=root, what="Submodule status")
            submodules = parse_submodule_status(status)
            for path, sha in submodules.items():
                self.log.info(f"  submodule {path} @ {sha[:12]}")

        return SourceSnapshot(root=root, commit=head, submodules=submodules, full_history=full_history)
