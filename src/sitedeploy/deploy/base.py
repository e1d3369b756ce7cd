"""
Synchronizer Protocol - interface for mirroring a build output onto a target.

This module defines the target and result types and the protocol every
synchronizer implements. Supports remote ssh+rsync targets and locally
mounted web roots.
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union, runtime_checkable, TYPE_CHECKING

if TYPE_CHECKING:
    from sitedeploy.credentials import Credential

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class RemoteTarget:
    """
    Remote mirror destination reachable over ssh.

    Attributes:
        user: SSH username (e.g., "deploy")
        host: Hostname or IP, without IPv6 brackets
        path: Absolute directory on the host
        port: SSH port (default: 22)
    """
    user: str
    host: str
    path: str
    port: int = 22

    @property
    def is_remote(self) -> bool:
        return True

    @property
    def rsync_destination(self) -> str:
        """Destination argument for rsync; trailing slash mirrors into path."""
        host = f"[{self.host}]" if ':' in self.host else self.host
        return f"{self.user}@{host}:{self.path.rstrip('/')}/"

    def __str__(self) -> str:
        return self.rsync_destination


@dataclass(frozen=True)
class LocalTarget:
    """Mirror destination on a locally mounted filesystem."""
    path: str

    @property
    def is_remote(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.path


Target = Union[RemoteTarget, LocalTarget]


@dataclass(frozen=True)
class ArtifactEntry:
    """Size and content digest of one regular file in an artifact tree."""
    size: int
    sha256: str


@dataclass
class SyncResult:
    """
    Result of a completed mirror.

    Attributes:
        transferred: Relative paths written to the target
        deleted: Relative paths removed from the target
        unchanged: Number of files already identical on the target
    """
    transferred: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.transferred or self.deleted)


def file_digest(path: Union[str, Path]) -> str:
    """sha256 of a file's bytes, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def enumerate_artifacts(root: Union[str, Path]) -> Dict[str, ArtifactEntry]:
    """
    Enumerate the artifact set under root.

    Returns a mapping of POSIX relative path to ArtifactEntry for every
    regular file. Symlinks (to files or directories) and special files are
    skipped, so nothing outside root is ever read.

    Raises:
        FileNotFoundError: If root is not a directory
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Artifact root is not a directory: {root}")

    artifacts: Dict[str, ArtifactEntry] = {}
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        current = Path(dirpath)
        # os.walk lists symlinked directories in dirnames but does not descend
        for name in list(dirnames):
            if (current / name).is_symlink():
                logger.warning("Skipping symlinked directory %s", current / name)
                dirnames.remove(name)
        for name in filenames:
            path = current / name
            if path.is_symlink() or not path.is_file():
                logger.warning("Skipping non-regular file %s", path)
                continue
            rel = path.relative_to(root).as_posix()
            artifacts[rel] = ArtifactEntry(size=path.stat().st_size, sha256=file_digest(path))
    return artifacts


@runtime_checkable
class Synchronizer(Protocol):
    """
    Interface for mirror strategies.

    Implementations:
        - RsyncSynchronizer: rsync over ssh with the run credential
        - LocalSynchronizer: in-process mirror onto a local directory
    """

    requires_credential: bool

    def sync_mirror(
        self,
        local_root: str,
        target: Target,
        credential: Optional['Credential'] = None
    ) -> SyncResult:
        """
        Make the target's contents exactly equal to local_root.

        Steps:
            1. Enumerate the local artifact set
            2. Transfer every file that differs from, or is missing on, the target
            3. Delete every target entry not in the artifact set
            4. Never follow or transfer anything outside local_root

        Returns:
            SyncResult listing transferred and deleted paths

        Raises:
            SyncError: Transfer, authentication or delete failure, or the
                stage budget was exceeded. The target may be partially
                updated; rerunning converges it.

        Postconditions (on success):
            - Target path set equals the artifact path set
            - Every target file's bytes equal the local file's bytes
        """
        ...
