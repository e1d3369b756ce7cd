"""
LocalSynchronizer - mirror a build output onto a locally mounted directory.

Targets: web roots on the same machine or on a mounted volume.
Strategy: hash compare -> temp file + rename -> delete extras
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from sitedeploy.core.implementations import SystemTimeProvider
from sitedeploy.core.protocols import TimeProvider
from sitedeploy.deploy.base import (
    ArtifactEntry,
    LocalTarget,
    SyncResult,
    Target,
    enumerate_artifacts,
    file_digest,
)
from sitedeploy.exceptions import SyncError

PARTIAL_SUFFIX = '.sitedeploy-partial'


class LocalSynchronizer:
    """
    Mirrors via the local filesystem: compare -> copy changed -> delete extras.

    Every file is written to a temporary sibling and renamed into place, so a
    reader sees either the old or the new bytes, never a partial file.
    Leftover temporaries from an interrupted run are not part of the artifact
    set and are removed by the next run's delete pass.
    """

    requires_credential = False

    def __init__(
        self,
        time_provider: Optional[TimeProvider] = None,
        timeout_seconds: Optional[float] = None
    ):
        """
        Initialize local synchronizer.

        Args:
            time_provider: Clock used for the stage budget
            timeout_seconds: Wall-clock budget for one sync (None: unlimited)
        """
        self.time = time_provider or SystemTimeProvider()
        self.timeout_seconds = timeout_seconds

    def sync_mirror(self, local_root: str, target: Target, credential=None) -> SyncResult:
        if not isinstance(target, LocalTarget):
            raise SyncError(f"LocalSynchronizer cannot mirror to remote target {target}")

        source = Path(local_root)
        dest = Path(target.path)
        try:
            artifacts = enumerate_artifacts(source)
        except (FileNotFoundError, OSError) as e:
            raise SyncError(f"Cannot enumerate build output {source}: {e}")

        deadline = None
        if self.timeout_seconds is not None:
            deadline = self.time.current_time() + self.timeout_seconds

        result = SyncResult()
        try:
            dest.mkdir(parents=True, exist_ok=True)

            for rel in sorted(artifacts):
                self._check_budget(deadline)
                result.deleted.extend(self._clear_conflicts(dest, rel))

                dst = dest / rel
                if self._matches(dst, artifacts[rel]):
                    result.unchanged += 1
                    continue
                self._replace_file(source / rel, dst)
                result.transferred.append(rel)

            self._check_budget(deadline)
            result.deleted.extend(self._delete_extras(dest, artifacts))
        except OSError as e:
            raise SyncError(
                f"Mirror to {dest} failed after {len(result.transferred)} transfer(s)\n"
                f"Error: {e}\n\n"
                f"The target may hold a mix of old and new files.\n"
                f"Rerun the deployment to converge it."
            )

        return result

    def _check_budget(self, deadline: Optional[float]) -> None:
        if deadline is not None and self.time.current_time() > deadline:
            raise SyncError(
                f"Sync exceeded its budget of {self.timeout_seconds}s; "
                f"target left partially updated"
            )

    @staticmethod
    def _matches(dst: Path, entry: ArtifactEntry) -> bool:
        if dst.is_symlink() or not dst.is_file():
            return False
        if dst.stat().st_size != entry.size:
            return False
        return file_digest(dst) == entry.sha256

    @staticmethod
    def _clear_conflicts(dest: Path, rel: str) -> List[str]:
        """
        Remove target entries whose type blocks writing rel.

        A file or symlink where rel needs a directory, or a directory or
        symlink where rel needs a file, is deleted before the write.
        """
        removed = []
        parts = rel.split('/')
        current = dest
        for depth, part in enumerate(parts[:-1]):
            current = current / part
            if os.path.lexists(current) and (current.is_symlink() or not current.is_dir()):
                current.unlink()
                removed.append('/'.join(parts[:depth + 1]))

        final = dest / rel
        if final.is_symlink():
            final.unlink()
            removed.append(rel)
        elif final.is_dir():
            shutil.rmtree(final)
            removed.append(rel + '/')
        return removed

    @staticmethod
    def _replace_file(src: Path, dst: Path) -> None:
        dst.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dst.parent, prefix=f'.{dst.name}.', suffix=PARTIAL_SUFFIX)
        try:
            with os.fdopen(fd, 'wb') as out, open(src, 'rb') as inp:
                shutil.copyfileobj(inp, out)
                out.flush()
                os.fsync(out.fileno())
            shutil.copymode(src, tmp_name)
            os.replace(tmp_name, dst)
        except BaseException:
            if os.path.lexists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _delete_extras(dest: Path, artifacts: Dict[str, ArtifactEntry]) -> List[str]:
        """Delete target entries absent from the artifact set, deepest first."""
        needed_dirs = set()
        for rel in artifacts:
            parts = rel.split('/')[:-1]
            for i in range(1, len(parts) + 1):
                needed_dirs.add('/'.join(parts[:i]))

        deleted = []
        for dirpath, dirnames, filenames in os.walk(dest, topdown=False, followlinks=False):
            current = Path(dirpath)
            for name in filenames:
                path = current / name
                rel = path.relative_to(dest).as_posix()
                if rel not in artifacts:
                    path.unlink()
                    deleted.append(rel)
            for name in dirnames:
                path = current / name
                rel = path.relative_to(dest).as_posix()
                if path.is_symlink():
                    path.unlink()
                    deleted.append(rel)
                elif rel not in needed_dirs:
                    path.rmdir()
                    deleted.append(rel + '/')
        return sorted(deleted)
