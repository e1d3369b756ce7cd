"""
Deployment synchronizer subsystem.

Makes a target's file tree converge exactly to a locally built artifact tree:
    - RsyncSynchronizer: rsync over ssh (remote web hosts)
    - LocalSynchronizer: in-process mirror (locally mounted web roots)

Public API:
    - Synchronizer: Protocol interface
    - SynchronizerFactory: Parse target strings
    - RemoteTarget, LocalTarget, SyncResult, ArtifactEntry: Types
    - enumerate_artifacts: Local artifact set enumeration
"""

from .base import (
    ArtifactEntry,
    LocalTarget,
    RemoteTarget,
    SyncResult,
    Synchronizer,
    Target,
    enumerate_artifacts,
)
from .factory import SynchronizerFactory
from .local_synchronizer import LocalSynchronizer
from .rsync_synchronizer import RsyncSynchronizer

__all__ = [
    # Protocol and types
    "Synchronizer",
    "SyncResult",
    "ArtifactEntry",
    "RemoteTarget",
    "LocalTarget",
    "Target",
    "enumerate_artifacts",

    # Factory
    "SynchronizerFactory",

    # Implementations
    "LocalSynchronizer",
    "RsyncSynchronizer",
]
