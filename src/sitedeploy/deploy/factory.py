"""
SynchronizerFactory - parse target strings and route to synchronizers.

Format-based routing:
    user@host:/abs/path              -> RemoteTarget, RsyncSynchronizer
    user@[fe80::1]:/abs/path         -> RemoteTarget with IPv6 host
    ssh://user@host:2222/abs/path    -> RemoteTarget with custom SSH port
    file:///abs/path                 -> LocalTarget, LocalSynchronizer
    /abs/path                        -> LocalTarget, LocalSynchronizer
"""

from typing import Optional
from urllib.parse import urlparse

from sitedeploy.deploy.base import LocalTarget, RemoteTarget, Target


class SynchronizerFactory:
    """Factory for parsing target strings into targets and synchronizers."""

    @staticmethod
    def from_target_string(target: str, default_port: int = 22) -> Target:
        """
        Parse a target string.

        Args:
            target: Target connection string
            default_port: SSH port when the string does not carry one

        Returns:
            RemoteTarget or LocalTarget

        Raises:
            ValueError: If format not recognized or the path is not absolute

        Example:
            target = SynchronizerFactory.from_target_string(
                "deploy@example.org:/usr/share/nginx/html/example.org/")
            # RemoteTarget(user='deploy', host='example.org',
            #              path='/usr/share/nginx/html/example.org/', port=22)
        """
        if not target:
            raise ValueError("Empty deploy target")

        if target.startswith('file://'):
            path = urlparse(target).path
            return SynchronizerFactory._local(path, target)

        if target.startswith('ssh://'):
            parsed = urlparse(target)
            if not parsed.username or not parsed.hostname:
                raise ValueError(f"Malformed ssh target (expected ssh://user@host[:port]/path): {target}")
            return RemoteTarget(
                user=parsed.username,
                host=parsed.hostname,
                path=SynchronizerFactory._absolute(parsed.path, target),
                port=parsed.port or default_port
            )

        if target.startswith('/'):
            return SynchronizerFactory._local(target, target)

        if '@' in target:
            # Parse scp-style format: user@host:path
            # Also handle IPv6: user@[fe80::1]:path
            user, host_part = target.split('@', 1)
            if not user:
                raise ValueError(f"Missing user in target: {target}")

            if host_part.startswith('['):
                bracket_end = host_part.find(']')
                if bracket_end == -1:
                    raise ValueError(f"Malformed IPv6 address: {target}")
                host = host_part[1:bracket_end]
                remainder = host_part[bracket_end + 1:]
                if not remainder.startswith(':'):
                    raise ValueError(f"Missing path in target: {target}")
                path = remainder[1:]
            else:
                if ':' not in host_part:
                    raise ValueError(f"Missing path in target: {target}")
                host, path = host_part.split(':', 1)

            if not host:
                raise ValueError(f"Missing host in target: {target}")
            return RemoteTarget(
                user=user,
                host=host,
                path=SynchronizerFactory._absolute(path, target),
                port=default_port
            )

        raise ValueError(
            f"Unknown target format: {target}\n"
            f"Expected: user@host:/abs/path | ssh://user@host:port/abs/path | "
            f"file:///abs/path | /abs/path"
        )

    @staticmethod
    def create_synchronizer(
        target: Target,
        process_executor=None,
        time_provider=None,
        logger=None,
        timeout_seconds: Optional[float] = None,
        compress: bool = True
    ):
        """Return the synchronizer able to mirror onto target."""
        # Lazy import to avoid circular dependencies
        from sitedeploy.deploy.local_synchronizer import LocalSynchronizer
        from sitedeploy.deploy.rsync_synchronizer import RsyncSynchronizer

        if isinstance(target, RemoteTarget):
            return RsyncSynchronizer(
                process_executor=process_executor,
                logger=logger,
                timeout_seconds=timeout_seconds,
                compress=compress
            )
        return LocalSynchronizer(time_provider=time_provider, timeout_seconds=timeout_seconds)

    @staticmethod
    def _absolute(path: str, raw: str) -> str:
        if not path.startswith('/'):
            raise ValueError(f"Target path must be absolute: {raw}")
        if any(part == '..' for part in path.split('/')):
            raise ValueError(f"Target path must not contain '..': {raw}")
        return path

    @staticmethod
    def _local(path: str, raw: str) -> LocalTarget:
        return LocalTarget(path=SynchronizerFactory._absolute(path, raw))
