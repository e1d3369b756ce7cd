"""Protocol definitions for dependency injection.

This module defines Protocol-based abstractions for every external dependency
the deployment pipeline touches (filesystem, subprocesses, clock, environment,
tool lookup, config files). Protocols use structural typing, so any class that
implements these methods satisfies the Protocol without explicit inheritance.

Benefits:
- Pipeline stages can be unit tested with Mock(spec=...) doubles
- No inheritance required
- Clear interface contracts between stages and the outside world
"""

from dataclasses import dataclass
from typing import Protocol, Dict, Any, Optional, List, Union
from pathlib import Path


@dataclass
class ProcessResult:
    """Outcome of a finished subprocess.

    Attributes:
        returncode: Process exit status
        stdout: Captured standard output (text)
        stderr: Captured standard error (text)
    """
    returncode: int
    stdout: str
    stderr: str


class Logger(Protocol):
    """Abstraction for logging operations.

    Replaces direct print() statements throughout the pipeline.
    Implementations must never be handed secret material.
    """

    def info(self, message: str) -> None:
        """Log informational message."""
        ...

    def warning(self, message: str) -> None:
        """Log warning message."""
        ...

    def error(self, message: str) -> None:
        """Log error message."""
        ...

    def debug(self, message: str) -> None:
        """Log debug message."""
        ...


class FileSystemService(Protocol):
    """Abstraction for filesystem operations.

    Wraps the Path and shutil operations used by the pipeline so that
    stages can be tested without touching the real filesystem.
    """

    def exists(self, path: Union[str, Path]) -> bool:
        """Check if path exists."""
        ...

    def read_file(self, path: Union[str, Path]) -> str:
        """Read entire file as string."""
        ...

    def rmtree(self, path: Union[str, Path]) -> None:
        """Recursively remove directory tree."""
        ...

    def make_temp_dir(self, prefix: str) -> Path:
        """Create a private (mode 0700) temporary directory."""
        ...


class ProcessExecutor(Protocol):
    """Abstraction for process execution.

    Wraps subprocess.run to enable testing without spawning real processes.
    Implementations raise subprocess.TimeoutExpired when timeout elapses and
    FileNotFoundError when the executable does not exist.
    """

    def run(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> ProcessResult:
        """Execute command to completion and return its result."""
        ...


class TimeProvider(Protocol):
    """Abstraction for time operations.

    Enables deterministic testing of queue polling, leases and stage budgets.
    """

    def current_time(self) -> float:
        """Get current time in seconds since epoch."""
        ...

    def sleep(self, seconds: float) -> None:
        """Sleep for specified number of seconds."""
        ...


class EnvironmentProvider(Protocol):
    """Abstraction for environment access.

    Wraps os.environ so trigger metadata and secrets can be faked in tests.
    """

    def get_environ(self) -> Dict[str, str]:
        """Get copy of environment variables."""
        ...


class ToolLocator(Protocol):
    """Abstraction for external tool discovery.

    Wraps shutil.which() to enable testing without requiring
    tools to be installed (git, rsync, ssh, ssh-keygen, hugo).
    """

    def find_tool(self, tool_name: str) -> Optional[str]:
        """Find tool in PATH and return absolute path, or None if not found."""
        ...

    def has_tool(self, tool_name: str) -> bool:
        """Check if tool exists in PATH."""
        ...


class ConfigLoader(Protocol):
    """Abstraction for configuration file loading.

    Wraps YAML loading to enable testing with mock configurations
    without requiring actual config files.
    """

    def load_yaml(self, path: str) -> Dict[str, Any]:
        """Load YAML file and return parsed dictionary."""
        ...
