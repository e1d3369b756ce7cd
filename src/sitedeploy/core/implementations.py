"""Production implementations of dependency injection protocols.

This module provides real implementations that wrap actual external dependencies
(filesystem, subprocess, time, etc.). These are used by the CLI commands.

For testing, use mocks or test doubles instead of these implementations.
"""

import os
import shutil
import subprocess
import sys
import tempfile
import time
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List, Union

from sitedeploy.core.protocols import ProcessResult


class ConsoleLogger:
    """Production logger that prints to console (stdout/stderr)."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def info(self, message: str) -> None:
        """Print info message to stdout."""
        print(message, flush=True)

    def warning(self, message: str) -> None:
        """Print warning message to stdout."""
        print(f"Warning: {message}", flush=True)

    def error(self, message: str) -> None:
        """Print error message to stderr."""
        print(f"Error: {message}", file=sys.stderr, flush=True)

    def debug(self, message: str) -> None:
        """Print debug message to stdout (verbose mode only)."""
        if self.verbose:
            print(f"Debug: {message}", flush=True)


class RealFileSystemService:
    """Production filesystem service using real pathlib and shutil operations."""

    def exists(self, path: Union[str, Path]) -> bool:
        return Path(path).exists()

    def read_file(self, path: Union[str, Path]) -> str:
        with open(path, 'r') as f:
            return f.read()

    def rmtree(self, path: Union[str, Path]) -> None:
        shutil.rmtree(path)

    def make_temp_dir(self, prefix: str) -> Path:
        """Create a private temporary directory (mkdtemp uses mode 0700)."""
        return Path(tempfile.mkdtemp(prefix=prefix))


class SubprocessExecutor:
    """Production process executor using real subprocess.run."""

    def run(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> ProcessResult:
        """Execute command, capture text output, and return the result.

        stdin is closed so tools never block on an interactive prompt
        (ssh host-key confirmation, git credential prompts).
        """
        completed = subprocess.run(
            cmd,
            cwd=cwd,
            env=env,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True
        )
        return ProcessResult(
            returncode=completed.returncode,
            stdout=completed.stdout or '',
            stderr=completed.stderr or ''
        )


class SystemTimeProvider:
    """Production time provider using real time module."""

    def current_time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class SystemEnvironmentProvider:
    """Production environment provider using os.environ."""

    def get_environ(self) -> Dict[str, str]:
        return dict(os.environ)


class SystemToolLocator:
    """Production tool locator using real shutil.which."""

    def find_tool(self, tool_name: str) -> Optional[str]:
        return shutil.which(tool_name)

    def has_tool(self, tool_name: str) -> bool:
        return self.find_tool(tool_name) is not None


class YamlConfigLoader:
    """Production config loader using real YAML parser."""

    def __init__(self, filesystem: 'RealFileSystemService'):
        """Initialize with filesystem service for reading files."""
        self.fs = filesystem

    def load_yaml(self, path: str) -> Dict[str, Any]:
        """Load YAML file and return parsed dictionary (empty file -> {})."""
        content = self.fs.read_file(path)
        return yaml.safe_load(content) or {}
