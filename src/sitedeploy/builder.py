"""Site builder boundary.

The builder is an external collaborator: a deterministic transform from a
source tree to a directory of static files. The pipeline only sees
success (an output directory) or failure (BuildError).
"""

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from sitedeploy.core.protocols import EnvironmentProvider, Logger, ProcessExecutor, TimeProvider
from sitedeploy.credentials import DEFAULT_SECRET_ENV, scrub_environ
from sitedeploy.exceptions import BuildError

DEFAULT_BUILD_COMMAND = ['hugo', '--minify']
DEFAULT_OUTPUT_DIR = 'public'


@dataclass
class BuildResult:
    output_root: Path
    duration_seconds: float
    log: str = ""


class SiteBuilder(Protocol):
    """Capability interface for the external site generator."""

    def build(self, source_root: Path) -> BuildResult:
        """
        Build source_root into a directory of static files.

        Raises:
            BuildError: Builder failed, timed out, or produced no output
        """
        ...


class CommandSiteBuilder:
    """Runs a static site generator command inside the source tree.

    Args:
        process_executor: Subprocess abstraction
        time_provider: Clock for build duration
        env_provider: Environment passed to the builder
        logger: Logging abstraction
        command: Builder argv (default: hugo --minify)
        output_dir: Output directory relative to the source root
        timeout_seconds: Wall-clock budget for the build
        required_version: Substring expected in `<tool> version` output
        env: Extra environment variables for the builder
        secret_env_names: Credential input variables withheld from the builder
    """

    def __init__(
        self,
        process_executor: ProcessExecutor,
        time_provider: TimeProvider,
        env_provider: EnvironmentProvider,
        logger: Logger,
        command: Optional[List[str]] = None,
        output_dir: str = DEFAULT_OUTPUT_DIR,
        timeout_seconds: Optional[float] = 900,
        required_version: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        secret_env_names: Iterable[str] = DEFAULT_SECRET_ENV
    ):
        self.process = process_executor
        self.time = time_provider
        self.env_provider = env_provider
        self.log = logger
        self.command = list(command or DEFAULT_BUILD_COMMAND)
        self.output_dir = output_dir
        self.timeout_seconds = timeout_seconds
        self.required_version = required_version
        self.env = dict(env or {})
        self.secret_env_names = tuple(secret_env_names)

    def _environ(self) -> Dict[str, str]:
        env = self.env_provider.get_environ()
        env.update(self.env)
        return scrub_environ(env, self.secret_env_names)

    def check_version(self) -> str:
        """Verify the builder reports required_version; return its version line."""
        tool = self.command[0]
        try:
            result = self.process.run([tool, 'version'], env=self._environ(), timeout=60)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise BuildError(f"Could not query {tool} version: {e}")
        reported = (result.stdout or result.stderr).strip()
        if result.returncode != 0:
            raise BuildError(f"{tool} version failed: {reported}")
        # "0.117.0" matches "hugo v0.117.0-..." but not "0.117.01"
        if not re.search(rf'(?<![\d.]){re.escape(self.required_version)}(?![\d])', reported):
            raise BuildError(
                f"{tool} reports '{reported}', expected version {self.required_version}\n"
                f"Install the pinned version to keep builds reproducible."
            )
        return reported

    def build(self, source_root: Path) -> BuildResult:
        source_root = Path(source_root)
        if self.required_version:
            self.log.info(f"Builder version: {self.check_version()}")

        output_root = (source_root / self.output_dir).resolve()
        try:
            output_root.relative_to(source_root.resolve())
        except ValueError:
            raise BuildError(f"Output directory '{self.output_dir}' resolves outside the source tree")

        env = self._environ()

        self.log.info(f"Building: {' '.join(self.command)}")
        start = self.time.current_time()
        try:
            result = self.process.run(
                self.command,
                cwd=str(source_root),
                env=env,
                timeout=self.timeout_seconds
            )
        except subprocess.TimeoutExpired:
            raise BuildError(f"Build exceeded its budget of {self.timeout_seconds}s")
        except FileNotFoundError:
            raise BuildError(f"Builder '{self.command[0]}' not found in PATH")
        duration = self.time.current_time() - start

        if result.returncode != 0:
            raise BuildError(
                f"Build failed (exit {result.returncode})\n\n"
                f"Last lines of build output:\n{(result.stdout + result.stderr)[-1000:]}"
            )

        if not output_root.is_dir():
            raise BuildError(f"Build succeeded but produced no output directory at {output_root}")

        self.log.info(f"Build finished in {duration:.1f}s -> {output_root}")
        return BuildResult(output_root=output_root, duration_seconds=duration, log=result.stdout)
