"""Pre-flight checks for a deploy host

Verifies the tools, configuration, coordination store and secrets a deploy
needs, without touching the target.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from sitedeploy.config import DEFAULT_CONFIG_PATH, DeployConfig, load_config
from sitedeploy.core import (
    ConfigLoader,
    EnvironmentProvider,
    Logger,
    ToolLocator,
)
from sitedeploy.deploy import RemoteTarget, SynchronizerFactory, Target
from sitedeploy.exceptions import QueueingFailure
from sitedeploy.serializer import SQLiteCoordinationStore


class PreflightCheck:
    """Represents a single pre-flight check"""
    def __init__(self, name: str, status: str, message: str, critical: bool = False):
        self.name = name
        self.status = status  # 'pass', 'warn', 'fail'
        self.message = message
        self.critical = critical


class DeployChecker:
    """Pre-flight checker with dependency injection.

    Args:
        config_loader: YAML loading abstraction
        env_provider: Environment access (secret presence only, never values)
        tool_locator: External tool discovery
        logger: Logging abstraction
    """

    def __init__(
        self,
        config_loader: ConfigLoader,
        env_provider: EnvironmentProvider,
        tool_locator: ToolLocator,
        logger: Logger
    ):
        self.config_loader = config_loader
        self.env = env_provider
        self.tools = tool_locator
        self.log = logger

    def check_tool(self, tool: str, purpose: str, critical: bool = True) -> PreflightCheck:
        """Check an executable is on PATH"""
        location = self.tools.find_tool(tool)
        if location:
            return PreflightCheck(tool, 'pass', f'Found at {location}')
        return PreflightCheck(tool, 'fail' if critical else 'warn', f'Not found in PATH ({purpose})', critical)

    def check_config(
        self,
        path: str,
        overrides: Optional[Dict[str, Any]] = None
    ) -> Tuple[PreflightCheck, Optional[DeployConfig]]:
        """Check the config file loads and validates

        As for deploy, a missing default file is allowed when overrides
        supply repository and target.
        """
        try:
            config = load_config(
                self.config_loader, path, overrides=overrides, missing_ok=path == DEFAULT_CONFIG_PATH
            )
        except (ValueError, OSError, yaml.YAMLError) as e:
            return PreflightCheck('Config', 'fail', f'{path}: {e}', critical=True), None
        return PreflightCheck('Config', 'pass', f'{path} is valid'), config

    def check_target(self, config: DeployConfig) -> Tuple[PreflightCheck, Optional[Target]]:
        """Check the target string parses; return the parsed target"""
        try:
            target = SynchronizerFactory.from_target_string(config.target, config.ssh_port)
        except ValueError as e:
            return PreflightCheck('Target', 'fail', str(e), critical=True), None
        kind = 'remote (rsync over ssh)' if isinstance(target, RemoteTarget) else 'local directory'
        return PreflightCheck('Target', 'pass', f'{target} [{kind}]'), target

    def check_coordination_store(self, config: DeployConfig) -> PreflightCheck:
        """Check the serializer database opens"""
        try:
            SQLiteCoordinationStore(
                Path(config.serializer.database),
                busy_timeout_seconds=config.serializer.busy_timeout_seconds
            )
        except QueueingFailure as e:
            return PreflightCheck('Coordination store', 'fail', str(e), critical=True)
        return PreflightCheck('Coordination store', 'pass', config.serializer.database)

    def check_secrets(self, config: DeployConfig) -> PreflightCheck:
        """Check the credential inputs are present (values are never read out)"""
        creds = config.credentials
        environ = self.env.get_environ()
        missing = []
        if not creds.key_file and not environ.get(creds.key_env):
            missing.append(f'${creds.key_env}')
        if not creds.known_hosts_file and not environ.get(creds.known_hosts_env):
            missing.append(f'${creds.known_hosts_env}')
        if missing:
            return PreflightCheck(
                'Secrets', 'warn',
                f'{", ".join(missing)} not set (required for remote targets)'
            )
        return PreflightCheck('Secrets', 'pass', 'Key and known_hosts supplied')

    def run_all_checks(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        overrides: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[PreflightCheck], bool]:
        """Run all pre-flight checks.

        rsync, ssh and the secrets are only checked for a remote target.

        Returns:
            Tuple of (list of checks, all_pass boolean)
        """
        checks = [self.check_tool('git', 'source snapshots')]

        config_check, config = self.check_config(config_path, overrides)
        checks.append(config_check)
        if config is not None:
            checks.append(self.check_tool(config.builder.command[0], 'site builder'))
            target_check, target = self.check_target(config)
            checks.append(target_check)
            if isinstance(target, RemoteTarget):
                checks.append(self.check_tool('rsync', 'remote mirroring'))
                checks.append(self.check_tool('ssh', 'remote mirroring'))
                checks.append(self.check_tool('ssh-keygen', 'key validation', critical=False))
                checks.append(self.check_secrets(config))
            checks.append(self.check_coordination_store(config))

        all_pass = all(
            check.status != 'fail' and not (check.critical and check.status == 'warn')
            for check in checks
        )
        return checks, all_pass

    def print_results(self, checks: List[PreflightCheck]) -> None:
        """Print check results using logger."""
        self.log.info("=" * 80)
        self.log.info("DEPLOY PRE-FLIGHT CHECK")
        self.log.info("=" * 80)

        symbols: Dict[str, str] = {
            'pass': '✓',
            'warn': '⚠',
            'fail': '✗'
        }
        for check in checks:
            symbol = symbols.get(check.status, '?')
            critical_marker = ' [CRITICAL]' if check.critical else ''
            self.log.info(f"{symbol} {check.name}: {check.message}{critical_marker}")

        pass_count = sum(1 for c in checks if c.status == 'pass')
        warn_count = sum(1 for c in checks if c.status == 'warn')
        fail_count = sum(1 for c in checks if c.status == 'fail')
        self.log.info("=" * 80)
        self.log.info(f"Summary: {pass_count} passed, {warn_count} warnings, {fail_count} failed")


def setup_parser(parser):
    """Setup argument parser for check command"""
    parser.add_argument(
        '--config', '-c',
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to YAML config (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--repository',
        help='Repository URL or path (overrides config)'
    )
    parser.add_argument(
        '--target',
        help='Deploy target (overrides config)'
    )


def execute(args):
    """Execute pre-flight check.

    Returns:
        Exit code: 0 if all checks passed, 1 if critical failures detected
    """
    from sitedeploy.core import (
        ConsoleLogger,
        RealFileSystemService,
        SystemEnvironmentProvider,
        SystemToolLocator,
        YamlConfigLoader,
    )

    checker = DeployChecker(
        config_loader=YamlConfigLoader(RealFileSystemService()),
        env_provider=SystemEnvironmentProvider(),
        tool_locator=SystemToolLocator(),
        logger=ConsoleLogger()
    )
    checks, all_pass = checker.run_all_checks(
        args.config,
        overrides={'repository': args.repository, 'target': args.target}
    )
    checker.print_results(checks)
    return 0 if all_pass else 1
