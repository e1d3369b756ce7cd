"""Deploy command - full pipeline (admit, credential, snapshot, build, sync)"""
from pathlib import Path
from typing import Dict, Optional

import yaml

from sitedeploy.builder import CommandSiteBuilder
from sitedeploy.config import DEFAULT_CONFIG_PATH, CredentialsConfig, DeployConfig, load_config
from sitedeploy.controller import DeploymentController, Secrets
from sitedeploy.core import (
    ConsoleLogger,
    FileSystemService,
    Logger,
    RealFileSystemService,
    SubprocessExecutor,
    SystemEnvironmentProvider,
    SystemTimeProvider,
    SystemToolLocator,
    YamlConfigLoader,
)
from sitedeploy.credentials import CredentialProvisioner
from sitedeploy.deploy import SynchronizerFactory
from sitedeploy.exceptions import QueueingFailure
from sitedeploy.models import EXIT_FAILED, EXIT_SUCCESS, Run, TriggerEvent, accepts_trigger, normalize_ref
from sitedeploy.serializer import RunSerializer, SQLiteCoordinationStore
from sitedeploy.snapshot import SnapshotFetcher


def setup_parser(parser):
    """Setup argument parser for deploy command"""
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
        help='Deploy target, e.g. deploy@example.org:/var/www/site/ (overrides config)'
    )
    parser.add_argument(
        '--commit',
        help='Commit to deploy (default: $GITHUB_SHA)'
    )
    parser.add_argument(
        '--ref',
        help='Branch ref of the trigger (default: $GITHUB_REF, else first configured branch)'
    )
    parser.add_argument(
        '--event',
        choices=[e.value for e in TriggerEvent],
        help='Trigger event (default: $GITHUB_EVENT_NAME, else workflow_dispatch)'
    )
    parser.add_argument(
        '--workflow',
        help='Pipeline identity for the serialization key (default: $GITHUB_WORKFLOW, else config)'
    )
    parser.add_argument(
        '--run-id',
        help='Run identifier (default: $GITHUB_RUN_ID, else random)'
    )
    parser.add_argument(
        '--ssh-key-file',
        help='Read the private key from a file instead of the environment'
    )
    parser.add_argument(
        '--known-hosts-file',
        help='Read known_hosts from a file instead of the environment'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show verbose output'
    )


def resolve_run(args, config: DeployConfig, environ: Dict[str, str]) -> Run:
    """Build the Run from flags, falling back to GitHub Actions variables.

    Raises:
        ValueError: No commit given, or unknown event name
    """
    event = TriggerEvent(args.event or environ.get('GITHUB_EVENT_NAME') or TriggerEvent.WORKFLOW_DISPATCH.value)
    ref = normalize_ref(args.ref or environ.get('GITHUB_REF') or config.branches[0])
    commit = args.commit or environ.get('GITHUB_SHA')
    if not commit:
        raise ValueError("No commit to deploy: pass --commit or set GITHUB_SHA")
    workflow = args.workflow or environ.get('GITHUB_WORKFLOW') or config.workflow

    run_id = args.run_id or environ.get('GITHUB_RUN_ID')
    if run_id:
        return Run(workflow=workflow, ref=ref, commit=commit, event=event, run_id=str(run_id))
    return Run(workflow=workflow, ref=ref, commit=commit, event=event)


def read_secrets(
    creds: CredentialsConfig,
    environ: Dict[str, str],
    filesystem: FileSystemService,
    key_file: Optional[str] = None,
    known_hosts_file: Optional[str] = None
) -> Optional[Secrets]:
    """Read key and known_hosts from files or environment; None if no key."""
    key_file = key_file or creds.key_file
    known_hosts_file = known_hosts_file or creds.known_hosts_file

    key = filesystem.read_file(key_file) if key_file else environ.get(creds.key_env)
    if not key:
        return None
    known_hosts = filesystem.read_file(known_hosts_file) if known_hosts_file else environ.get(creds.known_hosts_env, '')
    return Secrets(key_material=key, known_hosts=known_hosts)


def build_controller(config: DeployConfig, logger: Logger) -> DeploymentController:
    """Wire a controller with production dependencies."""
    filesystem = RealFileSystemService()
    process = SubprocessExecutor()
    clock = SystemTimeProvider()
    target = SynchronizerFactory.from_target_string(config.target, config.ssh_port)
    environment = SystemEnvironmentProvider()
    secret_env_names = [config.credentials.key_env, config.credentials.known_hosts_env]

    serializer = RunSerializer(
        store=SQLiteCoordinationStore(
            Path(config.serializer.database),
            busy_timeout_seconds=config.serializer.busy_timeout_seconds
        ),
        time_provider=clock,
        logger=logger,
        poll_interval_seconds=config.serializer.poll_interval_seconds,
        lease_seconds=config.lease_seconds,
        queue_timeout_seconds=config.serializer.queue_timeout_seconds
    )
    builder = CommandSiteBuilder(
        process_executor=process,
        time_provider=clock,
        env_provider=environment,
        logger=logger,
        command=config.builder.command,
        output_dir=config.builder.output_dir,
        timeout_seconds=config.builder.timeout_seconds,
        required_version=config.builder.required_version,
        env=config.builder.env,
        secret_env_names=secret_env_names
    )
    return DeploymentController(
        serializer=serializer,
        provisioner=CredentialProvisioner(filesystem, process, SystemToolLocator()),
        fetcher=SnapshotFetcher(
            filesystem,
            process,
            logger,
            full_history=config.snapshot.full_history,
            submodules=config.snapshot.submodules,
            timeout_seconds=config.snapshot.timeout_seconds,
            env_provider=environment,
            secret_env_names=secret_env_names
        ),
        builder=builder,
        synchronizer=SynchronizerFactory.create_synchronizer(
            target,
            process_executor=process,
            time_provider=clock,
            logger=logger,
            timeout_seconds=config.sync.timeout_seconds,
            compress=config.sync.compress
        ),
        logger=logger,
        repository=config.repository,
        target=target
    )


def execute(args):
    """Execute deploy command"""
    logger = ConsoleLogger(verbose=args.verbose)
    filesystem = RealFileSystemService()
    environ = SystemEnvironmentProvider().get_environ()

    try:
        config = load_config(
            YamlConfigLoader(filesystem),
            args.config,
            overrides={'repository': args.repository, 'target': args.target},
            missing_ok=args.config == DEFAULT_CONFIG_PATH
        )
        run = resolve_run(args, config, environ)
    except (ValueError, OSError, yaml.YAMLError) as e:
        logger.error(str(e))
        return EXIT_FAILED

    if not accepts_trigger(run.event, run.ref, config.branches):
        logger.info(f"Ignoring {run.event.value} to {run.ref}: deploys run for {', '.join(config.branches)}")
        return EXIT_SUCCESS

    logger.info("=" * 80)
    logger.info(f"SITEDEPLOY: {run.key_string}")
    logger.info("=" * 80)

    try:
        secrets = read_secrets(
            config.credentials,
            environ,
            filesystem,
            key_file=args.ssh_key_file,
            known_hosts_file=args.known_hosts_file
        )
    except OSError as e:
        logger.error(f"Cannot read credential file: {e}")
        return EXIT_FAILED

    try:
        controller = build_controller(config, logger)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_FAILED
    except QueueingFailure as e:
        logger.error(f"Run {run.run_id} failed at stage 'admission' ({e.kind})\n{e}")
        return EXIT_FAILED

    report = controller.execute(run, secrets)
    return report.exit_code
