"""Sync command - mirror an already built directory onto a target.

Bypasses admission control: use it for manual recovery only, never
alongside a running deploy to the same target.
"""
from pathlib import Path

from sitedeploy.commands.deploy import read_secrets
from sitedeploy.config import CredentialsConfig
from sitedeploy.core import (
    ConsoleLogger,
    RealFileSystemService,
    SubprocessExecutor,
    SystemEnvironmentProvider,
    SystemTimeProvider,
    SystemToolLocator,
)
from sitedeploy.credentials import CredentialProvisioner
from sitedeploy.deploy import SynchronizerFactory
from sitedeploy.exceptions import CredentialError, PipelineError
from sitedeploy.models import EXIT_FAILED, EXIT_SUCCESS


def setup_parser(parser):
    """Setup argument parser for sync command"""
    parser.add_argument(
        'local_dir',
        help='Built site directory to mirror (e.g., public/)'
    )
    parser.add_argument(
        'target',
        help='user@host:/abs/path, ssh://user@host:port/abs/path, or /abs/path'
    )
    parser.add_argument(
        '--ssh-port',
        type=int,
        default=22,
        help='SSH port when the target does not carry one (default: 22)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Wall-clock budget for the sync (seconds)'
    )
    parser.add_argument(
        '--no-compress',
        action='store_true',
        help='Do not compress data in transit'
    )
    parser.add_argument(
        '--ssh-key-file',
        help='Private key file (default: $SSH_KEY)'
    )
    parser.add_argument(
        '--known-hosts-file',
        help='known_hosts file (default: $KNOWN_HOSTS)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='List every transferred and deleted path'
    )


def execute(args):
    """Execute sync command"""
    logger = ConsoleLogger(verbose=args.verbose)
    filesystem = RealFileSystemService()
    process = SubprocessExecutor()

    try:
        target = SynchronizerFactory.from_target_string(args.target, args.ssh_port)
    except ValueError as e:
        logger.error(str(e))
        return EXIT_FAILED

    if not Path(args.local_dir).is_dir():
        logger.error(f"Not a directory: {args.local_dir}")
        return EXIT_FAILED

    synchronizer = SynchronizerFactory.create_synchronizer(
        target,
        process_executor=process,
        time_provider=SystemTimeProvider(),
        logger=logger,
        timeout_seconds=args.timeout,
        compress=not args.no_compress
    )

    logger.info(f"Mirroring {args.local_dir} -> {target}")
    try:
        if synchronizer.requires_credential:
            secrets = read_secrets(
                CredentialsConfig(),
                SystemEnvironmentProvider().get_environ(),
                filesystem,
                key_file=args.ssh_key_file,
                known_hosts_file=args.known_hosts_file
            )
            if secrets is None:
                raise CredentialError("No SSH key supplied (--ssh-key-file or $SSH_KEY)")
            provisioner = CredentialProvisioner(filesystem, process, SystemToolLocator())
            with provisioner.provision(secrets.key_material, secrets.known_hosts, target.host, target.port) as cred:
                result = synchronizer.sync_mirror(args.local_dir, target, cred)
        else:
            result = synchronizer.sync_mirror(args.local_dir, target)
    except PipelineError as e:
        logger.error(f"{e.kind}: {e}")
        return EXIT_FAILED
    except OSError as e:
        logger.error(f"Cannot read credential file: {e}")
        return EXIT_FAILED

    for path in result.transferred:
        logger.debug(f"  + {path}")
    for path in result.deleted:
        logger.debug(f"  - {path}")
    logger.info(
        f"✓ {len(result.transferred)} transferred, {len(result.deleted)} deleted, "
        f"{result.unchanged} unchanged"
    )
    return EXIT_SUCCESS
