"""
sitedeploy - Continuous deployment of a static site to a web host

Builds the site at the triggering commit and mirrors the output onto the
host, one run per (workflow, branch) at a time.
"""
import argparse
import logging
import sys

__version__ = "1.0.0"


def main():
    """Main CLI entry point"""
    from sitedeploy.commands import check, deploy, sync

    parser = argparse.ArgumentParser(
        prog='sitedeploy',
        description='sitedeploy: build a static site and mirror it to a web host',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  sitedeploy deploy                              # Deploy $GITHUB_SHA per sitedeploy.yaml
  sitedeploy deploy --commit abc123 --ref main   # Deploy a commit manually
  sitedeploy sync public/ deploy@host:/var/www/  # Mirror an existing build
  sitedeploy check                               # Pre-flight tool and config checks

Exit codes: 0 deployed (or trigger ignored), 1 failed, 3 superseded by a newer run
        '''
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    deploy_parser = subparsers.add_parser('deploy', help='Run the full deployment pipeline')
    deploy.setup_parser(deploy_parser)

    sync_parser = subparsers.add_parser('sync', help='Mirror a built directory onto a target')
    sync.setup_parser(sync_parser)

    check_parser = subparsers.add_parser('check', help='Pre-flight checks')
    check.setup_parser(check_parser)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, 'verbose', False) else logging.INFO,
        format='%(message)s'
    )

    # Dispatch to command handler
    try:
        if args.command == 'deploy':
            sys.exit(deploy.execute(args))
        elif args.command == 'sync':
            sys.exit(sync.execute(args))
        elif args.command == 'check':
            sys.exit(check.execute(args))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)
