"""
Command line entry point.

Usage:
  gitea-backup                              # uses ./credential_config.sh
  gitea-backup /etc/gitea-backup.conf       # explicit configuration file
  gitea-backup --preflight-only             # only run the pre-flight checks
  gitea-backup --timeout 3600 --json        # cancel after one hour, JSON report on stdout
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from gitea_backup import __version__, configure_logging
from gitea_backup.backup.context import RunContext
from gitea_backup.backup.executor import BackupExecutor
from gitea_backup.backup.report import RunReport, RunReporter
from gitea_backup.config import DEFAULT_CONFIG_FILE, DEFAULTS, REQUIRED_KEYS, load_config_file, validate_config
from gitea_backup.errors import ConfigError


logger = logging.getLogger('gitea_backup.cli')

CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gitea-backup',
        description='Back up the Gitea database and repositories to S3, then prune old backups.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"Configuration keys:\n  required: {', '.join(REQUIRED_KEYS)}\n"
               f"  optional: {', '.join(DEFAULTS)}"
    )
    parser.add_argument(
        'config', nargs='?', default=DEFAULT_CONFIG_FILE,
        help=f"KEY=\"value\" configuration file (default: {DEFAULT_CONFIG_FILE})"
    )
    parser.add_argument(
        '--timeout', type=_positive_int, metavar='SECONDS',
        help='cancel the run after this many seconds'
    )
    parser.add_argument('--preflight-only', action='store_true', help='only run the pre-flight checks')
    parser.add_argument('--json', action='store_true', help='print the run report as JSON on stdout')
    parser.add_argument('--debug', action='store_true', help='verbose logging')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def install_signal_handlers(context: RunContext, timeout: Optional[int] = None) -> dict:
    """
    Route SIGTERM, SIGINT and the optional timeout to run cancellation.

    Returns:
        The previous handlers, for restore_signal_handlers()
    """
    def handle(signum, frame):
        if signum == signal.SIGALRM:
            reason = f"timed out after {timeout}s"
        else:
            reason = f"received {signal.Signals(signum).name}"
        logger.warning(f"Cancellation requested: {reason}")
        context.request_cancel(reason)

    signals = CANCEL_SIGNALS + ((signal.SIGALRM,) if timeout else ())
    previous = {signum: signal.signal(signum, handle) for signum in signals}

    if timeout:
        signal.alarm(timeout)

    return previous


def restore_signal_handlers(previous: dict):
    if signal.SIGALRM in previous:
        signal.alarm(0)
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one backup.

    Returns:
        Process exit status (0 on success, see gitea_backup.errors)
    """
    args = build_parser().parse_args(argv)
    configure_logging(debug=args.debug)

    reporter = RunReporter(json_stream=sys.stdout if args.json else None)

    try:
        config = validate_config(load_config_file(args.config))
    except ConfigError as e:
        logger.error(f"Critical Error: {e}")
        if e.code == 'ConfigFileMissing':
            logger.error(f"Create a configuration file defining at least: {', '.join(REQUIRED_KEYS)}")
        report = RunReport(run_id='')
        report.record_failure(e, 'config')
        reporter.emit(report)
        return e.exit_code

    executor = BackupExecutor(config, reporter=reporter)
    previous_handlers = install_signal_handlers(executor.context, args.timeout)
    try:
        report = executor.execute(preflight_only=args.preflight_only)
    finally:
        restore_signal_handlers(previous_handlers)

    return report.exit_code


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


if __name__ == '__main__':
    sys.exit(main())
