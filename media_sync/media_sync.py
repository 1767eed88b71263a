#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
"""Syncs a local TV show or movie library to a media server over SSH.

Every run scans the local library, files each episode under
``<remote>/Shows/<Show>/Season <N>/`` (movies under ``<remote>/Movies/``),
creates the remote directories in one round-trip and then copies whatever the
server does not already have, several files at a time.

Examples:
    sync-shows -h media.lan -u pi -w 3
    sync-movies -h media.example.org --profile wan -n
    media-sync shows --simple --config ~/.config/media-sync/config.ini
"""
import argparse
import logging
import os
import signal
import sys
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler

from . import process_runner
from .config_manager import (
    KINDS, SyncSettings, ConfigValidator, build_settings, load_config, update_config,
)
from .models import Plan
from .normalizer import AliasTable, PathNormalizer
from .planner import TransferPlanner
from .system_manager import LockFile, setup_logging
from .transfer_manager import ParallelTransferEngine, TransferReport
from .transfer_strategies import TransferStrategy, get_transfer_strategy
from .ui import BaseUIManager, RichUIManager, SimpleUIManager
from .utils import RemoteTransferError, SyncConfigError

__version__ = "1.0.0"

DEFAULT_LOG_DIR = Path('~/.local/state/media-sync/logs').expanduser()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class MediaSync:
    """Plans and runs one sync of a local library to the server.

    Attributes:
        settings (SyncSettings): The resolved settings for this run.
        ui (BaseUIManager): Receives the plan, progress and summary.
    """

    def __init__(self, settings: SyncSettings, ui: BaseUIManager,
                 strategy_factory: Optional[Callable[[SyncSettings], TransferStrategy]] = None):
        self.settings = settings
        self.ui = ui
        self.strategy_factory = strategy_factory or get_transfer_strategy

    def _build_normalizer(self) -> PathNormalizer:
        aliases = None
        if self.settings.alias_file is not None and self.settings.episodic:
            aliases = AliasTable.load(self.settings.alias_file)
        return PathNormalizer(aliases)

    def plan(self) -> Plan:
        """Scans the local library and returns the planned transfers."""
        planner = TransferPlanner(
            dest_base=self.settings.remote_base,
            media_type=self.settings.media_type,
            normalizer=self._build_normalizer(),
            episodic=self.settings.episodic,
        )
        logging.info(f"Scanning '{self.settings.local_dir}' for {self.settings.kind}...")
        return planner.plan(self.settings.local_dir)

    def _transfer(self, plan: Plan) -> TransferReport:
        strategy = self.strategy_factory(self.settings)
        try:
            strategy.open()
            try:
                strategy.ensure_directories(plan.sorted_directories())
            except RemoteTransferError as e:
                logging.error(f"Could not prepare remote directories; no files will be copied: {e}")
                return TransferReport.all_failed(plan.queue, str(e))

            self.ui.start(len(plan.queue))
            engine = ParallelTransferEngine(self.settings.workers)
            return engine.run(plan.queue, strategy, on_result=self.ui.advance)
        finally:
            self.ui.close()
            strategy.close()

    def run(self) -> int:
        """Plans, transfers and reports.

        Returns:
            `EXIT_OK` if every file was copied or already present and the whole
            tree could be read, `EXIT_FAILURE` otherwise.
        """
        plan = self.plan()
        self.ui.show_plan(plan, dry_run=self.settings.dry_run)

        report: Optional[TransferReport] = None
        if self.settings.dry_run:
            logging.info(f"DRY RUN: {len(plan.queue)} file(s) would be transferred; no connection opened.")
        elif not plan.queue:
            logging.info("Nothing to transfer.")
            report = TransferReport()
        else:
            report = self._transfer(plan)

        self.ui.show_summary(plan, report)

        if plan.stats.walk_errors:
            logging.error(f"{plan.stats.walk_errors} local director(ies) could not be read.")
            return EXIT_FAILURE
        if report is not None and not report.success:
            return EXIT_FAILURE
        return EXIT_OK


def build_parser(kind: Optional[str] = None) -> argparse.ArgumentParser:
    """Builds the argument parser.

    `-h` is `--host`, so the automatic help flag is replaced with `--help`.
    Numeric options are parsed as strings and converted by `build_settings`,
    so a bad value from any source is reported the same way.
    """
    prog = f"sync-{kind}" if kind else "media-sync"
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Sync a local TV show or movie library to a media server over SSH.",
        add_help=False,
    )
    if kind is None:
        parser.add_argument('kind', nargs='?', choices=sorted(KINDS), help='Which library to sync.')
    parser.add_argument('--help', action='help', help='Show this help message and exit.')
    parser.add_argument('-h', '--host', help='SSH host of the media server (env: SSH_HOST).')
    parser.add_argument('-u', '--user', help='SSH user (env: SSH_USER).')
    parser.add_argument('-p', '--port', metavar='PORT', help='SSH port, default 2222 (env: SSH_PORT).')
    parser.add_argument('-l', '--local', metavar='DIR', help='Local library folder to scan.')
    parser.add_argument('-r', '--remote', metavar='DIR', help='Remote base path (env: REMOTE_BASE_PATH).')
    parser.add_argument('-w', '--workers', metavar='N', help='Number of parallel transfers, default 2 (env: WORKERS).')
    parser.add_argument('-n', '--dry-run', action='store_true', help='Only log the planned actions; connect to nothing.')
    parser.add_argument('--profile', choices=['lan', 'wan'], help='Transport tuning profile (env: SYNC_PROFILE).')
    parser.add_argument('--compress-level', metavar='N', help='zstd level for the wan profile (env: COMPRESS_LEVEL).')
    parser.add_argument('--preallocate', action='store_true', help='Preallocate destination files (env: PREALLOCATE).')
    parser.add_argument('--cipher', help='SSH cipher (env: SSH_CIPHER).')
    parser.add_argument('--alias-file', metavar='FILE', help='Show-name alias file (env: ALIAS_FILE).')
    parser.add_argument('--transfer-mode', choices=['rsync', 'sftp'], help='Copy with rsync or SFTP (env: TRANSFER_MODE).')
    parser.add_argument('--config', metavar='FILE', help='Path to config.ini. Created from the template if missing.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--simple', action='store_true', help='Use a simple, non-interactive UI. Recommended for cron, `screen` or `tmux`.')
    parser.add_argument('--log-dir', metavar='DIR', help=f'Where log files are written (default: {DEFAULT_LOG_DIR}).')
    parser.add_argument('--version', action='store_true', help="Show program's version and exit.")
    return parser


def _handle_sigterm(signum, frame) -> None:
    logging.warning("Received termination signal; stopping running transfers.")
    process_runner.stop_all_processes()


def _add_console_handler(simple: bool, debug: bool, console: Console) -> None:
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if simple:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(stream_handler)
    else:
        rich_handler = RichHandler(level=logging.DEBUG if debug else logging.INFO, show_path=False,
                                   rich_tracebacks=True, markup=True, console=console)
        rich_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(rich_handler)


def main(argv: Optional[List[str]] = None, kind: Optional[str] = None) -> int:
    """The main entry point for the application.

    This function is responsible for:
    -   Parsing command-line arguments.
    -   Resolving and validating the configuration before anything is written.
    -   Setting up file logging and refreshing the config file from the template.
    -   Acquiring a per-library lock so two syncs never overlap.
    -   Running the sync and mapping its outcome to an exit code.

    Returns:
        0 on success, 1 if anything failed to transfer or could not be read,
        2 for configuration problems or a sync already in progress.
    """
    parser = build_parser(kind)
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"{parser.prog} {__version__}")
        return EXIT_OK

    kind = kind or args.kind
    if kind is None:
        parser.error("the library kind (shows or movies) is required")
    console = Console(stderr=True)
    _add_console_handler(args.simple, args.debug, console)

    config = load_config(args.config)
    try:
        settings = build_settings(kind, args, os.environ, config)
    except SyncConfigError as e:
        logging.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    if not ConfigValidator(settings).validate():
        return EXIT_CONFIG_ERROR

    log_dir = Path(args.log_dir).expanduser() if args.log_dir else DEFAULT_LOG_DIR
    setup_logging(log_dir, args.dry_run, args.debug)
    logging.info(f"--- media-sync {__version__} started ({kind}) ---")
    signal.signal(signal.SIGTERM, _handle_sigterm)
    if args.config:
        update_config(args.config)

    lock = LockFile(Path(tempfile.gettempdir()) / f"media_sync_{kind}_{settings.user}.lock")
    try:
        lock.acquire()
    except RuntimeError as e:
        logging.error(str(e))
        return EXIT_CONFIG_ERROR

    ui: BaseUIManager = SimpleUIManager() if args.simple else RichUIManager(console)
    try:
        return MediaSync(settings, ui).run()
    except KeyboardInterrupt:
        logging.warning("Process interrupted by user. Shutting down.")
        process_runner.stop_all_processes()
        return EXIT_FAILURE
    except Exception as e:
        logging.error(f"An unexpected error occurred: {e}", exc_info=True)
        return EXIT_FAILURE
    finally:
        lock.release()
        logging.info("--- media-sync finished ---")


def sync_shows() -> int:
    return main(kind='shows')


def sync_movies() -> int:
    return main(kind='movies')


if __name__ == "__main__":
    sys.exit(main())
