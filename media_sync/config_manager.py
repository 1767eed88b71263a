"""Resolves, validates and maintains the application's configuration.

Every setting can come from four places, highest precedence first:

1. a command-line flag,
2. an environment variable (``SSH_HOST``, ``WORKERS``, ``SYNC_PROFILE``...),
3. the optional ``config.ini`` file,
4. a built-in default.

This module is responsible for:
- Merging those sources into a typed `SyncSettings`.
- Validating the result before any filesystem or network I/O (`ConfigValidator`).
- Creating or updating ``config.ini`` from the bundled template while
  preserving the user's values and comments (`update_config`).
"""
import argparse
import configparser
import dataclasses
import getpass
import logging
import shutil
import sys
import time
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

import configupdater

from .rsync_manager import PROFILES
from .ssh_manager import DEFAULT_CIPHER
from .utils import SyncConfigError

TEMPLATE_PATH = Path(__file__).resolve().parent / 'config.ini.template'
DEFAULT_CONFIG_PATH = Path('~/.config/media-sync/config.ini').expanduser()

DEFAULT_PORT = 2222
DEFAULT_WORKERS = 2
DEFAULT_REMOTE_BASE = '/mnt/media'
DEFAULT_LOCAL_SOURCE = '~/Videos'
VALID_TRANSFER_MODES = ['rsync', 'sftp']
KINDS = {
    'shows': ('Shows', 'LOCAL_SHOWS_DIR', 'shows_dir'),
    'movies': ('Movies', 'LOCAL_MOVIES_DIR', 'movies_dir'),
}
_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


@dataclasses.dataclass
class SyncSettings:
    """The fully resolved settings for one run."""
    kind: str
    host: str
    user: str
    port: int
    local_dir: Path
    remote_base: str
    workers: int = DEFAULT_WORKERS
    profile: str = 'wan'
    compress_level: int = 6
    preallocate: bool = False
    cipher: str = DEFAULT_CIPHER
    transfer_mode: str = 'rsync'
    alias_file: Optional[Path] = None
    password: Optional[str] = None
    dry_run: bool = False

    @property
    def media_type(self) -> str:
        return KINDS[self.kind][0]

    @property
    def episodic(self) -> bool:
        return self.kind == 'shows'


def _pick(cli_value, environ: Mapping[str, str], env_key: str,
          config: configparser.ConfigParser, section: str, option: str, default=None):
    if cli_value not in (None, ''):
        return cli_value
    if environ.get(env_key, '') != '':
        return environ[env_key]
    if config.has_option(section, option) and config.get(section, option).strip():
        return config.get(section, option).strip()
    return default


def _to_int(value, name: str) -> int:
    try:
        return int(str(value).strip(), 10)
    except ValueError:
        raise SyncConfigError(f"{name} must be an integer, got '{value}'")


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def build_settings(kind: str, args: argparse.Namespace, environ: Mapping[str, str],
                   config: configparser.ConfigParser) -> SyncSettings:
    """Merges CLI arguments, environment and config file into `SyncSettings`.

    Raises:
        SyncConfigError: If a numeric setting is not a number or `kind` is unknown.
    """
    if kind not in KINDS:
        raise SyncConfigError(f"Unknown library kind '{kind}'. Must be one of: {', '.join(KINDS)}")
    media_type, local_env, local_option = KINDS[kind]

    local = getattr(args, 'local', None)
    if not local:
        local = _pick(None, environ, local_env, config, 'LOCAL', local_option)
    if not local:
        source = _pick(None, environ, 'LOCAL_SOURCE', config, 'LOCAL', 'source_dir', DEFAULT_LOCAL_SOURCE)
        local = str(Path(source).expanduser() / media_type)

    alias_file = _pick(getattr(args, 'alias_file', None), environ, 'ALIAS_FILE', config, 'SETTINGS', 'alias_file')

    return SyncSettings(
        kind=kind,
        host=_pick(getattr(args, 'host', None), environ, 'SSH_HOST', config, 'REMOTE', 'host', '') or '',
        user=_pick(getattr(args, 'user', None), environ, 'SSH_USER', config, 'REMOTE', 'user') or getpass.getuser(),
        port=_to_int(_pick(getattr(args, 'port', None), environ, 'SSH_PORT', config, 'REMOTE', 'port', DEFAULT_PORT), 'port'),
        local_dir=Path(local).expanduser(),
        remote_base=_pick(getattr(args, 'remote', None), environ, 'REMOTE_BASE_PATH', config, 'REMOTE', 'base_path', DEFAULT_REMOTE_BASE),
        workers=_to_int(_pick(getattr(args, 'workers', None), environ, 'WORKERS', config, 'SETTINGS', 'workers', DEFAULT_WORKERS), 'workers'),
        profile=str(_pick(getattr(args, 'profile', None), environ, 'SYNC_PROFILE', config, 'SETTINGS', 'profile', 'wan')).lower(),
        compress_level=_to_int(_pick(getattr(args, 'compress_level', None), environ, 'COMPRESS_LEVEL', config, 'SETTINGS', 'compress_level', 6), 'compress_level'),
        preallocate=_to_bool(_pick(getattr(args, 'preallocate', None) or None, environ, 'PREALLOCATE', config, 'SETTINGS', 'preallocate', False)),
        cipher=_pick(getattr(args, 'cipher', None), environ, 'SSH_CIPHER', config, 'REMOTE', 'cipher', DEFAULT_CIPHER),
        transfer_mode=str(_pick(getattr(args, 'transfer_mode', None), environ, 'TRANSFER_MODE', config, 'SETTINGS', 'transfer_mode', 'rsync')).lower(),
        alias_file=Path(alias_file).expanduser() if alias_file else None,
        password=environ.get('SSH_PASSWORD') or None,
        dry_run=bool(getattr(args, 'dry_run', False)) or _to_bool(environ.get('DRY_RUN', '')),
    )


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Loads the configuration from the specified .ini file.

    Args:
        config_path: The path to the configuration file. When `None`, the
            default location is used if it exists.

    Returns:
        A `ConfigParser`; empty when no file is available.
    """
    config = configparser.ConfigParser()
    path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
    if path.is_file():
        config.read(path, encoding='utf-8')
        logging.debug(f"Loaded configuration from '{path}'")
    elif config_path:
        logging.warning(f"Configuration file '{path}' not found; using flags and environment only.")
    return config


def update_config(config_path: str, template_path: str = str(TEMPLATE_PATH)) -> None:
    """Updates an existing config.ini from a template, preserving user values.

    Any section or option present in the template but missing from the user's
    file is added with the template's default value. If the file is modified, a
    timestamped backup of the original is written to a ``backup`` subdirectory
    first. If no configuration file exists, one is created from the template.

    Raises:
        SystemExit: If the template is missing or the file cannot be written.
    """
    config_file = Path(config_path).expanduser()
    template_file = Path(template_path)

    if not template_file.is_file():
        logging.error(f"FATAL: Config template '{template_path}' not found.")
        sys.exit(2)

    if not config_file.is_file():
        logging.warning(f"Configuration file not found at '{config_file}'.")
        logging.warning("Creating a new one from the template. Please review and fill it out.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_file, config_file)
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(2)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template_updater = configupdater.ConfigUpdater()
        template_updater.read(template_file, encoding='utf-8')
    except (OSError, configparser.Error) as e:
        logging.error(f"FATAL: Could not read configuration for update: {e}")
        sys.exit(2)

    changes_made = False
    for section_name in template_updater.sections():
        template_section = template_updater[section_name]
        if not updater.has_section(section_name):
            updater.add_section(section_name)
            logging.info(f"CONFIG: Added new section to config: [{section_name}]")
            changes_made = True
        user_section = updater[section_name]
        for key, opt in template_section.items():
            if user_section.has_option(key):
                continue
            user_section.set(key, opt.value)
            changes_made = True
            logging.info(f"CONFIG: Added new option in [{section_name}]: {key}")

    if not changes_made:
        logging.debug("CONFIG: Configuration file is already up-to-date.")
        return

    backup_dir = config_file.parent / 'backup'
    backup_dir.mkdir(exist_ok=True)
    backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
    shutil.copy2(config_file, backup_path)
    logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")
    with config_file.open('w', encoding='utf-8') as f:
        updater.write(f)
    logging.info("CONFIG: Configuration file has been updated with new options.")


class ConfigValidator:
    """Validates resolved `SyncSettings` before a run starts.

    Attributes:
        settings (SyncSettings): The settings to validate.
        errors (List[str]): Fatal problems. Non-empty means the run must not start.
        warnings (List[str]): Non-fatal observations worth reporting.
    """

    def __init__(self, settings: SyncSettings):
        self.settings = settings
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all checks and logs the resulting errors or warnings.

        Returns:
            `True` if there are no errors, `False` otherwise.
        """
        self._check_host()
        self._check_local_dir()
        self._check_numeric_values()
        self._check_choices()
        self._check_alias_file()
        self._check_external_tools()

        for warning in self.warnings:
            logging.warning(f"Configuration: {warning}")
        if self.errors:
            for error in self.errors:
                logging.error(f"Configuration error: {error}")
            return False
        return True

    def _check_host(self) -> None:
        if not self.settings.host.strip():
            self.errors.append("SSH host is not specified (use -h/--host or SSH_HOST).")

    def _check_local_dir(self) -> None:
        if not self.settings.local_dir.is_dir():
            self.errors.append(f"Local directory '{self.settings.local_dir}' does not exist.")

    def _check_numeric_values(self) -> None:
        numeric_options: Tuple[Tuple[str, int, int, int], ...] = (
            ('workers', self.settings.workers, 1, 16),
            ('port', self.settings.port, 1, 65535),
        )
        for option, value, min_val, max_val in numeric_options:
            if value < 1:
                self.errors.append(f"{option} must be a positive integer, got {value}")
            elif option == 'port' and value > max_val:
                self.errors.append(f"port {value} is out of range [1-65535]")
            elif not (min_val <= value <= max_val):
                self.warnings.append(f"{option}={value} is outside recommended range [{min_val}-{max_val}]")
        if not (0 <= self.settings.compress_level <= 22):
            self.errors.append(f"compress_level must be between 0 and 22, got {self.settings.compress_level}")

    def _check_choices(self) -> None:
        if self.settings.profile not in PROFILES:
            self.errors.append(f"Invalid profile '{self.settings.profile}'. Must be one of: {', '.join(PROFILES)}")
        if self.settings.transfer_mode not in VALID_TRANSFER_MODES:
            self.errors.append(f"Invalid transfer_mode '{self.settings.transfer_mode}'. Must be one of: {', '.join(VALID_TRANSFER_MODES)}")
        if self.settings.transfer_mode == 'sftp' and self.settings.profile == 'wan':
            self.warnings.append("profile 'wan' has no effect with transfer_mode 'sftp'")

    def _check_alias_file(self) -> None:
        alias_file = self.settings.alias_file
        if alias_file is not None and not alias_file.is_file():
            self.errors.append(f"Alias file '{alias_file}' does not exist.")
        if alias_file is not None and not self.settings.episodic:
            self.warnings.append("alias_file is ignored for movie libraries")

    def _check_external_tools(self) -> None:
        if self.settings.transfer_mode == 'rsync' and not self.settings.dry_run:
            for tool in ('rsync', 'ssh'):
                if shutil.which(tool) is None:
                    self.errors.append(f"transfer_mode 'rsync' requires '{tool}' in PATH")
