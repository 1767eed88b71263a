"""
rsync_manager.py - Rsync transport tuning

Encapsulates:
1. Transport profiles (LAN vs WAN) as an immutable `TransportConfig`
2. One-time capability probing of the local rsync binary
3. Flag selection for the copy command and parsing of its itemized output
"""

import dataclasses
import logging
import shutil
import subprocess
from typing import List, Tuple

logger = logging.getLogger(__name__)

PROFILES = ('lan', 'wan')

# Formats that gain nothing from rsync's stream compression
SKIP_COMPRESS_EXTENSIONS: Tuple[str, ...] = (
    '3gp', '7z', 'avi', 'bz2', 'deb', 'dmg', 'flac', 'gz', 'iso', 'jpg', 'jpeg',
    'm4a', 'm4v', 'mkv', 'mov', 'mp3', 'mp4', 'mpeg', 'mpg', 'ogg', 'png', 'rar',
    'rpm', 'tbz', 'tgz', 'webm', 'wma', 'wmv', 'xz', 'zip',
)


@dataclasses.dataclass(frozen=True)
class TransportConfig:
    """Tuning parameters for one run, chosen once from a profile name."""
    profile: str = 'wan'
    compress_level: int = 6
    compress_choice: str = 'zstd'
    preallocate: bool = False
    resumable: bool = True
    partial_dir: str = '.rsync-partial'
    skip_compress: Tuple[str, ...] = SKIP_COMPRESS_EXTENSIONS

    @classmethod
    def for_profile(cls, profile: str, compress_level: int = 6, preallocate: bool = False,
                    resumable: bool = True) -> "TransportConfig":
        profile = profile.lower()
        if profile not in PROFILES:
            raise ValueError(f"Unknown transport profile '{profile}'. Must be one of: {', '.join(PROFILES)}")
        return cls(profile=profile, compress_level=compress_level,
                   preallocate=preallocate, resumable=resumable)

    @property
    def is_lan(self) -> bool:
        return self.profile == 'lan'


@dataclasses.dataclass(frozen=True)
class TransportCapabilities:
    """What the local rsync binary supports, probed once per session."""
    compress_choice: bool = False
    append_verify: bool = False
    preallocate: bool = False
    protect_args: bool = False
    escapes_args: bool = False


def probe_capabilities(rsync_binary: str = 'rsync') -> TransportCapabilities:
    """Inspects `rsync --help` to find out which optional flags are available."""
    if shutil.which(rsync_binary) is None:
        logger.warning(f"'{rsync_binary}' was not found in PATH; assuming no optional features.")
        return TransportCapabilities()
    try:
        result = subprocess.run([rsync_binary, '--help'], capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not probe rsync capabilities: {e}")
        return TransportCapabilities()

    help_text = result.stdout + result.stderr
    capabilities = TransportCapabilities(
        compress_choice='--compress-choice' in help_text,
        append_verify='--append-verify' in help_text,
        preallocate='--preallocate' in help_text,
        protect_args='--protect-args' in help_text or '--secluded-args' in help_text,
        # --old-args exists only where remote args are escaped by default
        escapes_args='--old-args' in help_text,
    )
    logger.debug(f"Probed rsync capabilities: {capabilities}")
    return capabilities


def build_rsync_options(config: TransportConfig, capabilities: TransportCapabilities,
                        remote_shell: str) -> List[str]:
    """Builds the rsync option list (everything except the source and destination)."""
    options = [
        '-a',
        '-h',
        '--ignore-existing',    # never overwrite what is already on the server
        '--partial',
        f'--partial-dir={config.partial_dir}',
        '--itemize-changes',
    ]
    if capabilities.protect_args:
        options.append('--protect-args')

    if config.is_lan:
        options.extend(['--no-compress', '--whole-file'])
    else:
        options.append('--compress')
        if capabilities.compress_choice:
            options.extend([f'--compress-choice={config.compress_choice}',
                            f'--compress-level={config.compress_level}'])
        options.append(f"--skip-compress={'/'.join(config.skip_compress)}")
        if config.resumable and capabilities.append_verify:
            options.append('--append-verify')

    if config.preallocate and capabilities.preallocate:
        options.append('--preallocate')

    options.extend(['-e', remote_shell])
    return options


def parse_itemized_output(stdout: str) -> bool:
    """Returns True if rsync's `--itemize-changes` output shows a file was sent.

    Sent files are reported as ``<f+++++++++ name`` (or ``<f.st...... name``);
    files skipped by ``--ignore-existing`` produce no line at all.
    """
    return any(line.startswith(('<f', '>f')) for line in stdout.splitlines())
