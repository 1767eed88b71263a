"""Turns raw title fragments into canonical show directory names.

A raw fragment such as ``The.Office.US`` goes through three steps:

1. separator cleanup (``The Office US``),
2. an optional alias lookup (``The Office US`` -> ``The Office (US)``),
3. year inference from the original file name (``... (2005)``).

The alias file is plain text, one ``key = value`` mapping per line::

    # comments and blank lines are ignored
    The Office US = The Office (US)
"""
import logging
import re
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r'[._\-]')
_WHITESPACE = re.compile(r'\s+')
YEAR_PATTERN = re.compile(r'(?<![A-Za-z0-9])[\[(]?((?:1[2-9]|2\d)\d\d)[\])]?(?![A-Za-z0-9])')
TRAILING_YEAR = re.compile(r'\(\d{4}\)$')


def clean_title(raw_title: str) -> str:
    """Replaces '.', '_' and '-' with spaces and collapses whitespace."""
    title = _SEPARATORS.sub(' ', raw_title)
    return _WHITESPACE.sub(' ', title).strip()


def infer_year(file_name: str) -> Optional[str]:
    """Returns the first plausible 4-digit year (1200-2999) in a file name."""
    match = YEAR_PATTERN.search(file_name)
    return match.group(1) if match else None


class AliasTable:
    """An exact-match mapping of normalized show titles to replacement titles.

    Keys are passed through `clean_title` when loaded so that ``Show.Name`` and
    ``Show Name`` refer to the same entry. Matching is case-sensitive.
    """

    def __init__(self, aliases: Optional[Mapping[str, str]] = None):
        self._aliases: Dict[str, str] = {}
        for key, value in (aliases or {}).items():
            self._add(key, value)

    def _add(self, key: str, value: str) -> bool:
        key = clean_title(key)
        if key in self._aliases:
            return False
        self._aliases[key] = value.strip()
        return True

    @classmethod
    def load(cls, path: Path) -> "AliasTable":
        """Reads an alias file. The first occurrence of a key wins."""
        table = cls()
        with open(path, encoding='utf-8') as f:
            for line_no, raw_line in enumerate(f, start=1):
                line = raw_line.strip()
                if not line or line.startswith('#'):
                    continue
                key, sep, value = line.partition('=')
                if not sep or not key.strip() or not value.strip():
                    logger.warning(f"Ignoring malformed alias on line {line_no} of '{path}': {line}")
                    continue
                if not table._add(key, value):
                    logger.warning(f"Ignoring duplicate alias '{key.strip()}' on line {line_no} of '{path}'")
        logger.info(f"Loaded {len(table)} show alias(es) from '{path}'")
        return table

    def lookup(self, title: str) -> Optional[str]:
        return self._aliases.get(title)

    def __len__(self) -> int:
        return len(self._aliases)


class PathNormalizer:
    """Produces a stable CanonicalShowName for each (raw title, file name) pair."""

    def __init__(self, aliases: Optional[AliasTable] = None):
        self.aliases = aliases or AliasTable()
        self._cache: Dict[Tuple[str, str], str] = {}

    def normalize(self, raw_title: str, file_name: str) -> str:
        key = (raw_title, file_name)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        title = clean_title(raw_title)
        alias = self.aliases.lookup(title)
        if alias is not None:
            logger.debug(f"Alias applied: '{title}' -> '{alias}'")
            title = alias

        if not TRAILING_YEAR.search(title):
            year = infer_year(file_name)
            if year:
                # A bare or bracketed trailing year is rewritten, never repeated
                title = re.sub(rf'\s+(?:\[{year}\]|{year})$', '', title)
                title = f"{title} ({year})"

        self._cache[key] = title
        return title
