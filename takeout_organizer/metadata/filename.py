import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..models import CandidateTimestamp, TimestampSource
from .timeutil import normalize

# (pattern, group layout) in priority order. Groups are Y, M, D[, h, m, s].
_PATTERNS: List[Tuple[re.Pattern, Callable[[re.Match], Tuple[int, ...]]]] = [
    # IMG_20200927_123456, VID_20240504_113916789
    (re.compile(r'(?<!\d)(\d{4})(\d{2})(\d{2})[_-](\d{2})(\d{2})(\d{2})'),
     lambda m: tuple(int(g) for g in m.groups())),
    # Screenshot_2017-01-26-13-52-51
    (re.compile(r'(?<!\d)(\d{4})-(\d{2})-(\d{2})-(\d{2})-(\d{2})-(\d{2})(?!\d)'),
     lambda m: tuple(int(g) for g in m.groups())),
    # 20200927
    (re.compile(r'(?<!\d)(\d{4})(\d{2})(\d{2})(?!\d)'),
     lambda m: tuple(int(g) for g in m.groups())),
    # 2017-01-26_photo
    (re.compile(r'(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)'),
     lambda m: tuple(int(g) for g in m.groups())),
    # 2010-03_Announcement: year-month only, day 1
    (re.compile(r'^(\d{4})-(\d{2})[_-]'),
     lambda m: (int(m.group(1)), int(m.group(2)), 1)),
]


class FilenameTimestampExtractor:
    """
    Last-resort timestamp source: a date encoded in the filename, falling
    back to filesystem birth/modification time. Never raises.
    """

    def candidate(self, path: Path) -> Optional[CandidateTimestamp]:
        dt = self.from_filename(path.name)
        if dt is not None:
            return CandidateTimestamp(dt, TimestampSource.FILENAME)

        dt = self.from_filesystem(path)
        if dt is not None:
            return CandidateTimestamp(dt, TimestampSource.FILESYSTEM)
        return None

    def from_filename(self, name: str) -> Optional[datetime]:
        """First recognisable date in the stem, interpreted as UTC."""
        stem = Path(name).stem
        for pattern, fields in _PATTERNS:
            for match in pattern.finditer(stem):
                try:
                    return normalize(datetime(*fields(match), tzinfo=timezone.utc))
                except ValueError:
                    # e.g. month 13 or Feb 30; try the next occurrence
                    continue
        return None

    def from_filesystem(self, path: Path) -> Optional[datetime]:
        try:
            st = os.stat(path)
        except OSError as e:
            logging.debug(f"Cannot stat {path}: {e}")
            return None
        # st_birthtime exists on macOS/BSD (and Windows on newer Pythons)
        ts = getattr(st, 'st_birthtime', None) or st.st_mtime
        try:
            return normalize(datetime.fromtimestamp(ts, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
