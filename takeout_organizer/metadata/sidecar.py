import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..exceptions import SidecarUnreadableError
from ..models import CandidateTimestamp, SidecarRecord, TimestampSource
from .timeutil import normalize, parse_offset


class SidecarReader:
    """
    Reads Google Takeout JSON sidecars.

    The capture time is `photoTakenTime.timestamp` (epoch seconds, usually
    a JSON string). An optional offset under `photoTakenTime.offset` or
    top-level `timezoneOffset` only changes the wall clock, not the instant.
    """

    def read(self, path: Path) -> SidecarRecord:
        """
        Parses the sidecar. Raises SidecarUnreadableError if the file exists
        but is not a JSON object; a missing or malformed timestamp field
        just leaves `taken_at` empty.
        """
        try:
            with path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SidecarUnreadableError(f"Could not parse sidecar {path}: {e}") from e

        if not isinstance(data, dict):
            raise SidecarUnreadableError(f"Sidecar {path} is not a JSON object")

        title = data.get('title') if isinstance(data.get('title'), str) else None
        return SidecarRecord(path=path, taken_at=self._parse_taken_at(data), title=title)

    def candidate(self, path: Optional[Path]) -> Optional[CandidateTimestamp]:
        """
        Returns the sidecar candidate, or None when there is no sidecar or it
        has no usable timestamp. Unreadable sidecars propagate so the caller
        can note the anomaly.
        """
        if path is None or not path.exists():
            return None
        record = self.read(path)
        if record.taken_at is None:
            logging.debug(f"No photoTakenTime in {path}")
            return None
        return CandidateTimestamp(record.taken_at, TimestampSource.SIDECAR)

    def _parse_taken_at(self, data: dict) -> Optional[datetime]:
        taken = data.get('photoTakenTime')
        if not isinstance(taken, dict):
            return None

        seconds = self._as_epoch(taken.get('timestamp'))
        if not seconds:
            # Missing, malformed, or the "0" placeholder
            return None

        try:
            dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

        tz = parse_offset(taken.get('offset', data.get('timezoneOffset')))
        if tz is not None:
            dt = dt.astimezone(tz)
        return normalize(dt)

    def _as_epoch(self, raw: Any) -> Optional[int]:
        if isinstance(raw, bool):
            return None
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str):
            try:
                return int(raw.strip())
            except ValueError:
                return None
        return None
