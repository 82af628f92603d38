from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .. import config


@dataclass(frozen=True)
class CollisionPolicy:
    """
    How same-named files at the destination are told apart.

    compare: 'sha256' (content hash) or 'bytes' (chunked byte compare).
    suffix_format: receives stem, n and ext; n starts at 1.
    """
    compare: str = 'sha256'
    suffix_format: str = config.SUFFIX_FORMAT
    max_attempts: int = config.MAX_DISAMBIGUATION_ATTEMPTS

    def __post_init__(self):
        if self.compare not in ('sha256', 'bytes'):
            raise ValueError(f"Unknown compare mode: {self.compare}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


class DestinationPlanner:
    """
    Pure mapping from capture time to <root>/YYYY/MM. Computed in UTC so
    the layout does not depend on the machine's local zone.
    """

    def __init__(self, dest_root: Path, policy: CollisionPolicy = CollisionPolicy()):
        self.dest_root = dest_root
        self.policy = policy

    def directory_for(self, ts: datetime) -> Path:
        utc = ts.astimezone(timezone.utc) if ts.tzinfo else ts
        return self.dest_root / config.FOLDER_PATTERN.format(year=utc.year, month=utc.month)

    def path_for(self, ts: datetime, filename: str) -> Path:
        return self.directory_for(ts) / filename

    def candidate_names(self, filename: str) -> Iterator[str]:
        """The original name, then disambiguated names up to the policy limit."""
        yield filename
        stem = Path(filename).stem
        ext = Path(filename).suffix
        for n in range(1, self.policy.max_attempts + 1):
            yield self.policy.suffix_format.format(stem=stem, n=n, ext=ext)
