import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .. import config
from ..exceptions import NoTimestampAvailableError
from ..models import AuthoritativeTimestamp, CandidateTimestamp, TimestampSource
from .timeutil import same_instant_and_offset


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampReconciler:
    """
    Picks the authoritative capture time.

    Preference: sidecar > embedded > filename > filesystem. A candidate
    outside [sanity_floor, now] is discarded and the next one is tried.
    """

    def __init__(self,
                 sanity_floor: datetime = config.SANITY_FLOOR,
                 clock: Callable[[], datetime] = utc_now):
        self.sanity_floor = sanity_floor
        self.clock = clock

    def is_plausible(self, candidate: CandidateTimestamp) -> bool:
        return self.sanity_floor <= candidate.value <= self.clock()

    def reconcile(self,
                  sidecar: Optional[CandidateTimestamp],
                  embedded: Optional[CandidateTimestamp],
                  fallback: Optional[CandidateTimestamp],
                  compare_offsets: bool = True) -> AuthoritativeTimestamp:
        """
        Args:
            fallback: the single filename- or filesystem-derived candidate.
            compare_offsets: whether the embedded container records a UTC
                offset; if not, only the instant decides if a rewrite is due.

        Raises:
            NoTimestampAvailableError: nothing plausible was supplied.
        """
        candidates = sorted((c for c in (sidecar, embedded, fallback) if c is not None),
                            key=lambda c: c.rank)

        for candidate in candidates:
            if not self.is_plausible(candidate):
                logging.debug(f"Discarding implausible {candidate.source.value} timestamp {candidate.value.isoformat()}")
                continue
            return AuthoritativeTimestamp(
                value=candidate.value,
                source=candidate.source,
                needs_rewrite=self._needs_rewrite(candidate, embedded, compare_offsets),
            )

        tried = ", ".join(f"{c.source.value}={c.value.isoformat()}" for c in candidates) or "none"
        raise NoTimestampAvailableError(f"No plausible timestamp (candidates: {tried})")

    def _needs_rewrite(self,
                       chosen: CandidateTimestamp,
                       embedded: Optional[CandidateTimestamp],
                       compare_offsets: bool) -> bool:
        if chosen.source is TimestampSource.EMBEDDED:
            return False
        if embedded is None:
            return True
        if compare_offsets:
            return not same_instant_and_offset(chosen.value, embedded.value)
        return chosen.value != embedded.value
