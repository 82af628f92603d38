from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class TimestampSource(Enum):
    """Where a candidate timestamp came from. Lower rank wins."""
    SIDECAR = 'sidecar'
    EMBEDDED = 'embedded'
    FILENAME = 'filename'
    FILESYSTEM = 'filesystem'

    @property
    def rank(self) -> int:
        return _SOURCE_RANKS[self]


_SOURCE_RANKS = {
    TimestampSource.SIDECAR: 0,
    TimestampSource.EMBEDDED: 1,
    TimestampSource.FILENAME: 2,
    TimestampSource.FILESYSTEM: 3,
}


class OutcomeKind(Enum):
    UPDATED = 'updated'        # metadata rewritten and moved
    MOVED_ONLY = 'moved_only'  # metadata already correct, moved
    SKIPPED = 'skipped'        # already in place, or identical duplicate
    FAILED = 'failed'


class ErrorKind(Enum):
    SIDECAR_UNREADABLE = 'sidecar_unreadable'
    UNSUPPORTED_FORMAT = 'unsupported_format'
    NO_TIMESTAMP_AVAILABLE = 'no_timestamp_available'
    IO_FAILURE = 'io_failure'
    DESTINATION_CONFLICT = 'destination_conflict'


@dataclass
class MediaFile:
    """
    A discovered media file paired with its (optional) sidecar.
    """
    path: Path
    sidecar_path: Optional[Path] = None
    kind: str = 'other'     # image/video/other
    size_bytes: Optional[int] = None
    # Whether the container already held a capture time; None until read
    has_embedded: Optional[bool] = None


@dataclass
class SidecarRecord:
    path: Path
    taken_at: Optional[datetime] = None   # aware; UTC unless an offset was given
    title: Optional[str] = None


@dataclass(frozen=True)
class CandidateTimestamp:
    value: datetime   # always timezone-aware, whole seconds
    source: TimestampSource

    @property
    def rank(self) -> int:
        return self.source.rank


@dataclass(frozen=True)
class AuthoritativeTimestamp:
    value: datetime
    source: TimestampSource
    needs_rewrite: bool


@dataclass
class FileResult:
    """
    Terminal record for one media file.
    """
    original_path: Path
    outcome: OutcomeKind
    final_path: Optional[Path] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    timestamp: Optional[AuthoritativeTimestamp] = None
    # Non-fatal anomalies recovered along the way (e.g. unreadable sidecar)
    warnings: List[ErrorKind] = field(default_factory=list)
    media: Optional[MediaFile] = None
    container: Optional[str] = None   # ContainerFormat value, once sniffed


@dataclass
class BatchSummary:
    """
    Aggregate result of one pipeline run. Built by the orchestrator
    from per-file results; never shared between workers.
    """
    results: List[FileResult] = field(default_factory=list)
    outcome_counts: Dict[OutcomeKind, int] = field(default_factory=lambda: {k: 0 for k in OutcomeKind})
    error_counts: Dict[ErrorKind, int] = field(default_factory=lambda: {k: 0 for k in ErrorKind})
    warning_counts: Dict[ErrorKind, int] = field(default_factory=lambda: {k: 0 for k in ErrorKind})
    interrupted: bool = False
    # Files never started because the run was interrupted
    unprocessed: List[Path] = field(default_factory=list)

    def add(self, result: FileResult):
        self.results.append(result)
        self.outcome_counts[result.outcome] += 1
        if result.error_kind is not None:
            self.error_counts[result.error_kind] += 1
        for kind in result.warnings:
            self.warning_counts[kind] += 1

    @property
    def failures(self) -> List[FileResult]:
        return [r for r in self.results if r.outcome is OutcomeKind.FAILED]

    @property
    def has_failures(self) -> bool:
        return self.outcome_counts[OutcomeKind.FAILED] > 0

    def to_dict(self) -> dict:
        """Machine-checkable form of the summary."""
        return {
            'counts': {k.value: v for k, v in self.outcome_counts.items()},
            'errors': {k.value: v for k, v in self.error_counts.items() if v},
            'warnings': {k.value: v for k, v in self.warning_counts.items() if v},
            'failed': [
                {'path': str(r.original_path), 'kind': r.error_kind.value if r.error_kind else None, 'message': r.message}
                for r in self.failures
            ],
            'interrupted': self.interrupted,
            'unprocessed': [str(p) for p in self.unprocessed],
        }
