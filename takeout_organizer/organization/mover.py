import logging
import os
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from ..exceptions import DestinationConflictError
from ..storage import discard, move_file, retry_io
from .hasher import FileHasher
from .rules import CollisionPolicy, DestinationPlanner


class PlacementKind(Enum):
    MOVED = 'moved'            # now lives at a new path
    REPLACED = 'replaced'      # was already in place; rewritten bytes swapped in
    IN_PLACE = 'in_place'      # already in place, nothing to do
    DUPLICATE = 'duplicate'    # identical file already at destination; source kept


@dataclass
class Placement:
    kind: PlacementKind
    path: Path


class FileMover:
    """
    Relocates media into <root>/YYYY/MM.

    The check-then-move sequence for a destination directory runs under
    that directory's lock, so two workers never claim the same free slot.
    """

    def __init__(self, planner: DestinationPlanner, hasher: Optional[FileHasher] = None):
        self.planner = planner
        self.policy: CollisionPolicy = planner.policy
        self.hasher = hasher or FileHasher()
        self._dir_locks: Dict[Path, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, directory: Path) -> threading.Lock:
        with self._locks_guard:
            return self._dir_locks[directory]

    def place(self, media: Path, ts: datetime, payload: Optional[Path] = None) -> Placement:
        """
        Puts the file at its dated destination.

        Args:
            media: the original file.
            ts: authoritative capture time.
            payload: a staged, rewritten copy of `media` to install instead
                of the original. The original is only removed once the
                payload sits at the destination.

        Raises:
            DestinationConflictError: every candidate name is taken by a different file.
            StorageError: the filesystem refused a step.
        """
        payload = payload or media
        rewritten = payload != media
        dest_dir = self.planner.directory_for(ts)

        with self._lock_for(dest_dir):
            retry_io(lambda: dest_dir.mkdir(parents=True, exist_ok=True), f"creating {dest_dir}")

            for name in self.planner.candidate_names(media.name):
                slot = dest_dir / name

                if not slot.exists():
                    self._install(media, payload, slot, rewritten)
                    self._stamp(slot, ts)
                    return Placement(PlacementKind.MOVED, slot)

                if os.path.samefile(slot, media):
                    if not rewritten:
                        return Placement(PlacementKind.IN_PLACE, slot)
                    retry_io(lambda: os.replace(payload, slot), f"replacing {slot}")
                    self._stamp(slot, ts)
                    return Placement(PlacementKind.REPLACED, slot)

                if self._same_content(slot, payload):
                    logging.info(f"Identical file already at {slot}; leaving {media} in place")
                    if rewritten:
                        discard(payload)
                    return Placement(PlacementKind.DUPLICATE, slot)

                logging.debug(f"{slot} holds a different file; trying next name")

        raise DestinationConflictError(
            f"No free name for {media.name} in {dest_dir} after {self.policy.max_attempts} attempts")

    def _install(self, media: Path, payload: Path, slot: Path, rewritten: bool):
        retry_io(lambda: move_file(payload, slot), f"moving {payload} -> {slot}")
        if not rewritten:
            return
        try:
            retry_io(lambda: media.unlink(), f"removing original {media}")
        except BaseException:
            # Roll back so the original stays the only copy
            discard(slot)
            raise

    def _same_content(self, a: Path, b: Path) -> bool:
        return retry_io(lambda: self.hasher.same_content(a, b, self.policy.compare), f"comparing {a} and {b}")

    def _stamp(self, path: Path, ts: datetime):
        """File times mirror the capture time."""
        epoch = ts.timestamp()
        try:
            os.utime(path, (epoch, epoch))
        except OSError as e:
            logging.warning(f"Could not set file times on {path}: {e}")
