import json
import logging
import os
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .. import config
from ..models import MediaFile

_DUP_INDEX_RE = re.compile(r'^(?P<base>.*?)(?P<idx>\(\d+\))$')


def strip_sidecar_suffix(base: str) -> str:
    """
    Removes '.supplemental-metadata' or any truncation of it down to '.supp'.
    Checked from longest to shortest so the most specific form wins.
    """
    for length in range(len(config.SIDECAR_FULL_SUFFIX), config.SIDECAR_MIN_SUFFIX_LEN - 1, -1):
        if base.endswith(config.SIDECAR_FULL_SUFFIX[:length]):
            return base[:-length]
    return base


def sidecar_media_name(json_name: str) -> Optional[str]:
    """
    Media filename a sidecar describes, from the sidecar's own name.

    IMG_1.jpg.json -> IMG_1.jpg
    IMG_1.jpg.supplemental-metadata.json -> IMG_1.jpg
    IMG_1.jpg.supplemental-metadata(1).json -> IMG_1(1).jpg
    IMG_1.jpg(1).json -> IMG_1(1).jpg
    """
    if json_name in config.IGNORED_SIDECAR_NAMES or not json_name.lower().endswith('.json'):
        return None
    base = json_name[:-5]

    # Takeout puts the duplicate index after the whole name: IMG.jpg(1).json
    dup = ''
    m = _DUP_INDEX_RE.match(base)
    if m:
        base, dup = m.group('base'), m.group('idx')

    base = strip_sidecar_suffix(base).rstrip('.')
    if not base:
        return None
    if dup:
        stem, ext = os.path.splitext(base)
        base = f"{stem}{dup}{ext}"
    return base


class DiskScanner:
    """
    Walks a Takeout export and pairs every media file with its JSON sidecar.
    """

    def discover(self, root: Path, skip_dirs: Optional[Set[Path]] = None) -> List[MediaFile]:
        skip_dirs = skip_dirs or set()
        by_dir: Dict[Path, List[Path]] = defaultdict(list)
        for path in self._iter_files(root, skip_dirs):
            by_dir[path.parent].append(path)

        items: List[MediaFile] = []
        for directory, files in by_dir.items():
            items.extend(self._pair_directory(files))

        logging.info(f"Discovered {len(items)} media files under {root} "
                     f"({sum(1 for i in items if i.sidecar_path)} with sidecars)")
        return items

    def _pair_directory(self, files: List[Path]) -> Iterator[MediaFile]:
        media = [p for p in files if self._classify(p) != 'other']
        jsons = [p for p in files if p.suffix.lower() in config.SIDECAR_EXTS]

        by_name: Dict[str, Path] = {}
        unclaimed: List[Path] = []
        for j in jsons:
            name = sidecar_media_name(j.name)
            if name is None:
                continue
            if name in by_name:
                unclaimed.append(j)
            else:
                by_name[name] = j

        # Name truncation can hide the link; the sidecar's title still has it
        media_names = {m.name for m in media}
        titles: Dict[str, Path] = {}
        for j in unclaimed + [p for n, p in by_name.items() if n not in media_names]:
            title = self._read_title(j)
            if title and title not in titles:
                titles[title] = j

        for path in media:
            sidecar = by_name.get(path.name) or titles.get(path.name) or self._prefix_match(path, by_name)
            try:
                size = path.stat().st_size
            except OSError:
                size = None
            yield MediaFile(path=path, sidecar_path=sidecar, kind=self._classify(path), size_bytes=size)

    def _prefix_match(self, media: Path, by_name: Dict[str, Path]) -> Optional[Path]:
        """Takeout truncates long names (47 chars); match a sidecar named after a prefix."""
        matches = [j for n, j in by_name.items() if len(n) >= 10 and media.name.startswith(n)]
        return matches[0] if len(matches) == 1 else None

    def _read_title(self, path: Path) -> Optional[str]:
        try:
            with path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return None
        title = data.get('title') if isinstance(data, dict) else None
        return title if isinstance(title, str) else None

    def _classify(self, path: Path) -> str:
        if path.name.startswith("._"):
            return 'other'
        return config.EXT_TO_KIND.get(path.suffix.lower(), 'other')

    def _iter_files(self, root: Path, skip_dirs: Set[Path]) -> Iterator[Path]:
        """Depth-first walker using os.scandir for speed."""
        stack = [root]
        while stack:
            current = stack.pop()
            if skip_dirs and any(sd == current or sd in current.parents for sd in skip_dirs):
                continue

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except (OSError, PermissionError):
                logging.warning(f"Permission denied: {current}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                if e.is_dir(follow_symlinks=False):
                    dirs.append(Path(e.path))
                elif e.is_file(follow_symlinks=False):
                    files.append(Path(e.path))

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)

            for f in files:
                yield f
