import io
import logging
import os
import shutil
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Set, Tuple

import exifread
import piexif

from .. import config
from ..exceptions import UnsupportedFormatError
from ..models import CandidateTimestamp, TimestampSource
from ..storage import discard, retry_io, staging_path
from .timeutil import format_offset, normalize, parse_offset

# Unknown tags come back from exifread as 'EXIF Tag 0x....'
_OFFSET_TAG_FALLBACKS = {
    'EXIF OffsetTime': 'EXIF Tag 0x9010',
    'EXIF OffsetTimeOriginal': 'EXIF Tag 0x9011',
    'EXIF OffsetTimeDigitized': 'EXIF Tag 0x9012',
}

# ISO-BMFF brands that are still images (HEIF family) rather than movies
_STILL_IMAGE_BRANDS = {b'heic', b'heix', b'heim', b'heis', b'hevc', b'mif1', b'msf1', b'avif'}
_QUICKTIME_TOP_BOXES = {b'ftyp', b'moov', b'wide', b'free', b'mdat', b'skip', b'pnot'}

# QuickTime counts seconds from 1904-01-01 UTC
_QT_EPOCH = datetime(1904, 1, 1, tzinfo=timezone.utc)


class ContainerFormat(Enum):
    JPEG = 'jpeg'
    QUICKTIME = 'quicktime'
    UNSUPPORTED = 'unsupported'


class MetadataContainer(ABC):
    """
    Capability interface over one embedded-metadata container format.
    """
    format: ContainerFormat
    # Whether the container records a UTC offset next to the timestamp
    stores_offset: bool = False

    @abstractmethod
    def read_timestamp(self, path: Path) -> Optional[datetime]:
        """Existing capture time, or None if the field is absent."""

    @abstractmethod
    def write_timestamp(self, path: Path, value: datetime, target: Path):
        """Writes a copy of `path` with the capture time set to `value` into `target`."""


# --- JPEG / EXIF ---

def split_jpeg_segments(data: bytes) -> Tuple[List[bytes], bytes]:
    """
    Splits a JPEG into its header segments (SOI first) and the remainder
    starting at SOS. Raises UnsupportedFormatError on broken structure.
    """
    if data[:2] != b'\xff\xd8':
        raise UnsupportedFormatError("Missing JPEG SOI marker")

    segments = [data[:2]]
    pos = 2
    while True:
        if pos + 2 > len(data) or data[pos] != 0xFF:
            raise UnsupportedFormatError(f"Corrupt JPEG marker at offset {pos}")
        # Fill bytes before a marker are legal
        marker_pos = pos
        while pos < len(data) and data[pos] == 0xFF:
            pos += 1
        if pos >= len(data):
            raise UnsupportedFormatError("Truncated JPEG header")
        marker = data[pos]
        pos += 1

        if marker in (0xDA, 0xD9):  # SOS / EOI: entropy-coded data follows
            return segments, data[marker_pos:]
        if 0xD0 <= marker <= 0xD7 or marker == 0x01:
            segments.append(data[marker_pos:pos])
            continue

        if pos + 2 > len(data):
            raise UnsupportedFormatError("Truncated JPEG segment length")
        (length,) = struct.unpack('>H', data[pos:pos + 2])
        end = pos + length
        if length < 2 or end > len(data):
            raise UnsupportedFormatError(f"JPEG segment 0x{marker:02X} overruns file")
        segments.append(data[marker_pos:end])
        pos = end


def _is_exif_segment(seg: bytes) -> bool:
    return seg[:2] == b'\xff\xe1' and seg[4:10] == b'Exif\x00\x00'


# Byte size of one value of each TIFF field type
_TIFF_TYPE_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 6: 1, 7: 1, 8: 2, 9: 4, 10: 8, 11: 4, 12: 8}
_TIFF_ASCII = 2
_EXIF_POINTER, _GPS_POINTER, _INTEROP_POINTER = 0x8769, 0x8825, 0xA005
# piexif rewrites these itself; their values are offsets, not data
_POINTER_TAGS = {_EXIF_POINTER, _GPS_POINTER, _INTEROP_POINTER}
_MAKER_NOTE = piexif.ExifIFD.MakerNote


@dataclass
class IfdEntry:
    tag: int
    type: int
    count: int
    value_pos: int  # where the value bytes start, relative to the TIFF header


class TiffLayout:
    """
    Raw view of the IFDs inside an Exif block, keyed the way piexif keys
    its dict ('0th', 'Exif', 'GPS', 'Interop', '1st'). Nothing is decoded;
    only the entry positions are recorded so values can be patched in place.
    """

    def __init__(self, tiff: bytes):
        self.tiff = tiff
        if tiff[:2] == b'II':
            self.endian = '<'
        elif tiff[:2] == b'MM':
            self.endian = '>'
        else:
            raise UnsupportedFormatError("Exif block has no TIFF byte-order mark")
        self.ifds: Dict[str, Dict[int, IfdEntry]] = {}
        self._seen: Set[int] = set()

        next_ifd = self._read_ifd('0th', self._u32(4))
        if next_ifd:
            self._read_ifd('1st', next_ifd)
        for parent, tag, name in (('0th', _EXIF_POINTER, 'Exif'), ('0th', _GPS_POINTER, 'GPS'),
                                  ('Exif', _INTEROP_POINTER, 'Interop')):
            entry = self.ifds.get(parent, {}).get(tag)
            if entry is not None:
                self._read_ifd(name, self._u32(entry.value_pos))

    def _u16(self, pos: int) -> int:
        if pos + 2 > len(self.tiff):
            raise UnsupportedFormatError(f"Exif block truncated at {pos}")
        return struct.unpack(self.endian + 'H', self.tiff[pos:pos + 2])[0]

    def _u32(self, pos: int) -> int:
        if pos + 4 > len(self.tiff):
            raise UnsupportedFormatError(f"Exif block truncated at {pos}")
        return struct.unpack(self.endian + 'I', self.tiff[pos:pos + 4])[0]

    def _read_ifd(self, name: str, offset: int) -> int:
        """Records one IFD's entries and returns the offset of the IFD chained after it."""
        if offset in self._seen:
            raise UnsupportedFormatError(f"Exif IFD loop at {offset}")
        self._seen.add(offset)

        entries: Dict[int, IfdEntry] = {}
        count = self._u16(offset)
        for i in range(count):
            pos = offset + 2 + 12 * i
            tag, field_type, n = self._u16(pos), self._u16(pos + 2), self._u32(pos + 4)
            size = _TIFF_TYPE_SIZES.get(field_type, 1) * n
            value_pos = pos + 8 if size <= 4 else self._u32(pos + 8)
            if value_pos + size > len(self.tiff):
                raise UnsupportedFormatError(f"Exif tag 0x{tag:04X} points outside the block")
            entries[tag] = IfdEntry(tag, field_type, n, value_pos)
        self.ifds[name] = entries
        return self._u32(offset + 2 + 12 * count)


def _fits(entry: Optional[IfdEntry], value: bytes) -> bool:
    return entry is not None and entry.type == _TIFF_ASCII and entry.count >= len(value)


class ExifJpegContainer(MetadataContainer):
    """
    JPEG with an (optional) APP1 Exif segment.

    Reads with exifread. Writes overwrite the date and offset values in
    place when the fields already exist, so the IFD layout (unknown tags,
    MakerNote offsets) is untouched. Only when a field has to be added is
    the Exif payload regenerated with piexif, and only if piexif would
    carry every existing entry over. Every other segment and the scan data
    are copied byte for byte.
    """
    format = ContainerFormat.JPEG
    stores_offset = True

    def read_timestamp(self, path: Path) -> Optional[datetime]:
        data = path.read_bytes()
        segments, _ = split_jpeg_segments(data)
        if not any(_is_exif_segment(s) for s in segments):
            return None

        tags = exifread.process_file(io.BytesIO(data), details=False)
        return self._parse_exif_date(tags)

    def write_timestamp(self, path: Path, value: datetime, target: Path):
        data = path.read_bytes()
        segments, scan = split_jpeg_segments(data)

        exif_index = next((i for i, s in enumerate(segments) if _is_exif_segment(s)), None)
        if exif_index is None:
            app1 = self._regenerate(path, None, value)
            # After JFIF APP0 if present, otherwise right after SOI
            insert_at = 2 if len(segments) > 1 and segments[1][:2] == b'\xff\xe0' else 1
            segments.insert(insert_at, app1)
        else:
            segment = segments[exif_index]
            # marker(2) + length(2) + 'Exif\0\0'(6), then the TIFF block
            tiff = bytearray(segment[10:])
            layout = TiffLayout(bytes(tiff))
            if self._patch_in_place(tiff, layout, value):
                segments[exif_index] = segment[:10] + bytes(tiff)
            else:
                segments[exif_index] = self._regenerate(path, segment, value, layout)

        target.write_bytes(b''.join(segments) + scan)

    def _patch_in_place(self, tiff: bytearray, layout: TiffLayout, value: datetime) -> bool:
        """
        Overwrites existing date/offset values inside `tiff`. Returns False,
        leaving `tiff` alone, if any field needed is missing or too short.
        """
        exif = layout.ifds.get('Exif', {})
        stamp = value.strftime(config.EXIF_DATE_FORMAT).encode('ascii') + b'\x00'
        offset = format_offset(value).encode('ascii') + b'\x00'

        patches = []
        for tag in (piexif.ExifIFD.DateTimeOriginal, piexif.ExifIFD.DateTimeDigitized):
            if not _fits(exif.get(tag), stamp):
                return False
            patches.append((exif[tag], stamp))
        for tag in (piexif.ExifIFD.OffsetTimeOriginal, piexif.ExifIFD.OffsetTimeDigitized):
            entry = exif.get(tag)
            if entry is None:
                # A date without an offset tag reads back as UTC
                if value.utcoffset():
                    return False
                continue
            if not _fits(entry, offset):
                return False
            patches.append((entry, offset))

        for entry, raw in patches:
            tiff[entry.value_pos:entry.value_pos + entry.count] = raw.ljust(entry.count, b'\x00')
        return True

    def _regenerate(self, path: Path, segment: Optional[bytes], value: datetime,
                    layout: Optional[TiffLayout] = None) -> bytes:
        """Builds a new APP1 segment with piexif, refusing if that would lose data."""
        try:
            if segment is None:
                exif_dict = {'0th': {}, 'Exif': {}, 'GPS': {}, 'Interop': {}, '1st': {}, 'thumbnail': None}
            else:
                exif_dict = piexif.load(segment[4:])
        except (ValueError, struct.error, piexif.InvalidImageDataError) as e:
            raise UnsupportedFormatError(f"Unreadable Exif block in {path}: {e}") from e

        if layout is not None:
            if _MAKER_NOTE in layout.ifds.get('Exif', {}):
                raise UnsupportedFormatError(f"{path} has a MakerNote that re-encoding would relocate")
            for name, entries in layout.ifds.items():
                dropped = set(entries) - set(exif_dict.get(name) or {}) - _POINTER_TAGS
                if dropped:
                    tags = ", ".join(f"0x{t:04X}" for t in sorted(dropped))
                    raise UnsupportedFormatError(f"Re-encoding the Exif block of {path} would drop {name} tags {tags}")

        stamp = value.strftime(config.EXIF_DATE_FORMAT).encode('ascii')
        offset = format_offset(value).encode('ascii')
        exif_ifd = exif_dict.setdefault('Exif', {})
        exif_ifd[piexif.ExifIFD.DateTimeOriginal] = stamp
        exif_ifd[piexif.ExifIFD.DateTimeDigitized] = stamp
        exif_ifd[piexif.ExifIFD.OffsetTimeOriginal] = offset
        exif_ifd[piexif.ExifIFD.OffsetTimeDigitized] = offset

        try:
            payload = piexif.dump(exif_dict)
        except (ValueError, KeyError, TypeError, struct.error) as e:
            raise UnsupportedFormatError(f"Cannot re-encode Exif block of {path}: {e}") from e

        # APP1 length field covers itself plus the payload
        if len(payload) + 2 > 0xFFFF:
            raise UnsupportedFormatError(f"Exif block of {path} would exceed one APP1 segment")
        return b'\xff\xe1' + struct.pack('>H', len(payload) + 2) + payload

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        for date_tag, offset_tag in config.DATE_TAGS:
            if date_tag not in tags:
                continue
            raw = str(tags[date_tag]).strip().strip('\x00')
            if not raw or raw.startswith('0000'):
                continue
            try:
                dt = datetime.strptime(raw[:19], config.EXIF_DATE_FORMAT)
            except ValueError:
                logging.debug(f"Unparseable {date_tag}: {raw!r}")
                continue

            offset_val = tags.get(offset_tag) or tags.get(_OFFSET_TAG_FALLBACKS.get(offset_tag, ''))
            tz = parse_offset(str(offset_val).strip().strip('\x00')) if offset_val else None
            return normalize(dt.replace(tzinfo=tz or timezone.utc))
        return None


# --- ISO-BMFF / QuickTime ---

def iter_boxes(f: BinaryIO, start: int, end: int) -> Iterator[Tuple[bytes, int, int, int]]:
    """
    Yields (type, box_start, payload_start, box_end) for each box in
    [start, end). Raises UnsupportedFormatError on inconsistent sizes.
    """
    pos = start
    while pos + 8 <= end:
        f.seek(pos)
        header = f.read(8)
        if len(header) < 8:
            raise UnsupportedFormatError(f"Truncated box header at {pos}")
        size, box_type = struct.unpack('>I4s', header)
        payload = pos + 8
        if size == 1:
            large = f.read(8)
            if len(large) < 8:
                raise UnsupportedFormatError(f"Truncated 64-bit box size at {pos}")
            (size,) = struct.unpack('>Q', large)
            payload = pos + 16
        elif size == 0:
            size = end - pos
        if size < payload - pos or pos + size > end:
            raise UnsupportedFormatError(f"Box {box_type!r} at {pos} overruns its parent")
        yield box_type, pos, payload, pos + size
        pos += size


class QuickTimeContainer(MetadataContainer):
    """
    MP4/MOV: the capture time is moov/mvhd creation_time. Writes patch that
    fixed-width field only, so no box sizes or offsets change.
    """
    format = ContainerFormat.QUICKTIME

    def read_timestamp(self, path: Path) -> Optional[datetime]:
        with path.open('rb') as f:
            located = self._locate_creation_time(f, os.fstat(f.fileno()).st_size)
            if located is None:
                return None
            offset, width = located
            f.seek(offset)
            raw = f.read(width)
        if len(raw) < width:
            raise UnsupportedFormatError(f"Truncated mvhd in {path}")

        seconds = int.from_bytes(raw, 'big')
        if seconds == 0:
            return None
        try:
            return normalize(_QT_EPOCH + timedelta(seconds=seconds))
        except OverflowError:
            return None

    def write_timestamp(self, path: Path, value: datetime, target: Path):
        with path.open('rb') as f:
            located = self._locate_creation_time(f, os.fstat(f.fileno()).st_size)
        if located is None:
            raise UnsupportedFormatError(f"No mvhd box in {path}; refusing to add one")
        offset, width = located

        seconds = int((value - _QT_EPOCH).total_seconds())
        if seconds <= 0 or seconds >= 1 << (8 * width):
            raise UnsupportedFormatError(f"{value.isoformat()} does not fit the mvhd field of {path}")

        shutil.copyfile(path, target)
        with target.open('r+b') as f:
            f.seek(offset)
            f.write(seconds.to_bytes(width, 'big'))

    def _locate_creation_time(self, f: BinaryIO, file_size: int) -> Optional[Tuple[int, int]]:
        """Returns (file offset, byte width) of mvhd.creation_time, or None if there is no mvhd."""
        for box_type, _, payload, box_end in iter_boxes(f, 0, file_size):
            if box_type != b'moov':
                continue
            for inner_type, _, inner_payload, inner_end in iter_boxes(f, payload, box_end):
                if inner_type != b'mvhd':
                    continue
                f.seek(inner_payload)
                version = f.read(1)
                if not version:
                    raise UnsupportedFormatError("Truncated mvhd box")
                width = 8 if version[0] == 1 else 4
                # version(1) + flags(3), then creation_time
                if inner_payload + 4 + width > inner_end:
                    raise UnsupportedFormatError("mvhd box too short")
                return inner_payload + 4, width
            return None
        return None


class UnsupportedContainer(MetadataContainer):
    format = ContainerFormat.UNSUPPORTED

    def read_timestamp(self, path: Path) -> Optional[datetime]:
        return None

    def write_timestamp(self, path: Path, value: datetime, target: Path):
        raise UnsupportedFormatError(f"No writable metadata container in {path}")


_CONTAINERS = {
    ContainerFormat.JPEG: ExifJpegContainer(),
    ContainerFormat.QUICKTIME: QuickTimeContainer(),
    ContainerFormat.UNSUPPORTED: UnsupportedContainer(),
}


def sniff_format(path: Path) -> ContainerFormat:
    """Picks the container by magic bytes, never by extension."""
    with path.open('rb') as f:
        head = f.read(12)

    if head[:3] == b'\xff\xd8\xff':
        return ContainerFormat.JPEG
    if len(head) >= 8 and head[4:8] in _QUICKTIME_TOP_BOXES:
        if head[4:8] == b'ftyp' and head[8:12] in _STILL_IMAGE_BRANDS:
            return ContainerFormat.UNSUPPORTED
        return ContainerFormat.QUICKTIME
    return ContainerFormat.UNSUPPORTED


def container_for(path: Path) -> MetadataContainer:
    return _CONTAINERS[sniff_format(path)]


class EmbeddedMetadata:
    """
    Entry point used by the pipeline: dispatches to the container variant
    and wraps storage errors.
    """

    def container(self, path: Path) -> MetadataContainer:
        return retry_io(lambda: container_for(path), f"sniffing {path}")

    def candidate(self, path: Path, container: Optional[MetadataContainer] = None) -> Optional[CandidateTimestamp]:
        """
        Embedded capture time as a candidate. Absent field -> None;
        corrupt container -> UnsupportedFormatError.
        """
        container = container or self.container(path)
        value = retry_io(lambda: container.read_timestamp(path), f"reading metadata of {path}")
        if value is None:
            return None
        return CandidateTimestamp(value, TimestampSource.EMBEDDED)

    def write_to(self, path: Path, value: datetime, target: Path,
                 container: Optional[MetadataContainer] = None):
        """Writes the rewritten file to `target`, leaving `path` untouched."""
        container = container or self.container(path)
        retry_io(lambda: container.write_timestamp(path, normalize(value), target),
                 f"writing metadata of {path}")
        # Staging files are created 0600; keep the original's permissions
        retry_io(lambda: shutil.copymode(path, target), f"copying mode to {target}")

    def write(self, path: Path, value: datetime, container: Optional[MetadataContainer] = None):
        """Rewrites `path` in place; the swap is a single atomic rename."""
        container = container or self.container(path)
        staged = staging_path(path)
        try:
            self.write_to(path, value, staged, container)
            retry_io(lambda: os.replace(staged, path), f"replacing {path}")
        except BaseException:
            discard(staged)
            raise
