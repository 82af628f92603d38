import struct
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import piexif
import pytest
from PIL import Image

from takeout_organizer.database.schema import init_schema
from takeout_organizer.database.ops import JournalOperations


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the journal schema initialized."""
    c = sqlite3.connect(":memory:")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def journal(conn):
    """Returns a JournalOperations instance attached to the in-memory DB."""
    return JournalOperations(conn)


def write_jpeg(path: Path, taken: Optional[str] = None, color=(200, 30, 30), offset: Optional[str] = None,
               with_exif: bool = True) -> Path:
    """
    Small real JPEG. `taken` is an EXIF date string ('2019:01:01 00:00:00').
    Camera make/model are always set so there is unrelated metadata to preserve.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (16, 16), color)
    if not with_exif:
        img.save(path, "JPEG")
        return path

    exif = {
        "0th": {piexif.ImageIFD.Make: b"TestMake", piexif.ImageIFD.Model: b"TestCam 1"},
        "Exif": {piexif.ExifIFD.ISOSpeedRatings: 200},
        "GPS": {}, "Interop": {}, "1st": {}, "thumbnail": None,
    }
    if taken:
        exif["Exif"][piexif.ExifIFD.DateTimeOriginal] = taken.encode("ascii")
    if offset:
        exif["Exif"][piexif.ExifIFD.OffsetTimeOriginal] = offset.encode("ascii")
    img.save(path, "JPEG", exif=piexif.dump(exif))
    return path


def box(box_type: bytes, payload: bytes) -> bytes:
    return struct.pack(">I4s", 8 + len(payload), box_type) + payload


def mvhd_payload(creation: int, version: int = 0) -> bytes:
    if version == 1:
        times = struct.pack(">QQIQ", creation, creation, 1000, 5000)
    else:
        times = struct.pack(">IIII", creation, creation, 1000, 5000)
    rest = struct.pack(">IH", 0x00010000, 0x0100) + b"\x00" * 10 + b"\x00" * 36 + b"\x00" * 24 + struct.pack(">I", 2)
    return bytes([version, 0, 0, 0]) + times + rest


def qt_seconds(dt: datetime) -> int:
    return int((dt - datetime(1904, 1, 1, tzinfo=timezone.utc)).total_seconds())


def write_mp4(path: Path, creation: Optional[datetime] = None, version: int = 0, with_mvhd: bool = True) -> Path:
    """Minimal ISO-BMFF file: ftyp, moov(mvhd, udta), mdat."""
    path.parent.mkdir(parents=True, exist_ok=True)
    seconds = qt_seconds(creation) if creation else 0
    moov_children = box(b"udta", box(b"\xa9nam", b"\x00\x05\x00\x00clip!"))
    if with_mvhd:
        moov_children = box(b"mvhd", mvhd_payload(seconds, version)) + moov_children
    data = (
        box(b"ftyp", b"isom" + b"\x00\x00\x02\x00" + b"isomiso2mp41")
        + box(b"moov", moov_children)
        + box(b"mdat", b"\x00\x11\x22\x33" * 64)
    )
    path.write_bytes(data)
    return path


def tiff_block(ifd0, exif=()) -> bytes:
    """
    Hand-built little-endian TIFF block, so tests can include tags piexif
    does not know. Entries are (tag, type, count, value_bytes); values
    longer than 4 bytes go to a data area after the IFDs.
    """
    ifd0 = sorted(ifd0, key=lambda e: e[0])
    exif = sorted(exif, key=lambda e: e[0])
    if exif:
        ifd0 = sorted(ifd0 + [(0x8769, 4, 1, None)], key=lambda e: e[0])
    exif_at = 8 + 2 + 12 * len(ifd0) + 4
    data_at = exif_at + (2 + 12 * len(exif) + 4 if exif else 0)
    data = bytearray()

    def ifd(entries):
        out = struct.pack("<H", len(entries))
        for tag, field_type, count, value in entries:
            if value is None:
                value = struct.pack("<I", exif_at)
            if len(value) <= 4:
                out += struct.pack("<HHI", tag, field_type, count) + value.ljust(4, b"\x00")
            else:
                out += struct.pack("<HHII", tag, field_type, count, data_at + len(data))
                data.extend(value)
        return out + b"\x00\x00\x00\x00"

    body = ifd(ifd0) + (ifd(exif) if exif else b"")
    return b"II*\x00" + struct.pack("<I", 8) + body + bytes(data)


def ascii_entry(tag: int, text: str):
    raw = text.encode("ascii") + b"\x00"
    return (tag, 2, len(raw), raw)


def write_jpeg_with_tiff(path: Path, tiff: bytes, color=(90, 120, 30)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (16, 16), color).save(path, "JPEG", exif=b"Exif\x00\x00" + tiff)
    return path
