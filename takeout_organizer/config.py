"""
Configuration constants for the takeout organizer.
"""
from datetime import datetime, timezone

# --- File Type Definitions ---
IMAGE_EXTS = {'.jpg', '.jpeg', '.jpe', '.png', '.gif', '.heic', '.heif', '.webp', '.tif', '.tiff', '.bmp', '.dng'}
VIDEO_EXTS = {'.mp4', '.mov', '.m4v', '.3gp', '.avi', '.mkv', '.mts', '.m2ts', '.wmv'}
SIDECAR_EXTS = {'.json'}

# Extension to Type Mapping
EXT_TO_KIND = {}
for ext in IMAGE_EXTS: EXT_TO_KIND[ext] = 'image'
for ext in VIDEO_EXTS: EXT_TO_KIND[ext] = 'video'

# --- Sidecar Parsing ---
# Google Takeout truncates long sidecar names, so any prefix of this
# suffix down to MIN length is accepted.
SIDECAR_FULL_SUFFIX = '.supplemental-metadata'
SIDECAR_MIN_SUFFIX_LEN = 5  # '.supp'
# Folder-level metadata, never a per-file sidecar
IGNORED_SIDECAR_NAMES = {'metadata.json', 'shared_album_comments.json', 'print-subscriptions.json'}

# --- Embedded Metadata ---
# Read priority; the first tag present wins
DATE_TAGS = [
    ('EXIF DateTimeOriginal', 'EXIF OffsetTimeOriginal'),
    ('EXIF DateTimeDigitized', 'EXIF OffsetTimeDigitized'),
    ('Image DateTime', 'EXIF OffsetTime'),
]
EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"

# --- Reconciliation ---
# Anything earlier predates consumer digital photography
SANITY_FLOOR = datetime(1975, 1, 1, tzinfo=timezone.utc)

# --- Hashing & Performance ---
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks for reading
DEFAULT_MAX_WORKERS = 4

# --- Storage Retries ---
IO_RETRY_ATTEMPTS = 3
IO_RETRY_DELAY_SEC = 0.2

# --- Organization ---
FOLDER_PATTERN = "{year}/{month:02d}"
SUFFIX_FORMAT = "{stem}-{n}{ext}"
MAX_DISAMBIGUATION_ATTEMPTS = 999

# --- Journal ---
JOURNAL_FILENAME = "organizer_journal.db"
LOG_FILENAME = "organizer.log"
