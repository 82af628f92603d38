import hashlib
from pathlib import Path
from .. import config

# Files at or above this size get a cheap sparse comparison before the full read
SPARSE_THRESHOLD = 5 * 1024 * 1024  # 5 MB
SPARSE_CHUNK = 4096


class FileHasher:
    def same_content(self, a: Path, b: Path, mode: str = 'sha256') -> bool:
        """
        True if both files hold identical bytes.

        Strategy:
        1. Different sizes -> different files, no read needed.
        2. Large files: compare sparse fingerprints (header/middle/footer).
           A mismatch settles it.
        3. Otherwise compare SHA-256 of the full content (mode='sha256')
           or the raw bytes chunk by chunk (mode='bytes').
        """
        size = a.stat().st_size
        if size != b.stat().st_size:
            return False

        if size >= SPARSE_THRESHOLD and self.sparse_hash(a, size) != self.sparse_hash(b, size):
            return False

        if mode == 'bytes':
            return self._bytes_equal(a, b)
        return self.full_sha256(a) == self.full_sha256(b)

    def full_sha256(self, path: Path) -> str:
        """Reads entire file. High I/O cost."""
        h = hashlib.sha256()
        with open(path, 'rb') as f:
            while chunk := f.read(config.HASH_CHUNK_SIZE):
                h.update(chunk)
        return h.hexdigest()

    def sparse_hash(self, path: Path, file_size: int) -> str:
        """
        Reads Header, Middle and Footer and mixes in file size.
        """
        h = hashlib.sha256()
        h.update(str(file_size).encode('ascii'))

        with open(path, 'rb') as f:
            h.update(f.read(SPARSE_CHUNK))
            f.seek(file_size // 2)
            h.update(f.read(SPARSE_CHUNK))
            f.seek(-SPARSE_CHUNK, 2)
            h.update(f.read(SPARSE_CHUNK))

        return h.hexdigest()

    def _bytes_equal(self, a: Path, b: Path) -> bool:
        with open(a, 'rb') as fa, open(b, 'rb') as fb:
            while True:
                ca = fa.read(config.HASH_CHUNK_SIZE)
                cb = fb.read(config.HASH_CHUNK_SIZE)
                if ca != cb:
                    return False
                if not ca:
                    return True
