"""Transient blob host: write-once image storage with TTL eviction.

WHY: Slack renders images in Block Kit from public URLs, and the
approve flow needs the generated bytes again minutes later. Generated
images are written here, served by the HTTP file host under /files/,
and removed by a periodic sweep so the disk never fills up.

HOW: Each blob is one file in the storage directory. The key is derived
from the content hash and a millisecond timestamp, plus an extension
inferred from the suggested name. put() writes to a temp file and
renames it into place, so concurrent puts never observe partial blobs
and no lock is needed. sweep() compares file mtimes against the TTL.

RULES:
- Keys match [A-Za-z0-9._-]+ and never contain ".."; anything else is
  treated as unknown (no path traversal)
- Blobs are immutable after put(); reads never refresh the TTL
- TTL is measured from creation (mtime), independent of access
- sweep() never raises; per-file failures are logged and skipped
- Default TTL is 30 minutes
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60

_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}

_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def infer_media_type(name: str) -> str:
    """Infer an image MIME type from a filename or key extension."""
    return _MEDIA_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def extension_for_mime(mime_type: str) -> str:
    for ext, media in _MEDIA_TYPES.items():
        if media == mime_type and ext != ".jpeg":
            return ext
    return ".png"


def is_valid_key(key: str) -> bool:
    return bool(key) and ".." not in key and _KEY_RE.match(key) is not None


class BlobHost:
    """Filesystem-backed blob store with public URLs and a TTL sweep.

    WHY: Decouples "where do generated images live" from both the
    pipeline (which writes) and the FastAPI app (which serves).

    RULES:
    - root is created on construction
    - base_url is the public origin; URLs are "{base_url}/files/{key}"
    - clock returns epoch seconds and is injectable for tests
    """

    def __init__(
        self,
        root: Path,
        base_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def make_key(self, data: bytes, suggested_name: str) -> str:
        ext = Path(suggested_name).suffix.lower()
        if ext not in _ALLOWED_EXTENSIONS:
            ext = ".jpg"
        digest = hashlib.sha256(data).hexdigest()[:16]
        return "{}-{}{}".format(digest, int(self._clock() * 1000), ext)

    def put(self, data: bytes, suggested_name: str) -> str:
        """Store bytes and return their public URL.

        HOW: Writes into a temp file inside root, then os.replace()s it
        to the final key so readers see either nothing or the full blob.

        RULES:
        - Raises OSError when the write fails (caller decides severity)
        - Returns the public URL, not the filesystem path
        """
        key = self.make_key(data, suggested_name)
        fd, tmp_name = tempfile.mkstemp(prefix=".upload_", dir=str(self._root))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, str(self._root / key))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info("Stored blob %s (%d bytes)", key, len(data))
        return self.url_for(key)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def url_for(self, key: str) -> str:
        return "{}/files/{}".format(self._base_url, key)

    def key_from_url(self, url: str) -> Optional[str]:
        """Return the blob key for a URL served by this host, else None."""
        prefix = "{}/files/".format(self._base_url)
        if not isinstance(url, str) or not url.startswith(prefix):
            return None
        key = url[len(prefix):].split("?", 1)[0]
        return key if is_valid_key(key) else None

    def path_for(self, key: str) -> Optional[Path]:
        if not is_valid_key(key):
            return None
        path = self._root / key
        return path if path.is_file() else None

    def read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except OSError:
            # Swept between the existence check and the read
            logger.warning("Blob %s vanished during read", key)
            return None

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Delete blobs older than the TTL. Returns the number removed.

        RULES:
        - Only regular files whose mtime is older than ttl are removed
        - Leftover temp files (".upload_*") age out like any other file
        - Never raises
        """
        now = self._clock()
        removed = 0
        try:
            entries = list(os.scandir(str(self._root)))
        except OSError as exc:
            logger.warning("Blob sweep could not list %s: %s", self._root, exc)
            return 0

        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age > self._ttl_seconds:
                    os.unlink(entry.path)
                    removed += 1
                    logger.info("Cleaned up old file: %s (%.0fs old)", entry.name, age)
            except OSError as exc:
                logger.warning("Cleanup skipped file %s: %s", entry.name, exc)

        return removed
