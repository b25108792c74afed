"""Persistent per-user OAuth token store.

WHY: users.setPhoto only works with a *user* token, obtained through the
OAuth flow. The bot must remember each user's token across restarts,
keyed by workspace and user, and answer "is this user authorized?"
before starting any work on their behalf.

HOW: Records live in a JSON file keyed by "{team_id}:{user_id}". Every
operation reads the file, and mutations write it back atomically
(temp file + os.replace). A threading.Lock serializes read-modify-write
inside the process; across processes the last writer wins, which is
acceptable because writes are rare and per-user.

RULES:
- is_authorized() is a pure lookup (no timestamp side effects)
- get_token() bumps last_used_at and persists it
- I/O or decode errors are logged and read as "no token" (fail closed)
- Mutations never overwrite a file that exists but cannot be read
- Write failures are logged, never raised
- Tokens never appear in logs or in stats()
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CredentialRecord:
    """One stored user token and its bookkeeping timestamps."""

    team_id: str
    user_id: str
    token: str
    created_at: str
    last_used_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional[CredentialRecord]:
        try:
            record = cls(
                team_id=str(data["team_id"]),
                user_id=str(data["user_id"]),
                token=str(data["token"]),
                created_at=str(data.get("created_at", "")),
                last_used_at=str(data.get("last_used_at", "")),
            )
        except (KeyError, TypeError):
            return None
        return record if record.token else None


def credential_key(team_id: str, user_id: str) -> str:
    return "{}:{}".format(team_id, user_id)


class CredentialStore:
    """File-backed mapping of (team, user) to a Slack user token.

    RULES:
    - At most one record per (team_id, user_id)
    - store() overwrites an existing record and resets created_at
    - Records never expire; remove() is the only deletion path
    """

    def __init__(self, path: Path, clock: Callable[[], str] = _utc_now_iso) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_authorized(self, team_id: str, user_id: str) -> bool:
        with self._lock:
            records = self._load() or {}
        return credential_key(team_id, user_id) in records

    def get_token(self, team_id: str, user_id: str) -> Optional[str]:
        key = credential_key(team_id, user_id)
        with self._lock:
            records = self._load()
            if records is None:
                return None
            record = records.get(key)
            if record is None:
                return None
            record.last_used_at = self._clock()
            self._save(records)
        return record.token

    def store(self, team_id: str, user_id: str, token: str) -> bool:
        """Save a user token. Returns False when it could not be persisted."""
        now = self._clock()
        with self._lock:
            records = self._load()
            if records is None:
                logger.error("Not storing token for %s in team %s: token file unreadable", user_id, team_id)
                return False
            records[credential_key(team_id, user_id)] = CredentialRecord(
                team_id=team_id,
                user_id=user_id,
                token=token,
                created_at=now,
                last_used_at=now,
            )
            if not self._save(records):
                return False
        logger.info("Stored user token for %s in team %s", user_id, team_id)
        return True

    def remove(self, team_id: str, user_id: str) -> None:
        with self._lock:
            records = self._load()
            if records is None:
                logger.error("Not removing token for %s in team %s: token file unreadable", user_id, team_id)
                return
            if records.pop(credential_key(team_id, user_id), None) is None:
                return
            self._save(records)
        logger.info("Removed user token for %s in team %s", user_id, team_id)

    def stats(self) -> Dict[str, Any]:
        """Summarize stored users without exposing tokens."""
        with self._lock:
            records = self._load() or {}
        return {
            "total_users": len(records),
            "users": [
                {
                    "user_id": r.user_id,
                    "team_id": r.team_id,
                    "created_at": r.created_at,
                    "last_used_at": r.last_used_at,
                }
                for r in records.values()
            ],
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> Optional[Dict[str, CredentialRecord]]:
        """Read every record. A missing file is empty; an unreadable one is None."""
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Error loading user tokens from %s: %s", self._path, exc)
            return None
        if not isinstance(raw, dict):
            logger.error("User token file %s is not a JSON object", self._path)
            return None

        records = {}  # type: Dict[str, CredentialRecord]
        for key, value in raw.items():
            record = CredentialRecord.from_dict(value) if isinstance(value, dict) else None
            if record is None:
                logger.warning("Skipping malformed token record %s", key)
                continue
            records[key] = record
        return records

    def _save(self, records: Dict[str, CredentialRecord]) -> bool:
        payload = {key: asdict(record) for key, record in records.items()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".tokens_", suffix=".json", dir=str(self._path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, str(self._path))
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            logger.error("Error saving user tokens to %s: %s", self._path, exc)
            return False
        return True
