"""Time-bounded cache of each user's most recent image upload.

WHY: When a user drops an image into a channel and then opens the
advanced modal, the modal should offer that image as a reference without
asking them to upload it again. Slack only tells us about the upload in
a file_shared event, so the bot has to remember it for a short while.

HOW: Entries are keyed by "{team}:{user}:{channel}" and stamped with the
injected clock. Lookups ignore expired entries; prune() drops them.

RULES:
- Default TTL is 5 minutes
- Thread-safe (file_shared events and modal opens run on Bolt workers)
- Only the latest file per key is remembered
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_RECENT_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class RecentFile:
    file_id: str
    name: str
    url_private: str
    mimetype: str
    stored_at: float


def recent_key(team_id: str, user_id: str, channel_id: str) -> str:
    return "{}:{}:{}".format(team_id, user_id, channel_id)


class RecentCache:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_RECENT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries = {}  # type: Dict[str, RecentFile]

    def remember(
        self,
        team_id: str,
        user_id: str,
        channel_id: str,
        file_id: str,
        name: str = "",
        url_private: str = "",
        mimetype: str = "",
    ) -> RecentFile:
        entry = RecentFile(
            file_id=file_id,
            name=name,
            url_private=url_private,
            mimetype=mimetype,
            stored_at=self._clock(),
        )
        with self._lock:
            self._entries[recent_key(team_id, user_id, channel_id)] = entry
        return entry

    def latest(self, team_id: str, user_id: str, channel_id: str) -> Optional[RecentFile]:
        """Return the user's latest upload in channel_id, if still fresh."""
        key = recent_key(team_id, user_id, channel_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at > self._ttl_seconds:
                del self._entries[key]
                return None
            return entry

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if now - entry.stored_at > self._ttl_seconds
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
