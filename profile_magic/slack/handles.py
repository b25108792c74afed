"""Processing handles: one updatable "working..." surface per user action.

WHY: A slash command can only be answered through its response_url
(ephemeral, single-use, expires after 30 minutes), while a button click
in a DM can edit the message it lives in. The pipeline doesn't care
which one it has; it just needs to replace "working..." with the result
exactly once, and fall back to a DM if the surface has gone away.

HOW: ProcessingHandle exposes a single capability, update(client,
content) -> bool. EphemeralHook POSTs to a response_url with
replace_original; ChannelMessage calls chat.update on (channel, ts).
deliver() wraps update() with the DM fallback.

RULES:
- update() never raises; failures are logged and return False
- Updates on one handle are serialized, so the last update wins
- Expired hooks (expired_url, HTTP >= 400, {"ok": false}) and deleted
  messages (message_not_found) count as failures, not errors
- create_processing_handle prefers the DM when prefer_updatable is set
"""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from slack_sdk.errors import SlackApiError

from profile_magic.logs import describe_slack_error
from profile_magic.slack.platform import open_dm

logger = logging.getLogger(__name__)

WORKING_TEXT = "\U0001f3a8 Processing..."

RESPONSE_URL_TIMEOUT_S = 10.0


@dataclass
class MessageContent:
    """Text fallback plus optional Block Kit blocks for one UI state."""

    text: str
    blocks: Optional[List[Dict[str, Any]]] = field(default=None)


Poster = Callable[[str, Dict[str, Any]], bool]


def post_to_response_url(url: str, payload: Dict[str, Any]) -> bool:
    """POST a JSON payload to a Slack response_url. Returns success.

    RULES:
    - HTTP >= 400 is a failure
    - A JSON body with "ok": false is a failure (expired_url, used_url)
    - Network errors are logged and reported as failure
    """
    try:
        resp = httpx.post(url, json=payload, timeout=RESPONSE_URL_TIMEOUT_S)
    except httpx.HTTPError as exc:
        logger.warning("response_url post failed: %s", exc)
        return False

    if resp.status_code >= 400:
        logger.warning("response_url rejected update (HTTP %d)", resp.status_code)
        return False

    try:
        body = resp.json()
    except ValueError:
        return True
    if isinstance(body, dict) and body.get("ok") is False:
        logger.warning("response_url rejected update: %s", body.get("error", "unknown"))
        return False
    return True


class ProcessingHandle(abc.ABC):
    """An updatable surface showing the status of one user action."""

    kind = "abstract"

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def update(self, client: Any, content: MessageContent) -> bool:
        with self._lock:
            try:
                return self._send(client, content)
            except Exception:
                logger.exception("Unexpected error updating %s handle", self.kind)
                return False

    @abc.abstractmethod
    def _send(self, client: Any, content: MessageContent) -> bool:
        ...


class EphemeralHook(ProcessingHandle):
    """An ephemeral message reachable only through its response_url."""

    kind = "response_url"

    def __init__(self, response_url: str, poster: Optional[Poster] = None) -> None:
        super().__init__()
        self.response_url = response_url
        self._post = poster or post_to_response_url

    def _send(self, client: Any, content: MessageContent) -> bool:
        payload = {
            "response_type": "ephemeral",
            "replace_original": True,
            "text": content.text,
        }  # type: Dict[str, Any]
        if content.blocks is not None:
            payload["blocks"] = content.blocks
        return self._post(self.response_url, payload)

    def __repr__(self) -> str:
        return "EphemeralHook(...)"


class ChannelMessage(ProcessingHandle):
    """A regular bot message, edited in place with chat.update."""

    kind = "chat"

    def __init__(self, channel_id: str, ts: str) -> None:
        super().__init__()
        self.channel_id = channel_id
        self.ts = ts

    def _send(self, client: Any, content: MessageContent) -> bool:
        kwargs = {"channel": self.channel_id, "ts": self.ts, "text": content.text}  # type: Dict[str, Any]
        if content.blocks is not None:
            kwargs["blocks"] = content.blocks
        try:
            client.chat_update(**kwargs)
        except SlackApiError as exc:
            logger.warning(
                "chat.update failed for %s/%s: %s",
                self.channel_id, self.ts, describe_slack_error(exc),
            )
            return False
        return True

    def __repr__(self) -> str:
        return "ChannelMessage(channel_id={!r}, ts={!r})".format(self.channel_id, self.ts)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def create_processing_handle(
    client: Any,
    user_id: str,
    channel_id: Optional[str],
    response_url: Optional[str] = None,
    prefer_updatable: bool = False,
    text: str = WORKING_TEXT,
    poster: Optional[Poster] = None,
) -> ProcessingHandle:
    """Post the "working" message and return a handle to it.

    HOW: With a response_url (and no preference for an updatable
    container) the working text goes out as an ephemeral message.
    Otherwise, or when that post fails, the bot posts into the DM
    (channel_id itself when it already is one).

    RULES:
    - Raises SlackApiError only if the DM post itself fails
    """
    if response_url and not prefer_updatable:
        hook = EphemeralHook(response_url, poster=poster)
        posted = hook._post(
            response_url,
            {"response_type": "ephemeral", "replace_original": False, "text": text},
        )
        if posted:
            return hook
        logger.info("Ephemeral working message failed, falling back to DM")

    return _post_dm_message(client, user_id, channel_id, MessageContent(text=text))


def _post_dm_message(
    client: Any, user_id: str, channel_id: Optional[str], content: MessageContent
) -> ChannelMessage:
    if channel_id and channel_id.startswith("D"):
        destination = channel_id
    else:
        destination = open_dm(client, user_id) or user_id

    kwargs = {"channel": destination, "text": content.text}  # type: Dict[str, Any]
    if content.blocks is not None:
        kwargs["blocks"] = content.blocks
    resp = client.chat_postMessage(**kwargs)
    return ChannelMessage(channel_id=resp.get("channel") or destination, ts=resp.get("ts", ""))


def handle_from_interaction(body: Dict[str, Any], poster: Optional[Poster] = None) -> Optional[ProcessingHandle]:
    """Reuse the surface a block action came from.

    RULES:
    - Non-ephemeral message container -> ChannelMessage
    - Otherwise a response_url -> EphemeralHook
    - None when neither is available (e.g. actions inside a modal)
    """
    container = body.get("container") or {}
    message = body.get("message") or {}
    channel_id = container.get("channel_id") or (body.get("channel") or {}).get("id")
    ts = container.get("message_ts") or message.get("ts")

    if container.get("type") == "message" and not container.get("is_ephemeral") and channel_id and ts:
        return ChannelMessage(channel_id=channel_id, ts=ts)

    response_url = body.get("response_url")
    if response_url:
        return EphemeralHook(response_url, poster=poster)
    return None


def deliver(
    client: Any,
    handle: Optional[ProcessingHandle],
    content: MessageContent,
    user_id: str,
) -> Optional[ProcessingHandle]:
    """Show content on handle, or in a fresh DM message if that fails.

    Returns whichever handle now shows the content (the original handle
    when every path failed). Never raises.
    """
    if handle is not None and handle.update(client, content):
        return handle

    logger.info("Delivering to a new DM message for %s", user_id)
    try:
        return _post_dm_message(client, user_id, None, content)
    except Exception:
        logger.exception("Failed to deliver message to %s", user_id)
        return handle
