"""Thin wrappers over the Slack Web API calls the bot depends on.

WHY: The dispatcher and the pipeline need a handful of Web API calls
(profile photo lookup, DM channel, private file resolution, setPhoto)
with consistent error handling. Keeping them here lets tests mock one
WebClient instead of patching call sites everywhere.

RULES:
- Lookups log SlackApiError and return None; callers render the error
- set_profile_photo raises ProfileUpdateError, flagging errors the user
  can fix by re-authorizing
- Private files are fetched with the bot token (ImageRef.token)
"""

from __future__ import annotations

import io
import logging
from typing import Any, Callable, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from profile_magic.core.results import ImageRef, ProfileUpdateError
from profile_magic.logs import describe_slack_error, slack_error_code

logger = logging.getLogger(__name__)

# Slack errors that mean "the stored user token cannot do this"
PERMISSION_ERRORS = frozenset({
    "missing_scope",
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "account_inactive",
    "not_allowed_token_type",
})

# Subset where the stored token is dead and should be forgotten
REVOKED_TOKEN_ERRORS = frozenset({"invalid_auth", "token_revoked"})

_PROFILE_IMAGE_FIELDS = ("image_original", "image_512", "image_192", "image_72")


def get_profile_photo(client: Any, user_id: str) -> Optional[ImageRef]:
    """Return the user's current avatar as an ImageRef, or None."""
    try:
        resp = client.users_profile_get(user=user_id)
    except SlackApiError as exc:
        logger.error("Error fetching profile photo for %s: %s", user_id, describe_slack_error(exc))
        return None

    profile = resp.get("profile") or {}
    for field in _PROFILE_IMAGE_FIELDS:
        url = profile.get(field)
        if url:
            return ImageRef(url=url, name="profile.jpg")
    logger.warning("No profile image found for %s", user_id)
    return None


def open_dm(client: Any, user_id: str) -> Optional[str]:
    """Open (or reuse) the bot's DM with user_id and return its channel id."""
    try:
        resp = client.conversations_open(users=user_id)
    except Exception as exc:
        logger.warning("Could not open DM with %s: %s", user_id, describe_slack_error(exc))
        return None
    return (resp.get("channel") or {}).get("id")


def resolve_slack_file(client: Any, file_id: str) -> Optional[ImageRef]:
    """Look up a Slack file and return a bot-authenticated ImageRef for it."""
    try:
        resp = client.files_info(file=file_id)
    except SlackApiError as exc:
        logger.error("Failed to fetch file info for %s: %s", file_id, describe_slack_error(exc))
        return None

    file_data = resp.get("file") or {}
    url_private = file_data.get("url_private_download") or file_data.get("url_private")
    if not url_private:
        logger.warning("File %s has no private download URL", file_id)
        return None
    return ImageRef(url=url_private, token=client.token, name=file_data.get("name") or "image.jpg")


def is_image_file(file_data: dict) -> bool:
    mimetype = file_data.get("mimetype") or ""
    return mimetype.startswith("image/")


def set_profile_photo(
    user_token: str,
    image: bytes,
    client_factory: Callable[..., Any] = WebClient,
) -> None:
    """Replace the user's avatar via users.setPhoto with their own token.

    WHY: setPhoto rejects bot tokens; it only accepts the user token
    obtained through OAuth with users.profile:write.

    RULES:
    - Raises ProfileUpdateError on any Slack rejection
    - permission=True when re-authorizing could fix it
    - The token never appears in the raised message
    """
    user_client = client_factory(token=user_token)
    try:
        user_client.users_setPhoto(image=io.BytesIO(image))
    except SlackApiError as exc:
        code = slack_error_code(exc)
        logger.error("users.setPhoto failed: %s", describe_slack_error(exc))
        raise ProfileUpdateError(
            "Slack rejected the profile photo update ({})".format(code or "unknown error"),
            slack_error=code,
            permission=code in PERMISSION_ERRORS,
        )
    logger.info("Profile photo updated")
