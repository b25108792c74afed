"""OAuth v2 helpers: state tokens, the authorize URL, and code exchange.

WHY: users.setPhoto needs a user token, which Slack only hands out
through the OAuth v2 flow. The bot links users to /auth/start with a
state identifying them; the callback exchanges the code and stores the
token for that (team, user).

HOW: The state is urlsafe base64 of {"userId", "teamId"} JSON without
padding. exchange_code() calls oauth.v2.access through slack_sdk's
WebClient and returns the authed_user token with its identity.

RULES:
- decode_state never raises; malformed state reads as None
- Only user scopes are requested (users.profile:write, users.profile:read)
- exchange_code raises OAuthExchangeError; tokens never appear in its text
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from profile_magic.config import OAUTH_USER_SCOPES, Settings
from profile_magic.logs import describe_slack_error, slack_error_code

logger = logging.getLogger(__name__)

SLACK_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"

_MAX_STATE_CHARS = 512


class OAuthExchangeError(Exception):
    """Raised when oauth.v2.access fails or returns no user token."""


@dataclass(frozen=True)
class AuthState:
    user_id: str
    team_id: str


@dataclass(frozen=True)
class UserGrant:
    team_id: str
    user_id: str
    access_token: str = field(repr=False)


def encode_state(user_id: str, team_id: str) -> str:
    raw = json.dumps({"userId": user_id, "teamId": team_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_state(state: Optional[str]) -> Optional[AuthState]:
    if not state or len(state) > _MAX_STATE_CHARS:
        return None
    padded = state + "=" * (-len(state) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    user_id = data.get("userId")
    team_id = data.get("teamId")
    if not isinstance(user_id, str) or not isinstance(team_id, str) or not user_id or not team_id:
        return None
    return AuthState(user_id=user_id, team_id=team_id)


def auth_start_url(base_url: str, user_id: str, team_id: str) -> str:
    """The link the bot shows to unauthorized users."""
    return "{}/auth/start?{}".format(base_url, urlencode({"state": encode_state(user_id, team_id)}))


def authorize_url(settings: Settings, state: str) -> str:
    params = {
        "client_id": settings.slack_client_id,
        "user_scope": ",".join(OAUTH_USER_SCOPES),
        "redirect_uri": settings.oauth_redirect_uri,
        "state": state,
    }
    return "{}?{}".format(SLACK_AUTHORIZE_URL, urlencode(params))


def exchange_code(
    settings: Settings,
    code: str,
    fallback: Optional[AuthState] = None,
    client_factory: Callable[..., Any] = WebClient,
) -> UserGrant:
    """Trade an OAuth code for the installing user's token.

    RULES:
    - Identity comes from the response (authed_user.id, team.id),
      falling back to the decoded state
    - Raises OAuthExchangeError on Slack errors or a missing token
    """
    client = client_factory()
    try:
        resp = client.oauth_v2_access(
            client_id=settings.slack_client_id,
            client_secret=settings.slack_client_secret,
            code=code,
            redirect_uri=settings.oauth_redirect_uri,
        )
    except SlackApiError as exc:
        logger.error("OAuth exchange failed: %s", describe_slack_error(exc))
        raise OAuthExchangeError("oauth.v2.access failed ({})".format(slack_error_code(exc) or "unknown"))

    authed_user = resp.get("authed_user") or {}
    token = authed_user.get("access_token")
    if not token:
        raise OAuthExchangeError("oauth.v2.access returned no user token")

    user_id = authed_user.get("id") or (fallback.user_id if fallback else "")
    team_id = (resp.get("team") or {}).get("id") or (fallback.team_id if fallback else "")
    if not user_id or not team_id:
        raise OAuthExchangeError("oauth.v2.access returned no user identity")

    return UserGrant(team_id=team_id, user_id=user_id, access_token=token)
