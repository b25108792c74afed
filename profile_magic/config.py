"""Configuration loading, defaults, and .env support.

WHY: The bot needs Slack and Gemini credentials, a public base URL for
file and OAuth links, and a few tunables (blob TTL, sweep interval,
port). Keeping them in one frozen Settings object means handlers and
tests receive configuration explicitly instead of reading os.environ
at random call sites.

HOW: python-dotenv loads the .env file on import. load_settings() reads
the environment, applies defaults, and raises ConfigurationError listing
every missing required variable at once.

RULES:
- Required: SLACK_BOT_TOKEN, SLACK_APP_TOKEN, SLACK_CLIENT_ID,
  SLACK_CLIENT_SECRET, GEMINI_API_KEY
- Missing required values are fatal at startup only (the caller exits 1)
- BASE_URL defaults to http://localhost:{PORT} and never ends with "/"
- Secrets are never logged or included in error messages
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

# Load .env from the project root (where the process is started)
load_dotenv()

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

REQUIRED_VARIABLES = (
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "SLACK_CLIENT_ID",
    "SLACK_CLIENT_SECRET",
    "GEMINI_API_KEY",
)

DEFAULT_PORT = 3000
DEFAULT_FILE_TTL_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_SLASH_COMMAND = "/boo"

# User scopes requested during OAuth; setPhoto needs users.profile:write
OAUTH_USER_SCOPES = ("users.profile:write", "users.profile:read")


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or malformed.

    WHY: Startup must fail loudly and early rather than half-working
    with a missing credential.

    RULES:
    - Message names the offending variables, never their values
    """


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""

    slack_bot_token: str
    slack_app_token: str
    slack_client_id: str
    slack_client_secret: str
    gemini_api_key: str
    base_url: str
    port: int = DEFAULT_PORT
    file_ttl_seconds: int = DEFAULT_FILE_TTL_SECONDS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    temp_dir: Path = Path("temp")
    tokens_file: Path = Path("data") / "user_tokens.json"
    gemini_model: str = DEFAULT_GEMINI_MODEL
    slash_command: str = DEFAULT_SLASH_COMMAND
    log_level: str = "INFO"

    @property
    def oauth_redirect_uri(self) -> str:
        return "{}/auth/callback".format(self.base_url)


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError("{} must be an integer".format(name))
    if value <= 0:
        raise ConfigurationError("{} must be positive".format(name))
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment.

    WHY: One place validates everything so main() can exit non-zero
    with a single clear message.

    HOW: Collects all missing required variables before raising, then
    parses optional integers and paths.

    RULES:
    - env defaults to os.environ (tests pass a plain dict)
    - Raises ConfigurationError; never returns partial settings
    """
    source = os.environ if env is None else env  # type: Mapping[str, str]

    values = {}  # type: Dict[str, str]
    missing = []
    for name in REQUIRED_VARIABLES:
        value = source.get(name, "").strip()
        if not value:
            missing.append(name)
        values[name] = value

    if missing:
        raise ConfigurationError(
            "Missing required environment variables: {}".format(", ".join(missing))
        )

    port = _int_setting(source, "PORT", DEFAULT_PORT)
    base_url = source.get("BASE_URL", "").strip() or "http://localhost:{}".format(port)

    return Settings(
        slack_bot_token=values["SLACK_BOT_TOKEN"],
        slack_app_token=values["SLACK_APP_TOKEN"],
        slack_client_id=values["SLACK_CLIENT_ID"],
        slack_client_secret=values["SLACK_CLIENT_SECRET"],
        gemini_api_key=values["GEMINI_API_KEY"],
        base_url=base_url.rstrip("/"),
        port=port,
        file_ttl_seconds=_int_setting(source, "FILE_TTL_SECONDS", DEFAULT_FILE_TTL_SECONDS),
        sweep_interval_seconds=_int_setting(
            source, "SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
        ),
        temp_dir=Path(source.get("TEMP_DIR", "").strip() or "temp"),
        tokens_file=Path(
            source.get("TOKENS_FILE", "").strip() or str(Path("data") / "user_tokens.json")
        ),
        gemini_model=source.get("GEMINI_MODEL", "").strip() or DEFAULT_GEMINI_MODEL,
        slash_command=source.get("SLASH_COMMAND", "").strip() or DEFAULT_SLASH_COMMAND,
        log_level=source.get("LOG_LEVEL", "").strip().upper() or "INFO",
    )
