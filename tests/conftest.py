"""Shared test fixtures for the profile_magic test suite.

WHY: Most test modules need the same collaborators: resolved settings,
a blob host and credential store rooted in tmp_path, a mocked Slack
WebClient, and fake model responses shaped like google-genai's.

HOW: Fixtures build real storage objects on tmp_path and MagicMock
Slack clients. make_response builds SimpleNamespace trees with the same
attribute names the pipeline reads (candidates, content.parts,
inline_data, finish_reason, prompt_feedback).

RULES:
- No fixture touches the network or the real environment
- BASE_URL is always https://bot.example.com
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, List, Optional
from unittest.mock import MagicMock

import pytest
from slack_sdk.errors import SlackApiError

from profile_magic.config import load_settings
from profile_magic.storage.blobs import BlobHost
from profile_magic.storage.credentials import CredentialStore

BASE_URL = "https://bot.example.com"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"
JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"


@pytest.fixture
def env(tmp_path):
    return {
        "SLACK_BOT_TOKEN": "xoxb-test-bot",
        "SLACK_APP_TOKEN": "xapp-test-app",
        "SLACK_CLIENT_ID": "123.456",
        "SLACK_CLIENT_SECRET": "shh",
        "GEMINI_API_KEY": "gemini-key",
        "BASE_URL": BASE_URL,
        "TEMP_DIR": str(tmp_path / "blobs"),
        "TOKENS_FILE": str(tmp_path / "data" / "user_tokens.json"),
    }


@pytest.fixture
def settings(env):
    return load_settings(env)


@pytest.fixture
def blob_host(settings):
    return BlobHost(settings.temp_dir, settings.base_url, settings.file_ttl_seconds)


@pytest.fixture
def credentials(settings):
    return CredentialStore(settings.tokens_file)


@pytest.fixture
def slack_client():
    """A mocked bot WebClient with happy-path defaults."""
    client = MagicMock()
    client.token = "xoxb-test-bot"
    client.conversations_open.return_value = {"ok": True, "channel": {"id": "D_DM"}}
    client.chat_postMessage.return_value = {"ok": True, "channel": "D_DM", "ts": "111.222"}
    client.chat_update.return_value = {"ok": True}
    client.users_profile_get.return_value = {
        "ok": True,
        "profile": {"image_512": "https://avatars.slack-edge.com/u1_512.jpg"},
    }
    client.files_upload_v2.return_value = {
        "ok": True,
        "file": {"id": "FUPLOADED1", "permalink": "https://slack.com/files/FUPLOADED1"},
    }
    return client


def slack_error(code: str) -> SlackApiError:
    return SlackApiError("The request to the Slack API failed.", {"ok": False, "error": code})


@pytest.fixture
def make_slack_error():
    return slack_error


def _response(
    image: Optional[Any] = None,
    text: Optional[str] = None,
    finish_reason: Optional[str] = "STOP",
    block_reason: Optional[str] = None,
    block_reason_message: Optional[str] = None,
    mime_type: str = "image/png",
) -> SimpleNamespace:
    parts = []  # type: List[SimpleNamespace]
    if text is not None:
        parts.append(SimpleNamespace(text=text, inline_data=None))
    if image is not None:
        parts.append(SimpleNamespace(text=None, inline_data=SimpleNamespace(data=image, mime_type=mime_type)))
    candidate = SimpleNamespace(content=SimpleNamespace(parts=parts), finish_reason=finish_reason)
    feedback = None
    if block_reason is not None:
        feedback = SimpleNamespace(block_reason=block_reason, block_reason_message=block_reason_message)
    return SimpleNamespace(candidates=[candidate], prompt_feedback=feedback)


@pytest.fixture
def make_response():
    """Factory for fake generate_content responses."""
    return _response


class FakeModel:
    """ImageModel stand-in that records calls and returns queued responses."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls = []  # type: List[Any]

    def generate(self, images, instruction):
        self.calls.append((list(images), instruction))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_model_factory():
    return FakeModel
