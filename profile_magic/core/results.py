"""Generation results, failure taxonomy, and shared value types.

WHY: The pipeline, the dispatcher and the Block Kit builders all need to
agree on what "an edit succeeded" or "an edit failed, and why" means.
Failures are values, not exceptions, so the dispatcher can always map
them to a user-visible message before touching the UI.

HOW: GenerationResult is either Success (carrying an Artifact) or
Failure (carrying a FailureKind and a short user message). ImageRef
describes where source bytes come from; UploadTarget describes where
the pipeline should try to upload the finished image in Slack.

RULES:
- FailureKind values: content_blocked, generation_failed, transient
- Failure.user_message is always non-empty and safe to show
- Failure.detail is for logs only (may contain provider text)
- An Artifact is only valid when it has a url or a Slack file_id
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

GENERIC_FAILURE_MESSAGE = "Failed to process your image. Please try again."
GENERIC_NO_IMAGE_MESSAGE = (
    "The AI model did not return an image. This can happen due to safety "
    "filters or if the request is too complex. Please try rephrasing your "
    "prompt to be more direct."
)


class FailureKind(str, enum.Enum):
    """Why an edit produced no usable image."""

    CONTENT_BLOCKED = "content_blocked"
    GENERATION_FAILED = "generation_failed"
    TRANSIENT = "transient"


class PayloadError(ValueError):
    """Raised when an Action Payload fails shape or size validation."""


class ProfileUpdateError(Exception):
    """Raised when Slack rejects a users.setPhoto call.

    RULES:
    - slack_error is Slack's short error code ("" when unknown)
    - permission is True for scope/auth errors the user can fix by
      re-authorizing
    """

    def __init__(self, message: str, slack_error: str = "", permission: bool = False) -> None:
        super().__init__(message)
        self.slack_error = slack_error
        self.permission = permission


@dataclass(frozen=True)
class ImageRef:
    """Where to fetch image bytes from.

    token is sent as a Bearer header (Slack private files need the bot
    token); public avatar URLs leave it unset.
    """

    url: str
    token: Optional[str] = field(default=None, repr=False)
    name: str = "image.jpg"


@dataclass(frozen=True)
class Artifact:
    """A generated image, referenced by blob URL and/or Slack file."""

    filename: str
    url: Optional[str] = None
    file_id: Optional[str] = None
    permalink: Optional[str] = None

    @property
    def is_referenced(self) -> bool:
        return bool(self.url or self.file_id)


@dataclass(frozen=True)
class Success:
    artifact: Artifact
    mime_type: str = "image/png"

    ok = True


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    user_message: str
    detail: str = ""

    ok = False


GenerationResult = Union[Success, Failure]


@dataclass(frozen=True)
class BatchItem:
    """One entry of an edit_many run: the input and what happened to it."""

    source: ImageRef
    result: GenerationResult


@dataclass
class UploadTarget:
    """Slack destinations for the best-effort native file upload.

    HOW: The pipeline tries channel_id first, then the user's DM. client
    is a slack_sdk WebClient authenticated with the bot token.
    """

    client: Any
    user_id: str
    channel_id: Optional[str] = None
    title: str = "AI Edited Profile Photo"


def transient(detail: str, user_message: str = GENERIC_FAILURE_MESSAGE) -> Failure:
    return Failure(kind=FailureKind.TRANSIENT, user_message=user_message, detail=detail)
