"""Block Kit builders, action ids, and user-facing failure text.

WHY: Every surface the bot renders (working state, results with
approve/share/advanced/retry buttons, errors, the auth prompt, the
three modals) lives here so the dispatcher stays focused on routing and
the ids used in blocks are defined next to the blocks that use them.

HOW: Message builders return MessageContent (fallback text + blocks) so
they can go straight into a ProcessingHandle. View builders return the
modal dict for views.open.

RULES:
- action_id / callback_id values must match the registrations in bot.py
- Buttons carry an encoded ActionPayload in their value
- The approve button is only offered for exactly one artifact that came
  from the user's own profile photo
- Images are only embedded when the artifact has a public blob URL
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from profile_magic.core.presets import Preset
from profile_magic.core.results import (
    Artifact,
    Failure,
    FailureKind,
    GenerationResult,
    PayloadError,
)
from profile_magic.slack.handles import MessageContent
from profile_magic.slack.payloads import (
    MAX_REFERENCES,
    ActionPayload,
    ArtifactRef,
    encode_payload,
)
from profile_magic.storage.recent import RecentFile

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

# Action IDs: must match @app.action() registrations in bot.py
ACTION_APPROVE = "approve_edit"
ACTION_RETRY = "retry_edit"
ACTION_CANCEL = "cancel_edit"
ACTION_OPEN_SHARE = "open_share_modal"
ACTION_OPEN_ADVANCED = "open_advanced_modal"
ACTION_AUTHORIZE = "authorize_app"
ACTION_SELECT_PRESET = "select_preset"
ACTION_USE_PROFILE = "use_profile_photo"

# Modal callback IDs: must match @app.view() registrations in bot.py
PRESET_MODAL_CALLBACK_ID = "preset_selection_modal"
ADVANCED_MODAL_CALLBACK_ID = "boo_ext_modal"
SHARE_MODAL_CALLBACK_ID = "share_to_channel_modal"

# Modal block / element IDs
BLOCK_PRESET = "preset_choice"
BLOCK_PROMPT = "prompt_input"
ACTION_PROMPT = "prompt_text"
BLOCK_OPTIONS = "image_options"
BLOCK_REFERENCES = "reference_files"
ACTION_REFERENCES = "ref_files"
BLOCK_CHANNEL = "channel_select"
ACTION_CHANNEL = "selected_channel"
BLOCK_CAPTION = "caption_input"
ACTION_CAPTION = "share_caption"

OPTION_INCLUDE_PROFILE = "include_profile"

REFERENCE_FILETYPES = ["jpg", "jpeg", "png", "gif", "webp"]


def _plain(text: str) -> Dict[str, Any]:
    return {"type": "plain_text", "text": text, "emoji": True}


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _button(text: str, action_id: str, value: Optional[str] = None, style: Optional[str] = None) -> Dict[str, Any]:
    button = {"type": "button", "text": _plain(text), "action_id": action_id}  # type: Dict[str, Any]
    if value is not None:
        button["value"] = value
    if style:
        button["style"] = style
    return button


# ---------------------------------------------------------------------------
# Status messages
# ---------------------------------------------------------------------------


def working_content(prompt: str, image_count: int = 1) -> MessageContent:
    lines = ["\U0001f3a8 *Working on your edit...*", '*Prompt:* "{}"'.format(prompt)]
    if image_count > 1:
        lines.append("*Images:* {}".format(image_count))
    lines.append("This may take a moment!")
    text = "\n".join(lines)
    return MessageContent(text="Working on your edit...", blocks=[_section(text)])


def authorization_content(auth_url: str) -> MessageContent:
    """Prompt an unauthorized user to connect their Slack account."""
    blocks = [
        _section(
            "\U0001f510 *Profile Magic needs permission to update your profile photo!*\n\n"
            "To use this feature, authorize the app with your personal Slack account."
        ),
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\U0001f446 *Click the button below to authorize:*"},
            "accessory": {
                "type": "button",
                "text": _plain("\U0001f517 Authorize"),
                "url": auth_url,
                "style": "primary",
                "action_id": ACTION_AUTHORIZE,
            },
        },
    ]
    return MessageContent(text="\U0001f510 Authorization required", blocks=blocks)


def permission_remediation_content(auth_url: str, slack_error: str) -> MessageContent:
    """Explain a scope/auth rejection from users.setPhoto and offer re-authorization."""
    blocks = [
        _section(
            "⚠️ *Slack didn't let us update your profile photo* (`{}`).\n\n"
            "Your authorization is missing or has expired. Re-authorize the app "
            "and then try again.".format(slack_error or "unknown_error")
        ),
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": _plain("\U0001f517 Re-authorize"),
                    "url": auth_url,
                    "style": "primary",
                    "action_id": ACTION_AUTHORIZE,
                }
            ],
        },
    ]
    return MessageContent(text="Re-authorization required", blocks=blocks)


def confirmation_content() -> MessageContent:
    text = "✅ *Profile photo updated!* Your new look is live."
    return MessageContent(text="Profile photo updated", blocks=[_section(text)])


def cancelled_content() -> MessageContent:
    text = "\U0001f44d Cancelled. No changes were made to your profile photo."
    return MessageContent(text="Cancelled", blocks=[_section(text)])


def error_content(message: str, retry_value: Optional[str] = None) -> MessageContent:
    """An error section, with Retry/Cancel buttons when a retry payload is available."""
    blocks = [_section(message)]  # type: List[Dict[str, Any]]
    if retry_value is not None:
        blocks.append({
            "type": "actions",
            "elements": [
                _button("\U0001f504 Retry", ACTION_RETRY, retry_value),
                _button("Cancel", ACTION_CANCEL, "cancel"),
            ],
        })
    return MessageContent(text=_strip_markup(message), blocks=blocks)


def describe_failure(failure: Failure) -> str:
    """Short user-facing explanation for a failed edit."""
    if failure.kind == FailureKind.CONTENT_BLOCKED:
        return "\U0001f6ab *Content blocked*\n{}".format(failure.user_message)
    if failure.kind == FailureKind.GENERATION_FAILED:
        return "⚠️ *Generation failed*\n{}".format(failure.user_message)
    return "❌ {}".format(failure.user_message)


def _strip_markup(text: str) -> str:
    return text.replace("*", "").split("\n", 1)[0]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def encode_buttons_payload(payload: ActionPayload) -> Optional[str]:
    """Encode payload, dropping references if needed to fit the value limit."""
    try:
        return encode_payload(payload)
    except PayloadError:
        logger.warning("Action payload too large, retrying without references")
    slim = ActionPayload(
        prompt=payload.prompt,
        artifacts=payload.artifacts,
        channel=payload.channel,
        references=[],
        use_profile=payload.use_profile,
    )
    try:
        return encode_payload(slim)
    except PayloadError:
        logger.error("Action payload too large even without references")
        return None


def artifact_blocks(artifacts: Sequence[Artifact], title: str = "✨ Edited") -> List[Dict[str, Any]]:
    blocks = []  # type: List[Dict[str, Any]]
    for artifact in artifacts:
        if artifact.url:
            blocks.append({
                "type": "image",
                "title": _plain(title),
                "image_url": artifact.url,
                "alt_text": "AI-transformed image",
            })
        elif artifact.permalink:
            blocks.append(_section("<{}|{}>".format(artifact.permalink, artifact.filename)))
    return blocks


def result_content(
    prompt: str,
    results: Sequence[Tuple[str, GenerationResult]],
    payload: ActionPayload,
) -> MessageContent:
    """Render finished edits with their follow-up buttons.

    Args:
        prompt: The prompt shown in the header.
        results: (label, result) pairs in input order.
        payload: Base payload; its artifacts are replaced by the
            successful ones before encoding.

    RULES:
    - Header lists failures inline so partial batches are visible
    - Approve only when exactly one artifact and payload.use_profile
    - Share only when there is at least one artifact
    - Advanced and Retry are always offered
    """
    artifacts = [r.artifact for _, r in results if r.ok]
    failures = [(label, r) for label, r in results if not r.ok]

    header = ["✅ *Edit complete!*", '*Prompt:* "{}"'.format(prompt)]
    for label, failure in failures:
        header.append("• {}: {}".format(label, failure.user_message))
    blocks = [_section("\n".join(header))]  # type: List[Dict[str, Any]]
    blocks.extend(artifact_blocks(artifacts))

    payload = ActionPayload(
        prompt=payload.prompt,
        artifacts=[ArtifactRef.from_artifact(a) for a in artifacts],
        channel=payload.channel,
        references=list(payload.references),
        use_profile=payload.use_profile,
    )
    value = encode_buttons_payload(payload)

    if value is not None:
        elements = []  # type: List[Dict[str, Any]]
        if len(artifacts) == 1 and payload.use_profile:
            elements.append(
                _button("✅ Update Profile Picture", ACTION_APPROVE, value, style="primary")
            )
        if artifacts:
            elements.append(_button("\U0001f525 Share…", ACTION_OPEN_SHARE, value))
        elements.append(_button("⚙️ Advanced", ACTION_OPEN_ADVANCED, value))
        elements.append(_button("\U0001f504 Retry", ACTION_RETRY, value))
        elements.append(_button("Cancel", ACTION_CANCEL, "cancel"))
        blocks.append({"type": "actions", "elements": elements})

    return MessageContent(text="Edit complete", blocks=blocks)


# ---------------------------------------------------------------------------
# Modals
# ---------------------------------------------------------------------------


def build_preset_modal(presets: Sequence[Preset], channel_id: str) -> Dict[str, Any]:
    options = [
        {
            "text": _plain(preset.name),
            "description": _plain(preset.description),
            "value": preset.id,
        }
        for preset in presets
    ]
    return {
        "type": "modal",
        "callback_id": PRESET_MODAL_CALLBACK_ID,
        "title": _plain("Profile Magic ✨"),
        "submit": _plain("Transform"),
        "close": _plain("Cancel"),
        "private_metadata": channel_id or "",
        "blocks": [
            _section("*Choose how you want to transform your profile photo:*"),
            {
                "type": "input",
                "block_id": BLOCK_PRESET,
                "label": _plain("Preset"),
                "element": {
                    "type": "radio_buttons",
                    "action_id": ACTION_SELECT_PRESET,
                    "options": options,
                },
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": "Or cancel and use `/boo your custom prompt`"}
                ],
            },
        ],
    }


def build_advanced_modal(
    channel_id: str,
    initial_prompt: str = "",
    recent: Optional[RecentFile] = None,
) -> Dict[str, Any]:
    """The advanced edit modal: prompt, profile toggle, reference uploads.

    RULES:
    - private_metadata carries the originating channel id
    - A fresh recent upload is offered as a pre-checked reference option
    """
    profile_option = {
        "text": _plain("Use my current profile photo"),
        "value": OPTION_INCLUDE_PROFILE,
    }
    options = [profile_option]
    initial = [profile_option]
    if recent is not None:
        recent_option = {
            "text": _plain("Use my latest upload ({})".format(recent.name or "image")[:75]),
            "value": recent.file_id,
        }
        options.append(recent_option)

    prompt_element = {
        "type": "plain_text_input",
        "action_id": ACTION_PROMPT,
        "placeholder": _plain('e.g., "add sunglasses and a hat, cartoon style"'),
        "multiline": True,
        "max_length": 500,
    }  # type: Dict[str, Any]
    if initial_prompt:
        prompt_element["initial_value"] = initial_prompt

    return {
        "type": "modal",
        "callback_id": ADVANCED_MODAL_CALLBACK_ID,
        "title": _plain("Advanced Edit ✨"),
        "submit": _plain("Generate"),
        "close": _plain("Cancel"),
        "private_metadata": channel_id or "",
        "blocks": [
            {
                "type": "input",
                "block_id": BLOCK_PROMPT,
                "label": _plain("Describe your desired edit"),
                "element": prompt_element,
            },
            {
                "type": "input",
                "block_id": BLOCK_OPTIONS,
                "optional": True,
                "label": _plain("Images"),
                "element": {
                    "type": "checkboxes",
                    "action_id": ACTION_USE_PROFILE,
                    "options": options,
                    "initial_options": initial,
                },
            },
            {
                "type": "input",
                "block_id": BLOCK_REFERENCES,
                "optional": True,
                "label": _plain("Upload Reference Images (optional)"),
                "element": {
                    "type": "file_input",
                    "action_id": ACTION_REFERENCES,
                    "filetypes": REFERENCE_FILETYPES,
                    "max_files": MAX_REFERENCES,
                },
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": "Tip: You can upload up to {} reference images. "
                                "Supported formats: JPG, PNG, GIF, WebP.".format(MAX_REFERENCES),
                    }
                ],
            },
        ],
    }


def build_share_modal(payload_value: str, channel_id: str, preview_url: Optional[str] = None) -> Dict[str, Any]:
    channel_element = {
        "type": "conversations_select",
        "action_id": ACTION_CHANNEL,
        "placeholder": _plain("Select a channel or DM"),
        "filter": {"include": ["public", "private", "im", "mpim"]},
    }  # type: Dict[str, Any]
    if channel_id:
        channel_element["initial_conversation"] = channel_id

    blocks = [
        {
            "type": "input",
            "block_id": BLOCK_CHANNEL,
            "label": _plain("Destination"),
            "element": channel_element,
        },
        {
            "type": "input",
            "block_id": BLOCK_CAPTION,
            "optional": True,
            "label": _plain("Caption (optional)"),
            "element": {
                "type": "plain_text_input",
                "action_id": ACTION_CAPTION,
                "placeholder": _plain("Add a message (optional)"),
            },
        },
    ]  # type: List[Dict[str, Any]]
    if preview_url:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": "*Preview*"},
            "accessory": {"type": "image", "image_url": preview_url, "alt_text": "Preview"},
        })

    return {
        "type": "modal",
        "callback_id": SHARE_MODAL_CALLBACK_ID,
        "title": _plain("Share to Channel"),
        "submit": _plain("Share"),
        "close": _plain("Cancel"),
        "private_metadata": payload_value,
        "blocks": blocks,
    }


def share_message_content(artifacts: Sequence[Artifact], caption: str = "") -> MessageContent:
    blocks = []  # type: List[Dict[str, Any]]
    if caption:
        blocks.append(_section(caption))
    blocks.extend(artifact_blocks(artifacts))
    return MessageContent(text=caption or "✨ Shared an AI-edited photo", blocks=blocks)
