"""Action dispatch: Bolt listeners for every command, button and modal.

WHY: Slack gives each interaction three seconds to be acknowledged, but
an image edit takes many seconds and the profile update needs a user
token that may be missing or revoked. Every route therefore follows the
same shape: ack, validate, check authorization, then hand the slow part
to a background task that must end with exactly one terminal UI update.

HOW: ActionDispatcher holds the collaborators (credential store, blob
host, pipeline, recent-upload cache) and exposes one method per Bolt
listener. Slow work goes through the injected spawn callable (a daemon
thread by default; tests run it inline). State between steps travels in
ActionPayloads on the buttons, never in memory.

Routes:
    /boo <prompt>              -> start an edit (ephemeral working message)
    /boo                       -> preset modal
    preset / advanced modal    -> start an edit (DM working message)
    approve_edit               -> users.setPhoto with the artifact bytes
    retry_edit                 -> same prompt again on the same surface
    cancel_edit                -> "no changes were made"
    open_share_modal           -> share modal; submission posts to a channel
    open_advanced_modal        -> advanced modal, offering the latest upload
    file_shared                -> remember the user's latest image

RULES:
- ack() FIRST in every listener (view submissions may ack with errors)
- Background tasks catch everything, log it, and deliver a retryable error
- Unauthorized users get the auth link and no pipeline call
- A duplicate delivery of an in-flight (route, team, user, payload) is dropped
- The profile update runs last, after the artifact bytes are in hand
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from profile_magic.config import Settings
from profile_magic.core.presets import all_presets, get_preset
from profile_magic.core.results import (
    GENERIC_FAILURE_MESSAGE,
    Artifact,
    Failure,
    GenerationResult,
    ImageRef,
    PayloadError,
    ProfileUpdateError,
    UploadTarget,
)
from profile_magic.core.validation import validate_prompt
from profile_magic.imaging.pipeline import Fetcher, GenerationPipeline, fetch
from profile_magic.server.oauth import auth_start_url
from profile_magic.slack.handles import (
    WORKING_TEXT,
    MessageContent,
    Poster,
    ProcessingHandle,
    create_processing_handle,
    deliver,
    handle_from_interaction,
)
from profile_magic.slack.messages import (
    ACTION_CAPTION,
    ACTION_CHANNEL,
    ACTION_PROMPT,
    ACTION_REFERENCES,
    ACTION_SELECT_PRESET,
    ACTION_USE_PROFILE,
    BLOCK_CAPTION,
    BLOCK_CHANNEL,
    BLOCK_OPTIONS,
    BLOCK_PRESET,
    BLOCK_PROMPT,
    BLOCK_REFERENCES,
    OPTION_INCLUDE_PROFILE,
    authorization_content,
    build_advanced_modal,
    build_preset_modal,
    build_share_modal,
    cancelled_content,
    confirmation_content,
    describe_failure,
    encode_buttons_payload,
    error_content,
    permission_remediation_content,
    result_content,
    share_message_content,
    working_content,
)
from profile_magic.slack.payloads import MAX_REFERENCES, ActionPayload, ArtifactRef, decode_payload
from profile_magic.slack.platform import (
    REVOKED_TOKEN_ERRORS,
    get_profile_photo,
    is_image_file,
    resolve_slack_file,
    set_profile_photo,
)
from profile_magic.storage.blobs import BlobHost
from profile_magic.storage.credentials import CredentialStore
from profile_magic.storage.recent import RecentCache

logger = logging.getLogger(__name__)

# Reference images processed per request when no profile photo is used
MAX_IMAGES_PER_REQUEST = 3

UNREADABLE_PAYLOAD_MESSAGE = (
    "❌ Sorry, I couldn't read that request. Please run the command again."
)
EXPIRED_ARTIFACT_MESSAGE = (
    "⌛ That edited image is no longer available. Please retry the edit."
)
NO_PROFILE_PHOTO_MESSAGE = "❌ I couldn't find your current profile photo."
NO_IMAGES_MESSAGE = "❌ There were no images to edit."

Spawn = Callable[[Callable[[], None]], None]
PhotoSetter = Callable[[str, bytes], None]


def spawn_thread(task: Callable[[], None]) -> None:
    """Run task in a daemon thread; the caller keeps no handle to it."""
    t = threading.Thread(target=task, daemon=True)
    t.start()


class SingleFlight:
    """Tracks keys with work in flight so duplicate deliveries can be dropped."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = set()  # type: Set[Tuple[str, ...]]

    def begin(self, key: Tuple[str, ...]) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def end(self, key: Tuple[str, ...]) -> None:
        with self._lock:
            self._active.discard(key)

    def __contains__(self, key: Tuple[str, ...]) -> bool:
        with self._lock:
            return key in self._active


@dataclass
class EditRequest:
    """Everything a background edit needs, captured before ack returns."""

    team_id: str
    user_id: str
    channel_id: str
    prompt: str
    use_profile: bool = True
    references: List[str] = field(default_factory=list)
    response_url: Optional[str] = None
    prefer_updatable: bool = False
    handle: Optional[ProcessingHandle] = None


class ActionDispatcher:
    """Routes Slack interactions to edits, approvals, and modals."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        blob_host: BlobHost,
        pipeline: GenerationPipeline,
        recent: Optional[RecentCache] = None,
        spawn: Spawn = spawn_thread,
        photo_setter: PhotoSetter = set_profile_photo,
        fetcher: Fetcher = fetch,
        poster: Optional[Poster] = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._blobs = blob_host
        self._pipeline = pipeline
        self._recent = recent if recent is not None else RecentCache()
        self._spawn = spawn
        self._set_photo = photo_setter
        self._fetch = fetcher
        self._poster = poster
        self._inflight = SingleFlight()

    @property
    def local_prefix(self) -> str:
        return "{}/files/".format(self._settings.base_url)

    def auth_url(self, user_id: str, team_id: str) -> str:
        return auth_start_url(self._settings.base_url, user_id, team_id)

    # ------------------------------------------------------------------
    # Slash command
    # ------------------------------------------------------------------

    def handle_command(self, ack: Any, command: Dict[str, Any], client: Any, respond: Any) -> None:
        """Handle /boo [prompt].

        RULES:
        - Empty text opens the preset modal
        - Invalid prompts and unauthorized users get an ephemeral reply
        - Otherwise the edit runs in the background on an ephemeral hook
        """
        ack()

        text = (command.get("text") or "").strip()
        team_id = command.get("team_id", "")
        user_id = command.get("user_id", "")
        channel_id = command.get("channel_id", "")

        if not text:
            self._open_view(client, command.get("trigger_id", ""), build_preset_modal(all_presets(), channel_id))
            return

        prompt, error = validate_prompt(text)
        if error:
            respond(text="❌ {}".format(error), response_type="ephemeral")
            return

        if not self._credentials.is_authorized(team_id, user_id):
            content = authorization_content(self.auth_url(user_id, team_id))
            respond(text=content.text, blocks=content.blocks, response_type="ephemeral")
            return

        request = EditRequest(
            team_id=team_id,
            user_id=user_id,
            channel_id=channel_id,
            prompt=prompt,
            response_url=command.get("response_url"),
        )
        self._run_guarded(("edit", team_id, user_id, channel_id, prompt), lambda: self._start_edit(client, request))

    # ------------------------------------------------------------------
    # Modal submissions
    # ------------------------------------------------------------------

    def handle_preset_submission(self, ack: Any, body: Dict[str, Any], view: Dict[str, Any], client: Any) -> None:
        values = (view.get("state") or {}).get("values") or {}
        selected = ((values.get(BLOCK_PRESET) or {}).get(ACTION_SELECT_PRESET) or {}).get("selected_option") or {}
        preset = get_preset(selected.get("value", ""))
        if preset is None:
            ack(response_action="errors", errors={BLOCK_PRESET: "Please choose a preset."})
            return
        ack()

        team_id, user_id = _actor(body)
        request = EditRequest(
            team_id=team_id,
            user_id=user_id,
            channel_id=view.get("private_metadata") or "",
            prompt=preset.prompt,
            prefer_updatable=True,
        )
        self._start_from_modal(client, request)

    def handle_advanced_submission(self, ack: Any, body: Dict[str, Any], view: Dict[str, Any], client: Any) -> None:
        """Validate the advanced modal, then edit the profile photo and/or references.

        RULES:
        - Validation errors keep the modal open (response_action=errors)
        - At least one image source is required
        - Checked recent uploads count as references, uploaded files first
        """
        values = (view.get("state") or {}).get("values") or {}
        raw_prompt = ((values.get(BLOCK_PROMPT) or {}).get(ACTION_PROMPT) or {}).get("value")
        prompt, error = validate_prompt(raw_prompt)
        if error:
            ack(response_action="errors", errors={BLOCK_PROMPT: error})
            return

        checked = [
            opt.get("value", "")
            for opt in ((values.get(BLOCK_OPTIONS) or {}).get(ACTION_USE_PROFILE) or {}).get("selected_options") or []
        ]
        use_profile = OPTION_INCLUDE_PROFILE in checked
        uploaded = [
            f.get("id", "")
            for f in ((values.get(BLOCK_REFERENCES) or {}).get(ACTION_REFERENCES) or {}).get("files") or []
        ]
        references = []  # type: List[str]
        for file_id in uploaded + [v for v in checked if v != OPTION_INCLUDE_PROFILE]:
            if file_id and file_id not in references:
                references.append(file_id)
        references = references[:MAX_REFERENCES]

        if not use_profile and not references:
            ack(
                response_action="errors",
                errors={BLOCK_REFERENCES: 'Please either check "Use my current profile photo" or upload reference images.'},
            )
            return
        ack()

        team_id, user_id = _actor(body)
        request = EditRequest(
            team_id=team_id,
            user_id=user_id,
            channel_id=view.get("private_metadata") or "",
            prompt=prompt,
            use_profile=use_profile,
            references=references,
            prefer_updatable=True,
        )
        self._start_from_modal(client, request)

    def handle_share_submission(self, ack: Any, body: Dict[str, Any], view: Dict[str, Any], client: Any) -> None:
        values = (view.get("state") or {}).get("values") or {}
        destination = ((values.get(BLOCK_CHANNEL) or {}).get(ACTION_CHANNEL) or {}).get("selected_conversation")
        if not destination:
            ack(response_action="errors", errors={BLOCK_CHANNEL: "Please choose where to share."})
            return
        ack()

        caption = (((values.get(BLOCK_CAPTION) or {}).get(ACTION_CAPTION) or {}).get("value") or "").strip()
        _, user_id = _actor(body)
        value = view.get("private_metadata") or ""
        self._spawn(lambda: self._share(client, user_id, destination, caption, value))

    # ------------------------------------------------------------------
    # Buttons
    # ------------------------------------------------------------------

    def handle_approve(self, ack: Any, body: Dict[str, Any], client: Any) -> None:
        ack()
        team_id, user_id = _actor(body)
        value = _action_value(body)
        self._run_guarded(("approve", team_id, user_id, value), lambda: self._approve(client, body, value))

    def handle_retry(self, ack: Any, body: Dict[str, Any], client: Any) -> None:
        ack()
        team_id, user_id = _actor(body)
        value = _action_value(body)
        self._run_guarded(("retry", team_id, user_id, value), lambda: self._retry(client, body, value))

    def handle_cancel(self, ack: Any, body: Dict[str, Any], client: Any) -> None:
        ack()
        _, user_id = _actor(body)
        deliver(client, handle_from_interaction(body, poster=self._poster), cancelled_content(), user_id)

    def handle_open_share(self, ack: Any, body: Dict[str, Any], client: Any) -> None:
        ack()
        value = _action_value(body)
        try:
            payload = decode_payload(value, self.local_prefix)
        except PayloadError as exc:
            logger.warning("Rejected share payload: %s", exc)
            return
        if not payload.artifacts:
            return
        preview = next((a.url for a in payload.artifacts if a.url), None)
        self._open_view(client, body.get("trigger_id", ""), build_share_modal(value, payload.channel, preview))

    def handle_open_advanced(self, ack: Any, body: Dict[str, Any], client: Any) -> None:
        ack()
        team_id, user_id = _actor(body)
        prompt = ""
        channel_id = (body.get("channel") or {}).get("id", "")
        try:
            payload = decode_payload(_action_value(body), self.local_prefix)
            prompt = payload.prompt
            channel_id = payload.channel or channel_id
        except PayloadError as exc:
            logger.info("Opening advanced modal without payload: %s", exc)
        recent = self._recent.latest(team_id, user_id, channel_id)
        self._open_view(client, body.get("trigger_id", ""), build_advanced_modal(channel_id, prompt, recent))

    def handle_noop(self, ack: Any) -> None:
        """Acknowledge link buttons (they still send a block action)."""
        ack()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_file_shared(self, event: Dict[str, Any], body: Dict[str, Any], client: Any) -> None:
        """Remember the latest image a user shared, per channel."""
        file_id = event.get("file_id") or (event.get("file") or {}).get("id", "")
        user_id = event.get("user_id", "")
        channel_id = event.get("channel_id", "")
        team_id = body.get("team_id", "")
        if not file_id or not user_id:
            return

        try:
            resp = client.files_info(file=file_id)
        except Exception:
            logger.exception("Failed to fetch file info for %s", file_id)
            return

        file_data = resp.get("file") or {}
        if not is_image_file(file_data):
            return
        self._recent.prune()
        self._recent.remember(
            team_id,
            user_id,
            channel_id,
            file_id,
            name=file_data.get("name", ""),
            url_private=file_data.get("url_private", ""),
            mimetype=file_data.get("mimetype", ""),
        )
        logger.info("Tracked recent upload %s for %s", file_id, user_id)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _run_guarded(self, key: Tuple[str, ...], task: Callable[[], None]) -> None:
        if not self._inflight.begin(key):
            logger.info("Dropping duplicate %s delivery for %s", key[0], key[2])
            return

        def run() -> None:
            try:
                task()
            finally:
                self._inflight.end(key)

        try:
            self._spawn(run)
        except Exception:
            self._inflight.end(key)
            raise

    def _start_from_modal(self, client: Any, request: EditRequest) -> None:
        if not self._credentials.is_authorized(request.team_id, request.user_id):
            content = authorization_content(self.auth_url(request.user_id, request.team_id))
            self._spawn(lambda: deliver(client, None, content, request.user_id))
            return
        key = ("edit", request.team_id, request.user_id, request.channel_id, request.prompt)
        self._run_guarded(key, lambda: self._start_edit(client, request))

    def _start_edit(self, client: Any, request: EditRequest) -> None:
        """Run one edit end to end and leave the handle in a terminal state."""
        handle = request.handle
        retry_value = encode_buttons_payload(_request_payload(request))
        try:
            if handle is None:
                handle = create_processing_handle(
                    client,
                    request.user_id,
                    request.channel_id,
                    response_url=request.response_url,
                    prefer_updatable=request.prefer_updatable,
                    text=WORKING_TEXT,
                    poster=self._poster,
                )
            content = self._run_edit(client, request, retry_value)
        except Exception:
            logger.exception("Edit failed for %s", request.user_id)
            content = error_content("❌ {}".format(GENERIC_FAILURE_MESSAGE), retry_value)
        deliver(client, handle, content, request.user_id)

    def _run_edit(self, client: Any, request: EditRequest, retry_value: Optional[str]) -> MessageContent:
        references = []  # type: List[ImageRef]
        for file_id in request.references:
            ref = resolve_slack_file(client, file_id)
            if ref is not None:
                references.append(ref)

        upload = UploadTarget(
            client=client,
            user_id=request.user_id,
            channel_id=request.channel_id if request.channel_id.startswith("D") else None,
        )

        results = []  # type: List[Tuple[str, GenerationResult]]
        if request.use_profile:
            profile = get_profile_photo(client, request.user_id)
            if profile is None:
                return error_content(NO_PROFILE_PHOTO_MESSAGE, retry_value)
            reference = references[0] if references else None
            results.append(("Profile photo", self._pipeline.edit(profile, request.prompt, reference, upload)))
        elif references:
            items = self._pipeline.edit_many(references[:MAX_IMAGES_PER_REQUEST], request.prompt, upload=upload)
            results.extend((item.source.name, item.result) for item in items)
        else:
            return error_content(NO_IMAGES_MESSAGE)

        if not any(r.ok for _, r in results):
            failure = results[0][1]  # type: Failure
            return error_content(describe_failure(failure), retry_value)
        return result_content(request.prompt, results, _request_payload(request))

    def _approve(self, client: Any, body: Dict[str, Any], value: str) -> None:
        team_id, user_id = _actor(body)
        handle = handle_from_interaction(body, poster=self._poster)
        try:
            content = self._publish_profile_photo(client, team_id, user_id, value)
        except Exception:
            logger.exception("Profile update failed for %s", user_id)
            content = error_content("❌ {}".format(GENERIC_FAILURE_MESSAGE), value or None)
        deliver(client, handle, content, user_id)

    def _publish_profile_photo(self, client: Any, team_id: str, user_id: str, value: str) -> MessageContent:
        try:
            payload = decode_payload(value, self.local_prefix)
        except PayloadError as exc:
            logger.warning("Rejected approve payload from %s: %s", user_id, exc)
            return error_content(UNREADABLE_PAYLOAD_MESSAGE)

        token = self._credentials.get_token(team_id, user_id)
        if not token:
            return authorization_content(self.auth_url(user_id, team_id))

        data = self._artifact_bytes(client, payload.artifacts[0]) if payload.artifacts else None
        if data is None:
            return error_content(EXPIRED_ARTIFACT_MESSAGE, value)

        try:
            self._set_photo(token, data)
        except ProfileUpdateError as exc:
            if exc.permission:
                if exc.slack_error in REVOKED_TOKEN_ERRORS:
                    self._credentials.remove(team_id, user_id)
                return permission_remediation_content(self.auth_url(user_id, team_id), exc.slack_error)
            return error_content("❌ Failed to update your profile photo. Please try again.", value)

        logger.info("Profile photo updated for %s", user_id)
        return confirmation_content()

    def _artifact_bytes(self, client: Any, artifact: ArtifactRef) -> Optional[bytes]:
        """Local blob first, then the Slack file copy (bot token download)."""
        if artifact.url:
            key = self._blobs.key_from_url(artifact.url)
            data = self._blobs.read(key) if key else None
            if data is not None:
                return data
        if artifact.file_id:
            ref = resolve_slack_file(client, artifact.file_id)
            if ref is not None:
                try:
                    return self._fetch(ref)
                except Exception as exc:
                    logger.warning("Failed to download Slack file %s: %s", artifact.file_id, exc)
        return None

    def _retry(self, client: Any, body: Dict[str, Any], value: str) -> None:
        team_id, user_id = _actor(body)
        handle = handle_from_interaction(body, poster=self._poster)
        try:
            payload = decode_payload(value, self.local_prefix)
        except PayloadError as exc:
            logger.warning("Rejected retry payload from %s: %s", user_id, exc)
            deliver(client, handle, error_content(UNREADABLE_PAYLOAD_MESSAGE), user_id)
            return

        if not self._credentials.is_authorized(team_id, user_id):
            deliver(client, handle, authorization_content(self.auth_url(user_id, team_id)), user_id)
            return

        channel_id = payload.channel or (body.get("channel") or {}).get("id", "")
        if handle is not None and not handle.update(client, working_content(payload.prompt)):
            logger.info("Original surface is gone, retrying in a new DM message")
            handle = None

        request = EditRequest(
            team_id=team_id,
            user_id=user_id,
            channel_id=channel_id,
            prompt=payload.prompt,
            use_profile=payload.use_profile,
            references=list(payload.references),
            prefer_updatable=True,
            handle=handle,
        )
        self._start_edit(client, request)

    def _share(self, client: Any, user_id: str, destination: str, caption: str, value: str) -> None:
        try:
            payload = decode_payload(value, self.local_prefix)
        except PayloadError as exc:
            logger.warning("Rejected share payload from %s: %s", user_id, exc)
            deliver(client, None, error_content(UNREADABLE_PAYLOAD_MESSAGE), user_id)
            return

        artifacts = [self._shareable(client, ref) for ref in payload.artifacts]
        text = "<@{}> shared an AI-edited photo".format(user_id)
        if caption:
            text = "{}\n{}".format(text, caption)
        content = share_message_content([a for a in artifacts if a is not None], text)
        try:
            client.chat_postMessage(channel=destination, text=content.text, blocks=content.blocks)
        except Exception:
            logger.exception("Failed to share to %s", destination)
            message = "❌ I couldn't post to <#{}>. Make sure I'm a member of that channel.".format(destination)
            deliver(client, None, error_content(message), user_id)

    def _shareable(self, client: Any, ref: ArtifactRef) -> Optional[Artifact]:
        if ref.url:
            return Artifact(filename="Edited Image", url=ref.url, file_id=ref.file_id)
        if ref.file_id:
            try:
                file_data = client.files_info(file=ref.file_id).get("file") or {}
            except Exception as exc:
                logger.warning("Could not look up shared file %s: %s", ref.file_id, exc)
                return None
            return Artifact(
                filename=file_data.get("name") or "Edited Image",
                file_id=ref.file_id,
                permalink=file_data.get("permalink"),
            )
        return None

    def _open_view(self, client: Any, trigger_id: str, view: Dict[str, Any]) -> None:
        try:
            client.views_open(trigger_id=trigger_id, view=view)
        except Exception:
            logger.exception("Failed to open %s modal", view.get("callback_id"))


# ---------------------------------------------------------------------------
# Body helpers
# ---------------------------------------------------------------------------


def _actor(body: Dict[str, Any]) -> Tuple[str, str]:
    """(team_id, user_id) of whoever triggered the interaction."""
    user = body.get("user") or {}
    team_id = (body.get("team") or {}).get("id") or user.get("team_id") or body.get("team_id", "")
    return team_id, user.get("id") or body.get("user_id", "")


def _action_value(body: Dict[str, Any]) -> str:
    actions = body.get("actions") or []
    return (actions[0].get("value") or "") if actions else ""


def _request_payload(request: EditRequest) -> ActionPayload:
    return ActionPayload(
        prompt=request.prompt,
        channel=request.channel_id,
        references=list(request.references),
        use_profile=request.use_profile,
    )
