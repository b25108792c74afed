"""Generation pipeline: fetch, edit with the model, persist, upload.

WHY: Every edit flow (slash command, preset, advanced modal, retry) does
the same four steps and needs the same failure semantics. Centralizing
them means the dispatcher only has to render a GenerationResult.

HOW: edit() walks a small state machine:

    Fetching -> Generating -> Uploading -> Done
        \\           \\            \\
         +-----------+------------+--> Failed(kind)

Each transition is logged at INFO. Expected failures are returned as
Failure values; nothing in here raises for a bad model response, a dead
URL or a rejected upload.

RULES:
- Source and reference bytes are fetched with httpx (30 s timeout)
- Model exceptions and fetch errors are TRANSIENT
- Block reasons and safety finish reasons are CONTENT_BLOCKED
- Any other non-STOP finish, or no image at all, is GENERATION_FAILED
- The blob is persisted first; the Slack upload is best-effort
  (primary channel, then DM); only when every target fails is the
  edit a failure
- No automatic retries
"""

from __future__ import annotations

import base64
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from profile_magic.core.results import (
    GENERIC_NO_IMAGE_MESSAGE,
    Artifact,
    BatchItem,
    Failure,
    FailureKind,
    GenerationResult,
    ImageRef,
    Success,
    UploadTarget,
    transient,
)
from profile_magic.imaging.model import ImageModel
from profile_magic.slack.platform import open_dm
from profile_magic.storage.blobs import BlobHost, extension_for_mime, infer_media_type

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_S = 30.0

BLOCKED_MESSAGE = (
    "Your prompt was blocked by content safety filters. "
    "Please try a different, more neutral prompt."
)

_BLOCKING_FINISH_REASONS = frozenset({"PROHIBITED_CONTENT", "SAFETY", "IMAGE_SAFETY", "BLOCKLIST"})

_EDIT_INSTRUCTION = "Edit this image: {prompt}. Keep the edit natural and realistic."
_REFERENCE_INSTRUCTION = (
    "Edit the first image: {prompt}. Apply the style or elements from the "
    "second image. Keep the person recognizable and the result natural."
)


class Stage(str, enum.Enum):
    FETCHING = "fetching"
    GENERATING = "generating"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"


Fetcher = Callable[[ImageRef], bytes]


def fetch(ref: ImageRef, timeout: float = FETCH_TIMEOUT_S) -> bytes:
    """Download image bytes, sending the ref's token as a Bearer header."""
    headers = {}
    if ref.token:
        headers["Authorization"] = "Bearer {}".format(ref.token)
    with httpx.Client(timeout=timeout, follow_redirects=True) as http:
        resp = http.get(ref.url, headers=headers)
        resp.raise_for_status()
        return resp.content


def build_instruction(prompt: str, with_reference: bool = False) -> str:
    template = _REFERENCE_INSTRUCTION if with_reference else _EDIT_INSTRUCTION
    return template.format(prompt=prompt)


def _enum_name(value: Any) -> str:
    """Normalize a provider enum (or plain string) to its bare name."""
    if value is None:
        return ""
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name
    text = str(value)
    return text.rsplit(".", 1)[-1]


def _first_candidate(response: Any) -> Any:
    candidates = getattr(response, "candidates", None) or []
    return candidates[0] if candidates else None


def _response_text(response: Any) -> str:
    """Collect text parts without touching response.text (which warns on mixed parts)."""
    texts = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                texts.append(text.strip())
    return " ".join(texts)


def interpret_response(response: Any) -> Union[GeneratedImage, Failure]:
    """Classify a raw model response as image bytes or a typed Failure.

    WHY: Providers signal refusals three different ways (prompt feedback,
    finish reason, or silently returning only text). Callers need one
    answer.

    RULES:
    - prompt_feedback.block_reason wins over everything else
    - The first inline_data part is the image; str data is base64
    - Finish reason STOP (or none) without an image is GENERATION_FAILED
      with the model's text quoted when present
    """
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = _enum_name(getattr(feedback, "block_reason", None))
    if block_reason and block_reason != "BLOCKED_REASON_UNSPECIFIED":
        extra = getattr(feedback, "block_reason_message", None) or ""
        message = "Request was blocked. Reason: {}. {}".format(block_reason, extra).strip()
        return Failure(FailureKind.CONTENT_BLOCKED, message, detail=block_reason)

    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is None or not getattr(inline, "data", None):
                continue
            data = inline.data
            if isinstance(data, str):
                data = base64.b64decode(data)
            return GeneratedImage(data=data, mime_type=getattr(inline, "mime_type", None) or "image/png")

    candidate = _first_candidate(response)
    finish_reason = _enum_name(getattr(candidate, "finish_reason", None))
    if finish_reason in _BLOCKING_FINISH_REASONS:
        return Failure(FailureKind.CONTENT_BLOCKED, BLOCKED_MESSAGE, detail=finish_reason)
    if finish_reason and finish_reason not in ("STOP", "FINISH_REASON_UNSPECIFIED"):
        return Failure(
            FailureKind.GENERATION_FAILED,
            "Image generation failed ({}). Please try rephrasing your prompt.".format(finish_reason),
            detail=finish_reason,
        )

    text = _response_text(response)
    if text:
        message = 'The AI model did not return an image. The model responded with text: "{}"'.format(text)
    else:
        message = GENERIC_NO_IMAGE_MESSAGE
    return Failure(FailureKind.GENERATION_FAILED, message, detail="no image part")


class GenerationPipeline:
    """Runs one edit (or a batch) from source URL to referenced artifact.

    RULES:
    - fetcher defaults to fetch(); tests inject a stub
    - clock is only used to name output files
    """

    def __init__(
        self,
        model: ImageModel,
        blob_host: BlobHost,
        fetcher: Optional[Fetcher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._model = model
        self._blobs = blob_host
        self._fetch = fetcher or fetch
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def edit(
        self,
        source: ImageRef,
        prompt: str,
        reference: Optional[ImageRef] = None,
        upload: Optional[UploadTarget] = None,
    ) -> GenerationResult:
        self._enter(Stage.FETCHING, source)
        try:
            images = [(self._fetch(source), _image_mime(source.name))]
            if reference is not None:
                images.append((self._fetch(reference), _image_mime(reference.name)))
        except Exception as exc:
            logger.warning("Failed to fetch source image %s: %s", source.name, exc)
            return self._fail(transient("fetch failed: {}".format(exc)))

        self._enter(Stage.GENERATING, source)
        instruction = build_instruction(prompt, with_reference=reference is not None)
        try:
            response = self._model.generate(images, instruction)
        except Exception as exc:
            logger.exception("Image model call failed")
            return self._fail(transient("model error: {}".format(exc)))

        outcome = interpret_response(response)
        if isinstance(outcome, Failure):
            return self._fail(outcome)

        self._enter(Stage.UPLOADING, source)
        result = self._publish(outcome, upload)
        if result.ok:
            self._enter(Stage.DONE, source)
        else:
            self._fail(result)
        return result

    def edit_many(
        self,
        sources: Sequence[ImageRef],
        prompt: str,
        reference: Optional[ImageRef] = None,
        upload: Optional[UploadTarget] = None,
    ) -> List[BatchItem]:
        """Edit each source in order; one BatchItem per input, never aborting."""
        items = []  # type: List[BatchItem]
        for index, source in enumerate(sources):
            logger.info("Batch item %d/%d", index + 1, len(sources))
            items.append(BatchItem(source=source, result=self.edit(source, prompt, reference, upload)))
        return items

    # ------------------------------------------------------------------
    # Uploading
    # ------------------------------------------------------------------

    def _publish(self, image: GeneratedImage, upload: Optional[UploadTarget]) -> GenerationResult:
        filename = "edited_{}{}".format(int(self._clock() * 1000), extension_for_mime(image.mime_type))

        url = None  # type: Optional[str]
        try:
            url = self._blobs.put(image.data, filename)
        except OSError as exc:
            logger.error("Failed to persist generated image: %s", exc)

        file_id = None  # type: Optional[str]
        permalink = None  # type: Optional[str]
        if upload is not None:
            file_id, permalink = _upload_to_slack(upload, image.data, filename)

        artifact = Artifact(filename=filename, url=url, file_id=file_id, permalink=permalink)
        if not artifact.is_referenced:
            return transient("generated image could not be stored or uploaded")
        return Success(artifact=artifact, mime_type=image.mime_type)

    # ------------------------------------------------------------------
    # State logging
    # ------------------------------------------------------------------

    def _enter(self, stage: Stage, source: ImageRef) -> None:
        logger.info("Edit %s: %s", stage.value, source.name)

    def _fail(self, failure: Failure) -> Failure:
        logger.info("Edit %s (%s): %s", Stage.FAILED.value, failure.kind.value, failure.detail)
        return failure


def _image_mime(name: str) -> str:
    mime = infer_media_type(name)
    return mime if mime.startswith("image/") else "image/jpeg"


def _upload_to_slack(
    target: UploadTarget, data: bytes, filename: str
) -> Tuple[Optional[str], Optional[str]]:
    """Try files_upload_v2 on the primary channel, then the user's DM.

    Returns (file_id, permalink); (None, None) when every target fails.
    """
    if target.channel_id:
        uploaded = _try_upload(target, target.channel_id, data, filename)
        if uploaded is not None:
            return uploaded

    dm_channel = open_dm(target.client, target.user_id)
    if dm_channel and dm_channel != target.channel_id:
        uploaded = _try_upload(target, dm_channel, data, filename)
        if uploaded is not None:
            return uploaded

    return None, None


def _try_upload(
    target: UploadTarget, channel: str, data: bytes, filename: str
) -> Optional[Tuple[str, Optional[str]]]:
    try:
        resp = target.client.files_upload_v2(
            channel=channel,
            content=data,
            filename=filename,
            title=target.title,
        )
    except Exception as exc:
        logger.warning("Slack upload to %s failed: %s", channel, exc)
        return None

    file_obj = _uploaded_file(resp)
    if not file_obj.get("id"):
        logger.warning("Slack upload to %s returned no file id", channel)
        return None
    logger.info("Uploaded %s to Slack as %s", filename, file_obj["id"])
    return file_obj["id"], file_obj.get("permalink")


def _uploaded_file(resp: Any) -> Dict[str, Any]:
    file_obj = resp.get("file")
    if isinstance(file_obj, dict):
        return file_obj
    files = resp.get("files") or []
    if files and isinstance(files[0], dict):
        return files[0]
    return {}
