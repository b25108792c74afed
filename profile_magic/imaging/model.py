"""Generative image model adapter.

WHY: The pipeline should not care which provider edits the picture. It
hands over image bytes plus an instruction and interprets whatever
comes back. Tests substitute a fake that returns canned responses.

HOW: ImageModel is a structural Protocol. GeminiImageModel wraps the
google-genai client and asks for both IMAGE and TEXT modalities, so a
refusal explanation can come back alongside (or instead of) an image.

RULES:
- generate() returns the raw provider response; interpretation lives in
  imaging.pipeline.interpret_response
- Provider exceptions propagate; the pipeline turns them into TRANSIENT
- Image parts go after the instruction text, in input order
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from google import genai
from google.genai import types

logger = logging.getLogger(__name__)

# (bytes, mime_type) pairs in the order the instruction refers to them
ImageInput = Tuple[bytes, str]


class ImageModel(Protocol):
    def generate(self, images: Sequence[ImageInput], instruction: str) -> Any:
        ...


class GeminiImageModel:
    """Gemini image editing through ``client.models.generate_content``."""

    def __init__(self, api_key: str, model: str, client: Optional[Any] = None) -> None:
        self._model = model
        self._client = client if client is not None else genai.Client(api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    def generate(self, images: Sequence[ImageInput], instruction: str) -> Any:
        parts = [types.Part.from_text(text=instruction)]  # type: List[Any]
        for data, mime_type in images:
            parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))

        logger.info("Calling %s with %d image(s)", self._model, len(images))
        return self._client.models.generate_content(
            model=self._model,
            contents=parts,
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE", "TEXT"],
            ),
        )
