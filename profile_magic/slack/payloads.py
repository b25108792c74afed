"""Action Payload codec: the state carried inside a Block Kit button value.

WHY: The bot keeps no per-interaction state in memory. Everything an
approve, retry, share or advanced click needs (artifact refs, prompt,
channel, reference files) rides along in the button's value field.
That value comes back from Slack untrusted, so it is size-bounded and
schema-validated before use.

HOW: ActionPayload serializes to compact JSON. decode_payload() parses,
validates against PAYLOAD_SCHEMA with jsonschema, and then checks that
every artifact URL points at this deployment's /files/ prefix.

RULES:
- Encoded value must be <= 2000 characters (Slack's button value limit)
- At most 3 artifacts and 5 reference file ids
- Artifact URLs outside local_prefix are rejected (no fetching of
  arbitrary URLs on approve)
- Any violation raises PayloadError
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jsonschema

from profile_magic.core.results import Artifact, PayloadError

PAYLOAD_VERSION = 1
MAX_PAYLOAD_CHARS = 2000
MAX_ARTIFACTS = 3
MAX_REFERENCES = 5

PAYLOAD_SCHEMA = {
    "type": "object",
    "properties": {
        "v": {"const": PAYLOAD_VERSION},
        "artifacts": {
            "type": "array",
            "maxItems": MAX_ARTIFACTS,
            "items": {
                "type": "object",
                "properties": {
                    "url": {"type": "string", "maxLength": 500},
                    "file_id": {"type": "string", "pattern": "^F[A-Z0-9]+$"},
                },
                "anyOf": [{"required": ["url"]}, {"required": ["file_id"]}],
                "additionalProperties": False,
            },
        },
        "prompt": {"type": "string", "maxLength": 500},
        "channel": {"type": "string", "maxLength": 32},
        "references": {
            "type": "array",
            "maxItems": MAX_REFERENCES,
            "items": {"type": "string", "pattern": "^F[A-Z0-9]+$"},
        },
        "use_profile": {"type": "boolean"},
    },
    "required": ["v", "artifacts", "prompt"],
    "additionalProperties": False,
}  # type: Dict[str, Any]


@dataclass
class ArtifactRef:
    url: Optional[str] = None
    file_id: Optional[str] = None

    @classmethod
    def from_artifact(cls, artifact: Artifact) -> ArtifactRef:
        return cls(url=artifact.url, file_id=artifact.file_id)

    def to_dict(self) -> Dict[str, str]:
        data = {}
        if self.url:
            data["url"] = self.url
        if self.file_id:
            data["file_id"] = self.file_id
        return data


@dataclass
class ActionPayload:
    """State round-tripped through a button value."""

    prompt: str
    artifacts: List[ArtifactRef] = field(default_factory=list)
    channel: str = ""
    references: List[str] = field(default_factory=list)
    use_profile: bool = True
    v: int = PAYLOAD_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.v,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "prompt": self.prompt,
            "channel": self.channel,
            "references": list(self.references),
            "use_profile": self.use_profile,
        }


def encode_payload(payload: ActionPayload) -> str:
    # Slack counts characters, so keep non-ASCII text unescaped
    value = json.dumps(payload.to_dict(), separators=(",", ":"), ensure_ascii=False)
    if len(value) > MAX_PAYLOAD_CHARS:
        raise PayloadError(
            "Action payload is {} characters (max {})".format(len(value), MAX_PAYLOAD_CHARS)
        )
    return value


def decode_payload(value: Optional[str], local_prefix: str) -> ActionPayload:
    """Parse and validate a button value.

    Args:
        value: Raw button value from the action body.
        local_prefix: "{base_url}/files/"; artifact URLs must start with it.

    Raises:
        PayloadError: Oversized, unparsable, schema-invalid, or foreign URL.
    """
    if not value:
        raise PayloadError("Empty action payload")
    if len(value) > MAX_PAYLOAD_CHARS:
        raise PayloadError("Action payload exceeds {} characters".format(MAX_PAYLOAD_CHARS))

    try:
        data = json.loads(value)
    except ValueError as exc:
        raise PayloadError("Action payload is not valid JSON: {}".format(exc))

    try:
        jsonschema.validate(instance=data, schema=PAYLOAD_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise PayloadError("Action payload failed validation: {}".format(exc.message))

    artifacts = [
        ArtifactRef(url=item.get("url"), file_id=item.get("file_id"))
        for item in data["artifacts"]
    ]
    for artifact in artifacts:
        if artifact.url and not artifact.url.startswith(local_prefix):
            raise PayloadError("Artifact URL is not served by this host")

    return ActionPayload(
        prompt=data["prompt"],
        artifacts=artifacts,
        channel=data.get("channel", ""),
        references=list(data.get("references", [])),
        use_profile=data.get("use_profile", True),
        v=data["v"],
    )
