"""Decoding of Google Workspace Events delivered through a Pub/Sub push subscription.

A push request body looks like::

    {
      "message": {
        "data": "<base64 JSON event payload>",
        "attributes": {"ce-type": "...", "ce-subject": "...", "ce-time": "..."},
        "messageId": "...",
        "publishTime": "..."
      },
      "subscription": "projects/.../subscriptions/..."
    }

The conference id is not in a fixed place: it is matched out of a resource
name that defaults to the event subject and is overridden by whichever
artifact field the payload carries.
"""

import base64
import binascii
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.schemas.conference import ArtifactKind

CONFERENCE_ID_PATTERN = re.compile(r"conferenceRecords/([^/]+)")
_FRACTION_PATTERN = re.compile(r"\.(\d+)")

# (kind, payload field, event type token, permanent link path)
_ARTIFACT_FIELDS = (
    (ArtifactKind.recording, "recording", "recording", "driveDestination.exportUri"),
    (ArtifactKind.transcript, "transcript", "transcript", "docsDestination.exportUri"),
    (ArtifactKind.smart_note, "smartNote", "smartNote", "docsDestination.exportUri"),
)


class ArtifactEventDecodeError(Exception):
    pass


@dataclass(frozen=True)
class DecodedArtifactEvent:
    conference_id: str | None
    event_type: str | None
    subject: str | None
    resource_name: str | None
    artifact_kind: ArtifactKind
    artifact_ref: str | None = None
    artifact_url_hint: str | None = None
    event_time: datetime | None = None
    message_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class ArtifactEventDecoder:
    def decode(self, envelope: Mapping[str, Any]) -> DecodedArtifactEvent:
        message = envelope.get("message")
        if not isinstance(message, Mapping) or not message.get("data"):
            raise ArtifactEventDecodeError("Invalid Pub/Sub push message: missing message.data.")

        payload = self._decode_data(message["data"])
        raw_attributes = message.get("attributes")
        attributes = raw_attributes if isinstance(raw_attributes, Mapping) else {}

        event_type = _to_text(attributes.get("ce-type"))
        subject = _to_text(attributes.get("ce-subject"))
        resource_name = self._resolve_resource_name(payload, subject)
        artifact_kind, artifact_field = self._resolve_artifact_kind(payload, event_type)

        artifact_ref: str | None = None
        artifact_url_hint: str | None = None
        if artifact_field is not None:
            artifact_ref = _to_text(_extract_path(payload, f"{artifact_field[1]}.name"))
            artifact_url_hint = _to_text(
                _extract_path(payload, f"{artifact_field[1]}.{artifact_field[3]}"),
            )

        return DecodedArtifactEvent(
            conference_id=extract_conference_id(resource_name),
            event_type=event_type,
            subject=subject,
            resource_name=resource_name,
            artifact_kind=artifact_kind,
            artifact_ref=artifact_ref,
            artifact_url_hint=artifact_url_hint,
            event_time=parse_event_time(attributes.get("ce-time"))
            or parse_event_time(message.get("publishTime")),
            message_id=_to_text(message.get("messageId")),
            payload=payload,
        )

    def _decode_data(self, raw_data: Any) -> dict[str, Any]:
        if not isinstance(raw_data, str):
            raise ArtifactEventDecodeError("Invalid Pub/Sub push message: data must be a string.")
        try:
            decoded = base64.b64decode(raw_data, validate=False).decode("utf-8")
            payload = json.loads(decoded or "{}")
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ArtifactEventDecodeError("Pub/Sub message data is not base64-encoded JSON.") from exc
        if not isinstance(payload, dict):
            raise ArtifactEventDecodeError("Pub/Sub message data must decode to a JSON object.")
        return payload

    def _resolve_resource_name(self, payload: Mapping[str, Any], subject: str | None) -> str | None:
        resource_name = subject
        for path in (
            "conferenceRecord.name",
            "recording.name",
            "transcript.name",
            "smartNote.name",
        ):
            candidate = _to_text(_extract_path(payload, path))
            if candidate:
                resource_name = candidate
        return resource_name

    def _resolve_artifact_kind(
        self,
        payload: Mapping[str, Any],
        event_type: str | None,
    ) -> tuple[ArtifactKind, tuple[ArtifactKind, str, str, str] | None]:
        if event_type:
            for artifact_field in _ARTIFACT_FIELDS:
                if artifact_field[2] in event_type:
                    return artifact_field[0], artifact_field
            return ArtifactKind.none, None

        for artifact_field in _ARTIFACT_FIELDS:
            if isinstance(payload.get(artifact_field[1]), Mapping):
                return artifact_field[0], artifact_field
        return ArtifactKind.none, None


def extract_conference_id(resource_name: str | None) -> str | None:
    if not resource_name:
        return None
    match = CONFERENCE_ID_PATTERN.search(resource_name)
    if not match:
        return None
    return f"conferenceRecords/{match.group(1)}"


def normalize_conference_id(value: str) -> str | None:
    cleaned_value = value.strip().strip("/")
    if not cleaned_value:
        return None
    if "/" not in cleaned_value:
        return f"conferenceRecords/{cleaned_value}"
    return extract_conference_id(cleaned_value)


def parse_event_time(value: Any) -> datetime | None:
    text = _to_text(value)
    if not text:
        return None
    # RFC 3339 timestamps from Google may carry nanoseconds.
    normalized = _FRACTION_PATTERN.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    normalized = normalized.replace("Z", "+00:00").replace("z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _extract_path(payload: Mapping[str, Any], path: str) -> Any:
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _to_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned_value = value.strip()
    return cleaned_value or None
