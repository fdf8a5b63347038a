import base64
import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from app.schemas.conference import ArtifactKind, ConferenceMetadata, DispatchPayload
from app.services.google_workspace_client import (
    ArtifactProvider,
    DirectoryLookup,
    GoogleWorkspaceError,
)
from app.services.webhook_notifier import Notifier, WebhookDeliveryError

BASE_TIME = datetime(2025, 3, 10, 14, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[DispatchPayload] = []
        self.failures_left = 0
        self.failing_conferences: set[str] = set()
        self._lock = threading.Lock()

    def send(self, payload: DispatchPayload) -> None:
        with self._lock:
            if payload.conference_id in self.failing_conferences:
                raise WebhookDeliveryError("Webhook destination HTTP 502: bad gateway", status_code=502)
            if self.failures_left > 0:
                self.failures_left -= 1
                raise WebhookDeliveryError("Webhook destination HTTP 503: unavailable", status_code=503)
            self.sent.append(payload)


class FakeProvider(ArtifactProvider):
    def __init__(self) -> None:
        self.metadata: dict[str, ConferenceMetadata] = {}
        self.links: dict[str, str] = {}
        self.metadata_error: Exception | None = None
        self.link_error: Exception | None = None
        self.link_calls: list[tuple[ArtifactKind, str, str | None]] = []

    def get_conference_metadata(self, conference_id: str, as_email: str | None) -> ConferenceMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata.get(conference_id, ConferenceMetadata())

    def get_artifact_link(self, kind: ArtifactKind, ref: str, as_email: str | None) -> str | None:
        self.link_calls.append((kind, ref, as_email))
        if self.link_error is not None:
            raise self.link_error
        return self.links.get(ref)


class FakeDirectory(DirectoryLookup):
    def __init__(self, emails: dict[str, str] | None = None) -> None:
        self.emails = emails or {}
        self.calls: list[str] = []
        self.fail = False

    def resolve_user_email(self, actor_ref: str) -> str | None:
        self.calls.append(actor_ref)
        if self.fail:
            raise GoogleWorkspaceError("Google API HTTP 500: backend error", status_code=500)
        return self.emails.get(actor_ref)


def build_envelope(
    payload: dict[str, Any],
    *,
    event_type: str | None = None,
    subject: str | None = None,
    event_time: str | None = "2025-03-10T14:00:00Z",
    message_id: str = "msg-1",
) -> dict[str, Any]:
    attributes: dict[str, str] = {}
    if event_type:
        attributes["ce-type"] = event_type
    if subject:
        attributes["ce-subject"] = subject
    if event_time:
        attributes["ce-time"] = event_time
    return {
        "message": {
            "data": base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii"),
            "attributes": attributes,
            "messageId": message_id,
            "publishTime": "2025-03-10T14:00:01Z",
        },
        "subscription": "projects/demo/subscriptions/meet-events",
    }


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_envelope() -> Callable[..., dict[str, Any]]:
    return build_envelope


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()
