import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.schemas.conference import ArtifactKind, ConferenceMetadata
from app.services.actor_resolver import clear_actor_resolver_cache
from app.services.conference_service import ConferenceService
from app.services.conference_tracking_store import clear_conference_tracking_store_cache
from app.services.google_workspace_client import ArtifactProvider, DirectoryLookup
from app.services.meeting_record_store import clear_meeting_record_store_cache

client = TestClient(app)

EnvelopeFactory = Callable[..., dict[str, Any]]
OWNER_SUBJECT = "//cloudidentity.googleapis.com/users/1122334455"
EXTERNAL_SUBJECT = "//cloudidentity.googleapis.com/users/9988776655"


class _FakeWorkspace(ArtifactProvider, DirectoryLookup):
    def get_conference_metadata(self, conference_id: str, as_email: str | None) -> ConferenceMetadata:
        return ConferenceMetadata(title="Weekly sync")

    def get_artifact_link(self, kind: ArtifactKind, ref: str, as_email: str | None) -> str | None:
        return None

    def resolve_user_email(self, actor_ref: str) -> str | None:
        return {
            OWNER_SUBJECT: "owner@example.com",
            EXTERNAL_SUBJECT: "nobody@external.com",
        }.get(actor_ref)


class _MockResponse:
    status = 200

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return b"{}"


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("CONFERENCE_STORE", "memory")
    monkeypatch.setenv("MONITORED_USERS", "Owner@Example.com, someone@example.com")
    monkeypatch.setenv("WEBHOOK_DESTINATION_URL", "https://hooks.example.com/meet")
    monkeypatch.setenv("PUBSUB_WEBHOOK_SECRET", "")
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT_JSON", "")
    workspace = _FakeWorkspace()
    monkeypatch.setattr(
        "app.services.conference_service.create_google_workspace_client",
        lambda **kwargs: workspace,
    )
    get_settings.cache_clear()
    clear_conference_tracking_store_cache()
    clear_meeting_record_store_cache()
    clear_actor_resolver_cache()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()
    clear_conference_tracking_store_cache()
    clear_meeting_record_store_cache()
    clear_actor_resolver_cache()


@pytest.fixture
def delivered(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        payloads.append(json.loads(req.data.decode("utf-8")))
        return _MockResponse()

    monkeypatch.setattr("app.services.webhook_notifier.request.urlopen", fake_urlopen)
    return payloads


def _artifact_event(
    make_envelope: EnvelopeFactory,
    field: str,
    conference: str = "abc",
    subject: str = OWNER_SUBJECT,
) -> dict[str, Any]:
    event_types = {
        "recording": "google.workspace.meet.recording.v2.fileGenerated",
        "transcript": "google.workspace.meet.transcript.v2.fileGenerated",
        "smartNote": "google.workspace.meet.smartNote.v2.fileGenerated",
    }
    destination = "driveDestination" if field == "recording" else "docsDestination"
    return make_envelope(
        {
            field: {
                "name": f"conferenceRecords/{conference}/{field}s/1",
                destination: {"exportUri": f"https://example.com/{conference}/{field}"},
            },
        },
        event_type=event_types[field],
        subject=subject,
    )


def _auth() -> dict[str, str]:
    return {"Authorization": "Bearer cron-secret"}


def test_complete_conference_is_delivered_on_last_artifact(
    make_envelope: EnvelopeFactory,
    delivered: list[dict[str, Any]],
) -> None:
    first = client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "recording"))
    second = client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "smartNote"))
    third = client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "transcript"))

    assert first.status_code == 200
    assert first.json()["ingest_outcome"] == "waiting"
    assert first.json()["missing_artifacts"] == ["transcript", "smart_note"]
    assert second.json()["missing_artifacts"] == ["transcript"]
    assert third.json()["ingest_outcome"] == "ready_for_dispatch"
    assert third.json()["dispatch_outcome"] == "dispatched"
    assert len(delivered) == 1
    assert delivered[0]["conference_id"] == "conferenceRecords/abc"
    assert delivered[0]["meeting_title"] == "Weekly sync"
    assert delivered[0]["account_email"] == "owner@example.com"
    assert delivered[0]["partial"] is False
    assert delivered[0]["recording_url"] == "https://example.com/abc/recording"
    assert delivered[0]["smart_notes_url"] == "https://example.com/abc/smartNote"

    record = client.get("/api/conferences/conferenceRecords/abc")
    assert record.status_code == 200
    assert record.json()["status"] == "complete"
    assert record.json()["user_email"] == "owner@example.com"

    late = client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "recording"))
    assert late.json()["ingest_outcome"] == "noop"
    assert len(delivered) == 1

    meetings = client.get("/api/meetings", params={"owner": "owner"})
    assert meetings.status_code == 200
    assert meetings.json()["total"] == 1
    assert meetings.json()["items"][0]["meeting_title"] == "Weekly sync"

    meeting = client.get("/api/v1/meetings/abc")
    assert meeting.status_code == 200
    assert meeting.json()["conference_id"] == "conferenceRecords/abc"


def test_sweep_delivers_partial_conference_after_timeout(
    make_envelope: EnvelopeFactory,
    delivered: list[dict[str, Any]],
) -> None:
    client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "transcript", "xyz"))

    unauthorized = client.post("/api/conferences/sweep")
    response = client.post("/api/conferences/sweep", headers=_auth())

    assert unauthorized.status_code == 401
    assert response.status_code == 200
    assert response.json()["processed"] == 1
    assert delivered[0]["partial"] is True
    assert delivered[0]["missing_artifacts"] == ["recording", "smart_note"]
    assert delivered[0]["trigger"] == "timeout"
    assert client.get("/api/conferences/conferenceRecords/xyz").json()["status"] == "partial_complete"


def test_non_monitored_conference_is_ignored(
    make_envelope: EnvelopeFactory,
    delivered: list[dict[str, Any]],
) -> None:
    client.post(
        "/api/webhooks/google-events",
        json=_artifact_event(make_envelope, "recording", "def", subject=EXTERNAL_SUBJECT),
    )

    response = client.post("/api/conferences/dispatch/conferenceRecords/def", headers=_auth())

    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    assert response.json()["status"] == "ignored"
    assert delivered == []


def test_manual_dispatch_handles_unknown_and_processed_conferences(
    make_envelope: EnvelopeFactory,
    delivered: list[dict[str, Any]],
) -> None:
    for field in ("recording", "transcript", "smartNote"):
        client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, field))

    unknown = client.post("/api/conferences/dispatch/missing", headers=_auth())
    processed = client.post("/api/v1/conferences/dispatch/abc", headers=_auth())
    unauthorized = client.post("/api/conferences/dispatch/abc")

    assert unknown.status_code == 404
    assert processed.status_code == 200
    assert processed.json()["outcome"] == "already_processed"
    assert processed.json()["status"] == "complete"
    assert unauthorized.status_code == 401
    assert len(delivered) == 1


def test_manual_dispatch_sends_waiting_conference(
    make_envelope: EnvelopeFactory,
    delivered: list[dict[str, Any]],
) -> None:
    client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "recording", "manual"))

    response = client.post("/api/conferences/dispatch/conferenceRecords/manual", headers=_auth())

    assert response.json()["outcome"] == "dispatched"
    assert response.json()["status"] == "partial_complete"
    assert delivered[0]["trigger"] == "manual"


def test_status_endpoints_report_active_conferences(make_envelope: EnvelopeFactory) -> None:
    client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "recording", "one"))
    client.post("/api/webhooks/google-events", json=_artifact_event(make_envelope, "transcript", "two"))

    snapshot = client.get("/api/conferences/status")
    counts = client.get("/api/conferences/by-status")

    assert snapshot.status_code == 200
    assert snapshot.json()["waiting_count"] == 2
    assert snapshot.json()["processing_count"] == 0
    assert snapshot.json()["total_count"] == 2
    active = {item["conference_id"]: item for item in snapshot.json()["active_records"]}
    assert active["conferenceRecords/one"]["artifacts"] == {
        "recording": True,
        "transcript": False,
        "smart_note": False,
    }
    assert counts.json()["total"] == 2
    assert counts.json()["by_status"]["waiting"] == 2
    assert counts.json()["by_status"]["complete"] == 0


def test_unknown_conference_and_meeting_return_404() -> None:
    assert client.get("/api/conferences/conferenceRecords/nope").status_code == 404
    assert client.get("/api/meetings/nope").status_code == 404


def test_malformed_push_is_rejected() -> None:
    missing_data = client.post("/api/webhooks/google-events", json={"message": {}})
    not_json = client.post(
        "/api/webhooks/google-events",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert missing_data.status_code == 400
    assert not_json.status_code == 400


def test_event_without_conference_is_acknowledged(make_envelope: EnvelopeFactory) -> None:
    response = client.post(
        "/api/webhooks/google-events",
        json=make_envelope({"space": {"name": "spaces/s-1"}}, event_type="google.workspace.meet.space.v2.updated"),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert response.json()["conference_id"] is None


def test_push_secret_is_enforced_when_configured(
    make_envelope: EnvelopeFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PUBSUB_WEBHOOK_SECRET", "push-secret")
    get_settings.cache_clear()
    envelope = _artifact_event(make_envelope, "recording")

    rejected = client.post("/api/webhooks/google-events", json=envelope)
    accepted = client.post("/api/webhooks/google-events", params={"token": "push-secret"}, json=envelope)
    header = client.post(
        "/api/webhooks/google-events",
        headers={"x-webhook-secret": "push-secret"},
        json=envelope,
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert header.status_code == 200


def test_event_processing_runs_off_the_event_loop(
    make_envelope: EnvelopeFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    loop_running_during_ingest: list[bool] = []
    original_ingest = ConferenceService.ingest_event

    def recording_ingest(self: ConferenceService, envelope: dict[str, Any]) -> Any:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running_during_ingest.append(False)
        else:
            loop_running_during_ingest.append(True)
        return original_ingest(self, envelope)

    monkeypatch.setattr(ConferenceService, "ingest_event", recording_ingest)

    response = client.post(
        "/api/webhooks/google-events",
        json=_artifact_event(make_envelope, "recording", conference="off-loop"),
    )

    assert response.status_code == 200
    assert response.json()["ingest_outcome"] == "waiting"
    assert loop_running_during_ingest == [False]
