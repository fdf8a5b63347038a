import io
import json
from urllib import error

import pytest

from app.schemas.conference import DispatchPayload, DispatchTrigger
from app.services.webhook_notifier import WebhookDeliveryError, WebhookNotifier


class _MockResponse:
    def __init__(self, status: int = 200) -> None:
        self.status = status

    def __enter__(self) -> "_MockResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def read(self) -> bytes:
        return b'{"ok": true}'


def _http_error(status_code: int) -> error.HTTPError:
    return error.HTTPError(
        url="https://hooks.example.com/meet",
        code=status_code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(b'{"error": "downstream"}'),
    )


def _payload() -> DispatchPayload:
    return DispatchPayload(
        conference_id="conferenceRecords/abc",
        meeting_title="Weekly sync",
        transcript_url="https://docs.google.com/t-1",
        account_email="owner@example.com",
        partial=True,
        missing_artifacts=["recording", "smart_note"],
        trigger=DispatchTrigger.timeout,
    )


def test_send_posts_json_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["content_type"] = req.headers.get("Content-type")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _MockResponse(202)

    monkeypatch.setattr("app.services.webhook_notifier.request.urlopen", fake_urlopen)

    WebhookNotifier("https://hooks.example.com/meet", timeout_seconds=7.0).send(_payload())

    assert captured["url"] == "https://hooks.example.com/meet"
    assert captured["method"] == "POST"
    assert captured["content_type"] == "application/json"
    assert captured["timeout"] == 7.0
    body = captured["body"]
    assert isinstance(body, dict)
    assert body["conference_id"] == "conferenceRecords/abc"
    assert body["smart_notes_url"] is None
    assert body["account_email"] == "owner@example.com"
    assert body["partial"] is True
    assert body["missing_artifacts"] == ["recording", "smart_note"]
    assert body["trigger"] == "timeout"


def test_send_retries_server_errors_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts.append(1)
        if len(attempts) < 3:
            raise _http_error(503)
        return _MockResponse()

    monkeypatch.setattr("app.services.webhook_notifier.request.urlopen", fake_urlopen)
    notifier = WebhookNotifier(
        "https://hooks.example.com/meet",
        max_attempts=3,
        retry_backoff_seconds=0.5,
        sleep=sleeps.append,
    )

    notifier.send(_payload())

    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]


def test_send_does_not_retry_client_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []

    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        attempts.append(1)
        raise _http_error(400)

    monkeypatch.setattr("app.services.webhook_notifier.request.urlopen", fake_urlopen)

    with pytest.raises(WebhookDeliveryError) as exc_info:
        WebhookNotifier("https://hooks.example.com/meet", sleep=lambda _: None).send(_payload())

    assert exc_info.value.status_code == 400
    assert exc_info.value.retryable is False
    assert len(attempts) == 1


def test_send_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout=10):  # type: ignore[no-untyped-def]
        raise error.URLError("connection refused")

    monkeypatch.setattr("app.services.webhook_notifier.request.urlopen", fake_urlopen)
    sleeps: list[float] = []

    with pytest.raises(WebhookDeliveryError) as exc_info:
        WebhookNotifier("https://hooks.example.com/meet", max_attempts=2, sleep=sleeps.append).send(
            _payload(),
        )

    assert exc_info.value.status_code is None
    assert sleeps == [1.0]


def test_send_without_destination_fails() -> None:
    with pytest.raises(WebhookDeliveryError):
        WebhookNotifier("  ").send(_payload())
