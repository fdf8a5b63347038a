import logging
from datetime import datetime, timedelta
from typing import Any

from app.core.clock import Clock, utc_now
from app.schemas.conference import (
    TERMINAL_STATUSES,
    ArtifactKind,
    ConferenceStatus,
    ConferenceTracking,
    IngestOutcome,
    IngestOutcomeKind,
)
from app.services.conference_tracking_store import ConferenceTrackingStore

logger = logging.getLogger(__name__)

_MERGEABLE_STATUSES = frozenset(
    {ConferenceStatus.waiting, ConferenceStatus.processing, ConferenceStatus.error},
)


class ConferenceAggregator:
    """Merges artifact facts into tracking records and decides readiness.

    Merging is idempotent and order independent: flags only ever become true,
    URLs are never replaced by a missing value and the owner email is set by
    the first event that carries one.
    """

    def __init__(
        self,
        store: ConferenceTrackingStore,
        timeout: timedelta,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self._clock = clock

    def ingest(
        self,
        conference_id: str,
        *,
        artifact_kind: ArtifactKind = ArtifactKind.none,
        artifact_ref: str | None = None,
        artifact_url_hint: str | None = None,
        actor_email: str | None = None,
        event_time: datetime | None = None,
    ) -> IngestOutcome:
        if not conference_id or not conference_id.strip():
            raise ValueError("conference_id must not be empty.")

        event_time = event_time or self._clock()
        document, created = self.store.upsert(
            conference_id,
            on_insert=self._build_new_record(event_time),
            changes={},
        )
        record = ConferenceTracking.model_validate(document)
        if created:
            logger.info(
                "Conference tracking created conference_id=%s timeout_at=%s",
                conference_id,
                record.timeout_at.isoformat(),
            )

        if record.status in TERMINAL_STATUSES:
            self._touch_last_event(record, event_time)
            logger.info(
                "Late event ignored conference_id=%s status=%s artifact_kind=%s",
                conference_id,
                record.status.value,
                artifact_kind.value,
            )
            return IngestOutcome(kind=IngestOutcomeKind.noop, record=record, created=created)

        changes = self._build_merge_changes(record, artifact_kind, artifact_ref, artifact_url_hint, event_time)
        if changes:
            self._apply_changes(record, changes)

        if actor_email and not record.user_email:
            self.store.set_if_unset(conference_id, "user_email", actor_email.strip().lower())

        refreshed = self.store.find_by_conference_id(conference_id)
        if refreshed is not None:
            record = ConferenceTracking.model_validate(refreshed)

        if record.status in TERMINAL_STATUSES:
            return IngestOutcome(kind=IngestOutcomeKind.noop, record=record, created=created)

        if record.has_all_artifacts:
            logger.info("All artifacts received conference_id=%s", conference_id)
            return IngestOutcome(
                kind=IngestOutcomeKind.ready_for_dispatch,
                record=record,
                created=created,
            )

        missing_artifacts = record.missing_artifacts
        logger.info(
            "Waiting for artifacts conference_id=%s missing=%s",
            conference_id,
            ",".join(missing_artifacts),
        )
        return IngestOutcome(
            kind=IngestOutcomeKind.waiting,
            record=record,
            created=created,
            missing_artifacts=missing_artifacts,
        )

    def evaluate_timeout(self, record: ConferenceTracking, now: datetime) -> bool:
        return record.status == ConferenceStatus.waiting and record.timeout_at <= now

    def _build_new_record(self, event_time: datetime) -> dict[str, Any]:
        return {
            "user_email": None,
            "status": ConferenceStatus.waiting,
            "has_recording": False,
            "has_transcript": False,
            "has_smart_note": False,
            "recording_ref": None,
            "transcript_ref": None,
            "smart_note_ref": None,
            "recording_url": None,
            "transcript_url": None,
            "smart_note_url": None,
            "timeout_at": event_time + self.timeout,
            "first_event_at": event_time,
            "last_event_at": event_time,
            "processed_at": None,
            "dispatch_attempts": 0,
            "claimed_at": None,
            "next_retry_at": None,
            "last_trigger": None,
            "last_error": None,
        }

    def _build_merge_changes(
        self,
        record: ConferenceTracking,
        artifact_kind: ArtifactKind,
        artifact_ref: str | None,
        artifact_url_hint: str | None,
        event_time: datetime,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if event_time > record.last_event_at:
            changes["last_event_at"] = event_time
        if artifact_kind == ArtifactKind.none:
            return changes

        prefix = artifact_kind.value
        if not record.has_artifact(artifact_kind):
            changes[f"has_{prefix}"] = True
        if artifact_ref and artifact_ref != record.artifact_ref(artifact_kind):
            changes[f"{prefix}_ref"] = artifact_ref
        if artifact_url_hint and artifact_url_hint != record.artifact_url(artifact_kind):
            changes[f"{prefix}_url"] = artifact_url_hint
        if record.status == ConferenceStatus.error:
            changes["status"] = ConferenceStatus.waiting
            changes["next_retry_at"] = None
        return changes

    def _apply_changes(self, record: ConferenceTracking, changes: dict[str, Any]) -> None:
        if changes.get("status") == ConferenceStatus.waiting:
            healed = self.store.update(
                record.conference_id,
                changes,
                expected_statuses={ConferenceStatus.error},
            )
            if healed is not None:
                logger.info(
                    "Conference reset from error to waiting by new event conference_id=%s",
                    record.conference_id,
                )
                return
            # Status moved on concurrently; merge the facts without the status change.
            changes = {key: value for key, value in changes.items() if key not in ("status", "next_retry_at")}
            if not changes:
                return

        self.store.update(record.conference_id, changes, expected_statuses=_MERGEABLE_STATUSES)

    def _touch_last_event(self, record: ConferenceTracking, event_time: datetime) -> None:
        if event_time > record.last_event_at:
            self.store.update(record.conference_id, {"last_event_at": event_time})
