import logging
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from app.core.clock import Clock, utc_now
from app.schemas.conference import (
    ARTIFACT_KINDS,
    CLAIMABLE_STATUSES,
    ArtifactKind,
    ConferenceMetadata,
    ConferenceStatus,
    ConferenceTracking,
    DispatchOutcome,
    DispatchPayload,
    DispatchResult,
    DispatchTrigger,
)
from app.services.conference_tracking_store import ConferenceTrackingStore
from app.services.google_workspace_client import ArtifactProvider, GoogleWorkspaceError
from app.services.meeting_record_store import (
    MeetingRecordStore,
    build_meeting_record_document,
)
from app.services.webhook_notifier import Notifier

logger = logging.getLogger(__name__)

_MANUAL_CLAIMABLE_STATUSES = CLAIMABLE_STATUSES | {ConferenceStatus.failed}
_FINALIZABLE_STATUSES = frozenset({ConferenceStatus.processing})


class DispatchCoordinator:
    """Claims a conference and delivers its artifact links exactly once.

    The claim is a compare-and-set on the stored status, so any number of
    concurrent callers (event handler, sweeper, manual trigger, other
    instances) produce at most one successful delivery per conference.
    """

    def __init__(
        self,
        store: ConferenceTrackingStore,
        notifier: Notifier,
        *,
        meeting_store: MeetingRecordStore | None = None,
        provider: ArtifactProvider | None = None,
        monitored_users: Iterable[str] = (),
        default_meeting_title: str = "Google Meet meeting",
        max_attempts: int = 10,
        retry_backoff: timedelta = timedelta(minutes=5),
        retry_max_backoff: timedelta = timedelta(minutes=240),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.meeting_store = meeting_store
        self.provider = provider
        self.monitored_users = frozenset(
            email.strip().lower() for email in monitored_users if email and email.strip()
        )
        self.default_meeting_title = default_meeting_title
        self.max_attempts = max(max_attempts, 0)
        self.retry_backoff = retry_backoff
        self.retry_max_backoff = retry_max_backoff
        self._clock = clock

    def dispatch(self, record: ConferenceTracking, trigger: DispatchTrigger) -> DispatchResult:
        conference_id = record.conference_id
        from_statuses = (
            _MANUAL_CLAIMABLE_STATUSES if trigger == DispatchTrigger.manual else CLAIMABLE_STATUSES
        )
        claimed_document = self.store.claim(
            conference_id,
            from_statuses=from_statuses,
            claimed_at=self._clock(),
            trigger=trigger,
        )
        if claimed_document is None:
            current = self.store.find_by_conference_id(conference_id)
            current_status = ConferenceStatus(current["status"]) if current else None
            logger.debug(
                "Dispatch claim lost conference_id=%s trigger=%s current_status=%s",
                conference_id,
                trigger.value,
                current_status.value if current_status else None,
            )
            return DispatchResult(
                conference_id=conference_id,
                outcome=DispatchOutcome.already_claimed,
                status=current_status,
                trigger=trigger,
            )

        claimed = ConferenceTracking.model_validate(claimed_document)
        logger.info(
            "Dispatch claimed conference_id=%s trigger=%s attempt=%s",
            conference_id,
            trigger.value,
            claimed.dispatch_attempts,
        )
        try:
            return self._run_claimed(claimed, trigger)
        except Exception as exc:
            logger.exception("Dispatch crashed conference_id=%s trigger=%s", conference_id, trigger.value)
            self._park_failure(claimed, f"Unexpected dispatch error: {exc}")
            raise

    def _run_claimed(self, record: ConferenceTracking, trigger: DispatchTrigger) -> DispatchResult:
        conference_id = record.conference_id
        owner_email = (record.user_email or "").strip().lower()
        if not owner_email or owner_email not in self.monitored_users:
            self.store.update(
                conference_id,
                {"status": ConferenceStatus.ignored, "claimed_at": None},
                expected_statuses=_FINALIZABLE_STATUSES,
            )
            logger.info(
                "Dispatch ignored conference_id=%s user_email=%s reason=%s",
                conference_id,
                owner_email or None,
                "not_monitored" if owner_email else "unknown_owner",
            )
            return DispatchResult(
                conference_id=conference_id,
                outcome=DispatchOutcome.ignored,
                status=ConferenceStatus.ignored,
                trigger=trigger,
            )

        metadata = self._fetch_metadata(conference_id, owner_email)
        links = self._resolve_links(record, owner_email, refetch=trigger == DispatchTrigger.manual)

        payload = DispatchPayload(
            conference_id=conference_id,
            meeting_title=metadata.title or self.default_meeting_title,
            start_time=metadata.start_time,
            end_time=metadata.end_time,
            recording_url=links[ArtifactKind.recording],
            transcript_url=links[ArtifactKind.transcript],
            smart_notes_url=links[ArtifactKind.smart_note],
            account_email=owner_email,
            partial=not record.has_all_artifacts,
            missing_artifacts=record.missing_artifacts,
            trigger=trigger,
        )

        if not payload.has_any_link:
            status = self._park_failure(record, "No artifact links could be resolved.")
            logger.warning(
                "Dispatch skipped, no artifact links conference_id=%s trigger=%s status=%s",
                conference_id,
                trigger.value,
                status.value,
            )
            return DispatchResult(
                conference_id=conference_id,
                outcome=DispatchOutcome.no_artifacts,
                status=status,
                trigger=trigger,
                payload=payload,
                error="No artifact links could be resolved.",
            )

        try:
            self.notifier.send(payload)
        except Exception as exc:
            status = self._park_failure(record, str(exc))
            logger.error(
                "Dispatch send failed conference_id=%s trigger=%s attempt=%s status=%s error=%s",
                conference_id,
                trigger.value,
                record.dispatch_attempts,
                status.value,
                exc,
            )
            return DispatchResult(
                conference_id=conference_id,
                outcome=DispatchOutcome.send_failed,
                status=status,
                trigger=trigger,
                payload=payload,
                error=str(exc),
            )

        self._save_meeting_record(payload, upsert=trigger == DispatchTrigger.manual)

        final_status = (
            ConferenceStatus.partial_complete if payload.partial else ConferenceStatus.complete
        )
        finalized = self.store.update(
            conference_id,
            {
                "status": final_status,
                "processed_at": self._clock(),
                "claimed_at": None,
                "next_retry_at": None,
                "last_error": None,
            },
            expected_statuses=_FINALIZABLE_STATUSES | {ConferenceStatus.error},
        )
        if finalized is None:
            current = self.store.find_by_conference_id(conference_id)
            current_status = ConferenceStatus(current["status"]) if current else None
            logger.warning(
                "Dispatch sent but finalize lost conference_id=%s trigger=%s current_status=%s",
                conference_id,
                trigger.value,
                current_status.value if current_status else None,
            )
            return DispatchResult(
                conference_id=conference_id,
                outcome=DispatchOutcome.dispatched,
                status=current_status,
                trigger=trigger,
                payload=payload,
                error="Delivered, but the record was no longer held by this dispatch.",
            )

        logger.info(
            "Dispatch completed conference_id=%s trigger=%s status=%s missing=%s",
            conference_id,
            trigger.value,
            final_status.value,
            ",".join(payload.missing_artifacts),
        )
        return DispatchResult(
            conference_id=conference_id,
            outcome=DispatchOutcome.dispatched,
            status=final_status,
            trigger=trigger,
            payload=payload,
        )

    def _fetch_metadata(self, conference_id: str, owner_email: str) -> ConferenceMetadata:
        if self.provider is None:
            return ConferenceMetadata()
        try:
            return self.provider.get_conference_metadata(conference_id, owner_email)
        except GoogleWorkspaceError as exc:
            logger.warning(
                "Conference metadata lookup failed conference_id=%s error=%s",
                conference_id,
                exc,
            )
            return ConferenceMetadata()

    def _resolve_links(
        self,
        record: ConferenceTracking,
        owner_email: str,
        *,
        refetch: bool,
    ) -> dict[ArtifactKind, str | None]:
        links: dict[ArtifactKind, str | None] = {}
        resolved_changes: dict[str, Any] = {}
        for kind in ARTIFACT_KINDS:
            stored_url = record.artifact_url(kind)
            if not record.has_artifact(kind):
                links[kind] = stored_url
                continue
            if stored_url and not refetch:
                links[kind] = stored_url
                continue

            fetched_url = self._fetch_link(record.conference_id, kind, record.artifact_ref(kind), owner_email)
            if fetched_url and fetched_url != stored_url:
                resolved_changes[f"{kind.value}_url"] = fetched_url
            links[kind] = fetched_url or stored_url

        if resolved_changes:
            self.store.update(record.conference_id, resolved_changes)
        return links

    def _fetch_link(
        self,
        conference_id: str,
        kind: ArtifactKind,
        ref: str | None,
        owner_email: str,
    ) -> str | None:
        if self.provider is None or not ref:
            return None
        try:
            return self.provider.get_artifact_link(kind, ref, owner_email)
        except GoogleWorkspaceError as exc:
            logger.warning(
                "Artifact link lookup failed conference_id=%s artifact_kind=%s ref=%s error=%s",
                conference_id,
                kind.value,
                ref,
                exc,
            )
            return None

    def _save_meeting_record(self, payload: DispatchPayload, *, upsert: bool) -> None:
        if self.meeting_store is None:
            return
        document = build_meeting_record_document(
            conference_id=payload.conference_id,
            meeting_title=payload.meeting_title,
            start_time=payload.start_time,
            end_time=payload.end_time,
            owner_email=payload.account_email,
            recording_url=payload.recording_url,
            transcript_url=payload.transcript_url,
            smart_note_url=payload.smart_notes_url,
        )
        try:
            if upsert:
                self.meeting_store.upsert(payload.conference_id, document)
            else:
                self.meeting_store.create(document)
        except Exception:
            logger.exception("Meeting record save failed conference_id=%s", payload.conference_id)

    def _park_failure(self, record: ConferenceTracking, reason: str) -> ConferenceStatus:
        attempts = record.dispatch_attempts
        now = self._clock()
        changes: dict[str, Any] = {"claimed_at": None, "last_error": reason[:1000]}
        if self.max_attempts and attempts >= self.max_attempts:
            changes["status"] = ConferenceStatus.failed
            changes["next_retry_at"] = None
        else:
            changes["status"] = ConferenceStatus.error
            changes["next_retry_at"] = now + self.retry_delay(attempts)

        self.store.update(record.conference_id, changes, expected_statuses=_FINALIZABLE_STATUSES)
        if changes["status"] == ConferenceStatus.failed:
            logger.error(
                "Dispatch attempts exhausted conference_id=%s attempts=%s",
                record.conference_id,
                attempts,
            )
        return changes["status"]

    def retry_delay(self, attempts: int) -> timedelta:
        exponent = max(attempts - 1, 0)
        delay = self.retry_backoff * (2 ** min(exponent, 32))
        return min(delay, self.retry_max_backoff)