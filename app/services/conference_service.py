import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status

from app.core.clock import Clock, utc_now
from app.core.config import Settings
from app.schemas.conference import (
    ARTIFACT_KINDS,
    PROCESSED_STATUSES,
    ActiveConference,
    ConferenceStatus,
    ConferenceTracking,
    DispatchOutcome,
    DispatchResult,
    DispatchTrigger,
    GoogleEventWebhookResponse,
    IngestOutcomeKind,
    MeetingRecord,
    MeetingRecordsResponse,
    StatusCountsResponse,
    StatusSnapshot,
    SweepReport,
)
from app.services.actor_resolver import ActorResolver, get_actor_resolver
from app.services.artifact_event_decoder import ArtifactEventDecoder, normalize_conference_id
from app.services.conference_aggregator import ConferenceAggregator
from app.services.conference_tracking_store import (
    ConferenceTrackingStore,
    create_conference_tracking_store,
)
from app.services.dispatch_coordinator import DispatchCoordinator
from app.services.google_workspace_client import (
    ArtifactProvider,
    DirectoryLookup,
    GoogleWorkspaceClient,
    GoogleWorkspaceError,
    create_google_workspace_client,
)
from app.services.meeting_record_store import MeetingRecordStore, create_meeting_record_store
from app.services.timeout_sweeper import TimeoutSweeper
from app.services.webhook_notifier import Notifier, WebhookNotifier

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (ConferenceStatus.waiting, ConferenceStatus.processing)


class ConferenceNotFoundError(Exception):
    pass


class ConferenceService:
    def __init__(
        self,
        settings: Settings,
        store: ConferenceTrackingStore | None = None,
        meeting_store: MeetingRecordStore | None = None,
        provider: ArtifactProvider | None = None,
        directory: DirectoryLookup | None = None,
        notifier: Notifier | None = None,
        actor_resolver: ActorResolver | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store or create_conference_tracking_store(
            store_name=settings.conference_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_conference_tracking_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )
        self.meeting_store = meeting_store or create_meeting_record_store(
            store_name=settings.conference_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_meeting_records_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        )

        google_client = None
        if provider is None or directory is None:
            google_client = self._create_google_client()
        self.provider = provider or google_client
        self.directory = directory or google_client

        self.notifier = notifier or WebhookNotifier(
            destination_url=settings.webhook_destination_url,
            timeout_seconds=settings.webhook_timeout_seconds,
            max_attempts=settings.webhook_max_attempts,
            retry_backoff_seconds=settings.webhook_retry_backoff_seconds,
            user_agent=settings.webhook_user_agent,
        )
        self.actor_resolver = actor_resolver or get_actor_resolver(
            self.directory,
            settings.actor_email_cache_ttl_seconds,
        )
        self._clock = clock

        self.decoder = ArtifactEventDecoder()
        self.aggregator = ConferenceAggregator(
            self.store,
            timeout=timedelta(minutes=settings.conference_timeout_minutes),
            clock=clock,
        )
        self.coordinator = DispatchCoordinator(
            self.store,
            self.notifier,
            meeting_store=self.meeting_store,
            provider=self.provider,
            monitored_users=settings.monitored_users,
            default_meeting_title=settings.default_meeting_title,
            max_attempts=settings.dispatch_max_attempts,
            retry_backoff=timedelta(minutes=settings.dispatch_retry_backoff_minutes),
            retry_max_backoff=timedelta(minutes=settings.dispatch_retry_max_backoff_minutes),
            clock=clock,
        )
        self.sweeper = TimeoutSweeper(
            self.store,
            self.coordinator,
            max_workers=settings.sweep_max_workers,
            batch_size=settings.sweep_batch_size,
            stale_after=timedelta(minutes=settings.processing_stale_after_minutes),
            clock=clock,
        )

    def ingest_event(self, envelope: Mapping[str, Any]) -> GoogleEventWebhookResponse:
        """Decode one Pub/Sub push and run it through merge and, when ready, dispatch.

        Malformed envelopes raise ``ArtifactEventDecodeError``. Failures after
        decoding are logged and reported in the response instead of raised so
        the push is still acknowledged.
        """
        received_at = self._clock()
        event = self.decoder.decode(envelope)
        response = GoogleEventWebhookResponse(
            conference_id=event.conference_id,
            event_type=event.event_type,
            artifact_kind=event.artifact_kind,
            received_at=received_at,
        )
        if not event.conference_id:
            logger.warning(
                "Event without conference id event_type=%s resource_name=%s message_id=%s",
                event.event_type,
                event.resource_name,
                event.message_id,
            )
            response.status = "ignored"
            response.detail = "Event does not reference a conference record."
            return response

        try:
            actor_email = self.actor_resolver.resolve_email(event.subject)
            outcome = self.aggregator.ingest(
                event.conference_id,
                artifact_kind=event.artifact_kind,
                artifact_ref=event.artifact_ref,
                artifact_url_hint=event.artifact_url_hint,
                actor_email=actor_email,
                event_time=event.event_time,
            )
            response.ingest_outcome = outcome.kind
            response.missing_artifacts = outcome.missing_artifacts
            if outcome.kind == IngestOutcomeKind.ready_for_dispatch:
                result = self.coordinator.dispatch(outcome.record, DispatchTrigger.artifact_complete)
                response.dispatch_outcome = result.outcome
                response.detail = result.error
        except Exception as exc:
            logger.exception(
                "Event processing failed conference_id=%s event_type=%s message_id=%s",
                event.conference_id,
                event.event_type,
                event.message_id,
            )
            response.status = "error"
            response.detail = str(exc) or exc.__class__.__name__
        return response

    def sweep_once(self) -> SweepReport:
        return self.sweeper.scan()

    def trigger_manual(self, conference_id: str) -> DispatchResult:
        try:
            return self._trigger_manual(conference_id)
        except ConferenceNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Conference not found.",
            ) from exc

    def _trigger_manual(self, conference_id: str) -> DispatchResult:
        normalized_id = normalize_conference_id(conference_id)
        if not normalized_id:
            raise ConferenceNotFoundError(conference_id)

        document = self._find_tracking(normalized_id)
        if document is None:
            raise ConferenceNotFoundError(normalized_id)

        record = ConferenceTracking.model_validate(document)
        if record.status in PROCESSED_STATUSES:
            logger.info(
                "Manual dispatch skipped, already processed conference_id=%s status=%s",
                normalized_id,
                record.status.value,
            )
            return DispatchResult(
                conference_id=normalized_id,
                outcome=DispatchOutcome.already_processed,
                status=record.status,
                trigger=DispatchTrigger.manual,
            )
        if record.status == ConferenceStatus.ignored:
            return DispatchResult(
                conference_id=normalized_id,
                outcome=DispatchOutcome.ignored,
                status=record.status,
                trigger=DispatchTrigger.manual,
            )

        logger.info("Manual dispatch requested conference_id=%s", normalized_id)
        return self.coordinator.dispatch(record, DispatchTrigger.manual)

    def get_status_snapshot(self) -> StatusSnapshot:
        try:
            waiting_count = self.store.count([ConferenceStatus.waiting])
            processing_count = self.store.count([ConferenceStatus.processing])
            total_count = self.store.count()
            active_documents = self.store.list_by_status(_ACTIVE_STATUSES, limit=50)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query conference storage.",
            ) from exc

        active_records = []
        for document in active_documents:
            record = ConferenceTracking.model_validate(document)
            active_records.append(
                ActiveConference(
                    conference_id=record.conference_id,
                    status=record.status,
                    user_email=record.user_email,
                    first_event_at=record.first_event_at,
                    timeout_at=record.timeout_at,
                    artifacts={kind.value: record.has_artifact(kind) for kind in ARTIFACT_KINDS},
                    dispatch_attempts=record.dispatch_attempts,
                ),
            )
        return StatusSnapshot(
            waiting_count=waiting_count,
            processing_count=processing_count,
            total_count=total_count,
            active_records=active_records,
            timestamp=self._clock(),
        )

    def get_status_counts(self) -> StatusCountsResponse:
        try:
            counts = self.store.count_by_status()
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query conference storage.",
            ) from exc

        by_status = {conference_status.value: 0 for conference_status in ConferenceStatus}
        by_status.update(counts)
        return StatusCountsResponse(total=sum(counts.values()), by_status=by_status)

    def get_conference(self, conference_id: str) -> ConferenceTracking:
        normalized_id = normalize_conference_id(conference_id)
        document = self._find_tracking(normalized_id) if normalized_id else None
        if document is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Conference not found.",
            )
        return ConferenceTracking.model_validate(document)

    def list_meeting_records(
        self,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        owner: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> MeetingRecordsResponse:
        normalized_limit = min(max(limit, 1), 200)
        normalized_offset = max(offset, 0)
        try:
            items, total = self.meeting_store.search(
                date_from=date_from,
                date_to=date_to,
                owner_contains=(owner or "").strip() or None,
                limit=normalized_limit,
                offset=normalized_offset,
            )
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query meeting record storage.",
            ) from exc

        return MeetingRecordsResponse(
            items=[MeetingRecord.model_validate(item) for item in items],
            total=total,
            limit=normalized_limit,
            offset=normalized_offset,
        )

    def get_meeting_record(self, conference_id: str) -> MeetingRecord:
        normalized_id = normalize_conference_id(conference_id)
        try:
            record = self.meeting_store.get_by_conference_id(normalized_id) if normalized_id else None
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query meeting record storage.",
            ) from exc

        if not record:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Meeting record not found.",
            )
        return MeetingRecord.model_validate(record)

    def _find_tracking(self, conference_id: str) -> dict[str, Any] | None:
        try:
            return self.store.find_by_conference_id(conference_id)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query conference storage.",
            ) from exc

    def _create_google_client(self) -> GoogleWorkspaceClient | None:
        try:
            return create_google_workspace_client(
                service_account_file=self.settings.google_service_account_file,
                service_account_json=self.settings.google_service_account_json,
                impersonated_user_email=self.settings.google_impersonated_user_email,
                meet_api_url=self.settings.google_meet_api_url,
                directory_api_url=self.settings.google_directory_api_url,
                timeout_seconds=self.settings.google_api_timeout_seconds,
            )
        except GoogleWorkspaceError:
            logger.exception("Google Workspace client could not be created")
            return None
