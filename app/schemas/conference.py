from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class ConferenceStatus(StrEnum):
    waiting = "waiting"
    processing = "processing"
    complete = "complete"
    partial_complete = "partial_complete"
    ignored = "ignored"
    error = "error"
    failed = "failed"


# Statuses that no artifact event may move out of.
TERMINAL_STATUSES = frozenset(
    {
        ConferenceStatus.complete,
        ConferenceStatus.partial_complete,
        ConferenceStatus.ignored,
        ConferenceStatus.failed,
    },
)
PROCESSED_STATUSES = frozenset({ConferenceStatus.complete, ConferenceStatus.partial_complete})
CLAIMABLE_STATUSES = frozenset({ConferenceStatus.waiting, ConferenceStatus.error})
DUE_STATUSES = CLAIMABLE_STATUSES


class ArtifactKind(StrEnum):
    recording = "recording"
    transcript = "transcript"
    smart_note = "smart_note"
    none = "none"


# Order used for missing_artifacts and every per-artifact loop.
ARTIFACT_KINDS = (ArtifactKind.recording, ArtifactKind.transcript, ArtifactKind.smart_note)


class DispatchTrigger(StrEnum):
    artifact_complete = "artifact_complete"
    timeout = "timeout"
    manual = "manual"


class IngestOutcomeKind(StrEnum):
    noop = "noop"
    waiting = "waiting"
    ready_for_dispatch = "ready_for_dispatch"


class DispatchOutcome(StrEnum):
    dispatched = "dispatched"
    already_claimed = "already_claimed"
    already_processed = "already_processed"
    ignored = "ignored"
    send_failed = "send_failed"
    no_artifacts = "no_artifacts"


class ConferenceTracking(BaseModel):
    conference_id: str
    user_email: str | None = None
    status: ConferenceStatus = ConferenceStatus.waiting
    has_recording: bool = False
    has_transcript: bool = False
    has_smart_note: bool = False
    recording_ref: str | None = None
    transcript_ref: str | None = None
    smart_note_ref: str | None = None
    recording_url: str | None = None
    transcript_url: str | None = None
    smart_note_url: str | None = None
    timeout_at: datetime
    first_event_at: datetime
    last_event_at: datetime
    processed_at: datetime | None = None
    dispatch_attempts: int = 0
    claimed_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_trigger: DispatchTrigger | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_artifact(self, kind: ArtifactKind) -> bool:
        return bool(getattr(self, f"has_{kind.value}", False))

    def artifact_ref(self, kind: ArtifactKind) -> str | None:
        return getattr(self, f"{kind.value}_ref", None)

    def artifact_url(self, kind: ArtifactKind) -> str | None:
        return getattr(self, f"{kind.value}_url", None)

    @property
    def missing_artifacts(self) -> list[str]:
        return [kind.value for kind in ARTIFACT_KINDS if not self.has_artifact(kind)]

    @property
    def has_all_artifacts(self) -> bool:
        return not self.missing_artifacts

    @property
    def has_any_artifact(self) -> bool:
        return len(self.missing_artifacts) < len(ARTIFACT_KINDS)


class ConferenceMetadata(BaseModel):
    title: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None


class DispatchPayload(BaseModel):
    conference_id: str
    meeting_title: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    recording_url: str | None = None
    transcript_url: str | None = None
    smart_notes_url: str | None = None
    account_email: str
    partial: bool
    missing_artifacts: list[str] = Field(default_factory=list)
    trigger: DispatchTrigger

    @property
    def has_any_link(self) -> bool:
        return any((self.recording_url, self.transcript_url, self.smart_notes_url))


class DispatchResult(BaseModel):
    conference_id: str
    outcome: DispatchOutcome
    status: ConferenceStatus | None = None
    trigger: DispatchTrigger
    payload: DispatchPayload | None = None
    error: str | None = None


class IngestOutcome(BaseModel):
    kind: IngestOutcomeKind
    record: ConferenceTracking
    created: bool = False
    missing_artifacts: list[str] = Field(default_factory=list)


class SweepReport(BaseModel):
    candidates: int = 0
    processed: int = 0
    ignored: int = 0
    errors: int = 0
    skipped: int = 0
    released_stale_claims: int = 0
    overlapped: bool = False
    started_at: datetime
    finished_at: datetime | None = None


class ActiveConference(BaseModel):
    conference_id: str
    status: ConferenceStatus
    user_email: str | None = None
    first_event_at: datetime
    timeout_at: datetime
    artifacts: dict[str, bool]
    dispatch_attempts: int = 0


class StatusSnapshot(BaseModel):
    waiting_count: int
    processing_count: int
    total_count: int
    active_records: list[ActiveConference] = Field(default_factory=list)
    timestamp: datetime


class StatusCountsResponse(BaseModel):
    total: int
    by_status: dict[str, int]


class GoogleEventWebhookResponse(BaseModel):
    status: str = "accepted"
    conference_id: str | None = None
    event_type: str | None = None
    artifact_kind: ArtifactKind | None = None
    ingest_outcome: IngestOutcomeKind | None = None
    missing_artifacts: list[str] = Field(default_factory=list)
    dispatch_outcome: DispatchOutcome | None = None
    detail: str | None = None
    received_at: datetime


class MeetingRecord(BaseModel):
    conference_id: str
    meeting_title: str
    meeting_date: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    owner_email: str
    recording_url: str | None = None
    transcript_url: str | None = None
    smart_note_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MeetingRecordsResponse(BaseModel):
    items: list[MeetingRecord]
    total: int
    limit: int
    offset: int
