from datetime import datetime

from fastapi import APIRouter

from app.core.config import get_settings
from app.schemas.conference import MeetingRecord, MeetingRecordsResponse
from app.services.conference_service import ConferenceService

router = APIRouter(prefix="/meetings", tags=["meetings"])


@router.get("", response_model=MeetingRecordsResponse)
def list_meeting_records(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    owner: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> MeetingRecordsResponse:
    settings = get_settings()
    service = ConferenceService(settings)
    return service.list_meeting_records(
        date_from=date_from,
        date_to=date_to,
        owner=owner,
        limit=limit,
        offset=offset,
    )


@router.get("/{conference_id:path}", response_model=MeetingRecord)
def get_meeting_record(conference_id: str) -> MeetingRecord:
    settings = get_settings()
    service = ConferenceService(settings)
    return service.get_meeting_record(conference_id)
