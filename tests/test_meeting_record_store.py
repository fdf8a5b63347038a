from datetime import timedelta

import pytest
from conftest import BASE_TIME

from app.services.meeting_record_store import (
    InMemoryMeetingRecordStore,
    MeetingRecordExistsError,
    build_meeting_record_document,
)


def _document(conference_id: str, owner_email: str, start_offset_days: int) -> dict[str, object]:
    start_time = BASE_TIME + timedelta(days=start_offset_days)
    return build_meeting_record_document(
        conference_id=conference_id,
        meeting_title=f"Meeting {conference_id}",
        start_time=start_time,
        end_time=start_time + timedelta(minutes=30),
        owner_email=owner_email,
        recording_url=None,
        transcript_url="https://docs.google.com/t",
        smart_note_url=None,
    )


def test_create_is_unique_per_conference_and_upsert_overwrites() -> None:
    store = InMemoryMeetingRecordStore()
    store.create(_document("conferenceRecords/a", "owner@example.com", 0))

    with pytest.raises(MeetingRecordExistsError):
        store.create(_document("conferenceRecords/a", "owner@example.com", 0))

    updated = store.upsert(
        "conferenceRecords/a",
        {"recording_url": "https://drive.google.com/r"},
    )
    assert updated["recording_url"] == "https://drive.google.com/r"
    assert updated["transcript_url"] == "https://docs.google.com/t"


def test_search_filters_by_date_range_and_owner() -> None:
    store = InMemoryMeetingRecordStore()
    store.create(_document("conferenceRecords/a", "ana@example.com", 0))
    store.create(_document("conferenceRecords/b", "bruno@example.com", 2))
    store.create(_document("conferenceRecords/c", "ANA.silva@example.com", 5))

    in_range, total_in_range = store.search(
        date_from=BASE_TIME - timedelta(days=1),
        date_to=BASE_TIME + timedelta(days=3),
    )
    by_owner, total_by_owner = store.search(owner_contains="ana")
    paged, total_paged = store.search(limit=1, offset=1)

    assert [item["conference_id"] for item in in_range] == ["conferenceRecords/b", "conferenceRecords/a"]
    assert total_in_range == 2
    assert [item["conference_id"] for item in by_owner] == ["conferenceRecords/c", "conferenceRecords/a"]
    assert total_by_owner == 2
    assert [item["conference_id"] for item in paged] == ["conferenceRecords/b"]
    assert total_paged == 3
