from datetime import timedelta

import pytest

from stina.errors import ValidationError
from stina.models.domain.extraction_domain import ExtractionRecord
from stina.models.domain.meeting_request_domain import (
    Creator,
    CreatorSource,
    MeetingMetadata,
    MeetingRequest,
    MeetingRequestFilters,
    MeetingRequestStatus,
    MeetingRequestUpdate,
    Participant,
    ScheduledEvent,
    UrgencyLevel,
    apply_update,
    initial_status_for,
    merge_participants,
    next_updated_at,
    validate_invariants,
)
from tests.fakes import GUEST_EMAIL, MONDAY, USER_EMAIL, at, make_communication, sample_intent


def _request(**overrides) -> MeetingRequest:
    data = {
        "id": "meeting_domain",
        "status": MeetingRequestStatus.CONTEXT_COLLECTION,
        "participants": [Participant(email=GUEST_EMAIL, name="Sam")],
        "creator": Creator(email=USER_EMAIL, source=CreatorSource.MANUAL),
        "communications": [make_communication()],
        "created_at": MONDAY,
        "updated_at": MONDAY,
    }
    data.update(overrides)
    return MeetingRequest(**data)


class TestApplyUpdate:
    def test_processed_flag_is_set_and_stays_set(self):
        request = apply_update(_request(), MeetingRequestUpdate(processed_communication_ids=["comm-1"]))
        assert request.communications[0].processed is True

        later = apply_update(request, MeetingRequestUpdate(context_summary="Next step"))
        assert later.communications[0].processed is True

    def test_unknown_processed_id_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            apply_update(_request(), MeetingRequestUpdate(processed_communication_ids=["nope"]))
        assert exc_info.value.field == "processed_communication_ids"

    def test_duplicate_communication_is_rejected(self):
        with pytest.raises(ValidationError):
            apply_update(
                _request(), MeetingRequestUpdate(append_communications=[make_communication()])
            )

    def test_appended_communication_keeps_existing_ones(self):
        request = apply_update(
            _request(),
            MeetingRequestUpdate(append_communications=[make_communication("comm-2")]),
        )
        assert [c.id for c in request.communications] == ["comm-1", "comm-2"]

    def test_event_cannot_be_set_outside_booked_statuses(self):
        event = ScheduledEvent(
            external_event_id="evt-1", calendar_id="primary", start=at(10), end=at(10, 30)
        )
        with pytest.raises(ValidationError) as exc_info:
            apply_update(_request(), MeetingRequestUpdate(scheduled_event=event))
        assert exc_info.value.field == "scheduled_event"

    def test_successful_extraction_is_write_once(self):
        record = ExtractionRecord(
            status="succeeded", communication_id="comm-1", intent=sample_intent(), attempted_at=MONDAY
        )
        request = _request(extraction_result=record)

        with pytest.raises(ValidationError) as exc_info:
            apply_update(request, MeetingRequestUpdate(extraction_result=record))
        assert exc_info.value.field == "extraction_result"

    def test_failed_extraction_can_be_replaced(self):
        failed = ExtractionRecord(status="failed", error="bad json", attempted_at=MONDAY)
        succeeded = ExtractionRecord(
            status="succeeded", communication_id="comm-1", intent=sample_intent(), attempted_at=MONDAY
        )

        request = apply_update(
            _request(extraction_result=failed), MeetingRequestUpdate(extraction_result=succeeded)
        )

        assert request.has_successful_extraction()

    def test_metadata_is_merged(self):
        request = _request(metadata=MeetingMetadata(agenda="Roadmap", urgency=UrgencyLevel.HIGH))

        updated = apply_update(
            request, MeetingRequestUpdate(metadata=MeetingMetadata(duration_minutes=45))
        )

        assert updated.metadata.agenda == "Roadmap"
        assert updated.metadata.urgency == UrgencyLevel.HIGH
        assert updated.metadata.duration_minutes == 45

    def test_updated_at_strictly_increases(self):
        request = _request()
        updated = apply_update(request, MeetingRequestUpdate(context_summary="x"), now=MONDAY)
        assert updated.updated_at > request.updated_at

    def test_original_is_not_mutated(self):
        request = _request()
        apply_update(request, MeetingRequestUpdate(processed_communication_ids=["comm-1"]))
        assert request.communications[0].processed is False


def test_next_updated_at_moves_past_a_stale_clock():
    assert next_updated_at(MONDAY, now=MONDAY - timedelta(seconds=5)) == MONDAY + timedelta(
        microseconds=1
    )
    assert next_updated_at(MONDAY, now=MONDAY + timedelta(seconds=5)) == MONDAY + timedelta(seconds=5)


def test_merge_participants_is_case_insensitive():
    existing = [Participant(email=GUEST_EMAIL, name=None)]
    incoming = [
        Participant(email="SAM@Partner.io", name="Sam Lee"),
        Participant(email="alex@example.com"),
    ]

    merged = merge_participants(existing, incoming)

    assert [p.key for p in merged] == [GUEST_EMAIL, "alex@example.com"]
    assert merged[0].name == "Sam Lee"
    assert merged[0].email == GUEST_EMAIL


def test_merge_participants_keeps_known_name():
    merged = merge_participants(
        [Participant(email=GUEST_EMAIL, name="Sam")], [Participant(email=GUEST_EMAIL)]
    )
    assert merged[0].name == "Sam"


def test_duplicate_participant_addresses_break_the_aggregate():
    request = _request(
        participants=[Participant(email=GUEST_EMAIL), Participant(email=GUEST_EMAIL.upper())]
    )

    with pytest.raises(ValidationError) as exc_info:
        validate_invariants(request)
    assert exc_info.value.field == "participants"


def test_unprocessed_communications_oldest_first():
    request = _request(
        communications=[
            make_communication("late", timestamp=MONDAY),
            make_communication("early", timestamp=MONDAY - timedelta(days=1)),
            make_communication("done", timestamp=MONDAY - timedelta(days=2), processed=True),
        ]
    )
    assert [c.id for c in request.unprocessed_communications()] == ["early", "late"]


def test_involves_matches_creator_and_participants():
    request = _request()
    assert request.involves("Owner@Example.com")
    assert request.involves(GUEST_EMAIL.upper())
    assert not request.involves("stranger@example.com")


@pytest.mark.parametrize(
    "source, status",
    [
        (CreatorSource.EMAIL, MeetingRequestStatus.ANALYSING_EMAIL),
        (CreatorSource.MANUAL, MeetingRequestStatus.CONTEXT_COLLECTION),
        (CreatorSource.WHATSAPP, MeetingRequestStatus.CONTEXT_COLLECTION),
    ],
)
def test_initial_status_follows_channel(source, status):
    assert initial_status_for(source) == status


class TestFilters:
    def test_status_and_participant(self):
        request = _request()
        assert MeetingRequestFilters(
            statuses=[MeetingRequestStatus.CONTEXT_COLLECTION], participant="Sam@Partner.io"
        ).matches(request)
        assert not MeetingRequestFilters(statuses=[MeetingRequestStatus.SCHEDULED]).matches(request)

    def test_thread_and_created_range(self):
        request = _request()
        assert MeetingRequestFilters(thread_id="thread-1").matches(request)
        assert not MeetingRequestFilters(thread_id="other").matches(request)
        assert not MeetingRequestFilters(created_from=MONDAY + timedelta(days=1)).matches(request)

    def test_urgency(self):
        request = _request(metadata=MeetingMetadata(urgency=UrgencyLevel.LOW))
        assert MeetingRequestFilters(urgency=UrgencyLevel.LOW).matches(request)
        assert not MeetingRequestFilters(urgency=UrgencyLevel.HIGH).matches(request)
