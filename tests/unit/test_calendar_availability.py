from datetime import timedelta

import pytest

from stina.models.domain.calendar_domain import (
    BusyPeriod,
    CalendarAvailability,
    _align_up,
    parse_iso_datetime,
)
from stina.models.domain.preferences_domain import WorkingHours
from tests.fakes import MONDAY, at


def _availability(busy=None, timezone="UTC", buffer_minutes=15, start=None, end=None):
    return CalendarAvailability(
        window_start=start or at(0),
        window_end=end or MONDAY + timedelta(days=1),
        busy_periods=busy or [],
        working_hours=WorkingHours(start="09:00", end="17:00"),
        timezone=timezone,
        buffer_minutes=buffer_minutes,
    )


def _starts(slots):
    return [parse_iso_datetime(slot["start"]) for slot in slots]


def test_slots_skip_busy_period_with_buffer():
    availability = _availability(busy=[BusyPeriod(at(10), at(11))])

    slots = availability.find_slots(30)

    assert _starts(slots) == [at(9), at(11, 15), at(12), at(12, 45), at(13, 30)]
    assert slots[0]["end"] == at(9, 30).isoformat()
    assert all(slot["timezone"] == "UTC" for slot in slots)


def test_slots_without_buffer_are_back_to_back():
    slots = _availability(buffer_minutes=0).find_slots(30, limit=3)
    assert _starts(slots) == [at(9), at(9, 30), at(10)]


def test_slot_start_is_aligned_to_quarter_hour():
    availability = _availability(busy=[BusyPeriod(at(9), at(9, 50))], buffer_minutes=0)
    assert _starts(availability.find_slots(30, limit=1)) == [at(10)]


def test_working_hours_follow_owner_timezone():
    slots = _availability(timezone="America/New_York").find_slots(60, limit=1)

    # 09:00 in New York on 4 March 2030 is 14:00 UTC
    assert _starts(slots) == [at(14)]
    assert slots[0]["start"].endswith("-05:00")


def test_weekend_has_no_slots():
    saturday = MONDAY + timedelta(days=5)
    availability = _availability(start=saturday, end=saturday + timedelta(days=1))

    result = availability.to_dict(30)

    assert result["available_slots"] == []
    assert result["recommendations"][0] == "No available slots found in the requested timeframe."


def test_window_is_clipped_to_requested_range():
    availability = _availability(start=at(16), end=at(17))
    assert _starts(availability.find_slots(30)) == [at(16)]


def test_fully_booked_day():
    availability = _availability(busy=[BusyPeriod(at(8), at(18))])
    assert availability.get_free_periods() == []
    assert availability.find_slots(30) == []


def test_to_dict_reports_busy_periods_and_recommendations():
    result = _availability(busy=[BusyPeriod(at(10), at(11))]).to_dict(30)

    assert result["busy_periods"] == [{"start": at(10).isoformat(), "end": at(11).isoformat()}]
    assert result["duration_minutes"] == 30
    assert len(result["available_slots"]) == 5
    assert "15-minute buffer" in result["recommendations"][1]


@pytest.mark.parametrize(
    "minute, expected",
    [(0, 0), (1, 15), (15, 15), (44, 45), (46, 60)],
)
def test_align_up(minute, expected):
    assert _align_up(at(9, minute), 15) == at(9) + timedelta(minutes=expected)


def test_parse_iso_datetime_accepts_zulu_and_naive():
    assert parse_iso_datetime("2030-03-04T09:00:00Z") == at(9)
    assert parse_iso_datetime("2030-03-04T09:00:00") == at(9)
