"""Follow-up cadence generator tests."""
from datetime import date

import pytest

from pipeline.cadence import (
    FollowUpPerson, FollowUpStatus, FollowUpTrigger, generate_follow_ups,
)

TRIGGER = date(2024, 1, 28)


@pytest.fixture
def person():
    return FollowUpPerson(name="Jordan Lee", appointment_id=7,
                          primary_objection="price")


class TestGenerateFollowUps:
    """Test generate_follow_ups()."""

    def test_no_show_offsets(self, person):
        entries = generate_follow_ups(person, FollowUpTrigger.NO_SHOW, TRIGGER)
        assert [e["scheduled_date"] for e in entries] == [
            date(2024, 1, 28), date(2024, 2, 2), date(2024, 2, 9),
        ]

    def test_declined_offsets(self, person):
        entries = generate_follow_ups(person, "declined", TRIGGER)
        assert [e["scheduled_date"] for e in entries] == [
            date(2024, 1, 28), date(2024, 2, 3), date(2024, 2, 10),
        ]

    def test_no_show_and_declined_windows_differ(self, person):
        no_show = generate_follow_ups(person, "no_show", TRIGGER)
        declined = generate_follow_ups(person, "declined", TRIGGER)
        assert ([e["scheduled_date"] for e in no_show]
                != [e["scheduled_date"] for e in declined])

    def test_reschedule_uses_no_show_cadence(self, person):
        entries = generate_follow_ups(
            person, FollowUpTrigger.PLANNING_RESCHEDULE, TRIGGER
        )
        assert [e["scheduled_date"] for e in entries] == [
            date(2024, 1, 28), date(2024, 2, 2), date(2024, 2, 9),
        ]
        assert entries[0]["person_type"] == "planning_reschedule"

    def test_touch_numbers_match_position(self, person):
        entries = generate_follow_ups(person, "no_show", TRIGGER)
        assert [e["touch_number"] for e in entries] == [1, 2, 3]

    def test_all_pending(self, person):
        entries = generate_follow_ups(person, "declined", TRIGGER)
        assert {e["status"] for e in entries} == {FollowUpStatus.PENDING.value}

    def test_carries_person_fields(self, person):
        entry = generate_follow_ups(person, "declined", TRIGGER)[0]
        assert entry["appointment_id"] == 7
        assert entry["person_name"] == "Jordan Lee"
        assert entry["primary_objection"] == "price"
        assert entry["trigger_date"] == TRIGGER
        assert entry["is_vip"] is False

    def test_string_trigger_date(self, person):
        entries = generate_follow_ups(person, "no_show", "2024-01-28")
        assert entries[0]["scheduled_date"] == TRIGGER

    def test_invalid_date(self, person):
        with pytest.raises(ValueError):
            generate_follow_ups(person, "no_show", "28/01/2024")

    def test_unknown_trigger(self, person):
        with pytest.raises(ValueError):
            generate_follow_ups(person, "ghosted", TRIGGER)
