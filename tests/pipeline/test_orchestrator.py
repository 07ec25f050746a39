"""Outcome orchestrator tests.

Tests for:
- Appointment status and Run fields after each outcome
- Loyalty counter gated by the run marker, retry safety
- Follow-up queue transitions (sale, no-show, declined, not interested)
- Guard for comp / ignore-from-metrics appointments
- Failure semantics: authoritative vs secondary effects
- Second visit creation
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from pipeline.orchestrator import (
    ApplyStatus, OutcomeParams, SecondVisitDraft,
)


def statuses(db, appointment_id):
    return [e["status"] for e in db.get_follow_ups(appointment_id)]


class TestNoShowThenSale:
    """The canonical scenario: no-show first, sale later."""

    def test_no_show(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()

        result = apply(appointment_id, "No-show")

        assert result.success is True
        assert result.status == ApplyStatus.APPLIED
        assert result.did_generate_follow_ups is True
        assert result.did_increment_loyalty is False
        assert temp_db.get_appointment_info(appointment_id)["status"] == "active"

        follow_ups = temp_db.get_follow_ups(appointment_id)
        assert [f["scheduled_date"] for f in follow_ups] == [
            date(2024, 1, 28), date(2024, 2, 2), date(2024, 2, 9),
        ]
        assert {f["person_type"] for f in follow_ups} == {"no_show"}

        run = temp_db.get_run_info(result.run_id)
        assert run["result"] == "No-show"
        assert run["result_canon"] == "no_show"
        assert run["commission_amount"] == Decimal("0.00")

    def test_then_sale(self, temp_db, make_appointment, apply, clock):
        appointment_id = make_appointment()
        first = apply(appointment_id, "No-show")

        result = apply(appointment_id, "Tier-A-Sale")

        assert result.success is True
        assert result.run_id == first.run_id
        assert result.did_increment_loyalty is True
        assert temp_db.get_loyalty_value() == 1
        assert temp_db.get_follow_ups(appointment_id) == []

        appointment = temp_db.get_appointment_info(appointment_id)
        assert appointment["status"] == "purchased"
        assert appointment["closed_at"] == clock.now
        assert appointment["closed_by"] == "Sam"

        run = temp_db.get_run_info(result.run_id)
        assert run["result_canon"] == "tier_a_sale"
        assert run["commission_amount"] == Decimal("15.00")
        assert run["buy_date"] == clock.now.date()


class TestLoyaltyCounter:
    """Loyalty counter fires once per run."""

    def test_retry_does_not_double_count(self, temp_db, make_appointment,
                                         apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Tier-A-Sale")
        retry = apply(appointment_id, "Tier-A-Sale")

        assert retry.success is True
        assert retry.did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 1

    def test_correction_round_trip_counts_once(self, temp_db,
                                               make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Tier-A-Sale")
        apply(appointment_id, "No-show")
        again = apply(appointment_id, "Tier-B-Sale")

        assert again.did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 1

    def test_explicit_previous_result_still_guarded_by_marker(
            self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Tier-A-Sale")
        retry = apply(appointment_id, "Tier-A-Sale", previous_result="")

        assert retry.did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 1

    def test_retry_after_failed_increment_counts(self, temp_db,
                                                 make_appointment, apply,
                                                 orchestrator, monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("counter unavailable")

        monkeypatch.setattr(orchestrator.loyalty, "increment_if_eligible", boom)
        first = apply(appointment_id, "Tier-A-Sale")
        assert first.status == ApplyStatus.PARTIAL
        monkeypatch.undo()

        retry = apply(appointment_id, "Tier-A-Sale")

        assert retry.status == ApplyStatus.APPLIED
        assert retry.did_increment_loyalty is True
        assert temp_db.get_loyalty_value() == 1
        assert apply(appointment_id, "Tier-A-Sale").did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 1

    def test_sale_tier_result_read_back_as_sale(self, temp_db,
                                                make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Sold", sale_tier="Tier-A")
        retry = apply(appointment_id, "Sold", sale_tier="Tier-A")

        assert retry.did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 1
        metadata = temp_db.get_outcome_events(appointment_id)[-1]["metadata"]
        assert metadata["canonical_result"] == "tier_a_sale"
        assert metadata["previous_canonical_result"] == "tier_a_sale"

    def test_excluded_lead_source(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment(lead_source="VIP Class")
        result = apply(appointment_id, "Tier-C-Sale")

        assert result.success is True
        assert result.did_increment_loyalty is False
        assert temp_db.get_appointment_info(appointment_id)["status"] == "purchased"


class TestRunFields:
    """Run creation and update details."""

    def test_sale_date_set_once(self, temp_db, make_appointment, apply, clock):
        appointment_id = make_appointment()
        first = apply(appointment_id, "Tier-A-Sale")

        clock.now = datetime(2024, 2, 15, 12, 0)
        apply(appointment_id, "Tier-B-Sale")
        apply(appointment_id, "No-show")

        assert temp_db.get_run_info(first.run_id)["buy_date"] == date(2024, 1, 28)

    def test_closed_fields_cleared_on_correction(self, temp_db,
                                                 make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Tier-A-Sale")
        apply(appointment_id, "Didn't Buy")

        appointment = temp_db.get_appointment_info(appointment_id)
        assert appointment["status"] == "active"
        assert appointment["closed_at"] is None
        assert appointment["closed_by"] is None

    def test_commission_follows_tier(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(appointment_id, "Tier-B-Sale")
        assert temp_db.get_run_info(result.run_id)["commission_amount"] == Decimal("12.00")

        apply(appointment_id, "Not interested")
        assert temp_db.get_run_info(result.run_id)["commission_amount"] == Decimal("0.00")

    def test_sale_tier_refines_result(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(appointment_id, "Sold", sale_tier="Tier-B")

        run = temp_db.get_run_info(result.run_id)
        assert run["result_canon"] == "tier_b_sale"
        assert run["commission_amount"] == Decimal("12.00")

    def test_no_commission_parameter(self):
        assert "commission_amount" not in OutcomeParams.__dataclass_fields__
        assert "commission" not in OutcomeParams.__dataclass_fields__

    def test_run_populated_from_appointment(self, temp_db, make_appointment,
                                            apply):
        appointment_id = make_appointment(coach_name="Riley",
                                          class_time="09:00")
        result = apply(appointment_id, "No-show")

        run = temp_db.runs.get(result.run_id)
        assert run.appointment_id == appointment_id
        assert run.coach_name == "Riley"
        assert run.run_time == "09:00"
        assert run.run_date == date(2024, 1, 28)
        assert run.lead_source == "Instagram DM"
        assert run.last_edited_by == "Sam"

    def test_personal_referral_credits_booker(self, temp_db,
                                              make_appointment, apply):
        appointment_id = make_appointment(
            lead_source="My Personal Friend I Invited",
            booked_by="Casey", intro_owner="Sam",
        )
        result = apply(appointment_id, "Tier-A-Sale")
        assert temp_db.get_run_info(result.run_id)["intro_owner"] == "Casey"

    def test_owner_defaults_to_intro_owner(self, temp_db, make_appointment,
                                           apply):
        appointment_id = make_appointment(booked_by="Casey", intro_owner="Sam")
        result = apply(appointment_id, "Tier-A-Sale")
        assert temp_db.get_run_info(result.run_id)["intro_owner"] == "Sam"

    def test_owner_falls_back_to_editor(self, temp_db, make_appointment,
                                        apply):
        appointment_id = make_appointment(intro_owner=None)
        result = apply(appointment_id, "Tier-A-Sale", editor="Morgan")
        assert temp_db.get_run_info(result.run_id)["intro_owner"] == "Morgan"

    def test_explicit_run_id_preferred(self, temp_db, make_appointment,
                                       apply):
        appointment_id = make_appointment()
        older = temp_db.create_run({"member_name": "Jordan Lee",
                                    "appointment_id": appointment_id})
        temp_db.create_run({"member_name": "Jordan Lee",
                            "appointment_id": appointment_id})

        result = apply(appointment_id, "No-show", run_id=older)

        assert result.run_id == older
        assert temp_db.get_run_info(older)["result_canon"] == "no_show"

    def test_latest_run_used_by_default(self, temp_db, make_appointment,
                                        apply):
        appointment_id = make_appointment()
        temp_db.create_run({"member_name": "Jordan Lee",
                            "appointment_id": appointment_id})
        newer = temp_db.create_run({"member_name": "Jordan Lee",
                                    "appointment_id": appointment_id})

        assert apply(appointment_id, "No-show").run_id == newer

    def test_run_id_without_appointment_links_run(self, temp_db,
                                                  make_appointment, apply):
        appointment_id = make_appointment()
        run_id = temp_db.create_run({"member_name": "Jordan Lee",
                                     "appointment_id": appointment_id})

        result = apply(None, "Not interested", run_id=run_id)

        assert result.success is True
        assert temp_db.get_appointment_info(appointment_id)["status"] == "declined"


class TestFollowUpTransitions:
    """Follow-up queue edge cases."""

    def test_declined_cadence(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Didn't Buy", objection="price")

        entries = temp_db.follow_ups.get_for_appointment(appointment_id)
        assert [e.scheduled_date for e in entries] == [
            date(2024, 1, 28), date(2024, 2, 3), date(2024, 2, 10),
        ]
        assert {e.primary_objection for e in entries} == {"price"}

    def test_switch_no_show_to_declined_regenerates(self, temp_db,
                                                    make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        result = apply(appointment_id, "Didn't Buy")

        assert result.did_generate_follow_ups is True
        follow_ups = temp_db.get_follow_ups(appointment_id)
        assert len(follow_ups) == 3
        assert {f["person_type"] for f in follow_ups} == {"declined"}

    def test_same_state_retry_does_not_duplicate(self, temp_db,
                                                 make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Didn't Buy")
        retry = apply(appointment_id, "Didn't Buy")

        assert retry.did_generate_follow_ups is False
        assert len(temp_db.get_follow_ups(appointment_id)) == 3

    def test_same_state_resave_keeps_sent_history(self, temp_db,
                                                  make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        first = temp_db.follow_ups.get_for_appointment(appointment_id)[0]
        temp_db.follow_ups.mark_sent(first.id, "Sam")

        resave = apply(appointment_id, "No-show")

        assert resave.did_generate_follow_ups is False
        assert statuses(temp_db, appointment_id) == ["sent", "pending", "pending"]

    def test_retry_with_explicit_previous_replaces_batch(self, temp_db,
                                                         make_appointment,
                                                         apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show", previous_result="")
        retry = apply(appointment_id, "No-show", previous_result="")

        assert retry.success is True
        assert [f["touch_number"] for f in temp_db.get_follow_ups(appointment_id)] == [1, 2, 3]

    def test_not_interested_keeps_history(self, temp_db, make_appointment,
                                          apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        first = temp_db.follow_ups.get_for_appointment(appointment_id)[0]
        temp_db.follow_ups.mark_sent(first.id, "Sam")

        apply(appointment_id, "Not interested")

        assert statuses(temp_db, appointment_id) == ["sent"]
        assert temp_db.get_appointment_info(appointment_id)["status"] == "declined"

    def test_sale_after_declined_clears_pending(self, temp_db,
                                                make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "Didn't Buy")
        entries = temp_db.follow_ups.get_for_appointment(appointment_id)
        temp_db.follow_ups.mark_sent(entries[0].id, "Sam")
        temp_db.follow_ups.snooze(entries[1].id, date(2024, 2, 20))

        apply(appointment_id, "Tier-C-Sale")

        assert statuses(temp_db, appointment_id) == ["sent"]

    def test_follow_up_needed_does_not_generate(self, temp_db,
                                                make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(appointment_id, "Follow-up needed")

        assert result.did_generate_follow_ups is False
        assert temp_db.get_follow_ups(appointment_id) == []

    def test_vip_flag_propagates(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment(is_vip=True, booking_type="vip")
        apply(appointment_id, "No-show")

        entries = temp_db.follow_ups.get_for_appointment(appointment_id)
        assert all(e.is_vip for e in entries)


class TestGuards:
    """Unresolved results and comp / ignored appointments."""

    @pytest.mark.parametrize("raw", ["", "   ", "maybe later??"])
    def test_unresolved_is_noop(self, temp_db, make_appointment, apply, raw):
        appointment_id = make_appointment()

        result = apply(appointment_id, raw)

        assert result.success is True
        assert result.status == ApplyStatus.NO_CHANGE
        assert temp_db.runs.get_latest_for_appointment(appointment_id) is None
        assert temp_db.get_outcome_events(appointment_id) == []

    def test_comp_records_run_without_side_effects(self, temp_db,
                                                   make_appointment, apply):
        appointment_id = make_appointment(is_comp=True, booking_type="comp")

        no_show = apply(appointment_id, "No-show")
        assert no_show.success is True
        assert no_show.did_generate_follow_ups is False
        assert temp_db.get_follow_ups(appointment_id) == []

        sale = apply(appointment_id, "Tier-A-Sale")
        assert sale.did_increment_loyalty is False
        assert temp_db.get_loyalty_value() == 0
        assert temp_db.get_appointment_info(appointment_id)["status"] == "purchased"
        assert temp_db.runs.get(sale.run_id).ignore_from_metrics is True

    def test_ignore_from_metrics_guard(self, temp_db, make_appointment,
                                       apply):
        appointment_id = make_appointment(ignore_from_metrics=True)
        result = apply(appointment_id, "Didn't Buy")

        assert result.success is True
        assert temp_db.get_follow_ups(appointment_id) == []


class TestAuditEvents:
    """Outcome events are written last with side-effect metadata."""

    def test_event_contents(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")
        apply(appointment_id, "Tier-A-Sale", reason="paid at front desk")

        events = temp_db.get_outcome_events(appointment_id)
        assert len(events) == 2

        sale = events[-1]
        assert sale["old_result"] == "No-show"
        assert sale["new_result"] == "Tier-A-Sale"
        assert sale["old_status"] == "active"
        assert sale["new_status"] == "purchased"
        assert sale["edited_by"] == "Sam"
        assert sale["source_component"] == "test_suite"
        assert sale["edit_reason"] == "paid at front desk"
        assert sale["metadata"]["previous_canonical_result"] == "no_show"
        assert sale["metadata"]["loyalty_incremented"] is True
        assert sale["metadata"]["commission"] == "15.00"
        assert sale["metadata"]["sale_date"] == "2024-01-28"
        assert sale["metadata"]["failed_effects"] == []

    def test_default_reason(self, temp_db, make_appointment, apply):
        appointment_id = make_appointment()
        apply(appointment_id, "No-show")

        event = temp_db.get_outcome_events(appointment_id)[0]
        assert event["edit_reason"] == "test_suite: unknown → No-show"


class TestFailureSemantics:
    """Authoritative failures abort; secondary failures are reported."""

    def test_missing_appointment(self, temp_db, apply):
        result = apply(9999, "Tier-A-Sale")

        assert result.success is False
        assert result.status == ApplyStatus.FAILED
        assert "not found" in result.error
        assert temp_db.get_loyalty_value() == 0

    def test_missing_run(self, make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(appointment_id, "No-show", run_id=4242)
        assert result.success is False

    def test_no_target(self, apply):
        result = apply(None, "No-show")
        assert result.success is False
        assert "appointment_id or run_id" in result.error

    def test_invalid_attempt_date(self, make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(appointment_id, "No-show", attempt_date="28/01/2024")
        assert result.success is False

    def test_appointment_write_failure_rolls_back_run(
            self, temp_db, make_appointment, apply, orchestrator,
            monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("appointment write failed")

        monkeypatch.setattr(orchestrator, "_update_appointment", boom)
        result = apply(appointment_id, "Tier-A-Sale")

        assert result.success is False
        assert result.error == "appointment write failed"
        assert temp_db.runs.get_latest_for_appointment(appointment_id) is None
        assert temp_db.get_outcome_events(appointment_id) == []
        assert temp_db.get_appointment_info(appointment_id)["status"] == "active"

    def test_loyalty_failure_is_partial(self, temp_db, make_appointment,
                                        apply, orchestrator, monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("counter unavailable")

        monkeypatch.setattr(orchestrator.loyalty, "increment_if_eligible", boom)
        result = apply(appointment_id, "Tier-A-Sale")

        assert result.success is True
        assert result.status == ApplyStatus.PARTIAL
        assert result.failed_effects == ["loyalty"]
        assert result.did_increment_loyalty is False
        assert temp_db.get_appointment_info(appointment_id)["status"] == "purchased"
        event = temp_db.get_outcome_events(appointment_id)[0]
        assert event["metadata"]["failed_effects"] == ["loyalty"]

    def test_follow_up_failure_is_partial(self, temp_db, make_appointment,
                                          apply, monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(temp_db.follow_ups, "replace_batch", boom)
        result = apply(appointment_id, "No-show")

        assert result.success is True
        assert result.did_generate_follow_ups is False
        assert "follow_ups" in result.failed_effects
        assert temp_db.get_follow_ups(appointment_id) == []

    def test_follow_up_retry_after_failure_generates(self, temp_db,
                                                     make_appointment, apply,
                                                     monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(temp_db.follow_ups, "replace_batch", boom)
        first = apply(appointment_id, "No-show")
        assert first.status == ApplyStatus.PARTIAL
        monkeypatch.undo()

        retry = apply(appointment_id, "No-show")

        assert retry.status == ApplyStatus.APPLIED
        assert retry.did_generate_follow_ups is True
        assert [f["touch_number"] for f in temp_db.get_follow_ups(appointment_id)] == [1, 2, 3]

    def test_event_failure_is_partial(self, temp_db, make_appointment,
                                      apply, monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("event log unavailable")

        monkeypatch.setattr(temp_db.outcome_events, "append", boom)
        result = apply(appointment_id, "No-show")

        assert result.success is True
        assert result.failed_effects == ["outcome_event"]
        assert result.did_generate_follow_ups is True


class TestSecondVisit:
    """Optional second visit creation."""

    def test_creates_linked_appointment(self, temp_db, make_appointment,
                                        apply):
        appointment_id = make_appointment(phone="5552013344",
                                          email="jordan@example.com")
        start_at = datetime(2024, 2, 3, 9, 30)

        result = apply(
            appointment_id, "Booked 2nd intro",
            second_visit=SecondVisitDraft(start_at=start_at,
                                          coach_name="Avery"),
        )

        assert result.success is True
        assert result.new_appointment_id is not None
        assert result.new_appointment_start_at == start_at
        assert result.new_appointment_coach == "Avery"

        original = temp_db.get_appointment_info(appointment_id)
        assert original["status"] == "second_visit_scheduled"

        second = temp_db.get_appointment_info(result.new_appointment_id)
        assert second["originating_appointment_id"] == appointment_id
        assert second["status"] == "active"
        assert second["class_date"] == date(2024, 2, 3)
        assert second["class_time"] == "09:30"
        assert second["coach_name"] == "Avery"
        assert second["phone"] == "5552013344"
        assert second["email"] == "jordan@example.com"
        assert second["booked_by"] == "Sam"

    def test_failure_does_not_undo_outcome(self, temp_db, make_appointment,
                                           apply, monkeypatch):
        appointment_id = make_appointment()

        def boom(*args, **kwargs):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(temp_db.appointments, "create", boom)
        result = apply(
            appointment_id, "Booked 2nd intro",
            second_visit=SecondVisitDraft(start_at=datetime(2024, 2, 3, 9, 30)),
        )

        assert result.success is True
        assert result.failed_effects == ["second_visit"]
        assert result.new_appointment_id is None
        assert (temp_db.get_appointment_info(appointment_id)["status"]
                == "second_visit_scheduled")

    def test_to_dict(self, make_appointment, apply):
        appointment_id = make_appointment()
        result = apply(
            appointment_id, "Booked 2nd intro",
            second_visit=SecondVisitDraft(start_at=datetime(2024, 2, 3, 9, 30)),
        )

        payload = result.to_dict()
        assert payload["status"] == "applied"
        assert payload["new_appointment_start_at"] == "2024-02-03T09:30:00"
