"""
Tests for capital call schedule generation and call helpers
"""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest

from capital_calls import (calls_due_for_reminder, capital_calls_by_status,
                           capital_calls_summary_table, generate_schedule, mark_called,
                           mark_defaulted, next_open_call, overdue_calls,
                           reschedule_call_dates, validate_capital_calls)
from errors import InvalidSchedule, InvalidTransition, ScheduleAmountMismatch
from models import CallStatus, ScheduleSpec


class TestGenerateSchedule:

    def test_quarterly_even_split(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000")
        spec = ScheduleSpec(type="quarterly", first_call_date=date(2024, 1, 15), call_count=4)

        calls = generate_schedule(allocation, spec)

        assert [c.call_amount for c in calls] == [Decimal("250000.00")] * 4
        assert [c.call_date for c in calls] == [
            date(2024, 1, 15), date(2024, 4, 15), date(2024, 7, 15), date(2024, 10, 15)]
        assert all(c.due_date == c.call_date + timedelta(days=30) for c in calls)
        assert all(c.status == CallStatus.SCHEDULED for c in calls)
        assert [c.sequence for c in calls] == [1, 2, 3, 4]

    def test_uneven_split_last_call_absorbs_cents(self, make_allocation):
        allocation = make_allocation(committed_amount="100000.00")
        spec = ScheduleSpec(type="monthly", first_call_date=date(2024, 1, 1), call_count=3)

        calls = generate_schedule(allocation, spec)

        assert [c.call_amount for c in calls] == [
            Decimal("33333.33"), Decimal("33333.33"), Decimal("33333.34")]
        assert sum(c.call_amount for c in calls) == allocation.committed_amount

    def test_percentage_without_count(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000")
        spec = ScheduleSpec(type="annual", first_call_date=date(2024, 1, 1), call_percentage=40)

        calls = generate_schedule(allocation, spec)

        assert [c.call_amount for c in calls] == [
            Decimal("400000.00"), Decimal("400000.00"), Decimal("200000.00")]
        assert calls[2].call_date == date(2026, 1, 1)

    def test_default_percentage_when_nothing_given(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000")
        spec = ScheduleSpec(type="biannual", first_call_date=date(2024, 1, 1))

        calls = generate_schedule(allocation, spec)

        assert len(calls) == 4
        assert calls[1].call_date == date(2024, 7, 1)

    def test_single(self, make_allocation):
        allocation = make_allocation(committed_amount="500000")
        calls = generate_schedule(allocation, ScheduleSpec(type="single", first_call_date="2024-02-01"))
        assert len(calls) == 1
        assert calls[0].call_amount == Decimal("500000.00")
        assert calls[0].due_date == date(2024, 3, 2)

    def test_custom_must_sum_to_commitment(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000")
        spec = ScheduleSpec(type="custom", custom_calls=[
            (date(2024, 1, 1), "600000"), (date(2024, 6, 1), "300000")])

        with pytest.raises(ScheduleAmountMismatch) as exc:
            generate_schedule(allocation, spec)
        assert exc.value.expected == Decimal("1000000.00")
        assert exc.value.actual == Decimal("900000.00")

    def test_custom_ordered_by_date(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000")
        spec = ScheduleSpec(type="custom", custom_calls=[
            (date(2024, 6, 1), "400000"), (date(2024, 1, 1), "600000")])

        calls = generate_schedule(allocation, spec)

        assert [c.call_amount for c in calls] == [Decimal("600000.00"), Decimal("400000.00")]

    def test_custom_due_days_setting(self, make_allocation):
        allocation = make_allocation(committed_amount="1000")
        calls = generate_schedule(allocation, ScheduleSpec(type="single", first_call_date="2024-01-01"),
                                  due_days=10)
        assert calls[0].due_date == date(2024, 1, 11)

    def test_reschedule_keeps_locked_calls(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000", status="partially_paid",
                                     paid_amount="250000")
        first = generate_schedule(replace(allocation, status="invested", paid_amount=0),
                                  ScheduleSpec(type="quarterly", first_call_date=date(2024, 1, 1),
                                               call_count=4))
        paid = replace(first[0], status=CallStatus.PAID, amount_paid="250000")
        existing = [paid] + first[1:]

        calls = generate_schedule(allocation, ScheduleSpec(type="monthly",
                                                           first_call_date=date(2024, 5, 1),
                                                           call_count=3), existing)

        assert calls[0] is paid
        assert len(calls) == 4
        assert [c.call_amount for c in calls[1:]] == [Decimal("250000.00")] * 3
        assert sum(c.call_amount for c in calls) == allocation.committed_amount
        assert [c.sequence for c in calls] == [1, 2, 3, 4]
        old_ids = {c.id for c in first[1:]}
        assert not old_ids & {c.id for c in calls}

    def test_rejects_closed_allocation(self, make_allocation):
        allocation = make_allocation(status="closed")
        with pytest.raises(InvalidSchedule):
            generate_schedule(allocation, ScheduleSpec(type="single", first_call_date="2024-01-01"))

    def test_rejects_bad_inputs(self, make_allocation):
        allocation = make_allocation()
        with pytest.raises(InvalidSchedule):
            ScheduleSpec(type="weekly")
        with pytest.raises(InvalidSchedule):
            generate_schedule(allocation, ScheduleSpec(type="quarterly"))
        with pytest.raises(InvalidSchedule):
            generate_schedule(allocation, ScheduleSpec(type="quarterly", first_call_date="2024-01-01",
                                                       call_count=0))
        with pytest.raises(InvalidSchedule):
            generate_schedule(allocation, ScheduleSpec(type="quarterly", first_call_date="2024-01-01",
                                                       call_percentage=150))


class TestCallHelpers:

    @pytest.fixture
    def calls(self, make_allocation):
        allocation = make_allocation(committed_amount="1000000", status="invested")
        return generate_schedule(allocation, ScheduleSpec(type="quarterly",
                                                          first_call_date=date(2024, 1, 1),
                                                          call_count=4))

    def test_mark_called_then_defaulted(self, calls):
        called = mark_called(calls[0])
        assert called.status == CallStatus.CALLED
        assert calls[0].status == CallStatus.SCHEDULED
        assert mark_defaulted(called).status == CallStatus.DEFAULTED

    def test_paid_call_cannot_default(self, calls):
        paid = replace(calls[0], status=CallStatus.PAID, amount_paid=calls[0].call_amount)
        with pytest.raises(InvalidTransition):
            mark_defaulted(paid)

    def test_reschedule_call_dates(self, calls):
        moved = reschedule_call_dates(mark_called(calls[1]), date(2024, 5, 1), date(2024, 5, 20))
        assert (moved.call_date, moved.due_date) == (date(2024, 5, 1), date(2024, 5, 20))
        assert moved.status == CallStatus.CALLED

    def test_reschedule_defaults_due_date(self, calls):
        moved = reschedule_call_dates(calls[1], "2024-05-01", due_days=10)
        assert moved.due_date == date(2024, 5, 11)

    def test_reschedule_rejects_due_before_call(self, calls):
        with pytest.raises(InvalidSchedule):
            reschedule_call_dates(calls[1], date(2024, 5, 1), date(2024, 4, 30))

    def test_reschedule_rejects_call_with_money(self, calls):
        partial = replace(calls[0], status=CallStatus.PARTIAL, amount_paid="1000")
        with pytest.raises(InvalidSchedule):
            reschedule_call_dates(partial, date(2024, 5, 1))

    def test_overdue(self, calls):
        overdue = overdue_calls(calls, date(2024, 2, 15))
        assert [c.sequence for c in overdue] == [1]

    def test_reminders(self, calls):
        # first call due 2024-01-31
        due = calls_due_for_reminder(calls, date(2024, 1, 24), (7, 3, 1))
        assert [(c.sequence, d) for c, d in due] == [(1, 7)]
        assert calls_due_for_reminder(calls, date(2024, 1, 25), (7, 3, 1)) == []

    def test_next_open_call(self, calls):
        paid = replace(calls[0], status=CallStatus.PAID, amount_paid=calls[0].call_amount)
        assert next_open_call([paid] + calls[1:]).sequence == 2

    def test_summary_tables(self, calls):
        table = capital_calls_summary_table(calls)
        assert len(table) == 4
        assert table.iloc[0]['call_amount'] == "$250,000.00"

        by_status = capital_calls_by_status(calls)
        assert list(by_status['status']) == ['scheduled']
        assert by_status.iloc[0]['num_calls'] == 4
        assert by_status.iloc[0]['total_called'] == 1_000_000.0

    def test_validate_consistent_schedule(self, make_allocation, calls):
        allocation = make_allocation(committed_amount="1000000", status="invested")
        allocation = replace(allocation, id=calls[0].allocation_id)
        assert validate_capital_calls(allocation, calls) == []

    def test_validate_flags_paid_mismatch(self, make_allocation, calls):
        allocation = make_allocation(committed_amount="1000000", status="invested",
                                     paid_amount="1000")
        allocation = replace(allocation, id=calls[0].allocation_id)
        issues = validate_capital_calls(allocation, calls)
        assert any("does not match calls" in i for i in issues)
