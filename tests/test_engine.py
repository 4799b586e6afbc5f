"""
End-to-end tests for the allocation engine over a real SQLite file
"""

import gc
import sqlite3
import threading
from datetime import date
from decimal import Decimal

import pytest

from engine import AllocationEngine
from errors import (InvalidAllocation, InvalidPayment, InvalidSchedule, InvalidTransition,
                    OverpaymentError, PermissionDenied, TransientStoreError)
from models import AllocationStatus, CallStatus, ScheduleSpec


@pytest.fixture
def funded_quarterly(engine, actor):
    allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000000")
    calls = engine.generate_schedule(actor, allocation.id, ScheduleSpec(
        type="quarterly", first_call_date=date(2024, 1, 15), call_count=4))
    return allocation, calls


class TestScheduleAndPayments:

    def test_quarterly_schedule_moves_to_invested(self, engine, funded_quarterly):
        allocation, calls = funded_quarterly

        assert [c.call_amount for c in calls] == [Decimal("250000.00")] * 4
        assert engine.get_allocation(allocation.id).status == AllocationStatus.INVESTED
        assert len(engine.get_calls(allocation.id)) == 4

    def test_first_payment(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly

        result = engine.apply_payment(actor, allocation.id, calls[0].id, "250000", date(2024, 2, 1))

        stored = engine.get_allocation(allocation.id)
        assert result.call.status == CallStatus.PAID
        assert stored.paid_amount == Decimal("250000.00")
        assert stored.outstanding_amount == Decimal("750000.00")
        assert stored.status == AllocationStatus.PARTIALLY_PAID
        assert engine.verify_allocation(allocation.id) == []

    def test_overpayment_leaves_store_unchanged(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly

        with pytest.raises(OverpaymentError):
            engine.apply_payment(actor, allocation.id, calls[0].id, "300000", date(2024, 2, 1))

        assert engine.get_allocation(allocation.id).paid_amount == 0
        assert engine.get_calls(allocation.id)[0].amount_paid == 0

    def test_overage_as_distribution(self, engine, actor, notifier, funded_quarterly):
        allocation, calls = funded_quarterly

        engine.apply_payment(actor, allocation.id, calls[0].id, "300000", date(2024, 2, 1),
                             allow_overage_as_distribution=True)

        dists = engine.get_distributions(allocation.id)
        assert [d.amount for d in dists] == [Decimal("50000.00")]
        assert "distribution_received" in notifier.names()

    def test_duplicate_payment_id(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "1000", date(2024, 2, 1),
                             payment_id="wire-1")
        result = engine.apply_payment(actor, allocation.id, calls[0].id, "1000", date(2024, 2, 1),
                                      payment_id="wire-1")
        assert result.duplicate is True
        assert engine.get_allocation(allocation.id).paid_amount == Decimal("1000.00")

    def test_payment_id_from_another_allocation_rejected(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        other = engine.create_allocation(actor, "fund-1", "deal-2", "equity", "1000")
        other_calls = engine.generate_schedule(actor, other.id, ScheduleSpec(
            type="single", first_call_date=date(2024, 1, 15)))
        engine.apply_payment(actor, allocation.id, calls[0].id, "1000", date(2024, 2, 1),
                             payment_id="wire-1")

        with pytest.raises(InvalidPayment) as exc:
            engine.apply_payment(actor, other.id, other_calls[0].id, "500", date(2024, 2, 1),
                                 payment_id="wire-1")

        assert exc.value.context['other_allocation_id'] == allocation.id
        assert engine.get_allocation(other.id).paid_amount == 0
        assert engine.get_calls(other.id)[0].payments == ()

    def test_full_funding(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        for c in calls:
            engine.apply_payment(actor, allocation.id, c.id, "250000", date(2024, 2, 1))
        stored = engine.get_allocation(allocation.id)
        assert stored.status == AllocationStatus.FUNDED
        assert stored.outstanding_amount == 0

    def test_reschedule_after_payment(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "250000", date(2024, 2, 1))

        new_calls = engine.generate_schedule(actor, allocation.id, ScheduleSpec(
            type="single", first_call_date=date(2024, 6, 1)))

        assert [c.call_amount for c in new_calls] == [Decimal("250000.00"), Decimal("750000.00")]
        assert new_calls[0].status == CallStatus.PAID
        assert engine.verify_allocation(allocation.id) == []

    def test_failed_schedule_stores_nothing(self, engine, actor):
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
        with pytest.raises(InvalidSchedule):
            engine.generate_schedule(actor, allocation.id, ScheduleSpec(
                type="custom", custom_calls=[(date(2024, 1, 1), "10")]))
        assert engine.get_calls(allocation.id) == []
        assert engine.get_allocation(allocation.id).status == AllocationStatus.COMMITTED


class TestLifecycleAndMetrics:

    def test_illegal_transition_keeps_state(self, engine, actor):
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
        with pytest.raises(InvalidTransition):
            engine.transition(actor, allocation.id, "all_paid")
        assert engine.get_allocation(allocation.id).status == AllocationStatus.COMMITTED

    def test_write_off_drops_weight(self, engine, actor):
        a = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000", market_value="100")
        b = engine.create_allocation(actor, "fund-1", "deal-2", "equity", "1000", market_value="300")
        assert engine.get_allocation(a.id).portfolio_weight == 0.25

        engine.transition(actor, b.id, "write_off")

        assert engine.get_allocation(b.id).portfolio_weight == 0.0
        assert engine.get_allocation(a.id).portfolio_weight == 1.0
        assert engine.get_allocation(b.id).outstanding_amount == 0

    def test_weights_stable_under_rerun(self, engine, actor):
        engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000", market_value="100")
        engine.create_allocation(actor, "fund-1", "deal-2", "equity", "1000", market_value="300")
        first = [a.portfolio_weight for a in engine.recalculate_weights(actor, "fund-1")]
        second = [a.portfolio_weight for a in engine.recalculate_weights(actor, "fund-1")]
        assert sorted(first) == sorted(second) == [0.25, 0.75]

    def test_metrics_refresh_after_distribution(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "250000", date(2023, 1, 15))
        engine.record_distribution(actor, allocation.id, "50000", date(2023, 12, 31), "dividend")
        engine.update_market_value(actor, allocation.id, "300000")

        stored = engine.get_allocation(allocation.id)
        metrics = engine.compute_metrics(allocation.id)

        assert stored.moic == pytest.approx(1.4)
        assert metrics.dpi == pytest.approx(0.2)
        assert stored.irr == pytest.approx(metrics.irr)
        assert stored.irr > 0

    def test_duplicate_deal_in_fund_rejected(self, engine, actor):
        first = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")

        with pytest.raises(InvalidAllocation) as exc:
            engine.create_allocation(actor, "fund-1", "deal-1", "safe", "500")

        assert exc.value.context['allocation_id'] == first.id
        assert len(engine.list_allocations("fund-1")) == 1
        assert engine.create_allocation(actor, "fund-2", "deal-1", "equity", "1000").fund_id == "fund-2"

    def test_unsolvable_irr_flagged_for_review(self, engine, actor):
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "100",
                                              market_value="100000")
        calls = engine.generate_schedule(actor, allocation.id, ScheduleSpec(
            type="single", first_call_date=date(2024, 1, 1)))
        engine.apply_payment(actor, allocation.id, calls[0].id, "100", date(2024, 1, 1))
        before = engine.get_allocation(allocation.id)
        assert before.irr_needs_review is False

        refreshed = engine.refresh_metrics(actor, allocation.id, as_of=date(2024, 2, 5))

        assert refreshed.irr_needs_review is True
        assert refreshed.irr == before.irr
        assert refreshed.moic == pytest.approx(1000.0)
        assert engine.get_allocation(allocation.id).irr_needs_review is True

    def test_diversification_and_summary(self, engine, actor):
        engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000", sector="software",
                                 market_value="100")
        engine.create_allocation(actor, "fund-1", "deal-2", "safe", "1000", sector="health",
                                 market_value="300")
        d = engine.diversification("fund-1")
        assert d.by_sector == pytest.approx({"health": 75.0, "software": 25.0})

        summary = engine.fund_summary("fund-1")
        assert summary['total_committed'] == Decimal("2000.00")
        assert summary['fund_id'] == "fund-1"


class TestCallsAndNotifications:

    def test_call_issue_and_reminders(self, engine, actor, notifier, funded_quarterly):
        allocation, calls = funded_quarterly
        # first call due 2024-02-14; clock reads 2024-01-15
        engine.mark_call_called(actor, allocation.id, calls[0].id)
        assert engine.get_calls(allocation.id)[0].status == CallStatus.CALLED

        sent = engine.send_due_reminders("fund-1", as_of=date(2024, 2, 7))
        assert len(sent) == 1
        assert sent[0]['days_until_due'] == 7
        assert notifier.names().count("call_due") == 2

    def test_overdue_and_default(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        assert [c.id for c in engine.overdue_calls(allocation.id, date(2024, 3, 1))] == [calls[0].id]
        defaulted = engine.mark_call_defaulted(actor, allocation.id, calls[0].id)
        assert defaulted.status == CallStatus.DEFAULTED
        assert engine.overdue_calls(allocation.id, date(2024, 3, 1)) == []

    def test_update_call_dates(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly

        engine.update_call_dates(actor, allocation.id, calls[1].id, date(2024, 5, 1), date(2024, 5, 20))

        stored = engine.get_calls(allocation.id)[1]
        assert (stored.call_date, stored.due_date) == (date(2024, 5, 1), date(2024, 5, 20))
        assert stored.call_amount == calls[1].call_amount

    def test_paid_call_dates_are_fixed(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "250000", date(2024, 2, 1))

        with pytest.raises(InvalidSchedule):
            engine.update_call_dates(actor, allocation.id, calls[0].id, date(2024, 5, 1))

        assert engine.get_calls(allocation.id)[0].call_date == calls[0].call_date

    def test_notifier_failure_does_not_propagate(self, settings, actor, today):
        def broken(event, payload):
            raise RuntimeError("smtp down")

        eng = AllocationEngine(settings=settings, clock=lambda: today, notifier=broken)
        try:
            allocation = eng.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
            assert eng.get_allocation(allocation.id).status == AllocationStatus.COMMITTED
        finally:
            eng.close()

    def test_allocation_updated_published(self, engine, actor, notifier, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "1000", date(2024, 2, 1))
        event, payload = notifier.events[-1]
        assert event == "allocation_updated"
        assert payload['allocation']['paid_amount'] == "1000.00"


class TestRepair:

    def test_repair_restores_status_from_calls(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.apply_payment(actor, allocation.id, calls[0].id, "250000", date(2024, 2, 1))
        engine.conn.execute("UPDATE allocations SET status = 'funded' WHERE id = ?", (allocation.id,))

        repaired = engine.repair_allocation(actor, allocation.id)

        assert repaired.status == AllocationStatus.PARTIALLY_PAID
        assert engine.repair_allocation(actor, allocation.id).version == repaired.version

    def test_repair_fund_reports_changed_allocations(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        engine.create_allocation(actor, "fund-1", "deal-2", "equity", "1000")
        engine.conn.execute("UPDATE allocations SET status = 'committed' WHERE id = ?", (allocation.id,))

        result = engine.repair_fund(actor, "fund-1")

        assert result['repaired'] == [allocation.id]
        assert result['errors'] == []
        assert engine.get_allocation(allocation.id).status == AllocationStatus.INVESTED


class TestAccessAndConcurrency:

    def test_read_only_actor_denied(self, engine, read_only_actor):
        with pytest.raises(PermissionDenied):
            engine.create_allocation(read_only_actor, "fund-1", "deal-1", "equity", "1000")

    def test_audit_records_actor(self, engine, actor):
        import database as db
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
        trail = db.audit_trail(engine.conn, allocation.id)
        assert list(trail['actor_id']) == ["analyst-1"]

    def test_concurrent_payments_to_different_calls(self, engine, actor, funded_quarterly):
        allocation, calls = funded_quarterly
        errors = []

        def pay(call):
            try:
                engine.apply_payment(actor, allocation.id, call.id, "250000", date(2024, 2, 1))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay, args=(c,)) for c in calls]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = engine.get_allocation(allocation.id)
        assert stored.paid_amount == Decimal("1000000.00")
        assert stored.status == AllocationStatus.FUNDED

    def test_busy_store_surfaces_transient_error(self, engine, actor, settings):
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
        blocker = sqlite3.connect(settings.db_path, timeout=0.1, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        engine.conn.execute("PRAGMA busy_timeout=50")
        try:
            with pytest.raises(TransientStoreError):
                engine.transition(actor, allocation.id, "write_off")
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
        assert engine.get_allocation(allocation.id).status == AllocationStatus.COMMITTED

    def test_key_locks_released_after_use(self, engine, actor):
        allocation = engine.create_allocation(actor, "fund-1", "deal-1", "equity", "1000")
        engine.transition(actor, allocation.id, "write_off")
        gc.collect()
        assert len(engine._locks) == 0
