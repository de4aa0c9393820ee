"""Tests for the transaction stage machine and the completion sequence."""

import logging
import sqlite3
import tempfile
from dataclasses import replace
from pathlib import Path

import pytest

from td_commission_engine.errors import (
    InconsistentBreakdownError,
    InvalidTransitionError,
    NotFoundError,
    PartialCompletionError,
    ValidationError,
)
from td_commission_engine.storage.database import Database
from td_commission_engine.storage.models import (
    CommissionType,
    FinancialBreakdown,
    TransactionStage,
)
from td_commission_engine.team.agents import AgentRegistry
from td_commission_engine.transactions.commission import CommissionEngine
from td_commission_engine.transactions.ledger import LedgerStore
from td_commission_engine.transactions.tracker import TransactionTracker


STAGES = list(TransactionStage)
LEGAL = {
    (TransactionStage.AGREEMENT, TransactionStage.EARNEST_MONEY),
    (TransactionStage.EARNEST_MONEY, TransactionStage.TITLE_DEED),
    (TransactionStage.TITLE_DEED, TransactionStage.COMPLETED),
}


class SkewedEngine(CommissionEngine):
    """Engine whose breakdown never validates."""

    def calculate_breakdown(self, total_service_fee, listing_agent_id, selling_agent_id):
        return FinancialBreakdown(
            agency_commission=total_service_fee * 0.6,
            total_agent_commission=total_service_fee * 0.4,
            listing_agent_commission=total_service_fee * 0.3,
            selling_agent_commission=total_service_fee * 0.3,
            listing_agent_id=listing_agent_id,
            selling_agent_id=selling_agent_id,
        )


@pytest.fixture
def temp_data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_data_dir):
    return Database(temp_data_dir / "commissions.db")


@pytest.fixture
def agents(db):
    return AgentRegistry(db)


@pytest.fixture
def ledger(db):
    return LedgerStore(db)


@pytest.fixture
def tracker(db, agents, ledger):
    return TransactionTracker(db, agents, ledger)


@pytest.fixture
def jane(agents):
    return agents.add_agent("jane@tdrealty.com", "Jane", "Doe")


@pytest.fixture
def bob(agents):
    return agents.add_agent("bob@tdrealty.com", "Bob", "Smith")


def new_transaction(tracker, listing, selling, fee=100000):
    return tracker.create_transaction(
        property_address="123 Main St",
        property_type="single_family",
        total_service_fee=fee,
        listing_agent_id=listing.id,
        selling_agent_id=selling.id,
        client_name="John Buyer",
        client_contact="john@example.com",
    )


def advance_to(tracker, txn_id, target):
    """Walk a transaction forward one legal step at a time."""
    order = STAGES[:STAGES.index(target) + 1]
    for stage in order[1:]:
        tracker.update_stage(txn_id, stage)


class TestCreateTransaction:
    """Tests for creating and loading transactions."""

    def test_create(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        assert txn.stage == TransactionStage.AGREEMENT
        assert txn.financial_breakdown is None

        loaded = tracker.get_transaction(txn.id)
        assert loaded.property_address == "123 Main St"
        assert loaded.total_service_fee == 100000
        assert loaded.listing_agent_id == jane.id
        assert loaded.selling_agent_id == bob.id
        assert loaded.client_name == "John Buyer"

    @pytest.mark.parametrize("fee", [0, -100, float("nan"), float("inf"), float("-inf")])
    def test_fee_must_be_positive(self, tracker, jane, fee):
        with pytest.raises(ValidationError):
            new_transaction(tracker, jane, jane, fee=fee)

    def test_unknown_agent(self, tracker, jane):
        with pytest.raises(NotFoundError):
            tracker.create_transaction("1 Oak Ave", "condo", 5000, jane.id, "ghost")

    def test_get_unknown(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.get_transaction("nope")

    def test_update_stage_unknown(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.update_stage("nope", TransactionStage.EARNEST_MONEY)

    def test_fee_not_overwritten_by_save(self, tracker, jane):
        txn = new_transaction(tracker, jane, jane)
        tracker.save(replace(txn, total_service_fee=1.0))
        assert tracker.get_transaction(txn.id).total_service_fee == 100000


class TestStageMachine:
    """Tests for stage transitions."""

    def test_full_lifecycle(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        assert tracker.update_stage(txn.id, TransactionStage.EARNEST_MONEY).stage == TransactionStage.EARNEST_MONEY
        assert tracker.update_stage(txn.id, TransactionStage.TITLE_DEED).stage == TransactionStage.TITLE_DEED
        done = tracker.update_stage(txn.id, TransactionStage.COMPLETED)
        assert done.stage == TransactionStage.COMPLETED
        assert done.financial_breakdown is not None
        assert tracker.get_transaction(txn.id).stage == TransactionStage.COMPLETED

    @pytest.mark.parametrize("current", STAGES)
    @pytest.mark.parametrize("requested", STAGES)
    def test_only_single_forward_steps_are_legal(self, tracker, ledger, jane, bob, current, requested):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, current)
        entries_before = len(ledger.get_all())

        if (current, requested) in LEGAL:
            assert tracker.update_stage(txn.id, requested).stage == requested
        else:
            with pytest.raises(InvalidTransitionError):
                tracker.update_stage(txn.id, requested)
            assert tracker.get_transaction(txn.id).stage == current
            assert len(ledger.get_all()) == entries_before

    def test_non_terminal_transitions_have_no_side_effects(self, tracker, agents, ledger, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.TITLE_DEED)

        assert tracker.get_transaction(txn.id).financial_breakdown is None
        assert ledger.get_all() == []
        assert agents.get_agent(jane.id).transaction_count == 0

    def test_premature_completion_rejected(self, tracker, agents, ledger, jane, bob):
        """Completing straight from agreement writes nothing."""
        txn = new_transaction(tracker, jane, bob)

        with pytest.raises(InvalidTransitionError):
            tracker.update_stage(txn.id, TransactionStage.COMPLETED)

        loaded = tracker.get_transaction(txn.id)
        assert loaded.stage == TransactionStage.AGREEMENT
        assert loaded.financial_breakdown is None
        assert ledger.get_by_transaction(txn.id) == []
        assert agents.get_agent(jane.id).total_commission_earned == 0
        assert agents.get_agent(bob.id).total_commission_earned == 0

    def test_stale_write_rejected(self, tracker, jane):
        """A save conditioned on an old stage does not apply."""
        txn = new_transaction(tracker, jane, jane)
        stale = tracker.get_transaction(txn.id)
        tracker.update_stage(txn.id, TransactionStage.EARNEST_MONEY)

        stale.stage = TransactionStage.EARNEST_MONEY
        with pytest.raises(InvalidTransitionError):
            tracker.save(stale, expected_stage=TransactionStage.AGREEMENT)


class TestCompletion:
    """Tests for the commission posting on completion."""

    def test_same_agent_completion(self, tracker, agents, ledger, jane):
        txn = new_transaction(tracker, jane, jane)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)

        b = tracker.get_transaction(txn.id).financial_breakdown
        assert b.agency_commission == 50000
        assert b.total_agent_commission == 50000
        assert b.listing_agent_commission == 50000
        assert b.selling_agent_commission == 0

        entries = ledger.get_by_transaction(txn.id)
        by_type = {e.commission_type: e for e in entries}
        assert len(entries) == 2
        assert by_type[CommissionType.AGENCY].amount == 50000
        assert by_type[CommissionType.AGENCY].agent_id is None
        assert by_type[CommissionType.LISTING].amount == 50000
        assert by_type[CommissionType.LISTING].agent_id == jane.id
        assert CommissionType.SELLING not in by_type

        credited = agents.get_agent(jane.id)
        assert credited.total_commission_earned == 50000
        assert credited.transaction_count == 1

    def test_distinct_agents_completion(self, tracker, agents, ledger, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)

        b = tracker.get_transaction(txn.id).financial_breakdown
        assert (b.agency_commission, b.total_agent_commission) == (50000, 50000)
        assert (b.listing_agent_commission, b.selling_agent_commission) == (25000, 25000)

        entries = ledger.get_by_transaction(txn.id)
        amounts = sorted((e.commission_type.value, e.amount) for e in entries)
        assert amounts == [("agency", 50000), ("listing", 25000), ("selling", 25000)]

        for agent in (jane, bob):
            credited = agents.get_agent(agent.id)
            assert credited.total_commission_earned == 25000
            assert credited.transaction_count == 1

    def test_breakdown_is_consistent(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob, fee=98765.43)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)
        b = tracker.get_financial_summary(txn.id)
        assert abs(b.total - 98765.43) <= 0.01
        assert tracker.engine.validate_breakdown(b)

    def test_breakdown_never_replaced(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)
        original = tracker.get_transaction(txn.id).financial_breakdown

        completed = tracker.get_transaction(txn.id)
        completed.financial_breakdown = replace(original, agency_commission=1.0)
        tracker.save(completed)

        assert tracker.get_transaction(txn.id).financial_breakdown == original

    def test_save_cannot_move_stage(self, tracker, agents, ledger, jane, bob):
        """A plain save leaves the stored stage alone, so completion runs once."""
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)

        done = tracker.get_transaction(txn.id)
        tracker.save(replace(done, stage=TransactionStage.TITLE_DEED, client_name="Jane Buyer"))

        loaded = tracker.get_transaction(txn.id)
        assert loaded.stage == TransactionStage.COMPLETED
        assert loaded.client_name == "Jane Buyer"
        with pytest.raises(InvalidTransitionError):
            tracker.update_stage(txn.id, TransactionStage.COMPLETED)
        assert len(ledger.get_by_transaction(txn.id)) == 3
        assert agents.get_agent(jane.id).transaction_count == 1

    def test_save_does_not_attach_breakdown_early(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        early = tracker.simulate_commission(txn.total_service_fee, jane.id, bob.id)
        tracker.save(replace(txn, financial_breakdown=early))
        assert tracker.get_transaction(txn.id).financial_breakdown is None

    def test_completed_cannot_complete_again(self, tracker, ledger, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            tracker.update_stage(txn.id, TransactionStage.COMPLETED)
        assert len(ledger.get_by_transaction(txn.id)) == 3

    def test_agent_credits_accumulate(self, tracker, agents, jane, bob):
        first = new_transaction(tracker, jane, bob, fee=100000)
        second = new_transaction(tracker, jane, jane, fee=20000)
        advance_to(tracker, first.id, TransactionStage.COMPLETED)
        advance_to(tracker, second.id, TransactionStage.COMPLETED)

        stats = agents.get_agent_stats(jane.id)
        assert stats['total_commission_earned'] == 35000
        assert stats['transaction_count'] == 2
        assert stats['average_commission_per_transaction'] == 17500

    def test_ledger_failure_is_partial_completion(self, tracker, agents, ledger, jane, bob, monkeypatch, caplog):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.TITLE_DEED)

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(ledger, "post_breakdown", broken)

        with caplog.at_level(logging.ERROR):
            with pytest.raises(PartialCompletionError) as exc_info:
                tracker.update_stage(txn.id, TransactionStage.COMPLETED)

        assert exc_info.value.step == "ledger"
        assert exc_info.value.transaction_id == txn.id
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert "Ledger posting failed" in caplog.text

        # Stage and breakdown were already saved; nothing else happened
        loaded = tracker.get_transaction(txn.id)
        assert loaded.stage == TransactionStage.COMPLETED
        assert loaded.financial_breakdown is not None
        assert agents.get_agent(jane.id).transaction_count == 0

    def test_stats_failure_is_partial_completion(self, tracker, agents, ledger, jane, bob, monkeypatch):
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.TITLE_DEED)

        def broken(agent_id, amount):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(agents, "credit_commission", broken)

        with pytest.raises(PartialCompletionError) as exc_info:
            tracker.update_stage(txn.id, TransactionStage.COMPLETED)

        assert exc_info.value.step == "agent_stats"
        assert len(ledger.get_by_transaction(txn.id)) == 3


class TestBreakdownValidationMode:
    """Advisory versus strict breakdown validation."""

    def test_advisory_mode_completes_and_logs(self, db, agents, ledger, jane, bob, caplog):
        tracker = TransactionTracker(db, agents, ledger, engine=SkewedEngine())
        txn = new_transaction(tracker, jane, bob)

        with caplog.at_level(logging.WARNING):
            advance_to(tracker, txn.id, TransactionStage.COMPLETED)

        assert tracker.get_transaction(txn.id).stage == TransactionStage.COMPLETED
        assert "inconsistent breakdown" in caplog.text

    def test_strict_mode_blocks_before_any_write(self, db, agents, ledger, jane, bob):
        tracker = TransactionTracker(db, agents, ledger, engine=SkewedEngine(), strict_validation=True)
        txn = new_transaction(tracker, jane, bob)
        advance_to(tracker, txn.id, TransactionStage.TITLE_DEED)

        with pytest.raises(InconsistentBreakdownError):
            tracker.update_stage(txn.id, TransactionStage.COMPLETED)

        loaded = tracker.get_transaction(txn.id)
        assert loaded.stage == TransactionStage.TITLE_DEED
        assert loaded.financial_breakdown is None
        assert ledger.get_all() == []


class TestTransactionQueries:
    """Tests for listing, filtering and previews."""

    def test_by_stage_and_agent(self, tracker, agents, jane, bob):
        amy = agents.add_agent("amy@tdrealty.com", "Amy", "Jones")
        t1 = new_transaction(tracker, jane, bob)
        t2 = new_transaction(tracker, bob, amy)
        t3 = new_transaction(tracker, amy, amy)
        tracker.update_stage(t2.id, TransactionStage.EARNEST_MONEY)

        assert {t.id for t in tracker.get_by_stage(TransactionStage.AGREEMENT)} == {t1.id, t3.id}
        assert [t.id for t in tracker.get_by_stage(TransactionStage.EARNEST_MONEY)] == [t2.id]
        assert {t.id for t in tracker.get_by_agent(bob.id)} == {t1.id, t2.id}
        assert [t.id for t in tracker.get_by_agent(jane.id)] == [t1.id]

    def test_all_newest_first(self, tracker, jane):
        first = new_transaction(tracker, jane, jane)
        second = new_transaction(tracker, jane, jane)
        assert [t.id for t in tracker.get_all_transactions()] == [second.id, first.id]

    def test_financial_summary_requires_completion(self, tracker, jane, bob):
        txn = new_transaction(tracker, jane, bob)
        with pytest.raises(ValidationError):
            tracker.get_financial_summary(txn.id)

    def test_simulate_does_not_persist(self, tracker, agents, ledger, jane, bob):
        preview = tracker.simulate_commission(100000, jane.id, bob.id)
        assert preview.listing_agent_commission == 25000
        assert preview.selling_agent_commission == 25000
        assert ledger.get_all() == []
        assert tracker.get_all_transactions() == []
        assert agents.get_agent(jane.id).transaction_count == 0

    @pytest.mark.parametrize("fee", [0, float("nan"), float("inf")])
    def test_simulate_rejects_bad_fee(self, tracker, fee):
        with pytest.raises(ValidationError):
            tracker.simulate_commission(fee, "a", "b")

    def test_pipeline_summary(self, tracker, jane, bob):
        t1 = new_transaction(tracker, jane, bob, fee=10000)
        new_transaction(tracker, jane, bob, fee=5000)
        advance_to(tracker, t1.id, TransactionStage.COMPLETED)

        summary = tracker.get_pipeline_summary()
        assert summary["total_transactions"] == 2
        assert summary["open_transactions"] == 1
        assert summary["by_stage"]["completed"] == {"count": 1, "fee_volume": 10000}
        assert summary["by_stage"]["agreement"]["count"] == 1
