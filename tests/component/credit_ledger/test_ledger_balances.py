"""
Credit Ledger Component Tests - Balances, Consumption and Credit Additions

Covers:
1. Balance snapshots and account lifecycle
2. Atomic consumption (including concurrent last-unit races)
3. Low-balance threshold events
4. Idempotent credit additions and payment confirmation
5. Ledger history and account reconciliation

Usage:
    pytest tests/component/credit_ledger/test_ledger_balances.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from microservices.credit_ledger_service.models import (
    BalanceStatusEnum,
    ResultReasonEnum,
    TransactionTypeEnum,
)
from microservices.credit_ledger_service.protocols import (
    AccountNotFoundError,
    ConsistencyError,
    ExternalDependencyError,
)

CREDITS_ADDED = "credit_ledger.credits.added"
CREDITS_CONSUMED = "credit_ledger.credits.consumed"
BALANCE_LOW = "credit_ledger.balance.low"


# =============================================================================
# 1. Balance Snapshots
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestBalanceSnapshots:
    """get_balance, ensure_account, deactivate_account"""

    async def test_missing_account_returns_zero_snapshot(self, ledger_service, account):
        tenant_id, entity_id = account

        snapshot = await ledger_service.get_balance(tenant_id, entity_id)

        assert snapshot.has_account is False
        assert snapshot.available_credits == 0
        assert snapshot.status == BalanceStatusEnum.NO_CREDITS

    async def test_ensure_account_is_idempotent(self, ledger_service, mock_repository, account):
        tenant_id, entity_id = account

        first = await ledger_service.ensure_account(tenant_id, entity_id)
        second = await ledger_service.ensure_account(tenant_id, entity_id)

        assert first.available_credits == 0
        assert second.tenant_id == tenant_id
        assert len(mock_repository.accounts) == 1

    async def test_status_follows_thresholds(self, ledger_service, fund, account):
        tenant_id, entity_id = account

        await fund(tenant_id, entity_id, 500)
        assert (await ledger_service.get_balance(tenant_id, entity_id)).status == BalanceStatusEnum.ACTIVE

        await ledger_service.consume(tenant_id, entity_id, "op.bulk", 420)
        snapshot = await ledger_service.get_balance(tenant_id, entity_id)
        assert snapshot.status == BalanceStatusEnum.LOW_BALANCE
        assert [a.alert_type for a in snapshot.alerts] == ["low_balance"]

        await ledger_service.consume(tenant_id, entity_id, "op.bulk", 75)
        snapshot = await ledger_service.get_balance(tenant_id, entity_id)
        assert snapshot.status == BalanceStatusEnum.CRITICAL_BALANCE
        assert snapshot.alerts[0].severity == "critical"

    async def test_deactivated_account_reports_inactive(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 5)

        account_row = await ledger_service.deactivate_account(tenant_id, entity_id)
        snapshot = await ledger_service.get_balance(tenant_id, entity_id)

        # Inactive wins over critical
        assert account_row.is_active is False
        assert snapshot.status == BalanceStatusEnum.INACTIVE

    async def test_deactivate_missing_account_raises(self, ledger_service, account):
        with pytest.raises(AccountNotFoundError):
            await ledger_service.deactivate_account(*account)

    async def test_free_credit_expiry_alert(self, ledger_service, clock, account):
        tenant_id, entity_id = account
        await ledger_service.add_credits(
            tenant_id, entity_id, 500, source="plan",
            credit_category="free", expires_at=clock.now + timedelta(days=5),
        )

        snapshot = await ledger_service.get_balance(tenant_id, entity_id)

        assert snapshot.free_credits == 500
        assert snapshot.paid_credits == 0
        expiry_alerts = [a for a in snapshot.alerts if a.alert_type == "expiry_warning"]
        assert len(expiry_alerts) == 1
        assert expiry_alerts[0].severity == "critical"


# =============================================================================
# 2. Consumption
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestConsumption:
    """consume: atomic, never overdraws, rejections write nothing"""

    async def test_purchase_then_consume_scenario(self, ledger_service, mock_repository, account):
        tenant_id, entity_id = account

        added = await ledger_service.add_credits(tenant_id, entity_id, 1000, source="payment", idempotency_key="pay_1")
        assert added.ok and added.balance == 1000

        first = await ledger_service.consume(tenant_id, entity_id, "leads.create", 300)
        assert first.ok is True
        assert first.balance == 700

        second = await ledger_service.consume(tenant_id, entity_id, "leads.create", 800)
        assert second.ok is False
        assert second.reason == ResultReasonEnum.INSUFFICIENT_CREDITS
        assert second.shortfall == 100
        assert second.current_balance == 700

        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 700
        # Rejected consume leaves no ledger row
        assert len(mock_repository.ledger_rows(tenant_id, entity_id)) == 2

    async def test_consume_records_ledger_row_and_event(self, ledger_service, fund, mock_repository, mock_event_bus, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 1000)

        result = await ledger_service.consume(tenant_id, entity_id, "leads.create", 250, metadata={"lead_id": "l1"})

        row = mock_repository.ledger_rows(tenant_id, entity_id)[-1]
        assert row["transaction_type"] == TransactionTypeEnum.CONSUMPTION.value
        assert row["amount"] == -250
        assert (row["previous_balance"], row["new_balance"]) == (1000, 750)
        assert row["metadata"] == {"lead_id": "l1"}
        assert row["transaction_id"] == result.transaction_id

        mock_event_bus.assert_event_published(CREDITS_CONSUMED, {
            "amount": 250,
            "balance_before": 1000,
            "balance_after": 750,
            "operation_code": "leads.create",
        })

    @pytest.mark.parametrize("bad_cost", [0, -5, 1.5, "10", True])
    async def test_invalid_cost_rejected_before_storage(self, ledger_service, mock_repository, account, bad_cost):
        result = await ledger_service.consume(*account, "op.invalid", bad_cost)

        assert result.ok is False
        assert result.reason == ResultReasonEnum.INVALID_AMOUNT
        assert mock_repository.method_calls == []

    async def test_missing_operation_code_rejected(self, ledger_service, account):
        result = await ledger_service.consume(*account, "  ", 5)

        assert result.reason == ResultReasonEnum.VALIDATION_ERROR

    async def test_consume_without_account_is_insufficient(self, ledger_service, account):
        result = await ledger_service.consume(*account, "op.first", 10)

        assert result.reason == ResultReasonEnum.INSUFFICIENT_CREDITS
        assert result.current_balance == 0
        assert result.shortfall == 10

    async def test_consume_from_inactive_account(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 100)
        await ledger_service.deactivate_account(tenant_id, entity_id)

        result = await ledger_service.consume(tenant_id, entity_id, "op.blocked", 10)

        assert result.reason == ResultReasonEnum.ACCOUNT_INACTIVE
        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 100

    async def test_concurrent_consumers_race_for_last_unit(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 1)

        results = await asyncio.gather(*[
            ledger_service.consume(tenant_id, entity_id, "op.race", 1) for _ in range(5)
        ])

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.reason == ResultReasonEnum.INSUFFICIENT_CREDITS for r in results if not r.ok)
        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 0

    async def test_concurrent_consumers_never_overdraw(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 100)

        results = await asyncio.gather(*[
            ledger_service.consume(tenant_id, entity_id, "op.race", 30) for _ in range(6)
        ])

        assert sum(1 for r in results if r.ok) == 3
        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 10

    async def test_result_converts_to_exception(self, ledger_service, account):
        from microservices.credit_ledger_service.protocols import InsufficientBalanceError

        result = await ledger_service.consume(*account, "op.raise", 10)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            result.raise_for_reason()
        assert exc_info.value.shortfall == 10


# =============================================================================
# 3. Low-Balance Events
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestLowBalanceEvents:
    """balance.low fires when a threshold is crossed, not while below it"""

    async def test_warning_then_critical_crossings(self, ledger_service, fund, mock_event_bus, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 150)

        await ledger_service.consume(tenant_id, entity_id, "op.a", 40)   # 110
        mock_event_bus.assert_no_events_published(BALANCE_LOW)

        await ledger_service.consume(tenant_id, entity_id, "op.a", 20)   # 90
        await ledger_service.consume(tenant_id, entity_id, "op.a", 5)    # 85
        await ledger_service.consume(tenant_id, entity_id, "op.a", 80)   # 5

        events = mock_event_bus.get_published(BALANCE_LOW)
        assert [e["data"]["severity"] for e in events] == ["warning", "critical"]
        assert [e["data"]["threshold"] for e in events] == [100, 10]
        assert events[-1]["data"]["balance"] == 5

    async def test_single_drop_through_both_thresholds_is_critical(self, ledger_service, fund, mock_event_bus, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 200)

        await ledger_service.consume(tenant_id, entity_id, "op.big", 195)

        events = mock_event_bus.get_published(BALANCE_LOW)
        assert len(events) == 1
        assert events[0]["data"]["severity"] == "critical"

    async def test_broken_event_bus_does_not_fail_consume(self, ledger_service, fund, mock_event_bus, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 50)
        mock_event_bus.set_error(ConnectionError("nats down"))

        result = await ledger_service.consume(tenant_id, entity_id, "op.quiet", 45)

        assert result.ok is True
        assert result.balance == 5


# =============================================================================
# 4. Credit Additions
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestAddCredits:
    """add_credits: idempotency, sources, categories, payment confirmation"""

    async def test_payment_source_is_recorded_as_purchase(self, ledger_service, mock_repository, mock_event_bus, account):
        tenant_id, entity_id = account

        result = await ledger_service.add_credits(tenant_id, entity_id, 400, source="payment", idempotency_key="pay_abc")

        row = mock_repository.ledger_rows(tenant_id, entity_id)[0]
        assert row["transaction_type"] == TransactionTypeEnum.PURCHASE.value
        assert row["operation_code"] == "credits.payment"
        assert row["idempotency_key"] == "pay_abc"
        assert mock_repository.idempotency_keys["pay_abc"]["transaction_id"] == result.transaction_id
        mock_event_bus.assert_event_published(CREDITS_ADDED, {"amount": 400, "source": "payment"})

    async def test_manual_source_is_recorded_as_adjustment(self, ledger_service, mock_repository, account):
        tenant_id, entity_id = account

        await ledger_service.add_credits(tenant_id, entity_id, 75, source="manual", initiated_by="user_ops")

        row = mock_repository.ledger_rows(tenant_id, entity_id)[0]
        assert row["transaction_type"] == TransactionTypeEnum.ADJUSTMENT.value
        assert row["initiated_by"] == "user_ops"

    async def test_repeated_key_is_applied_once(self, ledger_service, mock_repository, account):
        tenant_id, entity_id = account

        first = await ledger_service.add_credits(tenant_id, entity_id, 1000, source="payment", idempotency_key="pay_1")
        second = await ledger_service.add_credits(tenant_id, entity_id, 1000, source="payment", idempotency_key="pay_1")

        assert first.replayed is False
        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert second.balance == 1000
        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 1000
        assert len(mock_repository.ledger_rows(tenant_id, entity_id)) == 1

    async def test_concurrent_retries_apply_once(self, ledger_service, account):
        tenant_id, entity_id = account

        results = await asyncio.gather(*[
            ledger_service.add_credits(tenant_id, entity_id, 500, source="payment", idempotency_key="pay_dup")
            for _ in range(3)
        ])

        assert all(r.ok for r in results)
        assert sum(1 for r in results if not r.replayed) == 1
        assert (await ledger_service.get_balance(tenant_id, entity_id)).available_credits == 500

    async def test_payment_requires_idempotency_key(self, ledger_service, mock_repository, account):
        result = await ledger_service.add_credits(*account, 100, source="payment")

        assert result.reason == ResultReasonEnum.VALIDATION_ERROR
        assert mock_repository.transactions == []

    async def test_unknown_source_rejected(self, ledger_service, account):
        result = await ledger_service.add_credits(*account, 100, source="lottery")

        assert result.reason == ResultReasonEnum.VALIDATION_ERROR

    async def test_expiry_only_for_free_credits(self, ledger_service, clock, account):
        result = await ledger_service.add_credits(
            *account, 100, source="manual", expires_at=clock.now + timedelta(days=3)
        )

        assert result.reason == ResultReasonEnum.VALIDATION_ERROR

    @pytest.mark.parametrize("bad_amount", [0, -1, 2.5, False])
    async def test_invalid_amount(self, ledger_service, account, bad_amount):
        result = await ledger_service.add_credits(*account, bad_amount, source="manual")

        assert result.reason == ResultReasonEnum.INVALID_AMOUNT

    async def test_credit_to_inactive_account_rolls_back(self, ledger_service, fund, mock_repository, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 10)
        await ledger_service.deactivate_account(tenant_id, entity_id)

        result = await ledger_service.add_credits(tenant_id, entity_id, 50, source="payment", idempotency_key="pay_late")

        assert result.reason == ResultReasonEnum.ACCOUNT_INACTIVE
        # The key claim rolled back with the credit, so a retry can still apply it
        assert "pay_late" not in mock_repository.idempotency_keys
        assert len(mock_repository.ledger_rows(tenant_id, entity_id)) == 1

    async def test_confirmed_payment_is_credited(self, confirmed_payment_service, payment_client, account):
        tenant_id, entity_id = account
        payment_client.add_payment("pay_ok", tenant_id, 300)

        result = await confirmed_payment_service.add_credits(
            tenant_id, entity_id, 300, source="payment", idempotency_key="pay_ok"
        )

        assert result.ok is True
        assert payment_client.calls == ["pay_ok"]

    async def test_unconfirmed_payment_is_rejected(self, confirmed_payment_service, mock_repository, account):
        result = await confirmed_payment_service.add_credits(
            *account, 300, source="payment", idempotency_key="pay_unknown"
        )

        assert result.reason == ResultReasonEnum.PAYMENT_NOT_CONFIRMED
        assert mock_repository.transactions == []
        assert mock_repository.accounts == {}

    async def test_payment_service_outage_raises_without_ledger_entry(
        self, confirmed_payment_service, payment_client, mock_repository, account
    ):
        payment_client.unavailable = True

        with pytest.raises(ExternalDependencyError):
            await confirmed_payment_service.add_credits(
                *account, 300, source="payment", idempotency_key="pay_retry_me"
            )

        assert mock_repository.transactions == []
        assert mock_repository.idempotency_keys == {}

    async def test_non_payment_sources_skip_confirmation(self, confirmed_payment_service, payment_client, account):
        result = await confirmed_payment_service.add_credits(*account, 20, source="plan")

        assert result.ok is True
        assert payment_client.calls == []

    async def test_free_credits_consumed_first(self, ledger_service, clock, account):
        tenant_id, entity_id = account
        await ledger_service.add_credits(
            tenant_id, entity_id, 100, source="plan", credit_category="free", expires_at=clock.now + timedelta(days=10)
        )
        await ledger_service.add_credits(tenant_id, entity_id, 50, source="manual")

        await ledger_service.consume(tenant_id, entity_id, "op.spend", 30)

        snapshot = await ledger_service.get_balance(tenant_id, entity_id)
        assert snapshot.available_credits == 120
        assert snapshot.free_credits == 70
        assert snapshot.paid_credits == 50


# =============================================================================
# 5. Ledger History and Reconciliation
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestLedgerQueries:
    """get_transaction_history, get_transaction, reconcile_account"""

    async def test_history_is_newest_first(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 1000)
        await ledger_service.consume(tenant_id, entity_id, "op.one", 300)
        await ledger_service.consume(tenant_id, entity_id, "op.two", 100)

        history = (await ledger_service.get_transaction_history(tenant_id, entity_id)).transactions

        assert [t.amount for t in history] == [-100, -300, 1000]
        assert [t.operation_code for t in history[:2]] == ["op.two", "op.one"]

    async def test_history_filters_and_pages(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 1000)
        for _ in range(3):
            await ledger_service.consume(tenant_id, entity_id, "op.page", 10)

        consumptions = (await ledger_service.get_transaction_history(
            tenant_id, entity_id, transaction_type="consumption"
        )).transactions
        page = (await ledger_service.get_transaction_history(tenant_id, entity_id, limit=2, offset=1)).transactions

        assert len(consumptions) == 3
        assert all(t.transaction_type == TransactionTypeEnum.CONSUMPTION for t in consumptions)
        assert len(page) == 2

    async def test_invalid_history_query(self, ledger_service, account):
        result = await ledger_service.get_transaction_history(*account, limit=0)

        assert result.ok is False
        assert result.reason == ResultReasonEnum.VALIDATION_ERROR
        assert result.transactions == []

    async def test_get_transaction(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        added = await fund(tenant_id, entity_id, 42)

        txn = await ledger_service.get_transaction(added.transaction_id)

        assert txn.amount == 42
        assert await ledger_service.get_transaction("cred_txn_missing") is None

    async def test_ledger_rows_chain_balances(self, ledger_service, fund, mock_repository, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 500)
        await ledger_service.consume(tenant_id, entity_id, "op.x", 120)
        await fund(tenant_id, entity_id, 30)
        await ledger_service.consume(tenant_id, entity_id, "op.y", 400)

        rows = mock_repository.ledger_rows(tenant_id, entity_id)
        for before, after in zip(rows, rows[1:]):
            assert after["previous_balance"] == before["new_balance"]
        assert rows[-1]["new_balance"] == 10

    async def test_reconcile_consistent_account(self, ledger_service, fund, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 1000)
        await ledger_service.consume(tenant_id, entity_id, "op.r", 333)

        report = await ledger_service.reconcile_account(tenant_id, entity_id)

        assert report.consistent is True
        assert report.expected == report.actual == 667

    async def test_reconcile_mismatch_flags_account(self, ledger_service, fund, mock_repository, account):
        tenant_id, entity_id = account
        await fund(tenant_id, entity_id, 100)
        mock_repository.accounts[(tenant_id, entity_id)]["available_credits"] += 5

        with pytest.raises(ConsistencyError):
            await ledger_service.reconcile_account(tenant_id, entity_id)

        assert len(mock_repository.flags) == 1
        assert mock_repository.flags[0]["record_id"] == f"{tenant_id}/{entity_id}"
        assert mock_repository.flags[0]["details"]["expected"] == 105
        # Flagged, not corrected
        assert mock_repository.accounts[(tenant_id, entity_id)]["available_credits"] == 105

    async def test_reconcile_missing_account(self, ledger_service, account):
        with pytest.raises(AccountNotFoundError):
            await ledger_service.reconcile_account(*account)
