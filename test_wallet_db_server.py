import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import NOW
from fees import FeePolicy, FeeType, TransferLimits, TransferStatus, calculate_fee
from wallet_db_server import WalletDatabaseServer

MALAYSIA = timezone(timedelta(hours=8))


def record_transfer(db, amount="100.00", fee="1.00", net="99.00", created_at=NOW, sender="USER001", recipient="USER002"):
    transfer_id = str(uuid.uuid4())
    res = db.create_transfer(sender, recipient, amount, fee, net, "test", transfer_id, created_at.isoformat())
    assert res["success"], res
    return transfer_id


class TestSeedData:
    def test_stats(self, db):
        stats = db.get_stats()
        assert stats["total_users"] == 3
        assert stats["total_transfers"] == 0
        assert stats["total_balance"] == 8500.0

    def test_reopen_does_not_reseed(self, db):
        again = WalletDatabaseServer(db_path=db.db_path)
        assert again.get_stats()["total_users"] == 3

    def test_unseeded_database_is_empty(self, tmp_path):
        empty = WalletDatabaseServer(db_path=str(tmp_path / "empty.db"), seed=False)
        assert empty.get_stats()["total_users"] == 0
        assert empty.get_fee_policies("MYR")["policies"] == []

    def test_credentials(self, db):
        assert db.validate_credentials("aisyah", "AisyahPass123")["wallet_id"] == "WAL001"
        assert not db.validate_credentials("aisyah", "nope")["success"]
        assert not db.validate_credentials("ghost", "nope")["success"]

    def test_wallet_lookup(self, db):
        wallet = db.get_wallet("USER002")
        assert wallet["balance"] == 1000.0
        assert wallet["currency"] == "MYR"
        assert db.get_user_by_identifier("WAL003")["username"] == "mei"
        assert db.get_user_by_identifier("WAL999") is None


class TestRecipientLookup:
    @pytest.mark.parametrize(
        "identifier",
        ["mei@example.com", "+60123456703", "60123456703", "WAL003", "USER003", "  WAL003 "],
    )
    def test_resolves_by_any_identifier(self, db, identifier):
        user = db.get_user_by_identifier(identifier)
        assert user["user_id"] == "USER003"
        assert user["wallet_id"] == "WAL003"
        assert user["email"] == "mei@example.com"
        assert user["is_active"] is True

    @pytest.mark.parametrize("identifier", ["ghost@example.com", "+60000000000", "USER999", ""])
    def test_unknown_identifier(self, db, identifier):
        assert db.get_user_by_identifier(identifier) is None

    def test_email_is_not_matched_as_wallet_id(self, db):
        assert db.get_user_by_identifier("WAL003@example.com") is None


class TestPolicyStore:
    def test_seeded_policy_loads(self, db):
        records = db.get_fee_policies("MYR")["policies"]
        assert len(records) == 1

        policy = FeePolicy.from_record(records[0])
        assert policy.fee_type is FeeType.TIERED
        assert calculate_fee(policy, Decimal("50")) == Decimal("0")
        assert calculate_fee(policy, Decimal("500")) == Decimal("1.00")
        assert calculate_fee(policy, Decimal("1500")) == Decimal("2.50")

    def test_newest_policy_first(self, db):
        db.add_fee_policy(
            {
                "id": "FEE002",
                "fee_name": "Promo",
                "fee_type": "fixed",
                "fixed_amount": "0.30",
                "created_at": "2100-01-01T00:00:00+00:00",
            }
        )
        records = db.get_fee_policies("MYR")["policies"]
        assert [r["id"] for r in records] == ["FEE002", "FEE001"]
        assert records[0]["fixed_amount"] == "0.3"

    def test_inactive_and_other_currency_skipped(self, db):
        db.add_fee_policy({"fee_type": "fixed", "fixed_amount": "1", "is_active": False})
        db.add_fee_policy({"fee_type": "fixed", "fixed_amount": "1", "currency": "SGD"})
        assert len(db.get_fee_policies("MYR")["policies"]) == 1
        assert len(db.get_fee_policies("SGD")["policies"]) == 1

    def test_percentage_rate_round_trips_as_text(self, db):
        db.add_fee_policy({"id": "PCT", "fee_type": "percentage", "percentage_rate": "0.0125", "minimum_fee": "0.5"})
        record = next(r for r in db.get_fee_policies("MYR")["policies"] if r["id"] == "PCT")
        assert record["percentage_rate"] == "0.0125"
        assert FeePolicy.from_record(record).minimum_fee == Decimal("0.5")


class TestLimitStore:
    def test_global_limits(self, db):
        res = db.get_transfer_limits("USER001")
        assert res["success"]
        limits = TransferLimits.from_record(res["limits"])
        assert limits.daily_limit == Decimal("3000")
        assert limits.minimum_amount == Decimal("1")
        assert limits.daily_transaction_count == 20

    def test_user_limits_override_global(self, db):
        db.set_transfer_limits(
            {
                "user_id": "USER003",
                "daily_limit": "50", "weekly_limit": "100", "monthly_limit": "200",
                "per_transaction_limit": "50", "minimum_amount": "10", "maximum_amount": "50",
            }
        )
        mei = db.get_transfer_limits("USER003")["limits"]
        aisyah = db.get_transfer_limits("USER001")["limits"]
        assert mei["is_global"] is False
        assert mei["minimum_amount"] == "10"
        assert aisyah["is_global"] is True

    def test_no_limits_configured(self, db):
        res = db.get_transfer_limits("NOBODY")
        assert not res["success"]
        assert res["message"] == "No transfer limits configured"


class TestTransfers:
    def test_execute_moves_money(self, db):
        transfer_id = record_transfer(db)
        res = db.execute_transfer(transfer_id)

        assert res["success"], res
        assert res["status"] == "completed"
        assert res["sender_new_balance"] == 4900.0
        assert db.get_wallet("USER001")["balance"] == 4900.0
        assert db.get_wallet("USER002")["balance"] == 1099.0  # credited the net amount

        transfer = db.get_transfer(transfer_id)["transfer"]
        assert transfer["status"] == "completed"
        assert transfer["fee"] == 1.0
        assert transfer["reference_number"].startswith("TRF20260315")
        assert transfer["processed_at"] is not None

    def test_execute_twice(self, db):
        transfer_id = record_transfer(db)
        db.execute_transfer(transfer_id)
        res = db.execute_transfer(transfer_id)
        assert not res["success"]
        assert "cannot be executed" in res["message"]
        assert db.get_wallet("USER001")["balance"] == 4900.0

    def test_insufficient_balance_marks_failed(self, db):
        transfer_id = record_transfer(db, amount="1500.00", fee="2.50", net="1497.50", sender="USER002", recipient="USER001")
        res = db.execute_transfer(transfer_id)

        assert not res["success"]
        assert res["status"] == "failed"
        assert "Insufficient balance" in res["message"]
        assert db.get_wallet("USER002")["balance"] == 1000.0

        transfer = db.get_transfer(transfer_id)["transfer"]
        assert transfer["status"] == "failed"
        assert "Insufficient balance" in transfer["failure_reason"]

    def test_unknown_transfer(self, db):
        assert not db.execute_transfer("missing")["success"]
        assert not db.get_transfer("missing")["success"]

    def test_cancel_pending(self, db):
        transfer_id = record_transfer(db)
        assert not db.cancel_transfer(transfer_id, "USER002")["success"]

        res = db.cancel_transfer(transfer_id, "USER001")
        assert res["success"]
        assert db.get_transfer(transfer_id)["transfer"]["status"] == "cancelled"
        assert not db.execute_transfer(transfer_id)["success"]

    def test_cancel_completed(self, db):
        transfer_id = record_transfer(db)
        db.execute_transfer(transfer_id)
        res = db.cancel_transfer(transfer_id, "USER001")
        assert not res["success"]
        assert "cannot be cancelled" in res["message"]

    def test_balance_snapshots_and_ledger_rows(self, db):
        transfer_id = record_transfer(db)
        db.execute_transfer(transfer_id, NOW.isoformat())

        transfer = db.get_transfer(transfer_id)["transfer"]
        assert transfer["sender_balance_before"] == 5000.0
        assert transfer["sender_balance_after"] == 4900.0
        assert transfer["recipient_balance_before"] == 1000.0
        assert transfer["recipient_balance_after"] == 1099.0

        [debit] = db.get_wallet_transactions("USER001")["transactions"]
        assert debit["transaction_type"] == "transfer_out"
        assert debit["wallet_id"] == "WAL001"
        assert debit["amount"] == -100.0
        assert (debit["balance_before"], debit["balance_after"]) == (5000.0, 4900.0)
        assert debit["processing_fee"] == 1.0
        assert debit["description"] == "Transfer to WAL002: test"
        assert debit["created_at"] == NOW.isoformat()

        [credit] = db.get_wallet_transactions("USER002")["transactions"]
        assert credit["transaction_type"] == "transfer_in"
        assert credit["transfer_id"] == transfer_id
        assert credit["amount"] == 99.0
        assert (credit["balance_before"], credit["balance_after"]) == (1000.0, 1099.0)
        assert credit["processing_fee"] == 0.0

    def test_failed_transfer_writes_no_ledger_rows(self, db):
        transfer_id = record_transfer(db, amount="1500.00", fee="2.50", net="1497.50", sender="USER002", recipient="USER001")
        db.execute_transfer(transfer_id)

        assert db.get_wallet_transactions("USER002")["transactions"] == []
        assert db.get_wallet_transactions("USER001")["transactions"] == []
        assert db.get_transfer(transfer_id)["transfer"]["sender_balance_before"] is None

    def test_processed_at_uses_given_time(self, db):
        transfer_id = record_transfer(db)
        res = db.execute_transfer(transfer_id, "2026-03-15T20:00:00+08:00")

        assert res["processed_at"] == NOW.isoformat()
        assert db.get_transfer(transfer_id)["transfer"]["processed_at"] == NOW.isoformat()

    def test_cancel_records_given_time(self, db):
        transfer_id = record_transfer(db)
        db.cancel_transfer(transfer_id, "USER001", NOW.isoformat())
        assert db.get_transfer(transfer_id)["transfer"]["processed_at"] == NOW.isoformat()

    def test_status_update_requires_expected_current_status(self, db):
        transfer_id = record_transfer(db)
        db.execute_transfer(transfer_id, NOW.isoformat())

        # a writer that still believes the transfer is pending
        conn = db._get_connection()
        try:
            cursor = conn.cursor()
            assert not db._set_status(cursor, transfer_id, "pending", TransferStatus.FAILED, failure_reason="stale")
            conn.commit()
        finally:
            conn.close()

        transfer = db.get_transfer(transfer_id)["transfer"]
        assert transfer["status"] == "completed"
        assert transfer["failure_reason"] is None

    def test_status_update_with_matching_status(self, db):
        transfer_id = record_transfer(db)

        conn = db._get_connection()
        try:
            cursor = conn.cursor()
            assert db._set_status(cursor, transfer_id, "pending", TransferStatus.CANCELLED)
            conn.commit()
        finally:
            conn.close()

        assert db.get_transfer(transfer_id)["transfer"]["status"] == "cancelled"


class TestSpendTotals:
    def test_rolling_windows(self, db):
        for days_ago, amount in ((0, "100.00"), (3, "200.00"), (20, "300.00"), (45, "400.00")):
            transfer_id = record_transfer(db, amount=amount, fee="0", net=amount, created_at=NOW - timedelta(days=days_ago, minutes=1))
            db.execute_transfer(transfer_id)

        totals = db.get_spend_totals("USER001", NOW.isoformat())["totals"]
        assert Decimal(totals["daily"]) == Decimal("100")
        assert Decimal(totals["weekly"]) == Decimal("300")
        assert Decimal(totals["monthly"]) == Decimal("600")
        assert totals["daily_count"] == 1
        assert totals["monthly_count"] == 3

    def test_only_completed_outgoing_transfers_count(self, db):
        record_transfer(db, amount="50.00", fee="0", net="50.00")  # left pending
        failed = record_transfer(db, amount="1500.00", fee="0", net="1500.00", sender="USER002", recipient="USER001")
        db.execute_transfer(failed)
        incoming = record_transfer(db, amount="20.00", fee="0", net="20.00", sender="USER003", recipient="USER001")
        db.execute_transfer(incoming)

        totals = db.get_spend_totals("USER001", NOW.isoformat())["totals"]
        assert Decimal(totals["daily"]) == Decimal("0")
        assert totals["daily_count"] == 0
        assert Decimal(db.get_spend_totals("USER002", NOW.isoformat())["totals"]["daily"]) == Decimal("0")

    def test_future_transfers_ignored(self, db):
        transfer_id = record_transfer(db, created_at=NOW + timedelta(hours=1))
        db.execute_transfer(transfer_id)
        totals = db.get_spend_totals("USER001", NOW.isoformat())["totals"]
        assert Decimal(totals["daily"]) == Decimal("0")

    def test_offset_timestamps_normalized_to_utc(self, db):
        # 19:00 at +08:00 is one hour before NOW
        transfer_id = record_transfer(db, created_at=datetime(2026, 3, 15, 19, 0, tzinfo=MALAYSIA))
        db.execute_transfer(transfer_id, NOW.isoformat())

        assert db.get_transfer(transfer_id)["transfer"]["created_at"] == "2026-03-15T11:00:00+00:00"
        totals = db.get_spend_totals("USER001", NOW.isoformat())["totals"]
        assert Decimal(totals["daily"]) == Decimal("100")

    def test_offset_clock(self, db):
        transfer_id = record_transfer(db, created_at=NOW - timedelta(hours=1))
        db.execute_transfer(transfer_id, NOW.isoformat())

        local_now = NOW.astimezone(MALAYSIA).isoformat()
        assert Decimal(db.get_spend_totals("USER001", local_now)["totals"]["daily"]) == Decimal("100")

    def test_naive_timestamps_are_utc(self, db):
        transfer_id = record_transfer(db, created_at=datetime(2026, 3, 15, 11, 0))
        db.execute_transfer(transfer_id, "2026-03-15T11:00:00")

        totals = db.get_spend_totals("USER001", "2026-03-15T12:00:00")["totals"]
        assert Decimal(totals["daily"]) == Decimal("100")


class TestHistory:
    def test_pagination(self, db):
        for minutes in range(5):
            record_transfer(db, created_at=NOW - timedelta(minutes=minutes))

        first = db.list_transfers_for_user("USER002", page=0, limit=2)
        last = db.list_transfers_for_user("USER002", page=2, limit=2)

        assert first["pagination"] == {"page": 0, "limit": 2, "total": 5, "has_more": True}
        assert len(first["transfers"]) == 2
        assert first["transfers"][0]["created_at"] > first["transfers"][1]["created_at"]
        assert last["pagination"]["has_more"] is False
        assert len(last["transfers"]) == 1

    def test_stats_after_transfer(self, db):
        db.execute_transfer(record_transfer(db))
        stats = db.get_stats()
        assert stats["completed_transfers"] == 1
        assert stats["fees_collected"] == 1.0
        assert stats["total_balance"] == 8499.0
