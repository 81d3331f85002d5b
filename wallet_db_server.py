#!/usr/bin/env python3
"""
Wallet Database Server (WDB)
============================

A Pyro5-based RPC server that manages the SQLite database for wallet transfers.
This is the ONLY component that directly accesses the database. It acts as the
fee-policy / transfer-limit store and as the transfer ledger.

HOW TO RUN:
-----------
1. Install dependencies:
   pip install -e .

2. Start the WDB server (must start BEFORE WAS):
   python3 wallet_db_server.py

3. Server will listen on localhost:9191
   Creates/initializes wallet.db SQLite database on first run

DATABASE SCHEMA:
----------------
- users: user_id (PK), username (UNIQUE), password, wallet_id (UNIQUE), email (UNIQUE),
         phone (UNIQUE), user_tier
- wallets: wallet_id (PK), user_id (FK), balance_cents, currency, is_active
- transfer_fees: fee_id (PK), fee_name, fee_type, fixed_amount_cents, percentage_rate,
                 tier_ranges (JSON), minimum_fee_cents, maximum_fee_cents, currency,
                 is_active, effective_from, effective_until, created_at
- transfer_limits: limit_id (PK), user_id (NULL for global rows), user_tier, is_global,
                   is_active, *_cents limits, daily/monthly transaction counts, created_at
- wallet_transfers: transfer_id (PK), reference_number, sender_user_id, recipient_user_id,
                    amount_cents, fee_cents, net_amount_cents, status, description,
                    failure_reason, created_at, processed_at, sender/recipient balance
                    before/after snapshots (cents)
- wallet_transactions: transaction_id (PK), wallet_id, transfer_id, transaction_type
                       (transfer_out | transfer_in), signed amount_cents, balance_before_cents,
                       balance_after_cents, processing_fee_cents, description, created_at

DESIGN NOTES:
-------------
- All money stored as INTEGER cents; percentage rates stored as TEXT decimals
- Sender is debited the full amount, recipient is credited the net amount
- Status changes follow fees.can_transition
- Timestamps are stored as UTC ISO-8601 strings so they order correctly as text
- Status updates are guarded by the expected current status
"""

import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import Pyro5.api

from fees import TransferStatus, can_transition, round_money

HOST = "localhost"
PORT = 9191
OBJECT_ID = "wallet.db"

SPEND_WINDOWS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_utc_iso(value: Optional[str] = None) -> str:
    """Normalize an ISO-8601 timestamp to UTC; naive values are taken as UTC."""
    if not value:
        return _utc_now()
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _to_cents(amount: Any) -> int:
    return int(round_money(amount) * 100)


def _cents_to_str(cents: Optional[int]) -> Optional[str]:
    if cents is None:
        return None
    return str(Decimal(cents) / Decimal(100))


def _cents_to_float(cents: Optional[int]) -> Optional[float]:
    return None if cents is None else cents / 100.0


@Pyro5.api.expose
class WalletDatabaseServer:
    """
    Wallet Database Server implementing persistent storage via SQLite.

    Provides RPC methods for WAS to read fee policies and limits, aggregate
    spend, and record and execute transfers.
    """

    def __init__(self, db_path: str = "wallet.db", seed: bool = True):
        """Initialize the database server."""
        self.db_path = db_path
        self._init_database(seed)
        print(f"✓ WDB Server initialized with database: {db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self, seed: bool):
        """Create database schema and seed initial data if needed."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password TEXT NOT NULL,
                    wallet_id TEXT UNIQUE NOT NULL,
                    email TEXT UNIQUE,
                    phone TEXT UNIQUE,
                    user_tier TEXT NOT NULL DEFAULT 'standard'
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wallets (
                    wallet_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    balance_cents INTEGER NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL DEFAULT 'MYR',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transfer_fees (
                    fee_id TEXT PRIMARY KEY,
                    fee_name TEXT NOT NULL,
                    fee_type TEXT NOT NULL,
                    fixed_amount_cents INTEGER,
                    percentage_rate TEXT,
                    tier_ranges TEXT,
                    minimum_fee_cents INTEGER,
                    maximum_fee_cents INTEGER,
                    currency TEXT NOT NULL DEFAULT 'MYR',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    effective_from TEXT,
                    effective_until TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transfer_limits (
                    limit_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    user_tier TEXT NOT NULL DEFAULT 'standard',
                    is_global INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    daily_limit_cents INTEGER NOT NULL,
                    weekly_limit_cents INTEGER NOT NULL,
                    monthly_limit_cents INTEGER NOT NULL,
                    per_transaction_limit_cents INTEGER NOT NULL,
                    minimum_amount_cents INTEGER NOT NULL,
                    maximum_amount_cents INTEGER NOT NULL,
                    daily_transaction_count INTEGER,
                    monthly_transaction_count INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wallet_transfers (
                    transfer_id TEXT PRIMARY KEY,
                    reference_number TEXT UNIQUE NOT NULL,
                    sender_user_id TEXT NOT NULL,
                    recipient_user_id TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL,
                    fee_cents INTEGER NOT NULL,
                    net_amount_cents INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    description TEXT,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    processed_at TEXT,
                    sender_balance_before_cents INTEGER,
                    sender_balance_after_cents INTEGER,
                    recipient_balance_before_cents INTEGER,
                    recipient_balance_after_cents INTEGER,
                    FOREIGN KEY (sender_user_id) REFERENCES users(user_id),
                    FOREIGN KEY (recipient_user_id) REFERENCES users(user_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wallet_transactions (
                    transaction_id TEXT PRIMARY KEY,
                    wallet_id TEXT NOT NULL,
                    transfer_id TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL,
                    balance_before_cents INTEGER NOT NULL,
                    balance_after_cents INTEGER NOT NULL,
                    processing_fee_cents INTEGER NOT NULL DEFAULT 0,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (wallet_id) REFERENCES wallets(wallet_id),
                    FOREIGN KEY (transfer_id) REFERENCES wallet_transfers(transfer_id)
                )
            """)

            cursor.execute("SELECT COUNT(*) FROM users")
            user_count = cursor.fetchone()[0]

            if seed and user_count == 0:
                print("  → Seeding initial data...")
                self._seed_data(cursor)

            conn.commit()
            print("  → Database schema initialized")

        except Exception as e:
            conn.rollback()
            print(f"  ✗ Database initialization error: {e}")
            raise
        finally:
            conn.close()

    def _seed_data(self, cursor):
        """Seed demo users, a tiered fee policy and the standard global limits."""
        users = [
            ("USER001", "aisyah", "AisyahPass123", "WAL001", "aisyah@example.com", "+60123456701", 500000),
            ("USER002", "daniel", "DanielPass456", "WAL002", "daniel@example.com", "+60123456702", 100000),
            ("USER003", "mei", "MeiPass789", "WAL003", "mei@example.com", "+60123456703", 250000),
        ]
        now = _utc_now()

        for user_id, username, password, wallet_id, email, phone, balance_cents in users:
            cursor.execute(
                "INSERT INTO users (user_id, username, password, wallet_id, email, phone) VALUES (?, ?, ?, ?, ?, ?)",
                (user_id, username, password, wallet_id, email, phone),
            )
            cursor.execute(
                "INSERT INTO wallets (wallet_id, user_id, balance_cents) VALUES (?, ?, ?)",
                (wallet_id, user_id, balance_cents),
            )
            print(f"    ✓ Created user: {username} with balance RM {balance_cents / 100:.2f}")

        tiers = [
            {"min": "0", "max": "100", "fee": "0"},
            {"min": "100.01", "max": "1000", "fee": "1.00"},
            {"min": "1000.01", "max": None, "fee": "2.50"},
        ]
        cursor.execute(
            """INSERT INTO transfer_fees
               (fee_id, fee_name, fee_type, tier_ranges, currency, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            ("FEE001", "Standard transfer fee", "tiered", json.dumps(tiers), "MYR", 1, now),
        )
        print("    ✓ Created fee policy: Standard transfer fee (tiered)")

        cursor.execute(
            """INSERT INTO transfer_limits
               (limit_id, user_tier, is_global, is_active, daily_limit_cents, weekly_limit_cents,
                monthly_limit_cents, per_transaction_limit_cents, minimum_amount_cents,
                maximum_amount_cents, daily_transaction_count, monthly_transaction_count, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            ("LIM001", "standard", 1, 1, 300000, 1000000, 2500000, 200000, 100, 200000, 20, 200, now),
        )
        print("    ✓ Created global limits: standard tier")

    # -----------------------------
    # Row conversion
    # -----------------------------
    def _fee_row_to_record(self, row: sqlite3.Row) -> dict:
        return {
            "id": row["fee_id"],
            "fee_name": row["fee_name"],
            "fee_type": row["fee_type"],
            "fixed_amount": _cents_to_str(row["fixed_amount_cents"]),
            "percentage_rate": row["percentage_rate"],
            "tier_ranges": json.loads(row["tier_ranges"]) if row["tier_ranges"] is not None else None,
            "minimum_fee": _cents_to_str(row["minimum_fee_cents"]),
            "maximum_fee": _cents_to_str(row["maximum_fee_cents"]),
            "currency": row["currency"],
            "is_active": bool(row["is_active"]),
            "effective_from": row["effective_from"],
            "effective_until": row["effective_until"],
            "created_at": row["created_at"],
        }

    def _limit_row_to_record(self, row: sqlite3.Row) -> dict:
        return {
            "limit_id": row["limit_id"],
            "daily_limit": _cents_to_str(row["daily_limit_cents"]),
            "weekly_limit": _cents_to_str(row["weekly_limit_cents"]),
            "monthly_limit": _cents_to_str(row["monthly_limit_cents"]),
            "per_transaction_limit": _cents_to_str(row["per_transaction_limit_cents"]),
            "minimum_amount": _cents_to_str(row["minimum_amount_cents"]),
            "maximum_amount": _cents_to_str(row["maximum_amount_cents"]),
            "daily_transaction_count": row["daily_transaction_count"],
            "monthly_transaction_count": row["monthly_transaction_count"],
            "is_global": bool(row["is_global"]),
            "user_tier": row["user_tier"],
        }

    def _transfer_row_to_dict(self, row: sqlite3.Row) -> dict:
        return {
            "transfer_id": row["transfer_id"],
            "reference_number": row["reference_number"],
            "sender_user_id": row["sender_user_id"],
            "sender_wallet_id": row["sender_wallet_id"],
            "sender_username": row["sender_username"],
            "recipient_user_id": row["recipient_user_id"],
            "recipient_wallet_id": row["recipient_wallet_id"],
            "recipient_username": row["recipient_username"],
            "amount": row["amount_cents"] / 100.0,
            "fee": row["fee_cents"] / 100.0,
            "net_amount": row["net_amount_cents"] / 100.0,
            "status": row["status"],
            "description": row["description"] or "",
            "failure_reason": row["failure_reason"],
            "created_at": row["created_at"],
            "processed_at": row["processed_at"],
            "sender_balance_before": _cents_to_float(row["sender_balance_before_cents"]),
            "sender_balance_after": _cents_to_float(row["sender_balance_after_cents"]),
            "recipient_balance_before": _cents_to_float(row["recipient_balance_before_cents"]),
            "recipient_balance_after": _cents_to_float(row["recipient_balance_after_cents"]),
        }

    _TRANSFER_SELECT = """
        SELECT t.*,
               s.username AS sender_username, s.wallet_id AS sender_wallet_id,
               r.username AS recipient_username, r.wallet_id AS recipient_wallet_id
        FROM wallet_transfers t
        JOIN users s ON t.sender_user_id = s.user_id
        JOIN users r ON t.recipient_user_id = r.user_id
    """

    def _set_status(self, cursor, transfer_id: str, current: str, new: TransferStatus, **extra) -> bool:
        """Move a transfer from `current` to `new`. False if the row is no longer in `current`."""
        if not can_transition(current, new):
            raise ValueError(f"Illegal status change {current} -> {new.value}")
        columns = ", ".join(f"{name} = ?" for name in extra)
        sql = "UPDATE wallet_transfers SET status = ?" + (f", {columns}" if columns else "")
        cursor.execute(
            sql + " WHERE transfer_id = ? AND status = ?",
            (new.value, *extra.values(), transfer_id, current),
        )
        return cursor.rowcount == 1

    # -----------------------------
    # Users and wallets
    # -----------------------------
    @Pyro5.api.expose
    def validate_credentials(self, username: str, password: str) -> dict:
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT user_id, wallet_id, password FROM users WHERE username = ?",
                (username,),
            )
            row = cursor.fetchone()

            if not row or row["password"] != password:
                return {"success": False, "user_id": None, "wallet_id": None, "message": "Invalid credentials"}

            print(f"✓ Credentials validated for user: {username}")
            return {
                "success": True,
                "user_id": row["user_id"],
                "wallet_id": row["wallet_id"],
                "message": "Credentials valid",
            }

        except Exception as e:
            return {"success": False, "user_id": None, "wallet_id": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_wallet(self, user_id: str) -> dict:
        """
        Get the wallet for a user.

        Returns:
            dict: {"success": bool, "balance": float, "wallet_id": str, "currency": str,
                   "is_active": bool, "username": str, "message": str}
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """SELECT w.wallet_id, w.balance_cents, w.currency, w.is_active, u.username
                   FROM wallets w
                   JOIN users u ON w.user_id = u.user_id
                   WHERE w.user_id = ?""",
                (user_id,),
            )
            row = cursor.fetchone()

            if not row:
                return {"success": False, "balance": None, "message": f"Wallet for user {user_id} not found"}

            return {
                "success": True,
                "balance": row["balance_cents"] / 100.0,
                "wallet_id": row["wallet_id"],
                "currency": row["currency"],
                "is_active": bool(row["is_active"]),
                "username": row["username"],
                "message": "Wallet retrieved",
            }

        except Exception as e:
            return {"success": False, "balance": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_user_by_identifier(self, identifier: str) -> Optional[dict]:
        """
        Resolve a recipient by email, phone number, wallet ID or user ID.

        Identifiers containing '@' are emails; a leading '+' or all digits
        is a phone number; anything else matches a wallet ID or user ID.
        """
        identifier = (identifier or "").strip()
        if "@" in identifier:
            where, params = "u.email = ?", (identifier,)
        elif identifier.startswith("+") or identifier.isdigit():
            digits = identifier.lstrip("+")
            where, params = "u.phone = ? OR u.phone = ?", (digits, "+" + digits)
        else:
            where, params = "u.wallet_id = ? OR u.user_id = ?", (identifier, identifier)

        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                f"""SELECT u.user_id, u.username, u.wallet_id, u.email, u.phone, w.is_active
                    FROM users u
                    JOIN wallets w ON w.wallet_id = u.wallet_id
                    WHERE {where}""",
                params,
            )
            row = cursor.fetchone()

            if not row:
                return None

            return {
                "user_id": row["user_id"],
                "username": row["username"],
                "wallet_id": row["wallet_id"],
                "email": row["email"],
                "phone": row["phone"],
                "is_active": bool(row["is_active"]),
            }
        finally:
            conn.close()

    # -----------------------------
    # Policy / limit store
    # -----------------------------
    @Pyro5.api.expose
    def add_fee_policy(self, record: dict) -> dict:
        """Insert a fee policy. Money fields are decimal strings, tier_ranges a list of dicts."""
        conn = self._get_connection()
        cursor = conn.cursor()
        fee_id = record.get("id") or str(uuid.uuid4())

        def cents(key):
            value = record.get(key)
            return None if value is None else _to_cents(value)

        tiers = record.get("tier_ranges")

        try:
            cursor.execute(
                """INSERT INTO transfer_fees
                   (fee_id, fee_name, fee_type, fixed_amount_cents, percentage_rate, tier_ranges,
                    minimum_fee_cents, maximum_fee_cents, currency, is_active, effective_from,
                    effective_until, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    fee_id,
                    record.get("fee_name") or "Transfer fee",
                    record["fee_type"],
                    cents("fixed_amount"),
                    None if record.get("percentage_rate") is None else str(record["percentage_rate"]),
                    None if tiers is None else json.dumps(tiers),
                    cents("minimum_fee"),
                    cents("maximum_fee"),
                    record.get("currency") or "MYR",
                    int(record.get("is_active", True)),
                    record.get("effective_from"),
                    record.get("effective_until"),
                    record.get("created_at") or _utc_now(),
                ),
            )
            conn.commit()
            return {"success": True, "fee_id": fee_id, "message": "Fee policy created"}
        except Exception as e:
            conn.rollback()
            return {"success": False, "fee_id": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_fee_policies(self, currency: str = "MYR") -> dict:
        """Active fee policies for a currency, newest first."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """SELECT * FROM transfer_fees
                   WHERE is_active = 1 AND currency = ?
                   ORDER BY created_at DESC""",
                (currency,),
            )
            policies = [self._fee_row_to_record(row) for row in cursor.fetchall()]
            return {"success": True, "policies": policies, "message": f"Found {len(policies)} policies"}
        except Exception as e:
            return {"success": False, "policies": [], "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def set_transfer_limits(self, record: dict) -> dict:
        """Insert a limits row; user_id=None makes it the global row for user_tier."""
        conn = self._get_connection()
        cursor = conn.cursor()
        limit_id = record.get("limit_id") or str(uuid.uuid4())

        try:
            cursor.execute(
                """INSERT INTO transfer_limits
                   (limit_id, user_id, user_tier, is_global, is_active, daily_limit_cents,
                    weekly_limit_cents, monthly_limit_cents, per_transaction_limit_cents,
                    minimum_amount_cents, maximum_amount_cents, daily_transaction_count,
                    monthly_transaction_count, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    limit_id,
                    record.get("user_id"),
                    record.get("user_tier") or "standard",
                    int(record.get("user_id") is None),
                    int(record.get("is_active", True)),
                    _to_cents(record["daily_limit"]),
                    _to_cents(record["weekly_limit"]),
                    _to_cents(record["monthly_limit"]),
                    _to_cents(record["per_transaction_limit"]),
                    _to_cents(record["minimum_amount"]),
                    _to_cents(record["maximum_amount"]),
                    record.get("daily_transaction_count"),
                    record.get("monthly_transaction_count"),
                    record.get("created_at") or _utc_now(),
                ),
            )
            conn.commit()
            return {"success": True, "limit_id": limit_id, "message": "Transfer limits created"}
        except Exception as e:
            conn.rollback()
            return {"success": False, "limit_id": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_transfer_limits(self, user_id: str) -> dict:
        """User-specific active limits, falling back to the global row for the user's tier."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """SELECT * FROM transfer_limits
                   WHERE user_id = ? AND is_active = 1
                   ORDER BY created_at DESC LIMIT 1""",
                (user_id,),
            )
            row = cursor.fetchone()

            if not row:
                cursor.execute(
                    """SELECT l.* FROM transfer_limits l
                       JOIN users u ON u.user_tier = l.user_tier
                       WHERE u.user_id = ? AND l.is_global = 1 AND l.is_active = 1
                       ORDER BY l.created_at DESC LIMIT 1""",
                    (user_id,),
                )
                row = cursor.fetchone()

            if not row:
                return {"success": False, "limits": None, "message": "No transfer limits configured"}

            return {"success": True, "limits": self._limit_row_to_record(row), "message": "Limits retrieved"}
        except Exception as e:
            return {"success": False, "limits": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    # -----------------------------
    # Ledger
    # -----------------------------
    @Pyro5.api.expose
    def get_spend_totals(self, user_id: str, now: Optional[str] = None) -> dict:
        """
        Sum and count COMPLETED outgoing transfers in the rolling windows ending at `now`.

        Args:
            user_id: Sender's user ID
            now: ISO-8601 timestamp in any offset (defaults to the current time)

        Returns:
            dict: {"success": bool, "totals": {"daily", "weekly", "monthly",
                   "daily_count", "monthly_count"}}
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            end = datetime.fromisoformat(_to_utc_iso(now))
            totals: Dict[str, Any] = {}
            for window, span in SPEND_WINDOWS.items():
                cursor.execute(
                    """SELECT COALESCE(SUM(amount_cents), 0), COUNT(*) FROM wallet_transfers
                       WHERE sender_user_id = ? AND status = ?
                         AND created_at > ? AND created_at <= ?""",
                    (user_id, TransferStatus.COMPLETED.value, (end - span).isoformat(), end.isoformat()),
                )
                cents, count = cursor.fetchone()
                totals[window] = _cents_to_str(cents)
                totals[f"{window}_count"] = count

            return {
                "success": True,
                "totals": {
                    "daily": totals["daily"],
                    "weekly": totals["weekly"],
                    "monthly": totals["monthly"],
                    "daily_count": totals["daily_count"],
                    "monthly_count": totals["monthly_count"],
                },
                "message": "Spend totals retrieved",
            }
        except Exception as e:
            return {"success": False, "totals": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def create_transfer(
        self,
        sender_user_id: str,
        recipient_user_id: str,
        amount: str,
        fee: str,
        net_amount: str,
        description: Optional[str],
        transfer_id: str,
        created_at: Optional[str] = None,
    ) -> dict:
        """Record a PENDING transfer; amounts are decimal strings."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            timestamp = _to_utc_iso(created_at)
            reference_number = f"TRF{timestamp[:10].replace('-', '')}{uuid.uuid4().hex[:8].upper()}"
            cursor.execute(
                """INSERT INTO wallet_transfers
                   (transfer_id, reference_number, sender_user_id, recipient_user_id, amount_cents,
                    fee_cents, net_amount_cents, status, description, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    transfer_id,
                    reference_number,
                    sender_user_id,
                    recipient_user_id,
                    _to_cents(amount),
                    _to_cents(fee),
                    _to_cents(net_amount),
                    TransferStatus.PENDING.value,
                    description or "",
                    timestamp,
                ),
            )
            conn.commit()
            return {
                "success": True,
                "transfer_id": transfer_id,
                "reference_number": reference_number,
                "status": TransferStatus.PENDING.value,
                "message": "Transfer created",
            }
        except Exception as e:
            conn.rollback()
            return {"success": False, "transfer_id": transfer_id, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def execute_transfer(self, transfer_id: str, now: Optional[str] = None) -> dict:
        """
        Execute a PENDING transfer atomically.

        - Moves the record to PROCESSING
        - Debits the full amount from the sender
        - Credits the net amount to the recipient
        - Records balance snapshots and one wallet_transactions row per wallet
        - Marks the record COMPLETED
        All in a single transaction. Insufficient funds or any error marks
        the record FAILED with a failure_reason.

        Args:
            transfer_id: Transfer to execute
            now: ISO-8601 processing time (defaults to the current time)

        Returns:
            dict: {"success": bool, "message": str, "sender_new_balance": float,
                   "transfer_id": str, "status": str, "processed_at": str}
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        timestamp = _utc_now()

        def fail(reason: str, status: str, balance: Optional[float] = None) -> dict:
            try:
                if self._set_status(
                    cursor, transfer_id, status, TransferStatus.FAILED,
                    failure_reason=reason, processed_at=timestamp,
                ):
                    conn.commit()
                else:
                    conn.rollback()
                    print(f"✗ Transfer {transfer_id[:8]}... left {status} before it could be marked failed")
            except (sqlite3.Error, ValueError) as e:
                conn.rollback()
                print(f"✗ Could not mark transfer {transfer_id[:8]}... as failed: {e}")
            return {
                "success": False,
                "message": reason,
                "sender_new_balance": balance,
                "transfer_id": transfer_id,
                "status": TransferStatus.FAILED.value,
                "processed_at": timestamp,
            }

        try:
            timestamp = _to_utc_iso(now)

            cursor.execute("SELECT * FROM wallet_transfers WHERE transfer_id = ?", (transfer_id,))
            transfer = cursor.fetchone()

            if not transfer:
                return {"success": False, "message": f"Transfer '{transfer_id}' not found", "transfer_id": transfer_id}

            status = transfer["status"]
            if not can_transition(status, TransferStatus.PROCESSING) or not self._set_status(
                cursor, transfer_id, status, TransferStatus.PROCESSING
            ):
                conn.rollback()
                cursor.execute("SELECT status FROM wallet_transfers WHERE transfer_id = ?", (transfer_id,))
                status = cursor.fetchone()["status"]
                return {
                    "success": False,
                    "message": f"Transfer is {status} and cannot be executed",
                    "transfer_id": transfer_id,
                    "status": status,
                }
            status = TransferStatus.PROCESSING.value

            cursor.execute(
                "SELECT wallet_id, balance_cents, is_active FROM wallets WHERE user_id = ?",
                (transfer["sender_user_id"],),
            )
            sender = cursor.fetchone()
            if not sender:
                return fail("Sender wallet not found", status)

            if sender["balance_cents"] < transfer["amount_cents"]:
                return fail(
                    f"Insufficient balance: have RM {sender['balance_cents'] / 100:.2f}, "
                    f"need RM {transfer['amount_cents'] / 100:.2f}",
                    status,
                    sender["balance_cents"] / 100.0,
                )

            cursor.execute(
                "SELECT wallet_id, balance_cents, is_active FROM wallets WHERE user_id = ?",
                (transfer["recipient_user_id"],),
            )
            recipient = cursor.fetchone()
            if not recipient or not recipient["is_active"]:
                return fail("Recipient wallet is not active", status, sender["balance_cents"] / 100.0)

            new_sender_balance_cents = sender["balance_cents"] - transfer["amount_cents"]
            new_recipient_balance_cents = recipient["balance_cents"] + transfer["net_amount_cents"]
            cursor.execute(
                "UPDATE wallets SET balance_cents = ? WHERE wallet_id = ?",
                (new_sender_balance_cents, sender["wallet_id"]),
            )
            cursor.execute(
                "UPDATE wallets SET balance_cents = ? WHERE wallet_id = ?",
                (new_recipient_balance_cents, recipient["wallet_id"]),
            )

            note = transfer["description"] or "Wallet transfer"
            cursor.executemany(
                """INSERT INTO wallet_transactions
                   (transaction_id, wallet_id, transfer_id, transaction_type, amount_cents,
                    balance_before_cents, balance_after_cents, processing_fee_cents, description, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        str(uuid.uuid4()), sender["wallet_id"], transfer_id, "transfer_out",
                        -transfer["amount_cents"], sender["balance_cents"], new_sender_balance_cents,
                        transfer["fee_cents"], f"Transfer to {recipient['wallet_id']}: {note}", timestamp,
                    ),
                    (
                        str(uuid.uuid4()), recipient["wallet_id"], transfer_id, "transfer_in",
                        transfer["net_amount_cents"], recipient["balance_cents"], new_recipient_balance_cents,
                        0, f"Transfer from {sender['wallet_id']}: {note}", timestamp,
                    ),
                ],
            )

            completed = self._set_status(
                cursor, transfer_id, status, TransferStatus.COMPLETED,
                processed_at=timestamp,
                sender_balance_before_cents=sender["balance_cents"],
                sender_balance_after_cents=new_sender_balance_cents,
                recipient_balance_before_cents=recipient["balance_cents"],
                recipient_balance_after_cents=new_recipient_balance_cents,
            )
            if not completed:
                conn.rollback()
                return {
                    "success": False,
                    "message": "Transfer changed state during execution",
                    "transfer_id": transfer_id,
                }

            conn.commit()

            print(
                f"✓ Transfer COMPLETED: {transfer['reference_number']} "
                f"(RM {transfer['amount_cents'] / 100:.2f}, fee RM {transfer['fee_cents'] / 100:.2f})"
            )

            return {
                "success": True,
                "message": "Transfer completed successfully",
                "sender_new_balance": new_sender_balance_cents / 100.0,
                "transfer_id": transfer_id,
                "reference_number": transfer["reference_number"],
                "status": TransferStatus.COMPLETED.value,
                "processed_at": timestamp,
            }

        except Exception as e:
            conn.rollback()
            return fail(f"Transfer failed: {e}", TransferStatus.PENDING.value)
        finally:
            conn.close()

    @Pyro5.api.expose
    def cancel_transfer(self, transfer_id: str, user_id: str, now: Optional[str] = None) -> dict:
        """Cancel a PENDING transfer. Only the sender may cancel."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT sender_user_id, status FROM wallet_transfers WHERE transfer_id = ?",
                (transfer_id,),
            )
            row = cursor.fetchone()

            if not row:
                return {"success": False, "message": f"Transfer '{transfer_id}' not found"}
            if row["sender_user_id"] != user_id:
                return {"success": False, "message": "Only the sender can cancel a transfer"}
            if not can_transition(row["status"], TransferStatus.CANCELLED):
                return {"success": False, "message": f"Transfer is {row['status']} and cannot be cancelled"}

            if not self._set_status(
                cursor, transfer_id, row["status"], TransferStatus.CANCELLED, processed_at=_to_utc_iso(now)
            ):
                conn.rollback()
                return {"success": False, "message": "Transfer changed state and cannot be cancelled"}
            conn.commit()
            return {"success": True, "status": TransferStatus.CANCELLED.value, "message": "Transfer cancelled"}

        except Exception as e:
            conn.rollback()
            return {"success": False, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_transfer(self, transfer_id: str) -> dict:
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(self._TRANSFER_SELECT + " WHERE t.transfer_id = ?", (transfer_id,))
            row = cursor.fetchone()

            if not row:
                return {"success": False, "transfer": None, "message": f"Transfer '{transfer_id}' not found"}

            return {"success": True, "transfer": self._transfer_row_to_dict(row), "message": "Transfer retrieved"}

        except Exception as e:
            return {"success": False, "transfer": None, "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def list_transfers_for_user(self, user_id: str, page: int = 0, limit: int = 20) -> dict:
        """
        List transfers for a user (as sender or recipient), newest first.

        Returns:
            dict: {"success": bool, "transfers": list,
                   "pagination": {"page", "limit", "total", "has_more"}}
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        offset = page * limit

        try:
            cursor.execute(
                self._TRANSFER_SELECT
                + """ WHERE t.sender_user_id = ? OR t.recipient_user_id = ?
                      ORDER BY t.created_at DESC LIMIT ? OFFSET ?""",
                (user_id, user_id, limit, offset),
            )
            transfers = [self._transfer_row_to_dict(row) for row in cursor.fetchall()]

            cursor.execute(
                "SELECT COUNT(*) FROM wallet_transfers WHERE sender_user_id = ? OR recipient_user_id = ?",
                (user_id, user_id),
            )
            total = cursor.fetchone()[0]

            return {
                "success": True,
                "transfers": transfers,
                "pagination": {"page": page, "limit": limit, "total": total, "has_more": total > offset + limit},
                "message": f"Found {total} transfers",
            }

        except Exception as e:
            return {
                "success": False,
                "transfers": [],
                "pagination": {"page": page, "limit": limit, "total": 0, "has_more": False},
                "message": f"Database error: {e}",
            }
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_wallet_transactions(self, user_id: str, limit: int = 50) -> dict:
        """Debit/credit rows for the user's wallet, newest first."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute(
                """SELECT t.* FROM wallet_transactions t
                   JOIN wallets w ON w.wallet_id = t.wallet_id
                   WHERE w.user_id = ?
                   ORDER BY t.created_at DESC, t.transaction_type DESC LIMIT ?""",
                (user_id, limit),
            )
            transactions = [
                {
                    "transaction_id": row["transaction_id"],
                    "wallet_id": row["wallet_id"],
                    "transfer_id": row["transfer_id"],
                    "transaction_type": row["transaction_type"],
                    "amount": row["amount_cents"] / 100.0,
                    "balance_before": row["balance_before_cents"] / 100.0,
                    "balance_after": row["balance_after_cents"] / 100.0,
                    "processing_fee": row["processing_fee_cents"] / 100.0,
                    "description": row["description"],
                    "created_at": row["created_at"],
                }
                for row in cursor.fetchall()
            ]
            return {"success": True, "transactions": transactions, "message": f"Found {len(transactions)} transactions"}
        except Exception as e:
            return {"success": False, "transactions": [], "message": f"Database error: {e}"}
        finally:
            conn.close()

    @Pyro5.api.expose
    def get_stats(self) -> dict:
        """Get database statistics."""
        conn = self._get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("SELECT COUNT(*) FROM users")
            total_users = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM wallet_transfers")
            total_transfers = cursor.fetchone()[0]

            cursor.execute(
                "SELECT COUNT(*), COALESCE(SUM(fee_cents), 0) FROM wallet_transfers WHERE status = ?",
                (TransferStatus.COMPLETED.value,),
            )
            completed_transfers, fees_cents = cursor.fetchone()

            cursor.execute("SELECT COALESCE(SUM(balance_cents), 0) FROM wallets")
            total_balance_cents = cursor.fetchone()[0]

            return {
                "total_users": total_users,
                "total_transfers": total_transfers,
                "completed_transfers": completed_transfers,
                "fees_collected": fees_cents / 100.0,
                "total_balance": total_balance_cents / 100.0,
            }

        finally:
            conn.close()


def main():
    """Start the WDB server."""
    print("=" * 70)
    print("Wallet Database Server (WDB)")
    print("=" * 70)
    print()

    server = WalletDatabaseServer()

    daemon = Pyro5.api.Daemon(host=HOST, port=PORT)
    uri = daemon.register(server, objectId=OBJECT_ID)

    print()
    print("=" * 70)
    print(f"✓ WDB Server ready at: {uri}")
    print("=" * 70)
    print()
    print("Available RPC Methods:")
    print("  1. validate_credentials(username, password)")
    print("  2. get_wallet(user_id) / get_user_by_identifier(identifier)")
    print("  3. get_fee_policies(currency) / add_fee_policy(record)")
    print("  4. get_transfer_limits(user_id) / set_transfer_limits(record)")
    print("  5. get_spend_totals(user_id, now)")
    print("  6. create_transfer(...) / execute_transfer(transfer_id, now) / cancel_transfer(transfer_id, user_id, now)")
    print("  7. get_transfer(transfer_id) / list_transfers_for_user(user_id, page, limit)")
    print("     get_wallet_transactions(user_id, limit)")
    print("  8. get_stats()")
    print()
    print("Press Ctrl+C to stop the server")
    print("=" * 70)
    print()

    try:
        daemon.requestLoop()
    except KeyboardInterrupt:
        print("\n")
        print("=" * 70)
        print("Shutting down WDB Server...")
        print("=" * 70)
        stats = server.get_stats()
        print("Final Statistics:")
        print(f"  - Total users: {stats['total_users']}")
        print(f"  - Total transfers: {stats['total_transfers']}")
        print(f"  - Completed transfers: {stats['completed_transfers']}")
        print(f"  - Fees collected: RM {stats['fees_collected']:,.2f}")
        print(f"  - Total balance: RM {stats['total_balance']:,.2f}")
        print()


if __name__ == "__main__":
    main()
