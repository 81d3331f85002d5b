#!/usr/bin/env python3
"""
Wallet Application Server (WAS)

Wallet clients <-> WAS (Pyro5) <-> WDB (Pyro5) <-> SQLite

- Pyro5 proxy thread ownership: a NEW WDB Proxy is created per call.
- Fee quotes and limit checks are computed here with fees.py; WDB only
  stores policies, limits and the transfer ledger.
- The clock is injectable so policy effectiveness and spend windows can be
  pinned in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import Pyro5.api

from fees import (
    FeePolicy,
    InvalidAmountError,
    PolicyConfigError,
    SpendTotals,
    TransferFeeCalculation,
    TransferLimits,
    evaluate_limits,
    limit_usage,
    quote_transfer,
    select_policy,
    to_money,
)

HOST = "localhost"
PORT = 9190
OBJECT_ID = "wallet.server"
DEFAULT_DB_URI = "PYRO:wallet.db@localhost:9191"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@Pyro5.api.expose
class WalletApplicationServer:
    def __init__(self, db_uri: str = DEFAULT_DB_URI, clock: Optional[Callable[[], datetime]] = None):
        self.db_uri = db_uri
        self.clock = clock or _utc_now
        self.sessions: Dict[str, str] = {}  # token -> user_id

        self._connect_to_db()

    # -----------------------------
    # Thread-safe WDB RPC helper
    # -----------------------------
    def _call_db(self, method_name: str, *args, **kwargs) -> Any:
        """
        Create a NEW Pyro5 Proxy in the current thread for each call.
        Avoids: "the calling thread is not the owner of this proxy"
        """
        proxy = Pyro5.api.Proxy(self.db_uri)
        proxy._pyroTimeout = 5
        try:
            return getattr(proxy, method_name)(*args, **kwargs)
        finally:
            proxy._pyroRelease()

    def _connect_to_db(self) -> None:
        try:
            stats = self._call_db("get_stats")
            print("✓ Connected to WDB server")
            print(f"  - Total users in DB: {stats.get('total_users', 0)}")
            print(f"  - Total transfers in DB: {stats.get('total_transfers', 0)}")
            print("✓ WAS Server initialized")
        except Exception as e:
            print(f"✗ Failed to connect to WDB server: {e}")
            print("✓ WAS Server initialized [WDB not reachable]")

    def _require_user(self, token: str) -> Optional[str]:
        return self.sessions.get(token)

    # -----------------------------
    # Fee / limit helpers
    # -----------------------------
    def _quote(self, amount: Decimal, currency: str, now: datetime) -> TransferFeeCalculation:
        res = self._call_db("get_fee_policies", currency)
        if not res.get("success"):
            raise RuntimeError(res.get("message", "Could not load fee policies"))

        policies = [FeePolicy.from_record(record) for record in res.get("policies", [])]
        policy = select_policy(policies, now, currency)
        return quote_transfer(policy, amount).rounded(amount)

    def _load_limits(self, user_id: str, now: datetime):
        res = self._call_db("get_transfer_limits", user_id)
        if not res.get("success"):
            return None, None, res.get("message", "No transfer limits configured")

        totals = self._call_db("get_spend_totals", user_id, now.isoformat())
        if not totals.get("success"):
            return None, None, totals.get("message", "Could not load transfer history")

        return TransferLimits.from_record(res["limits"]), SpendTotals(**totals["totals"]), None

    def _check_recipient(self, user_id: str, recipient_identifier: str) -> dict:
        recipient = self._call_db("get_user_by_identifier", recipient_identifier)
        if not recipient:
            return {"success": False, "message": "Recipient not found"}
        if recipient["user_id"] == user_id:
            return {"success": False, "message": "Cannot transfer to yourself"}
        if not recipient.get("is_active"):
            return {"success": False, "message": "Recipient wallet is not active"}
        return {"success": True, "recipient": recipient, "message": "Recipient validated successfully"}

    # -----------------------------
    # RPC methods (EXPOSED)
    # -----------------------------
    @Pyro5.api.expose
    def login(self, username: str, password: str) -> dict:
        try:
            res = self._call_db("validate_credentials", username, password)
            if not res.get("success"):
                return {
                    "success": False,
                    "token": None,
                    "message": res.get("message", "Invalid credentials"),
                    "user_id": None,
                    "wallet_id": None,
                }

            token = str(uuid.uuid4())
            self.sessions[token] = res["user_id"]
            return {
                "success": True,
                "token": token,
                "message": "Login successful",
                "user_id": res["user_id"],
                "wallet_id": res["wallet_id"],
            }
        except Exception as e:
            return {"success": False, "token": None, "message": f"Server error: {e}", "user_id": None, "wallet_id": None}

    @Pyro5.api.expose
    def logout(self, token: str) -> dict:
        if token in self.sessions:
            del self.sessions[token]
            return {"success": True, "message": "Logged out"}
        return {"success": False, "message": "Invalid token"}

    @Pyro5.api.expose
    def get_balance(self, token: str) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            return self._call_db("get_wallet", user_id)
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def validate_recipient(self, token: str, recipient_identifier: str) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            return self._check_recipient(user_id, recipient_identifier)
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_fees(self, token: str, amount: Any) -> dict:
        """Quote the fee for a transfer of `amount` from the caller's wallet."""
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            amt = to_money(amount)
            wallet = self._call_db("get_wallet", user_id)
            quote = self._quote(amt, wallet.get("currency") or "MYR", self.clock())
            return {"success": True, "amount": float(amt), **quote.to_dict(), "message": "Fee calculated"}
        except InvalidAmountError as e:
            return {"success": False, "message": str(e)}
        except PolicyConfigError as e:
            return {"success": False, "message": f"Fee configuration error: {e}"}
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_limits(self, token: str) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            limits, totals, error = self._load_limits(user_id, self.clock())
            if error:
                return {"success": False, "message": error}

            return {
                "success": True,
                "limits": {
                    "daily_limit": float(limits.daily_limit),
                    "weekly_limit": float(limits.weekly_limit),
                    "monthly_limit": float(limits.monthly_limit),
                    "per_transaction_limit": float(limits.per_transaction_limit),
                    "minimum_amount": float(limits.minimum_amount),
                    "maximum_amount": float(limits.maximum_amount),
                    "daily_transaction_count": limits.daily_transaction_count,
                    "monthly_transaction_count": limits.monthly_transaction_count,
                },
                "usage": limit_usage(limits, totals).to_dict(),
                "message": "Limits retrieved",
            }
        except PolicyConfigError as e:
            return {"success": False, "message": f"Limit configuration error: {e}"}
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def submit_transfer(
        self,
        token: str,
        recipient_identifier: str,
        amount: Any,
        description: Optional[str] = None,
    ) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            amt = to_money(amount)
        except InvalidAmountError as e:
            return {"success": False, "message": str(e)}

        if amt <= 0:
            return {"success": False, "message": "Amount must be > 0"}

        try:
            check = self._check_recipient(user_id, recipient_identifier)
            if not check["success"]:
                return check
            recipient_user_id = check["recipient"]["user_id"]

            now = self.clock()
            limits, totals, error = self._load_limits(user_id, now)
            if error:
                return {"success": False, "message": error}

            verdict = evaluate_limits(limits, amt, totals)
            if not verdict.allowed:
                usage = limit_usage(limits, totals)
                return {
                    "success": False,
                    "reason": verdict.reason.value,
                    "message": verdict.message,
                    "usage": usage.to_dict(),
                }

            wallet = self._call_db("get_wallet", user_id)
            quote = self._quote(amt, wallet.get("currency") or "MYR", now)

            transfer_id = str(uuid.uuid4())
            created = self._call_db(
                "create_transfer",
                user_id,
                recipient_user_id,
                str(amt),
                str(quote.transfer_fee),
                str(quote.net_amount),
                description,
                transfer_id,
                now.isoformat(),
            )
            if not created.get("success"):
                return created

            res = self._call_db("execute_transfer", transfer_id, now.isoformat())

            # Standardize response for clients
            res.setdefault("transfer_id", transfer_id)
            res.setdefault("reference_number", created.get("reference_number"))
            res.setdefault("created_at", now.isoformat())
            res.update(
                {
                    "amount": float(amt),
                    "fee": float(quote.transfer_fee),
                    "net_amount": float(quote.net_amount),
                }
            )
            return res

        except PolicyConfigError as e:
            return {"success": False, "message": f"Configuration error: {e}"}
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def cancel_transfer(self, token: str, transfer_id: str) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            return self._call_db("cancel_transfer", transfer_id, user_id, self.clock().isoformat())
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_transfer_status(self, token: str, transfer_id: str) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            res = self._call_db("get_transfer", transfer_id)
            if not res.get("success"):
                return res

            t = res.get("transfer") or {}

            # Authorization: only sender or recipient can view
            if t.get("sender_user_id") != user_id and t.get("recipient_user_id") != user_id:
                return {"success": False, "message": "Unauthorized"}

            return res
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_transfer_history(self, token: str, page: int = 0, limit: int = 20) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            page, limit = int(page), int(limit)
            if page < 0 or limit <= 0:
                return {"success": False, "message": "page must be >= 0 and limit > 0"}
            return self._call_db("list_transfers_for_user", user_id, page, limit)
        except (TypeError, ValueError):
            return {"success": False, "message": "page and limit must be integers"}
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_wallet_transactions(self, token: str, limit: int = 50) -> dict:
        user_id = self._require_user(token)
        if not user_id:
            return {"success": False, "message": "Invalid or expired token"}

        try:
            limit = int(limit)
            if limit <= 0:
                return {"success": False, "message": "limit must be > 0"}
            return self._call_db("get_wallet_transactions", user_id, limit)
        except (TypeError, ValueError):
            return {"success": False, "message": "limit must be an integer"}
        except Exception as e:
            return {"success": False, "message": f"Server error: {e}"}

    @Pyro5.api.expose
    def get_server_stats(self) -> dict:
        try:
            db_stats = self._call_db("get_stats")
        except Exception:
            db_stats = {}

        return {
            "total_users": db_stats.get("total_users", 0),
            "active_sessions": len(self.sessions),
            "total_transfers": db_stats.get("total_transfers", 0),
            "completed_transfers": db_stats.get("completed_transfers", 0),
            "fees_collected": db_stats.get("fees_collected", 0.0),
        }


def main() -> None:
    print("=" * 70)
    print("Wallet Application Server (WAS)")
    print("=" * 70)
    print()

    server = WalletApplicationServer()

    daemon = Pyro5.api.Daemon(host=HOST, port=PORT)
    uri = daemon.register(server, objectId=OBJECT_ID)

    print()
    print("=" * 70)
    print(f"✓ WAS Server ready at: {uri}")
    print("=" * 70)
    print()
    print("Server Details:")
    print(f"  - Host: {HOST}")
    print(f"  - Port: {PORT}")
    print(f"  - Object ID: {OBJECT_ID}")
    print(f"  - WDB Connection: {DEFAULT_DB_URI}")
    print()
    print("Available RPC Methods:")
    print("  1. login(username, password) / logout(token)")
    print("  2. get_balance(token)")
    print("  3. validate_recipient(token, recipient_identifier)")
    print("  4. get_fees(token, amount)")
    print("  5. get_limits(token)")
    print("  6. submit_transfer(token, recipient_identifier, amount, description)")
    print("  7. cancel_transfer(token, transfer_id)")
    print("  8. get_transfer_status(token, transfer_id)")
    print("  9. get_transfer_history(token, page, limit)")
    print(" 10. get_wallet_transactions(token, limit)")
    print(" 11. get_server_stats()")
    print()
    print("Press Ctrl+C to stop the server")
    print("=" * 70)

    daemon.requestLoop()


if __name__ == "__main__":
    main()
