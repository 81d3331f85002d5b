"""Fee and limit engine for wallet-to-wallet transfers.

Fee policies come in three shapes:
    - fixed:      flat fee, independent of the amount
    - percentage: amount * percentage_rate
    - tiered:     fee of the first tier whose [min, max] range holds the amount
                  (max = None means unbounded; tiers are scanned in order)

The type-specific fee is then clamped by the optional minimum_fee and
maximum_fee. Limits are checked in a fixed order:

    minimum -> maximum -> per-transaction -> daily -> weekly -> monthly
            -> daily count -> monthly count

and the first violation is reported.

Everything here is pure: no I/O, no clock reads, no shared state. The current
time is always passed in by the caller.
"""

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Tuple

ZERO = Decimal("0")
CENT = Decimal("0.01")


class InvalidAmountError(ValueError):
    """Raised for negative, NaN, infinite or non-numeric amounts."""


class PolicyConfigError(ValueError):
    """Raised when a stored fee policy or limit row is malformed."""


class FeeType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    TIERED = "tiered"


class LimitRejection(str, Enum):
    BELOW_MINIMUM = "below_minimum"
    ABOVE_MAXIMUM = "above_maximum"
    ABOVE_PER_TRANSACTION = "above_per_transaction"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    WEEKLY_LIMIT_EXCEEDED = "weekly_limit_exceeded"
    MONTHLY_LIMIT_EXCEEDED = "monthly_limit_exceeded"
    DAILY_COUNT_EXCEEDED = "daily_count_exceeded"
    MONTHLY_COUNT_EXCEEDED = "monthly_count_exceeded"


_REJECTION_MESSAGES = {
    LimitRejection.BELOW_MINIMUM: "Amount is below the minimum transfer amount",
    LimitRejection.ABOVE_MAXIMUM: "Amount is above the maximum transfer amount",
    LimitRejection.ABOVE_PER_TRANSACTION: "Amount exceeds the per-transaction limit",
    LimitRejection.DAILY_LIMIT_EXCEEDED: "Daily transfer limit exceeded",
    LimitRejection.WEEKLY_LIMIT_EXCEEDED: "Weekly transfer limit exceeded",
    LimitRejection.MONTHLY_LIMIT_EXCEEDED: "Monthly transfer limit exceeded",
    LimitRejection.DAILY_COUNT_EXCEEDED: "Daily transaction count limit exceeded",
    LimitRejection.MONTHLY_COUNT_EXCEEDED: "Monthly transaction count limit exceeded",
}


class TransferStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED, TransferStatus.CANCELLED)


_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.PROCESSING, TransferStatus.FAILED, TransferStatus.CANCELLED},
    TransferStatus.PROCESSING: {TransferStatus.COMPLETED, TransferStatus.FAILED},
}


def can_transition(current: str, new: str) -> bool:
    """Return True if a transfer may move from `current` to `new` status."""
    return TransferStatus(new) in _TRANSITIONS.get(TransferStatus(current), set())


# -----------------------------
# Decimal helpers
# -----------------------------
def to_decimal(value: Any) -> Decimal:
    """Convert int/str/float/Decimal to a finite Decimal (floats go through str)."""
    if isinstance(value, bool):
        raise InvalidAmountError("Amount must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidAmountError("Amount cannot be NaN or infinite")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Amount must be a number, got {value!r}") from None
    if not dec.is_finite():
        raise InvalidAmountError("Amount cannot be NaN or infinite")
    return dec


def round_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: Any) -> Decimal:
    """Parse a transfer amount, rejecting anything finer than one cent."""
    amt = to_decimal(value)
    try:
        cents = amt.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError("Amount is too large") from None
    if amt != cents:
        raise InvalidAmountError("Amount cannot have more than 2 decimal places")
    return amt


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _validate_amount(amount: Any, allow_zero: bool) -> Decimal:
    amt = to_decimal(amount)
    if amt < 0:
        raise InvalidAmountError("Amount cannot be negative")
    if amt == 0 and not allow_zero:
        raise InvalidAmountError("Amount must be greater than 0")
    return amt


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value))
        except ValueError:
            raise PolicyConfigError(f"Invalid timestamp: {value!r}") from None
    return _as_utc(value)


# -----------------------------
# Configuration records
# -----------------------------
@dataclass(frozen=True)
class TierRange:
    min: Decimal
    max: Optional[Decimal]
    fee: Decimal

    def __post_init__(self):
        object.__setattr__(self, "min", to_decimal(self.min))
        object.__setattr__(self, "max", _optional_decimal(self.max))
        object.__setattr__(self, "fee", to_decimal(self.fee))

    def matches(self, amount: Decimal) -> bool:
        return amount >= self.min and (self.max is None or amount <= self.max)


@dataclass(frozen=True)
class FeePolicy:
    id: str
    fee_type: FeeType
    fee_name: str = "Transfer fee"
    fixed_amount: Optional[Decimal] = None
    percentage_rate: Optional[Decimal] = None
    tier_ranges: Optional[Tuple[TierRange, ...]] = None
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None
    currency: str = "MYR"
    is_active: bool = True
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    def __post_init__(self):
        for name in ("fixed_amount", "percentage_rate", "minimum_fee", "maximum_fee"):
            object.__setattr__(self, name, _optional_decimal(getattr(self, name)))
        if self.tier_ranges is not None:
            object.__setattr__(self, "tier_ranges", tuple(self.tier_ranges))
        for name in ("effective_from", "effective_until"):
            object.__setattr__(self, name, _parse_time(getattr(self, name)))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "FeePolicy":
        """
        Build a policy from a store row, validating its shape.

        Exactly one of fixed_amount / percentage_rate / tier_ranges must be
        set, and it must match fee_type.
        """
        try:
            fee_type = FeeType(record.get("fee_type"))
        except ValueError:
            raise PolicyConfigError(f"Unknown fee_type: {record.get('fee_type')!r}") from None

        payload = {
            FeeType.FIXED: record.get("fixed_amount"),
            FeeType.PERCENTAGE: record.get("percentage_rate"),
            FeeType.TIERED: record.get("tier_ranges"),
        }
        if payload[fee_type] is None:
            raise PolicyConfigError(f"{fee_type.value} policy is missing its fee definition")
        extra = [t.value for t, v in payload.items() if t is not fee_type and v is not None]
        if extra:
            raise PolicyConfigError(f"{fee_type.value} policy also defines {', '.join(extra)} fields")

        try:
            policy = cls(
                id=str(record.get("id") or record.get("fee_id")),
                fee_type=fee_type,
                fee_name=record.get("fee_name") or "Transfer fee",
                fixed_amount=record.get("fixed_amount"),
                percentage_rate=record.get("percentage_rate"),
                tier_ranges=_load_tiers(record.get("tier_ranges")),
                minimum_fee=record.get("minimum_fee"),
                maximum_fee=record.get("maximum_fee"),
                currency=record.get("currency") or "MYR",
                is_active=bool(record.get("is_active", True)),
                effective_from=record.get("effective_from"),
                effective_until=record.get("effective_until"),
            )
        except InvalidAmountError as e:
            raise PolicyConfigError(f"Invalid fee policy value: {e}") from None

        money = [policy.fixed_amount, policy.percentage_rate, policy.minimum_fee, policy.maximum_fee]
        money += [t.fee for t in policy.tier_ranges or ()]
        if any(v is not None and v < 0 for v in money):
            raise PolicyConfigError("Fee policy values cannot be negative")
        if (
            policy.minimum_fee is not None
            and policy.maximum_fee is not None
            and policy.minimum_fee > policy.maximum_fee
        ):
            raise PolicyConfigError("minimum_fee is greater than maximum_fee")
        return policy


def _load_tiers(raw: Any) -> Optional[Tuple[TierRange, ...]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PolicyConfigError(f"tier_ranges is not valid JSON: {e}") from None
    tiers = []
    for i, item in enumerate(raw):
        if not isinstance(item, Mapping) or "min" not in item or "fee" not in item:
            raise PolicyConfigError(f"Tier {i} needs 'min' and 'fee'")
        tiers.append(TierRange(item["min"], item.get("max"), item["fee"]))
    return tuple(tiers)


@dataclass(frozen=True)
class TransferLimits:
    daily_limit: Decimal
    weekly_limit: Decimal
    monthly_limit: Decimal
    per_transaction_limit: Decimal
    minimum_amount: Decimal
    maximum_amount: Decimal
    daily_transaction_count: Optional[int] = None
    monthly_transaction_count: Optional[int] = None

    def __post_init__(self):
        for name in (
            "daily_limit",
            "weekly_limit",
            "monthly_limit",
            "per_transaction_limit",
            "minimum_amount",
            "maximum_amount",
        ):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TransferLimits":
        try:
            return cls(
                daily_limit=record["daily_limit"],
                weekly_limit=record["weekly_limit"],
                monthly_limit=record["monthly_limit"],
                per_transaction_limit=record["per_transaction_limit"],
                minimum_amount=record["minimum_amount"],
                maximum_amount=record["maximum_amount"],
                daily_transaction_count=record.get("daily_transaction_count"),
                monthly_transaction_count=record.get("monthly_transaction_count"),
            )
        except KeyError as e:
            raise PolicyConfigError(f"Transfer limits missing field {e}") from None
        except InvalidAmountError as e:
            raise PolicyConfigError(f"Invalid transfer limit value: {e}") from None


@dataclass(frozen=True)
class SpendTotals:
    """Completed outgoing transfers already counted in each rolling window."""

    daily: Decimal = ZERO
    weekly: Decimal = ZERO
    monthly: Decimal = ZERO
    daily_count: int = 0
    monthly_count: int = 0

    def __post_init__(self):
        for name in ("daily", "weekly", "monthly"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))


# -----------------------------
# Results
# -----------------------------
@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    reason: Optional[LimitRejection] = None

    @classmethod
    def allow(cls) -> "LimitCheckResult":
        return cls(True, None)

    @classmethod
    def reject(cls, reason: LimitRejection) -> "LimitCheckResult":
        return cls(False, reason)

    @property
    def message(self) -> str:
        if self.allowed:
            return "Transfer is within limits"
        return _REJECTION_MESSAGES[self.reason]


@dataclass(frozen=True)
class FeeLineItem:
    name: str
    type: FeeType
    amount: Decimal


@dataclass(frozen=True)
class TransferFeeCalculation:
    transfer_fee: Decimal
    net_amount: Decimal
    fee_breakdown: Tuple[FeeLineItem, ...] = field(default_factory=tuple)

    def rounded(self, amount: Any) -> "TransferFeeCalculation":
        """Round the fee to cents and recompute the net amount from `amount`."""
        fee = round_money(self.transfer_fee)
        return TransferFeeCalculation(
            transfer_fee=fee,
            net_amount=to_decimal(amount) - fee,
            fee_breakdown=tuple(
                FeeLineItem(item.name, item.type, round_money(item.amount)) for item in self.fee_breakdown
            ),
        )

    def to_dict(self) -> dict:
        return {
            "transfer_fee": float(self.transfer_fee),
            "net_amount": float(self.net_amount),
            "fee_breakdown": [
                {"name": item.name, "type": FeeType(item.type).value, "amount": float(item.amount)}
                for item in self.fee_breakdown
            ],
        }


@dataclass(frozen=True)
class LimitUsage:
    daily_used: Decimal
    weekly_used: Decimal
    monthly_used: Decimal
    daily_remaining: Decimal
    weekly_remaining: Decimal
    monthly_remaining: Decimal
    daily_count: int
    monthly_count: int
    daily_count_remaining: Optional[int]
    monthly_count_remaining: Optional[int]

    def to_dict(self) -> dict:
        return {k: float(v) if isinstance(v, Decimal) else v for k, v in asdict(self).items()}


# -----------------------------
# Engine
# -----------------------------
def calculate_fee(policy: FeePolicy, amount: Any) -> Decimal:
    """Calculate the fee a policy charges for transferring `amount`."""
    amt = _validate_amount(amount, allow_zero=True)

    fee = ZERO
    if policy.fee_type == FeeType.FIXED:
        if policy.fixed_amount is not None:
            fee = policy.fixed_amount
    elif policy.fee_type == FeeType.PERCENTAGE:
        if policy.percentage_rate is not None:
            fee = amt * policy.percentage_rate
    elif policy.fee_type == FeeType.TIERED:
        for tier in policy.tier_ranges or ():
            if tier.matches(amt):
                fee = tier.fee
                break

    if policy.minimum_fee is not None and fee < policy.minimum_fee:
        fee = policy.minimum_fee
    if policy.maximum_fee is not None and fee > policy.maximum_fee:
        fee = policy.maximum_fee

    return fee


def quote_transfer(policy: Optional[FeePolicy], amount: Any) -> TransferFeeCalculation:
    """Fee, net amount and single-line breakdown for a transfer of `amount`."""
    amt = _validate_amount(amount, allow_zero=True)
    if policy is None:
        return TransferFeeCalculation(transfer_fee=ZERO, net_amount=amt)

    fee = calculate_fee(policy, amt)
    return TransferFeeCalculation(
        transfer_fee=fee,
        net_amount=amt - fee,
        fee_breakdown=(FeeLineItem(policy.fee_name, FeeType(policy.fee_type), fee),),
    )


def evaluate_limits(limits: TransferLimits, amount: Any, already_spent: SpendTotals) -> LimitCheckResult:
    amt = _validate_amount(amount, allow_zero=False)

    checks = (
        (amt < limits.minimum_amount, LimitRejection.BELOW_MINIMUM),
        (amt > limits.maximum_amount, LimitRejection.ABOVE_MAXIMUM),
        (amt > limits.per_transaction_limit, LimitRejection.ABOVE_PER_TRANSACTION),
        (already_spent.daily + amt > limits.daily_limit, LimitRejection.DAILY_LIMIT_EXCEEDED),
        (already_spent.weekly + amt > limits.weekly_limit, LimitRejection.WEEKLY_LIMIT_EXCEEDED),
        (already_spent.monthly + amt > limits.monthly_limit, LimitRejection.MONTHLY_LIMIT_EXCEEDED),
        (
            limits.daily_transaction_count is not None
            and already_spent.daily_count >= limits.daily_transaction_count,
            LimitRejection.DAILY_COUNT_EXCEEDED,
        ),
        (
            limits.monthly_transaction_count is not None
            and already_spent.monthly_count >= limits.monthly_transaction_count,
            LimitRejection.MONTHLY_COUNT_EXCEEDED,
        ),
    )
    for violated, reason in checks:
        if violated:
            return LimitCheckResult.reject(reason)
    return LimitCheckResult.allow()


def limit_usage(limits: TransferLimits, already_spent: SpendTotals) -> LimitUsage:
    def remaining_count(cap: Optional[int], used: int) -> Optional[int]:
        return None if cap is None else max(0, cap - used)

    return LimitUsage(
        daily_used=already_spent.daily,
        weekly_used=already_spent.weekly,
        monthly_used=already_spent.monthly,
        daily_remaining=max(ZERO, limits.daily_limit - already_spent.daily),
        weekly_remaining=max(ZERO, limits.weekly_limit - already_spent.weekly),
        monthly_remaining=max(ZERO, limits.monthly_limit - already_spent.monthly),
        daily_count=already_spent.daily_count,
        monthly_count=already_spent.monthly_count,
        daily_count_remaining=remaining_count(limits.daily_transaction_count, already_spent.daily_count),
        monthly_count_remaining=remaining_count(limits.monthly_transaction_count, already_spent.monthly_count),
    )


def is_policy_effective(policy: FeePolicy, now: datetime) -> bool:
    """A policy is effective iff active and effective_from <= now < effective_until."""
    if not policy.is_active:
        return False
    now = _as_utc(now)
    if policy.effective_from is not None and now < policy.effective_from:
        return False
    if policy.effective_until is not None and now >= policy.effective_until:
        return False
    return True


def select_policy(
    policies: Iterable[FeePolicy], now: datetime, currency: Optional[str] = None
) -> Optional[FeePolicy]:
    """First effective policy in the given order (newest first by convention)."""
    for policy in policies:
        if currency is not None and policy.currency != currency:
            continue
        if is_policy_effective(policy, now):
            return policy
    return None
