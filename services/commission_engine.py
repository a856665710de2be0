"""Commission rule resolution for seller commissions and courier payouts"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence, Union

from config import Config
from models import CommissionType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Decimal via str() for floats"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RuleTerms:
    """Amount-keyed commission rule (seller rule sets and defaults)"""
    commission_type: str
    value: Decimal
    min_bound: Decimal = Decimal("0")
    max_bound: Optional[Decimal] = None
    active: bool = True
    priority: int = 0
    rule_id: Optional[int] = None
    name: Optional[str] = None

    def commission_for(self, amount: Decimal) -> Decimal:
        if self.commission_type == CommissionType.PERCENTAGE.value:
            return round2(amount * to_decimal(self.value) / Decimal("100"))
        if self.commission_type == CommissionType.AMOUNT.value:
            return round2(to_decimal(self.value))
        raise ValueError(f"Unknown commission type: {self.commission_type}")

    @classmethod
    def from_model(cls, rule) -> "RuleTerms":
        return cls(
            commission_type=rule.commission_type,
            value=to_decimal(rule.value),
            min_bound=to_decimal(rule.min_bound if rule.min_bound is not None else 0),
            max_bound=to_decimal(rule.max_bound) if rule.max_bound is not None else None,
            active=bool(rule.active),
            priority=rule.priority or 0,
            rule_id=rule.id,
            name=rule.name,
        )

    @classmethod
    def seller_default(cls, seller=None) -> "RuleTerms":
        """Default rule for a seller, falling back to platform configuration"""
        if seller is not None and seller.default_commission_type:
            return cls(
                commission_type=seller.default_commission_type,
                value=to_decimal(seller.default_commission_value),
                name="default",
            )
        return cls(
            commission_type=Config.DEFAULT_SELLER_COMMISSION_TYPE,
            value=Config.DEFAULT_SELLER_COMMISSION_VALUE,
            name="default",
        )


@dataclass(frozen=True)
class DistanceRuleTerms:
    """Distance-keyed courier payout: base payout plus per-km above min_bound"""
    base_payout: Decimal
    per_km_rate: Decimal
    min_bound: Decimal = Decimal("0")
    max_bound: Optional[Decimal] = None
    active: bool = True
    priority: int = 0
    rule_id: Optional[int] = None
    name: Optional[str] = None

    def commission_for(self, distance_km: Decimal) -> Decimal:
        billable_km = max(Decimal("0"), distance_km - to_decimal(self.min_bound))
        return round2(to_decimal(self.base_payout) + billable_km * to_decimal(self.per_km_rate))

    def breakdown(self, distance_km: Decimal) -> dict:
        billable_km = max(Decimal("0"), distance_km - to_decimal(self.min_bound))
        return {
            "base_payout": str(round2(self.base_payout)),
            "per_km_rate": str(round2(self.per_km_rate)),
            "min_distance": str(self.min_bound),
            "distance": str(distance_km.quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)),
            "distance_commission": str(round2(billable_km * to_decimal(self.per_km_rate))),
        }

    @classmethod
    def from_model(cls, rule) -> "DistanceRuleTerms":
        return cls(
            base_payout=to_decimal(rule.base_payout),
            per_km_rate=to_decimal(rule.per_km_rate),
            min_bound=to_decimal(rule.min_distance if rule.min_distance is not None else 0),
            max_bound=to_decimal(rule.max_distance) if rule.max_distance is not None else None,
            active=bool(rule.active),
            priority=rule.priority or 0,
            rule_id=rule.id,
            name=rule.name,
        )

    @classmethod
    def courier_default(cls) -> "DistanceRuleTerms":
        return cls(
            base_payout=Config.COURIER_BASE_PAYOUT,
            per_km_rate=Config.COURIER_PER_KM_RATE,
            min_bound=Config.COURIER_MIN_DISTANCE_KM,
            name="default",
        )


@dataclass(frozen=True)
class CommissionResult:
    commission_value: Decimal
    rule_used: Optional[Union[RuleTerms, DistanceRuleTerms]]

    @property
    def used_default(self) -> bool:
        return self.rule_used is None


def select_rule(rules: Iterable, amount: Decimal):
    """
    Pick the matching rule: active, min <= amount <= max (max None = unbounded),
    highest priority first, ties broken by the lowest min bound.
    """
    matches = [
        rule for rule in rules
        if rule.active
        and to_decimal(rule.min_bound) <= amount
        and (rule.max_bound is None or amount <= to_decimal(rule.max_bound))
    ]
    if not matches:
        return None
    return min(matches, key=lambda rule: (-rule.priority, to_decimal(rule.min_bound)))


def resolve(rules: Sequence[RuleTerms], default_rule: RuleTerms, amount: Number) -> CommissionResult:
    """Resolve the seller commission for an order amount"""
    amount_dec = to_decimal(amount)
    rule = select_rule(rules, amount_dec)
    if rule is None:
        return CommissionResult(commission_value=default_rule.commission_for(amount_dec), rule_used=None)
    return CommissionResult(commission_value=rule.commission_for(amount_dec), rule_used=rule)


def resolve_courier_earning(
    rules: Sequence[DistanceRuleTerms],
    default_rule: Optional[DistanceRuleTerms],
    distance_km: Number,
) -> CommissionResult:
    """Resolve the courier payout for a delivery distance"""
    distance = to_decimal(distance_km)
    rule = select_rule(rules, distance)
    if rule is None:
        fallback = default_rule or DistanceRuleTerms.courier_default()
        return CommissionResult(commission_value=fallback.commission_for(distance), rule_used=None)
    return CommissionResult(commission_value=rule.commission_for(distance), rule_used=rule)
