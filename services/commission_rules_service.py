"""
Commission Rule Service
Validates rule definitions on write and loads rule sets for settlement.
Percentage values are constrained to 0-100 on write.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, or_
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import CommissionRule, CommissionType, CourierPayoutRule, Seller
from services.commission_engine import (
    CommissionResult, DistanceRuleTerms, RuleTerms, resolve, resolve_courier_earning
)
from utils.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _as_decimal(value, field: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field})
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field})
    return result


def validate_commission_terms(commission_type: str, value) -> Decimal:
    """Validate a {type, value} pair and return the value as Decimal"""
    if commission_type not in (CommissionType.AMOUNT.value, CommissionType.PERCENTAGE.value):
        raise ValidationError("Commission type must be 'amount' or 'percentage'", {"field": "type"})
    value_dec = _as_decimal(value, "value")
    if commission_type == CommissionType.PERCENTAGE.value and not (Decimal("0") <= value_dec <= Decimal("100")):
        raise ValidationError("Percentage commission must be between 0 and 100", {"field": "value"})
    if commission_type == CommissionType.AMOUNT.value and value_dec < 0:
        raise ValidationError("Commission amount cannot be negative", {"field": "value"})
    return value_dec


def validate_bounds(min_bound, max_bound, field_prefix: str):
    min_dec = _as_decimal(min_bound if min_bound is not None else 0, f"{field_prefix}_min")
    if min_dec < 0:
        raise ValidationError(f"Minimum {field_prefix} cannot be negative", {"field": f"{field_prefix}_min"})
    max_dec = None
    if max_bound is not None:
        max_dec = _as_decimal(max_bound, f"{field_prefix}_max")
        if max_dec <= min_dec:
            raise ValidationError(
                f"Maximum {field_prefix} must be greater than minimum {field_prefix}",
                {"field": f"{field_prefix}_max"},
            )
    return min_dec, max_dec


def ranges_overlap(min_a: Decimal, max_a: Optional[Decimal], min_b: Decimal, max_b: Optional[Decimal]) -> bool:
    """Half-open overlap check: touching ranges such as [0,4] and [4,8] are allowed"""
    a_end = max_a if max_a is not None else Decimal("Infinity")
    b_end = max_b if max_b is not None else Decimal("Infinity")
    return min_a < b_end and min_b < a_end


class CommissionRuleService:
    """Write-side validation and read-side rule set loading"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Seller commission rules
    # ------------------------------------------------------------------

    def create_seller_rule(
        self,
        commission_type: str,
        value,
        min_amount=0,
        max_amount=None,
        priority: int = 0,
        seller_id: Optional[str] = None,
        name: Optional[str] = None,
        active: bool = True,
    ) -> CommissionRule:
        value_dec = validate_commission_terms(commission_type, value)
        min_dec, max_dec = validate_bounds(min_amount, max_amount, "amount")

        with managed_session(self.session_factory) as session:
            if seller_id is not None and session.get(Seller, seller_id) is None:
                raise NotFoundError(f"Seller {seller_id} not found")
            rule = CommissionRule(
                seller_id=seller_id,
                name=name,
                commission_type=commission_type,
                value=value_dec,
                min_bound=min_dec,
                max_bound=max_dec,
                priority=int(priority),
                active=active,
            )
            session.add(rule)
            session.flush()
            logger.info(
                f"✅ COMMISSION_RULE_CREATED: id={rule.id} seller={seller_id or 'platform'} "
                f"{commission_type}={value_dec} range=[{min_dec}, {max_dec}] priority={priority}"
            )
            return rule

    def set_seller_default(self, seller_id: str, commission_type: str, value) -> Seller:
        value_dec = validate_commission_terms(commission_type, value)
        with managed_session(self.session_factory) as session:
            seller = session.get(Seller, seller_id)
            if seller is None:
                raise NotFoundError(f"Seller {seller_id} not found")
            seller.default_commission_type = commission_type
            seller.default_commission_value = value_dec
            logger.info(f"✅ SELLER_DEFAULT_COMMISSION: seller={seller_id} {commission_type}={value_dec}")
            return seller

    @staticmethod
    def load_seller_rule_set(session: Session, seller_id: str) -> List[RuleTerms]:
        """Seller-specific rules plus platform-wide rules"""
        rows = session.execute(
            select(CommissionRule).where(
                or_(CommissionRule.seller_id == seller_id, CommissionRule.seller_id.is_(None))
            )
        ).scalars().all()
        return [RuleTerms.from_model(row) for row in rows]

    def resolve_for_seller(self, session: Session, seller_id: str, amount) -> CommissionResult:
        seller = session.get(Seller, seller_id)
        rules = self.load_seller_rule_set(session, seller_id)
        return resolve(rules, RuleTerms.seller_default(seller), amount)

    # ------------------------------------------------------------------
    # Courier payout rules
    # ------------------------------------------------------------------

    def create_courier_rule(
        self,
        name: str,
        min_distance,
        max_distance,
        per_km_rate,
        base_payout,
        priority: int = 0,
        active: bool = True,
    ) -> CourierPayoutRule:
        if not name or not str(name).strip():
            raise ValidationError("Rule name is required", {"field": "name"})
        min_dec, max_dec = validate_bounds(min_distance, max_distance, "distance")
        rate_dec = _as_decimal(per_km_rate, "per_km_rate")
        base_dec = _as_decimal(base_payout, "base_payout")
        if rate_dec < 0:
            raise ValidationError("Commission per km cannot be negative", {"field": "per_km_rate"})
        if base_dec < 0:
            raise ValidationError("Base payout cannot be negative", {"field": "base_payout"})

        with managed_session(self.session_factory) as session:
            if active:
                existing = session.execute(
                    select(CourierPayoutRule).where(CourierPayoutRule.active.is_(True))
                ).scalars().all()
                for other in existing:
                    other_max = Decimal(str(other.max_distance)) if other.max_distance is not None else None
                    if ranges_overlap(min_dec, max_dec, Decimal(str(other.min_distance)), other_max):
                        raise ValidationError(
                            f"Distance range overlaps active rule '{other.name}'",
                            {"conflicting_rule_id": other.id},
                        )

            rule = CourierPayoutRule(
                name=str(name).strip(),
                min_distance=min_dec,
                max_distance=max_dec,
                per_km_rate=rate_dec,
                base_payout=base_dec,
                priority=int(priority),
                active=active,
            )
            session.add(rule)
            session.flush()
            logger.info(
                f"✅ COURIER_RULE_CREATED: id={rule.id} '{rule.name}' range=[{min_dec}, {max_dec}] "
                f"base={base_dec} per_km={rate_dec}"
            )
            return rule

    @staticmethod
    def load_courier_rule_set(session: Session) -> List[DistanceRuleTerms]:
        rows = session.execute(select(CourierPayoutRule)).scalars().all()
        return [DistanceRuleTerms.from_model(row) for row in rows]

    def resolve_courier_earning(self, session: Session, distance_km) -> CommissionResult:
        return resolve_courier_earning(
            self.load_courier_rule_set(session), DistanceRuleTerms.courier_default(), distance_km
        )

    def calculate_courier_earning(self, distance_km) -> dict:
        """Preview of the courier payout for a distance"""
        distance = _as_decimal(distance_km, "distance")
        if distance < 0:
            raise ValidationError("Distance cannot be negative", {"field": "distance"})
        with managed_session(self.session_factory) as session:
            result = self.resolve_courier_earning(session, distance)
        rule = result.rule_used or DistanceRuleTerms.courier_default()
        return {
            "commission": str(result.commission_value),
            "rule_id": rule.rule_id,
            "rule_name": rule.name,
            "breakdown": rule.breakdown(distance),
        }
