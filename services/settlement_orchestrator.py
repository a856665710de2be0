"""
Settlement Orchestrator
=======================

Splits a delivered order's value between courier, seller and platform.

The settlement runs as a sequence of steps, each in its own unit of work and
each guarded by its own completion marker (a ledger entry, a commission row or
a journal row in ``settlement_steps``). A failed step leaves every earlier step
in place; re-running the orchestration resumes from the failed step without
crediting anything twice. Markers are unique at the storage layer (one live
payment per wallet and order, one commission row, one journal row per step), so
a run that loses a race to a concurrent run re-reads the markers and skips.

Steps:
    distance            -> delivery distance (stored route, assignment estimate, great-circle)
    courier_credit      -> courier payout from the distance rules
    cash_collection     -> COD only, courier cash_in_hand += order total
    seller_credit       -> food price minus seller commission
    platform_commission -> one immutable commission record per order
    notifications       -> delivered notices to seller and customer (never fails settlement)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import (
    ActorType, Order, OrderStatus, PaymentMethod, PlatformCommission, Seller, SettlementStatus,
    SettlementStep, SettlementStepStatus,
)
from services.commission_engine import round2, to_decimal
from services.commission_rules_service import CommissionRuleService
from services.notification_publisher import (
    NotificationDispatcher, customer_channel, seller_channel,
)
from services.wallet_ledger import WalletLedger
from utils.exceptions import NotFoundError, PreconditionFailedError, SettlementStepError
from utils.geo import haversine_km, is_valid_coordinate

logger = logging.getLogger(__name__)

STEP_DISTANCE = "distance"
STEP_COURIER_CREDIT = "courier_credit"
STEP_CASH_COLLECTION = "cash_collection"
STEP_SELLER_CREDIT = "seller_credit"
STEP_PLATFORM_COMMISSION = "platform_commission"

FINANCIAL_STEPS = [
    STEP_DISTANCE,
    STEP_COURIER_CREDIT,
    STEP_CASH_COLLECTION,
    STEP_SELLER_CREDIT,
    STEP_PLATFORM_COMMISSION,
]


@dataclass
class SettlementResult:
    order_id: str
    distance_km: Optional[float] = None
    courier_earning: Optional[Decimal] = None
    food_price: Optional[Decimal] = None
    seller_commission: Optional[Decimal] = None
    seller_payout: Optional[Decimal] = None
    cash_collected: Optional[Decimal] = None
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def settlement_complete(self) -> bool:
        return self.failed_step is None and all(step in self.completed_steps for step in FINANCIAL_STEPS)

    def to_dict(self) -> Dict[str, Any]:
        def _money(value):
            return str(value) if value is not None else None

        return {
            "order_id": self.order_id,
            "distance_km": round(self.distance_km, 3) if self.distance_km is not None else None,
            "courier_earning": _money(self.courier_earning),
            "food_price": _money(self.food_price),
            "seller_commission": _money(self.seller_commission),
            "seller_payout": _money(self.seller_payout),
            "cash_collected": _money(self.cash_collected),
            "settlement_complete": self.settlement_complete,
            "failed_step": self.failed_step,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementOrchestrator:
    """Runs and resumes the per-order settlement"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        ledger: Optional[WalletLedger] = None,
        rule_service: Optional[CommissionRuleService] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger or WalletLedger(session_factory)
        self.rule_service = rule_service or CommissionRuleService(session_factory)
        self.dispatcher = dispatcher or NotificationDispatcher()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def settle(self, order_id: str, notify: bool = True) -> SettlementResult:
        """Run every step not yet completed for a delivered order"""
        with managed_session(self.session_factory) as session:
            order = self._load_delivered_order(session, order_id)
            journal = self._load_journal(session, order_id)

        result = SettlementResult(order_id=order_id)
        runners = {
            STEP_DISTANCE: self._step_distance,
            STEP_COURIER_CREDIT: self._step_courier_credit,
            STEP_CASH_COLLECTION: self._step_cash_collection,
            STEP_SELLER_CREDIT: self._step_seller_credit,
            STEP_PLATFORM_COMMISSION: self._step_platform_commission,
        }

        for step_name in FINANCIAL_STEPS:
            try:
                journal = self._run_step(runners[step_name], step_name, order, journal, result)
                result.completed_steps.append(step_name)
            except Exception as e:
                message = e.message if isinstance(e, SettlementStepError) else str(e)
                result.failed_step = step_name
                result.error = message
                logger.error(
                    f"❌ SETTLEMENT_STEP_FAILED: order={order_id} step={step_name} error={message}",
                    exc_info=not isinstance(e, SettlementStepError),
                )
                self._record_failure(order_id, step_name, message)
                break

        self._update_settlement_status(order_id, result)

        if result.settlement_complete:
            logger.info(
                f"✅ SETTLEMENT_COMPLETE: order={order_id} courier={result.courier_earning} "
                f"seller={result.seller_payout} commission={result.seller_commission}"
            )
        else:
            logger.warning(
                f"⚠️ PARTIAL_SETTLEMENT: order={order_id} completed={result.completed_steps} "
                f"failed={result.failed_step}"
            )

        if notify:
            self.notify_delivered(order, result)
        return result

    def resume(self, order_id: str) -> SettlementResult:
        """Re-run the orchestration; completed steps are skipped by their markers"""
        logger.info(f"🔁 SETTLEMENT_RESUME: order={order_id}")
        return self.settle(order_id, notify=False)

    def describe(self, order_id: str) -> SettlementResult:
        """Existing settlement figures, without mutating anything"""
        with managed_session(self.session_factory) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            journal = self._load_journal(session, order_id)
            result = SettlementResult(order_id=order_id, food_price=round2(max(Decimal("0"), order.food_price)))

            distance_row = journal.get(STEP_DISTANCE)
            if distance_row is not None and distance_row.status == SettlementStepStatus.COMPLETED.value:
                result.distance_km = (distance_row.step_data or {}).get("distance_km")

            courier_wallet = None
            if order.courier_id:
                courier_wallet = self.ledger.find_wallet(ActorType.COURIER.value, order.courier_id, session=session)
            if courier_wallet is not None:
                payment = self.ledger.find_order_payment(courier_wallet.id, order_id, session=session)
                if payment is not None:
                    result.courier_earning = to_decimal(payment.amount)

            seller_wallet = self.ledger.find_wallet(ActorType.SELLER.value, order.seller_id, session=session)
            seller_payment = None
            if seller_wallet is not None:
                seller_payment = self.ledger.find_order_payment(seller_wallet.id, order_id, session=session)
            if seller_payment is not None:
                result.seller_payout = to_decimal(seller_payment.amount)
                result.seller_commission = round2(result.food_price - result.seller_payout)

            cash_row = journal.get(STEP_CASH_COLLECTION)
            if cash_row is not None and cash_row.status == SettlementStepStatus.COMPLETED.value:
                collected = (cash_row.step_data or {}).get("cash_collected")
                result.cash_collected = to_decimal(collected) if collected is not None else None

            for step_name in FINANCIAL_STEPS:
                row = journal.get(step_name)
                if row is None:
                    continue
                if row.status == SettlementStepStatus.COMPLETED.value:
                    result.completed_steps.append(step_name)
                elif result.failed_step is None:
                    result.failed_step = step_name
                    result.error = row.error_message
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, runner, step_name: str, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        """Run a step; after losing a unique-marker race, re-run it once against the fresh journal"""
        try:
            runner(order, journal, result)
            return journal
        except IntegrityError as e:
            logger.warning(
                f"🔁 SETTLEMENT_STEP_RACE: order={order.id} step={step_name} committed by a concurrent run, "
                f"re-reading markers: {e.orig}"
            )

        with managed_session(self.session_factory) as session:
            journal = self._load_journal(session, order.id)
        runner(order, journal, result)
        return journal

    def _step_distance(self, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        row = journal.get(STEP_DISTANCE)
        if row is not None and row.status == SettlementStepStatus.COMPLETED.value:
            result.distance_km = float((row.step_data or {}).get("distance_km", 0.0))
            return

        distance, source = self._delivery_distance(order)
        with managed_session(self.session_factory) as session:
            self._record_step(session, order.id, STEP_DISTANCE, {"distance_km": distance, "source": source})
        result.distance_km = distance
        logger.info(f"📏 SETTLEMENT_DISTANCE: order={order.id} distance={distance:.3f}km source={source}")

    def _delivery_distance(self, order: Order):
        route = order.route_to_delivery or {}
        if route.get("distance") is not None:
            return float(route["distance"]), "route_to_delivery"
        if order.assignment_distance_km is not None:
            return float(order.assignment_distance_km), "assignment"

        with managed_session(self.session_factory) as session:
            seller = session.get(Seller, order.seller_id)
        if seller is not None and is_valid_coordinate(seller.latitude, seller.longitude) and is_valid_coordinate(
            order.customer_latitude, order.customer_longitude
        ):
            distance = haversine_km(
                seller.latitude, seller.longitude, order.customer_latitude, order.customer_longitude
            )
            return distance, "great_circle"
        raise SettlementStepError(STEP_DISTANCE, "No route and no seller/customer coordinates to measure distance")

    def _step_courier_credit(self, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        if not order.courier_id:
            raise SettlementStepError(STEP_COURIER_CREDIT, "Order has no assigned courier")

        with managed_session(self.session_factory) as session:
            wallet = self.ledger.get_or_create_wallet(ActorType.COURIER.value, order.courier_id, session=session)
            existing = self.ledger.find_order_payment(wallet.id, order.id, session=session)
            if existing is not None:
                result.courier_earning = to_decimal(existing.amount)
                self._record_step(session, order.id, STEP_COURIER_CREDIT, {"amount": str(existing.amount)})
                logger.info(f"⏭️ COURIER_CREDIT_SKIPPED: order={order.id} already credited {existing.amount}")
                return

            earning = self.rule_service.resolve_courier_earning(session, result.distance_km)
            self.ledger.credit(
                wallet.id,
                earning.commission_value,
                "payment",
                order_id=order.id,
                description=f"Delivery earning for order {order.id}",
                session=session,
            )
            self._record_step(session, order.id, STEP_COURIER_CREDIT, {"amount": str(earning.commission_value)})
            result.courier_earning = earning.commission_value

    def _step_cash_collection(self, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        row = journal.get(STEP_CASH_COLLECTION)
        if row is not None and row.status == SettlementStepStatus.COMPLETED.value:
            collected = (row.step_data or {}).get("cash_collected")
            result.cash_collected = to_decimal(collected) if collected is not None else None
            return

        with managed_session(self.session_factory) as session:
            if order.payment_method != PaymentMethod.CASH.value:
                self._record_step(session, order.id, STEP_CASH_COLLECTION, {"cash_collected": None})
                return
            total = to_decimal(order.total)
            result.cash_collected = total
            # Journal claim commits with the cash increment
            if not self._claim_step(session, order.id, STEP_CASH_COLLECTION, {"cash_collected": str(total)}):
                logger.info(f"⏭️ CASH_COLLECTION_SKIPPED: order={order.id} already recorded")
                return
            wallet = self.ledger.get_or_create_wallet(ActorType.COURIER.value, order.courier_id, session=session)
            self.ledger.record_cash_collected(wallet.id, total, order_id=order.id, session=session)

    def _step_seller_credit(self, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        food_price = round2(max(Decimal("0"), order.food_price))
        result.food_price = food_price

        with managed_session(self.session_factory) as session:
            wallet = self.ledger.get_or_create_wallet(ActorType.SELLER.value, order.seller_id, session=session)
            existing = self.ledger.find_order_payment(wallet.id, order.id, session=session)
            if existing is not None:
                result.seller_payout = to_decimal(existing.amount)
                result.seller_commission = round2(food_price - result.seller_payout)
                self._record_step(session, order.id, STEP_SELLER_CREDIT, {"amount": str(existing.amount)})
                logger.info(f"⏭️ SELLER_CREDIT_SKIPPED: order={order.id} already credited {existing.amount}")
                return

            commission = self.rule_service.resolve_for_seller(session, order.seller_id, food_price)
            commission_value = min(commission.commission_value, food_price)
            payout = round2(food_price - commission_value)
            self.ledger.credit(
                wallet.id,
                payout,
                "payment",
                order_id=order.id,
                description=f"Order {order.id} payout (food {food_price} - commission {commission_value})",
                session=session,
            )
            self._record_step(
                session, order.id, STEP_SELLER_CREDIT,
                {"amount": str(payout), "commission": str(commission_value), "rule_id": getattr(commission.rule_used, "rule_id", None)},
            )
            result.seller_commission = commission_value
            result.seller_payout = payout

    def _step_platform_commission(self, order: Order, journal: Dict[str, SettlementStep], result: SettlementResult):
        with managed_session(self.session_factory) as session:
            existing = session.execute(
                select(PlatformCommission).where(PlatformCommission.order_id == order.id)
            ).scalar_one_or_none()
            if existing is None:
                session.add(PlatformCommission(
                    order_id=order.id,
                    seller_id=order.seller_id,
                    courier_id=order.courier_id,
                    food_price=result.food_price,
                    seller_commission=result.seller_commission,
                    courier_earning=result.courier_earning,
                    distance_km=result.distance_km,
                ))
                logger.info(
                    f"🏛️ PLATFORM_COMMISSION_RECORDED: order={order.id} commission={result.seller_commission}"
                )
            self._record_step(session, order.id, STEP_PLATFORM_COMMISSION, {})

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def notify_delivered(self, order: Order, result: SettlementResult):
        """Delivered notices to seller and customer; failures are logged only"""
        payload = {
            "order_id": order.id,
            "status": OrderStatus.DELIVERED.value,
            "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        }
        try:
            self.dispatcher.dispatch(
                seller_channel(order.seller_id),
                "order_delivered",
                {**payload, "payout": str(result.seller_payout) if result.seller_payout is not None else None},
            )
            self.dispatcher.dispatch(customer_channel(order.customer_id), "order_delivered", payload)
        except Exception as e:
            logger.warning(f"⚠️ DELIVERED_NOTIFICATION_FAILED: order={order.id}: {e}")

    # ------------------------------------------------------------------
    # Journal helpers
    # ------------------------------------------------------------------

    def _load_delivered_order(self, session: Session, order_id: str) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status != OrderStatus.DELIVERED.value:
            raise PreconditionFailedError(
                f"Order {order_id} is {order.status}; only delivered orders are settled",
                {"status": order.status},
            )
        return order

    @staticmethod
    def _load_journal(session: Session, order_id: str) -> Dict[str, SettlementStep]:
        rows = session.execute(
            select(SettlementStep).where(SettlementStep.order_id == order_id)
        ).scalars().all()
        return {row.step_name: row for row in rows}

    @staticmethod
    def _record_step(
        session: Session,
        order_id: str,
        step_name: str,
        step_data: Optional[dict],
        status: str = SettlementStepStatus.COMPLETED.value,
        error_message: Optional[str] = None,
    ):
        row = session.execute(
            select(SettlementStep).where(SettlementStep.order_id == order_id, SettlementStep.step_name == step_name)
        ).scalar_one_or_none()
        if row is None:
            row = SettlementStep(order_id=order_id, step_name=step_name, attempts=0)
            session.add(row)
        elif row.status == SettlementStepStatus.COMPLETED.value:
            # Completed rows are final
            return row
        row.status = status
        row.step_data = step_data
        row.error_message = error_message
        row.attempts = (row.attempts or 0) + 1
        row.completed_at = _utcnow() if status == SettlementStepStatus.COMPLETED.value else None
        return row

    @staticmethod
    def _claim_step(session: Session, order_id: str, step_name: str, step_data: Optional[dict]) -> bool:
        """
        Mark a step completed inside the caller's unit of work.

        Returns False when another run already completed it. A concurrent first
        insert surfaces as IntegrityError on flush.
        """
        claimed = session.execute(
            update(SettlementStep)
            .where(
                SettlementStep.order_id == order_id,
                SettlementStep.step_name == step_name,
                SettlementStep.status != SettlementStepStatus.COMPLETED.value,
            )
            .values(
                status=SettlementStepStatus.COMPLETED.value,
                step_data=step_data,
                error_message=None,
                attempts=SettlementStep.attempts + 1,
                completed_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            return True

        exists = session.execute(
            select(SettlementStep.id).where(
                SettlementStep.order_id == order_id, SettlementStep.step_name == step_name
            )
        ).first()
        if exists is not None:
            return False

        session.add(SettlementStep(
            order_id=order_id,
            step_name=step_name,
            status=SettlementStepStatus.COMPLETED.value,
            step_data=step_data,
            attempts=1,
            completed_at=_utcnow(),
        ))
        session.flush()
        return True

    def _record_failure(self, order_id: str, step_name: str, message: str):
        """Journal a failed attempt; a row another run already completed is left alone"""
        try:
            with managed_session(self.session_factory) as session:
                marked = session.execute(
                    update(SettlementStep)
                    .where(
                        SettlementStep.order_id == order_id,
                        SettlementStep.step_name == step_name,
                        SettlementStep.status != SettlementStepStatus.COMPLETED.value,
                    )
                    .values(
                        status=SettlementStepStatus.FAILED.value,
                        step_data=None,
                        error_message=message[:2000],
                        attempts=SettlementStep.attempts + 1,
                        completed_at=None,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if marked == 0:
                    self._record_step(
                        session, order_id, step_name, None,
                        status=SettlementStepStatus.FAILED.value, error_message=message[:2000],
                    )
        except Exception as e:
            logger.error(f"❌ SETTLEMENT_JOURNAL_FAILED: order={order_id} step={step_name}: {e}")

    def _update_settlement_status(self, order_id: str, result: SettlementResult):
        status = SettlementStatus.SETTLED.value if result.settlement_complete else SettlementStatus.PARTIAL.value
        with managed_session(self.session_factory) as session:
            # A settled order never goes back to partial
            session.execute(
                update(Order)
                .where(Order.id == order_id, Order.settlement_status != SettlementStatus.SETTLED.value)
                .values(settlement_status=status)
                .execution_options(synchronize_session=False)
            )
