"""
Order Intake Service
Checkout-side writes that feed the delivery lifecycle: order registration,
the payment confirmation signal, seller preparation status, the list of
couriers notified about an order, and cancellation. Seller and courier
registration live here too since orders reference both.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import (
    CommissionType, Courier, DeliveryPhase, Order, OrderStatus, PaymentMethod, Seller, SettlementStatus,
)
from services.commission_rules_service import validate_commission_terms
from utils.exceptions import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from utils.geo import is_valid_coordinate

logger = logging.getLogger(__name__)

# Seller-driven status progression before a courier takes over
SELLER_STATUS_ORDER = [OrderStatus.PENDING.value, OrderStatus.PREPARING.value, OrderStatus.READY.value]
CANCELLABLE_STATUSES = set(SELLER_STATUS_ORDER)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _amount(value, field: str) -> Decimal:
    if value is None:
        return Decimal("0.00")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field})
    if not result.is_finite() or result < 0:
        raise ValidationError(f"{field} must be a non-negative number", {"field": field})
    return result.quantize(Decimal("0.01"))


def _require_id(value, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", {"field": field})
    return str(value).strip()


class OrderIntakeService:
    """Order creation and pre-delivery updates"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Actors
    # ------------------------------------------------------------------

    def register_seller(
        self,
        seller_id: str,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        commission_type: str = CommissionType.PERCENTAGE.value,
        commission_value=Decimal("10"),
    ) -> Seller:
        seller_id = _require_id(seller_id, "seller_id")
        if (latitude is not None or longitude is not None) and not is_valid_coordinate(latitude, longitude):
            raise ValidationError("Seller location is not a valid coordinate", {"field": "location"})
        value = validate_commission_terms(commission_type, commission_value)

        try:
            with managed_session(self.session_factory) as session:
                if session.get(Seller, seller_id) is not None:
                    raise ConflictError(f"Seller {seller_id} already exists")
                seller = Seller(
                    id=seller_id,
                    name=name or seller_id,
                    latitude=latitude,
                    longitude=longitude,
                    default_commission_type=commission_type,
                    default_commission_value=value,
                )
                session.add(seller)
        except IntegrityError:
            raise ConflictError(f"Seller {seller_id} already exists")

        logger.info(f"🏪 SELLER_REGISTERED: {seller_id} default {commission_type}={value}")
        return seller

    def register_courier(
        self,
        courier_id: str,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Courier:
        courier_id = _require_id(courier_id, "courier_id")
        has_location = latitude is not None or longitude is not None
        if has_location and not is_valid_coordinate(latitude, longitude):
            raise ValidationError("Courier location is not a valid coordinate", {"field": "location"})

        try:
            with managed_session(self.session_factory) as session:
                if session.get(Courier, courier_id) is not None:
                    raise ConflictError(f"Courier {courier_id} already exists")
                courier = Courier(
                    id=courier_id,
                    name=name or courier_id,
                    last_latitude=latitude,
                    last_longitude=longitude,
                    location_updated_at=_utcnow() if has_location else None,
                )
                session.add(courier)
        except IntegrityError:
            raise ConflictError(f"Courier {courier_id} already exists")

        logger.info(f"🛵 COURIER_REGISTERED: {courier_id}")
        return courier

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def register_order(
        self,
        order_id: str,
        seller_id: str,
        customer_id: str,
        customer_latitude: Optional[float],
        customer_longitude: Optional[float],
        subtotal,
        discount=0,
        delivery_fee=0,
        platform_fee=0,
        tax=0,
        payment_method: str = PaymentMethod.ONLINE.value,
        notified_courier_ids: Optional[Iterable[str]] = None,
    ) -> Order:
        """Create a pending order from checkout data"""
        order_id = _require_id(order_id, "order_id")
        customer_id = _require_id(customer_id, "customer_id")
        if not is_valid_coordinate(customer_latitude, customer_longitude):
            raise ValidationError("Customer location is not a valid coordinate", {"field": "customer_location"})
        self._validate_payment_method(payment_method)

        subtotal_dec = _amount(subtotal, "subtotal")
        discount_dec = _amount(discount, "discount")
        if discount_dec > subtotal_dec:
            raise ValidationError("Discount cannot exceed subtotal", {"field": "discount"})
        delivery_fee_dec = _amount(delivery_fee, "delivery_fee")
        platform_fee_dec = _amount(platform_fee, "platform_fee")
        tax_dec = _amount(tax, "tax")
        total = subtotal_dec - discount_dec + delivery_fee_dec + platform_fee_dec + tax_dec

        try:
            with managed_session(self.session_factory) as session:
                if session.get(Seller, seller_id) is None:
                    raise NotFoundError(f"Seller {seller_id} not found")
                if session.get(Order, order_id) is not None:
                    raise ConflictError(f"Order {order_id} already exists")
                order = Order(
                    id=order_id,
                    status=OrderStatus.PENDING.value,
                    seller_id=seller_id,
                    customer_id=customer_id,
                    customer_latitude=float(customer_latitude),
                    customer_longitude=float(customer_longitude),
                    notified_courier_ids=list(dict.fromkeys(notified_courier_ids or [])),
                    delivery_phase=DeliveryPhase.UNASSIGNED.value,
                    subtotal=subtotal_dec,
                    discount=discount_dec,
                    delivery_fee=delivery_fee_dec,
                    platform_fee=platform_fee_dec,
                    tax=tax_dec,
                    total=total,
                    payment_method=payment_method,
                    payment_confirmed=False,
                    settlement_status=SettlementStatus.NOT_STARTED.value,
                )
                session.add(order)
        except IntegrityError:
            raise ConflictError(f"Order {order_id} already exists")

        logger.info(
            f"🧾 ORDER_REGISTERED: {order_id} seller={seller_id} total={total} method={payment_method}"
        )
        return order

    def confirm_payment(self, order_id: str, method: str) -> Order:
        """Consume the checkout payment signal {order_id, method}"""
        self._validate_payment_method(method)
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            if order.status == OrderStatus.CANCELLED.value:
                raise PreconditionFailedError(f"Order {order_id} is cancelled", {"status": order.status})
            if order.payment_confirmed and order.payment_method == method:
                logger.info(f"🔁 PAYMENT_CONFIRMATION_REPLAY: {order_id} method={method}")
                return order
            order.payment_method = method
            order.payment_confirmed = True
            logger.info(f"💳 PAYMENT_CONFIRMED: {order_id} method={method}")
            return order

    def update_seller_status(self, order_id: str, status: str) -> Order:
        """Seller moves an order forward: pending -> preparing -> ready"""
        if status not in SELLER_STATUS_ORDER[1:]:
            raise ValidationError(
                "Seller status must be 'preparing' or 'ready'", {"field": "status"}
            )
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            if order.status not in SELLER_STATUS_ORDER:
                raise PreconditionFailedError(
                    f"Order {order_id} is {order.status}; seller status can no longer change",
                    {"status": order.status},
                )
            current_rank = SELLER_STATUS_ORDER.index(order.status)
            target_rank = SELLER_STATUS_ORDER.index(status)
            if current_rank >= target_rank:
                logger.info(f"🔁 SELLER_STATUS_REPLAY: {order_id} already {order.status}")
                return order
            order.status = status
            logger.info(f"👨‍🍳 SELLER_STATUS: {order_id} -> {status}")
            return order

    def record_notified_couriers(self, order_id: str, courier_ids: Iterable[str]) -> Order:
        courier_ids = [str(c).strip() for c in courier_ids if c is not None and str(c).strip()]
        if not courier_ids:
            raise ValidationError("At least one courier id is required", {"field": "courier_ids"})
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            merged = list(dict.fromkeys(list(order.notified_courier_ids or []) + courier_ids))
            # Reassign so the JSON column is flagged dirty
            order.notified_courier_ids = merged
            logger.info(f"📢 COURIERS_NOTIFIED: {order_id} count={len(merged)}")
            return order

    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Order:
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            if order.status == OrderStatus.CANCELLED.value:
                logger.info(f"🔁 CANCEL_REPLAY: {order_id}")
                return order
            if order.status not in CANCELLABLE_STATUSES:
                raise PreconditionFailedError(
                    f"Order {order_id} is {order.status} and can no longer be cancelled",
                    {"status": order.status},
                )
            order.status = OrderStatus.CANCELLED.value
            order.cancellation_reason = (reason or "").strip() or None
            order.cancelled_at = _utcnow()
            logger.warning(f"🚫 ORDER_CANCELLED: {order_id} reason={order.cancellation_reason}")
            return order

    def get_order(self, order_id: str) -> Order:
        with managed_session(self.session_factory) as session:
            return self._get_order(session, order_id)

    @staticmethod
    def _get_order(session, order_id: str) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    @staticmethod
    def _validate_payment_method(method: str):
        if method not in (PaymentMethod.CASH.value, PaymentMethod.ONLINE.value):
            raise ValidationError("Payment method must be 'cash' or 'online'", {"field": "method"})
