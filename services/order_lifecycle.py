"""
Order Lifecycle Service
=======================

Owns courier assignment and the delivery phase transitions of a single order:

    unassigned -> en_route_to_pickup -> at_pickup -> en_route_to_delivery -> at_delivery -> completed

Assignment is the only operation that needs mutual exclusion between callers
(several couriers racing for the same order); it is one conditional UPDATE that
only succeeds while ``courier_id`` is still NULL. Every other transition is
performed by the assigned courier and is written as a compare-and-set on the
phase that was read, so duplicate or out-of-order retries either succeed
silently (target phase already reached) or fail with a typed error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlparse

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import managed_session
from jobs.delayed_jobs import DelayedJobScheduler
from models import Courier, DeliveryPhase, Order, OrderStatus, Seller
from services.commission_rules_service import CommissionRuleService
from services.notification_publisher import NotificationDispatcher, delivery_channel, order_channel
from services.route_estimator import RouteEstimate, RouteEstimator
from services.settlement_orchestrator import SettlementOrchestrator, SettlementResult
from utils.delivery_state_mapper import DeliveryStateMapper
from utils.exceptions import ConflictError, NotFoundError, PreconditionFailedError, ValidationError
from utils.geo import haversine_km, is_valid_coordinate

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.PREPARING.value,
    OrderStatus.READY.value,
)
# Orders in these statuses may be taken by any courier, notified or not
OPEN_FOR_ANY_COURIER = (OrderStatus.PREPARING.value, OrderStatus.READY.value)


@dataclass
class TransitionResult:
    order: Order
    route: Optional[dict] = None
    earnings: Optional[dict] = None
    idempotent: bool = False
    settlement: Optional[SettlementResult] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": True,
            "order": self.order.snapshot(),
            "route": self.route,
            "earnings": self.earnings,
            "idempotent": self.idempotent,
        }
        if self.settlement is not None:
            payload["settlement"] = self.settlement.to_dict()
        return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coordinate(value, field: str):
    """Normalise an optional (lat, lng) pair"""
    if value is None:
        return None
    try:
        lat, lng = value
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a [latitude, longitude] pair", {"field": field})
    if not is_valid_coordinate(lat, lng):
        raise ValidationError(f"{field} is not a valid coordinate", {"field": field})
    return float(lat), float(lng)


class OrderLifecycleService:
    """Assignment and phase transitions for delivery orders"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        route_estimator: Optional[RouteEstimator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        scheduler: Optional[DelayedJobScheduler] = None,
        settlement: Optional[SettlementOrchestrator] = None,
        rule_service: Optional[CommissionRuleService] = None,
        confirmation_delay_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.route_estimator = route_estimator or RouteEstimator()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.scheduler = scheduler or DelayedJobScheduler()
        self.rule_service = rule_service or CommissionRuleService(session_factory)
        self.settlement = settlement or SettlementOrchestrator(
            session_factory, rule_service=self.rule_service, dispatcher=self.dispatcher
        )
        if confirmation_delay_seconds is None:
            confirmation_delay_seconds = Config.ORDER_ID_CONFIRMATION_DELAY_SECONDS
        self.confirmation_delay_seconds = confirmation_delay_seconds

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(self, order_id: str, courier_id: str, courier_location: Optional[Sequence[float]] = None) -> TransitionResult:
        """
        Claim an order for a courier.

        Eligible when no courier is assigned and the order is preparing/ready,
        or the courier was notified about it. The claim itself is a single
        conditional UPDATE; losing the race is a definitive ConflictError.
        """
        location = _coordinate(courier_location, "courier_location")

        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            courier = session.get(Courier, courier_id)
            if courier is None:
                raise NotFoundError(f"Courier {courier_id} not found")
            self._ensure_open(order)

            if order.courier_id == courier_id:
                logger.info(f"🔁 ASSIGN_REPLAY: order={order_id} already assigned to courier={courier_id}")
                return TransitionResult(order=order, route=order.route_to_pickup, idempotent=True)
            if order.courier_id is not None:
                raise ConflictError(
                    f"Order {order_id} is already assigned to another courier",
                    {"order_id": order_id},
                )
            if not self._is_eligible(order, courier_id):
                raise PreconditionFailedError(
                    f"Order {order_id} is not available to courier {courier_id}",
                    {"status": order.status},
                )

            seller = session.get(Seller, order.seller_id)
            seller_location = self._seller_location(seller)
            customer_location = self._customer_location(order)
            fallback_location = (
                (courier.last_latitude, courier.last_longitude)
                if is_valid_coordinate(courier.last_latitude, courier.last_longitude)
                else None
            )

        # The claim runs in its own session so the UPDATE is the first statement of its transaction
        now = _utcnow()
        with managed_session(self.session_factory) as session:
            claimed = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.courier_id.is_(None),
                    Order.status.in_(ASSIGNABLE_STATUSES),
                    Order.delivery_phase == DeliveryPhase.UNASSIGNED.value,
                )
                .values(
                    courier_id=courier_id,
                    assigned_at=now,
                    accepted_at=now,
                    delivery_phase=DeliveryPhase.EN_ROUTE_TO_PICKUP.value,
                    delivery_status=DeliveryStateMapper.coarse_status(DeliveryPhase.EN_ROUTE_TO_PICKUP),
                )
                .execution_options(synchronize_session=False)
            ).rowcount

        if claimed == 0:
            current = self._reload(order_id)
            if current.courier_id == courier_id:
                logger.info(f"🔁 ASSIGN_REPLAY: order={order_id} claimed by the same courier concurrently")
                return TransitionResult(order=current, route=current.route_to_pickup, idempotent=True)
            if current.status == OrderStatus.CANCELLED.value:
                raise PreconditionFailedError(f"Order {order_id} was cancelled", {"status": current.status})
            logger.warning(f"⚔️ ASSIGN_CONFLICT: order={order_id} courier={courier_id} lost the race")
            raise ConflictError(
                f"Order {order_id} was already accepted by another courier",
                {"order_id": order_id},
            )

        logger.info(f"✅ ORDER_ASSIGNED: order={order_id} courier={courier_id}")

        origin = location or fallback_location or seller_location
        route = self._estimate(origin, seller_location, order_id, "pickup")
        assignment_distance = None
        if seller_location and customer_location:
            assignment_distance = haversine_km(*seller_location, *customer_location)

        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            order.route_to_pickup = route.to_snapshot() if route else None
            order.assignment_distance_km = assignment_distance
            if location is not None:
                courier = session.get(Courier, courier_id)
                courier.last_latitude, courier.last_longitude = location
                courier.location_updated_at = now

        earnings = None
        if assignment_distance is not None:
            earnings = self.rule_service.calculate_courier_earning(round(assignment_distance, 3))

        order = self._reload(order_id)
        self.dispatcher.dispatch(
            order_channel(order_id),
            "courier_assigned",
            {"order_id": order_id, "courier_id": courier_id, "route_to_pickup": order.route_to_pickup},
        )
        return TransitionResult(order=order, route=order.route_to_pickup, earnings=earnings)

    # ------------------------------------------------------------------
    # Pickup
    # ------------------------------------------------------------------

    def confirm_reached_pickup(self, order_id: str, courier_id: str) -> TransitionResult:
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            self._ensure_assigned_courier(order, courier_id)

        if DeliveryStateMapper.has_reached(order.delivery_phase, DeliveryPhase.AT_PICKUP):
            logger.info(f"🔁 REACHED_PICKUP_REPLAY: order={order_id} phase={order.delivery_phase}")
            return TransitionResult(order=order, route=order.route_to_pickup, idempotent=True)
        self._ensure_can_enter(order, DeliveryPhase.AT_PICKUP)

        applied = self._advance(
            order, courier_id, DeliveryPhase.AT_PICKUP, {"reached_pickup_at": _utcnow()}
        )
        order = self._reload(order_id)
        if not applied:
            return TransitionResult(order=order, route=order.route_to_pickup, idempotent=True)

        logger.info(f"📍 REACHED_PICKUP: order={order_id} courier={courier_id}")
        try:
            self.scheduler.schedule(
                f"order-id-confirmation:{order_id}",
                self.confirmation_delay_seconds,
                self.request_order_id_confirmation,
                {"order_id": order_id},
            )
        except Exception as e:
            logger.warning(f"⚠️ CONFIRMATION_REMINDER_NOT_SCHEDULED: order={order_id}: {e}")

        return TransitionResult(order=order, route=order.route_to_pickup)

    def request_order_id_confirmation(self, order_id: str) -> bool:
        """Delayed reminder; silent no-op once the order has moved past at_pickup"""
        with managed_session(self.session_factory) as session:
            order = session.get(Order, order_id)
            if order is None:
                return False
            phase = order.delivery_phase
            courier_id = order.courier_id
            status = order.status

        if phase != DeliveryPhase.AT_PICKUP.value or status == OrderStatus.CANCELLED.value:
            logger.debug(f"⏭️ CONFIRMATION_REMINDER_SKIPPED: order={order_id} phase={phase}")
            return False

        self.dispatcher.dispatch(
            delivery_channel(order_id),
            "request_order_id_confirmation",
            {"order_id": order_id, "courier_id": courier_id},
        )
        logger.info(f"📨 CONFIRMATION_REMINDER_SENT: order={order_id}")
        return True

    def confirm_order_id(
        self,
        order_id: str,
        courier_id: str,
        submitted_id: str,
        proof_image_url: Optional[str] = None,
        courier_location: Optional[Sequence[float]] = None,
    ) -> TransitionResult:
        """Courier confirms the order identifier at pickup and heads to the customer"""
        location = _coordinate(courier_location, "courier_location")

        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            self._ensure_assigned_courier(order, courier_id)
            seller = session.get(Seller, order.seller_id)
            courier = session.get(Courier, courier_id)

        if DeliveryStateMapper.has_reached(order.delivery_phase, DeliveryPhase.EN_ROUTE_TO_DELIVERY):
            logger.info(f"🔁 CONFIRM_ORDER_ID_REPLAY: order={order_id} phase={order.delivery_phase}")
            return TransitionResult(order=order, route=order.route_to_delivery, idempotent=True)
        self._ensure_can_enter(order, DeliveryPhase.EN_ROUTE_TO_DELIVERY)

        if not self.order_id_matches(order.id, submitted_id):
            raise ValidationError("Order ID does not match", {"field": "order_id"})
        proof_url = self.validate_proof_url(proof_image_url)

        courier_fallback = None
        if courier is not None and is_valid_coordinate(courier.last_latitude, courier.last_longitude):
            courier_fallback = (courier.last_latitude, courier.last_longitude)
        origin = self._seller_location(seller) or location or courier_fallback
        route = self._estimate(origin, self._customer_location(order), order_id, "delivery")

        values = {
            "order_id_confirmed_at": _utcnow(),
            "route_to_delivery": route.to_snapshot() if route else None,
        }
        if proof_url is not None:
            values["proof_image_url"] = proof_url

        applied = self._advance(order, courier_id, DeliveryPhase.EN_ROUTE_TO_DELIVERY, values)
        order = self._reload(order_id)
        if not applied:
            return TransitionResult(order=order, route=order.route_to_delivery, idempotent=True)

        logger.info(f"🚚 ORDER_ID_CONFIRMED: order={order_id} courier={courier_id} out for delivery")
        self.dispatcher.dispatch(
            order_channel(order_id),
            "courier_en_route",
            {
                "order_id": order_id,
                "courier_id": courier_id,
                "status": order.status,
                "eta_minutes": order.route_to_delivery.get("duration") if order.route_to_delivery else None,
            },
        )
        return TransitionResult(order=order, route=order.route_to_delivery)

    # ------------------------------------------------------------------
    # Drop-off and completion
    # ------------------------------------------------------------------

    def confirm_reached_drop(self, order_id: str, courier_id: str) -> TransitionResult:
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            self._ensure_assigned_courier(order, courier_id)

        if DeliveryStateMapper.has_reached(order.delivery_phase, DeliveryPhase.AT_DELIVERY):
            logger.info(f"🔁 REACHED_DROP_REPLAY: order={order_id} phase={order.delivery_phase}")
            return TransitionResult(order=order, route=order.route_to_delivery, idempotent=True)
        self._ensure_can_enter(order, DeliveryPhase.AT_DELIVERY)

        applied = self._advance(order, courier_id, DeliveryPhase.AT_DELIVERY, {"reached_drop_at": _utcnow()})
        order = self._reload(order_id)
        if applied:
            logger.info(f"📍 REACHED_DROP: order={order_id} courier={courier_id}")
        return TransitionResult(order=order, route=order.route_to_delivery, idempotent=not applied)

    def complete_delivery(
        self,
        order_id: str,
        courier_id: str,
        rating: Optional[int] = None,
        review: Optional[str] = None,
    ) -> TransitionResult:
        """
        Mark the order delivered and run the settlement.

        A replay on a delivered order returns the figures already settled and
        never credits a wallet again.
        """
        with managed_session(self.session_factory) as session:
            order = self._get_order(session, order_id)
            self._ensure_assigned_courier(order, courier_id)

        if order.status == OrderStatus.DELIVERED.value:
            logger.info(f"🔁 COMPLETE_REPLAY: order={order_id} already delivered, no wallet changes")
            return self._completed_result(order)

        rating_value = self.validate_rating(rating)
        review_value = self.validate_review(review)
        self._ensure_can_enter(order, DeliveryPhase.COMPLETED)

        with managed_session(self.session_factory) as session:
            completed = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.courier_id == courier_id,
                    Order.status != OrderStatus.DELIVERED.value,
                    Order.status != OrderStatus.CANCELLED.value,
                    Order.delivery_phase == order.delivery_phase,
                )
                .values(
                    status=OrderStatus.DELIVERED.value,
                    delivery_phase=DeliveryPhase.COMPLETED.value,
                    delivery_status=DeliveryStateMapper.coarse_status(DeliveryPhase.COMPLETED),
                    delivered_at=_utcnow(),
                    rating=rating_value,
                    review=review_value,
                )
                .execution_options(synchronize_session=False)
            ).rowcount

        if completed == 0:
            current = self._reload(order_id)
            if current.status == OrderStatus.DELIVERED.value:
                logger.info(f"🔁 COMPLETE_REPLAY: order={order_id} completed by a concurrent retry")
                return self._completed_result(current)
            self._ensure_open(current)
            raise ConflictError(
                f"Order {order_id} changed while completing; retry the request",
                {"phase": current.delivery_phase},
            )

        logger.info(f"🎉 ORDER_DELIVERED: order={order_id} courier={courier_id} rating={rating_value}")

        settlement = self.settlement.settle(order_id, notify=False)
        order = self._reload(order_id)
        result = TransitionResult(
            order=order,
            route=order.route_to_delivery,
            earnings=self._earnings_view(settlement),
            settlement=settlement,
        )
        self.settlement.notify_delivered(order, settlement)
        return result

    def _completed_result(self, order: Order) -> TransitionResult:
        """Replay view of a delivered order, built from the recorded settlement"""
        settlement = self.settlement.describe(order.id)
        return TransitionResult(
            order=order,
            route=order.route_to_delivery,
            earnings=self._earnings_view(settlement),
            idempotent=True,
            settlement=settlement,
        )

    @staticmethod
    def _earnings_view(settlement: SettlementResult) -> Dict[str, Any]:
        return {
            "courier_earning": str(settlement.courier_earning) if settlement.courier_earning is not None else None,
            "distance_km": round(settlement.distance_km, 3) if settlement.distance_km is not None else None,
        }

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def order_id_matches(order_id: str, submitted_id) -> bool:
        if submitted_id is None:
            return False
        return str(submitted_id).strip().lower() == str(order_id).strip().lower()

    @staticmethod
    def validate_proof_url(url: Optional[str]) -> Optional[str]:
        if url is None or str(url).strip() == "":
            return None
        candidate = str(url).strip()
        parsed = urlparse(candidate)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Proof image URL must be a valid http(s) URL", {"field": "proof_image_url"})
        return candidate

    @staticmethod
    def validate_rating(rating) -> Optional[int]:
        if rating is None:
            return None
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise ValidationError("Rating must be an integer between 1 and 5", {"field": "rating"})
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5", {"field": "rating"})
        return rating

    @staticmethod
    def validate_review(review) -> Optional[str]:
        if review is None:
            return None
        text = str(review).strip()
        if not text:
            return None
        if len(text) > Config.MAX_REVIEW_LENGTH:
            raise ValidationError(
                f"Review must be at most {Config.MAX_REVIEW_LENGTH} characters", {"field": "review"}
            )
        return text

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _get_order(session: Session, order_id: str) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def _reload(self, order_id: str) -> Order:
        with managed_session(self.session_factory) as session:
            return self._get_order(session, order_id)

    @staticmethod
    def _ensure_open(order: Order):
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.DELIVERED.value):
            raise PreconditionFailedError(
                f"Order {order.id} is {order.status}",
                {"status": order.status},
            )

    @staticmethod
    def _ensure_assigned_courier(order: Order, courier_id: str):
        if order.status == OrderStatus.CANCELLED.value:
            raise PreconditionFailedError(f"Order {order.id} is cancelled", {"status": order.status})
        if order.courier_id is None or order.courier_id != courier_id:
            raise PreconditionFailedError(
                f"Courier {courier_id} is not assigned to order {order.id}",
                {"courier_id": courier_id},
            )

    @staticmethod
    def _ensure_can_enter(order: Order, target: DeliveryPhase):
        if not DeliveryStateMapper.can_enter(order.delivery_phase, target, order.status):
            raise PreconditionFailedError(
                f"Cannot move order {order.id} from {order.delivery_phase} to {target.value}",
                {"phase": order.delivery_phase, "target": target.value},
            )

    @staticmethod
    def _is_eligible(order: Order, courier_id: str) -> bool:
        if order.status not in ASSIGNABLE_STATUSES:
            return False
        if order.status in OPEN_FOR_ANY_COURIER:
            return True
        return courier_id in (order.notified_courier_ids or [])

    def _advance(self, order: Order, courier_id: str, target: DeliveryPhase, values: Dict[str, Any]) -> bool:
        """
        Compare-and-set the phase read into ``order``. Returns False when a
        concurrent retry already moved the order to (or past) the target.
        """
        changes = dict(values)
        changes["delivery_phase"] = target.value
        changes["delivery_status"] = DeliveryStateMapper.coarse_status(target)
        order_status = DeliveryStateMapper.order_status_for(target)
        if order_status is not None:
            changes["status"] = order_status

        with managed_session(self.session_factory) as session:
            rowcount = session.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.courier_id == courier_id,
                    Order.status != OrderStatus.CANCELLED.value,
                    Order.delivery_phase == order.delivery_phase,
                )
                .values(**changes)
                .execution_options(synchronize_session=False)
            ).rowcount

        if rowcount:
            return True

        current = self._reload(order.id)
        self._ensure_assigned_courier(current, courier_id)
        if DeliveryStateMapper.has_reached(current.delivery_phase, target):
            logger.info(f"🔁 PHASE_ALREADY_REACHED: order={order.id} phase={current.delivery_phase}")
            return False
        raise ConflictError(
            f"Order {order.id} changed while moving to {target.value}; retry the request",
            {"phase": current.delivery_phase},
        )

    @staticmethod
    def _seller_location(seller: Optional[Seller]):
        if seller is not None and is_valid_coordinate(seller.latitude, seller.longitude):
            return seller.latitude, seller.longitude
        return None

    @staticmethod
    def _customer_location(order: Order):
        if is_valid_coordinate(order.customer_latitude, order.customer_longitude):
            return order.customer_latitude, order.customer_longitude
        return None

    def _estimate(self, origin, destination, order_id: str, leg: str) -> Optional[RouteEstimate]:
        if origin is None or destination is None:
            logger.warning(f"⚠️ ROUTE_SKIPPED: order={order_id} leg={leg} missing coordinates")
            return None
        estimate = self.route_estimator.estimate(origin[0], origin[1], destination[0], destination[1])
        logger.info(
            f"🗺️ ROUTE_CALCULATED: order={order_id} leg={leg} {estimate.distance_km:.2f}km "
            f"{estimate.duration_min:.1f}min via {estimate.method}"
        )
        return estimate
