"""
Delivery State Mapping
The delivery phase is the single source of truth for where an order is in the
delivery lifecycle. The coarse courier-facing status and the order-level status
are derived from it through the tables below.
"""

import logging
from typing import Dict, Optional, Set

from models import DeliveryPhase, DeliveryStatus, OrderStatus

logger = logging.getLogger(__name__)


class DeliveryStateMapper:
    """Phase ordering plus phase -> coarse status / order status mappings"""

    PHASE_ORDER = [
        DeliveryPhase.UNASSIGNED,
        DeliveryPhase.EN_ROUTE_TO_PICKUP,
        DeliveryPhase.AT_PICKUP,
        DeliveryPhase.EN_ROUTE_TO_DELIVERY,
        DeliveryPhase.AT_DELIVERY,
        DeliveryPhase.COMPLETED,
    ]

    PHASE_TO_COARSE_STATUS: Dict[DeliveryPhase, Optional[DeliveryStatus]] = {
        DeliveryPhase.UNASSIGNED: None,
        DeliveryPhase.EN_ROUTE_TO_PICKUP: DeliveryStatus.ACCEPTED,
        DeliveryPhase.AT_PICKUP: DeliveryStatus.REACHED_PICKUP,
        DeliveryPhase.EN_ROUTE_TO_DELIVERY: DeliveryStatus.ORDER_CONFIRMED,
        DeliveryPhase.AT_DELIVERY: DeliveryStatus.ORDER_CONFIRMED,
        DeliveryPhase.COMPLETED: DeliveryStatus.DELIVERED,
    }

    # Order status implied by a phase; None leaves the seller-driven status alone
    PHASE_TO_ORDER_STATUS: Dict[DeliveryPhase, Optional[OrderStatus]] = {
        DeliveryPhase.UNASSIGNED: None,
        DeliveryPhase.EN_ROUTE_TO_PICKUP: None,
        DeliveryPhase.AT_PICKUP: None,
        DeliveryPhase.EN_ROUTE_TO_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
        DeliveryPhase.AT_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
        DeliveryPhase.COMPLETED: OrderStatus.DELIVERED,
    }

    # Phases from which each target phase may be entered
    ALLOWED_PREDECESSORS: Dict[DeliveryPhase, Set[DeliveryPhase]] = {
        DeliveryPhase.EN_ROUTE_TO_PICKUP: {DeliveryPhase.UNASSIGNED},
        DeliveryPhase.AT_PICKUP: {DeliveryPhase.EN_ROUTE_TO_PICKUP},
        # Legacy clients confirm the order id straight from en route to pickup
        DeliveryPhase.EN_ROUTE_TO_DELIVERY: {DeliveryPhase.AT_PICKUP, DeliveryPhase.EN_ROUTE_TO_PICKUP},
        DeliveryPhase.AT_DELIVERY: {DeliveryPhase.EN_ROUTE_TO_DELIVERY},
        DeliveryPhase.COMPLETED: {DeliveryPhase.AT_DELIVERY, DeliveryPhase.EN_ROUTE_TO_DELIVERY},
    }

    @classmethod
    def parse_phase(cls, value) -> DeliveryPhase:
        if isinstance(value, DeliveryPhase):
            return value
        try:
            return DeliveryPhase(value or DeliveryPhase.UNASSIGNED.value)
        except ValueError:
            logger.error(f"❌ UNKNOWN_PHASE: {value!r}, treating as unassigned")
            return DeliveryPhase.UNASSIGNED

    @classmethod
    def rank(cls, phase) -> int:
        return cls.PHASE_ORDER.index(cls.parse_phase(phase))

    @classmethod
    def has_reached(cls, current, target) -> bool:
        """True when current is the target phase or any later phase"""
        return cls.rank(current) >= cls.rank(target)

    @classmethod
    def can_enter(cls, current, target, order_status: Optional[str] = None) -> bool:
        """
        Whether ``target`` may be entered from ``current``. Out-for-delivery
        orders may reach the drop point or complete regardless of the phase
        recorded, matching clients that skipped intermediate confirmations.
        """
        current_phase = cls.parse_phase(current)
        target_phase = cls.parse_phase(target)
        if current_phase in cls.ALLOWED_PREDECESSORS.get(target_phase, set()):
            return True
        if order_status == OrderStatus.OUT_FOR_DELIVERY.value and target_phase in (
            DeliveryPhase.AT_DELIVERY,
            DeliveryPhase.COMPLETED,
        ):
            return cls.rank(current_phase) >= cls.rank(DeliveryPhase.EN_ROUTE_TO_PICKUP)
        return False

    @classmethod
    def coarse_status(cls, phase) -> Optional[str]:
        status = cls.PHASE_TO_COARSE_STATUS[cls.parse_phase(phase)]
        return status.value if status else None

    @classmethod
    def order_status_for(cls, phase) -> Optional[str]:
        status = cls.PHASE_TO_ORDER_STATUS[cls.parse_phase(phase)]
        return status.value if status else None
