"""
Courier delivery routes
Every transition returns {order, route?, earnings?}; retries of a transition
that already happened return 200 with ``idempotent: true``.
"""

import logging

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceContainer, get_services
from routes.schemas import AcceptIn, CompleteIn, ConfirmOrderIdIn, CourierActionIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/delivery/orders", tags=["delivery"])


@router.post("/{order_id}/accept")
def accept_order(order_id: str, body: AcceptIn, services: ServiceContainer = Depends(get_services)):
    return services.lifecycle.assign(order_id, body.courier_id, body.courier_location).to_dict()


@router.post("/{order_id}/reached-pickup")
def reached_pickup(order_id: str, body: CourierActionIn, services: ServiceContainer = Depends(get_services)):
    return services.lifecycle.confirm_reached_pickup(order_id, body.courier_id).to_dict()


@router.post("/{order_id}/confirm-order-id")
def confirm_order_id(order_id: str, body: ConfirmOrderIdIn, services: ServiceContainer = Depends(get_services)):
    result = services.lifecycle.confirm_order_id(
        order_id,
        body.courier_id,
        body.order_id,
        proof_image_url=body.proof_image_url,
        courier_location=body.courier_location,
    )
    return result.to_dict()


@router.post("/{order_id}/reached-drop")
def reached_drop(order_id: str, body: CourierActionIn, services: ServiceContainer = Depends(get_services)):
    return services.lifecycle.confirm_reached_drop(order_id, body.courier_id).to_dict()


@router.post("/{order_id}/complete")
def complete_delivery(order_id: str, body: CompleteIn, services: ServiceContainer = Depends(get_services)):
    result = services.lifecycle.complete_delivery(order_id, body.courier_id, body.rating, body.review)
    if result.settlement is not None and not result.settlement.settlement_complete:
        logger.warning(f"⚠️ DELIVERED_WITH_PARTIAL_SETTLEMENT: order={order_id}")
    return result.to_dict()


@router.post("/{order_id}/settlement/resume")
def resume_settlement(order_id: str, services: ServiceContainer = Depends(get_services)):
    result = services.settlement.resume(order_id)
    return {"success": True, "settlement": result.to_dict()}
