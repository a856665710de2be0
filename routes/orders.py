"""
Order intake routes
Checkout registration, payment signal, seller status and cancellation.
"""

import logging

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceContainer, get_services
from routes.schemas import (
    CancelIn, CourierIn, NotifiedCouriersIn, OrderIn, PaymentConfirmationIn, SellerIn, SellerStatusIn,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


@router.post("/sellers", status_code=201)
def register_seller(body: SellerIn, services: ServiceContainer = Depends(get_services)):
    seller = services.intake.register_seller(
        body.seller_id, body.name, body.latitude, body.longitude, body.commission_type, body.commission_value
    )
    return {"success": True, "seller_id": seller.id}


@router.post("/couriers", status_code=201)
def register_courier(body: CourierIn, services: ServiceContainer = Depends(get_services)):
    courier = services.intake.register_courier(body.courier_id, body.name, body.latitude, body.longitude)
    return {"success": True, "courier_id": courier.id}


@router.post("/orders", status_code=201)
def register_order(body: OrderIn, services: ServiceContainer = Depends(get_services)):
    order = services.intake.register_order(
        order_id=body.order_id,
        seller_id=body.seller_id,
        customer_id=body.customer_id,
        customer_latitude=body.customer_latitude,
        customer_longitude=body.customer_longitude,
        subtotal=body.subtotal,
        discount=body.discount,
        delivery_fee=body.delivery_fee,
        platform_fee=body.platform_fee,
        tax=body.tax,
        payment_method=body.payment_method,
        notified_courier_ids=body.notified_courier_ids,
    )
    return {"success": True, "order": order.snapshot()}


@router.get("/orders/{order_id}")
def get_order(order_id: str, services: ServiceContainer = Depends(get_services)):
    return {"success": True, "order": services.intake.get_order(order_id).snapshot()}


@router.post("/orders/{order_id}/payment-confirmation")
def confirm_payment(order_id: str, body: PaymentConfirmationIn, services: ServiceContainer = Depends(get_services)):
    order = services.intake.confirm_payment(order_id, body.method)
    return {"success": True, "order": order.snapshot()}


@router.post("/orders/{order_id}/status")
def update_seller_status(order_id: str, body: SellerStatusIn, services: ServiceContainer = Depends(get_services)):
    order = services.intake.update_seller_status(order_id, body.status)
    return {"success": True, "order": order.snapshot()}


@router.post("/orders/{order_id}/notified-couriers")
def record_notified_couriers(
    order_id: str, body: NotifiedCouriersIn, services: ServiceContainer = Depends(get_services)
):
    order = services.intake.record_notified_couriers(order_id, body.courier_ids)
    return {"success": True, "order": order.snapshot()}


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelIn, services: ServiceContainer = Depends(get_services)):
    order = services.intake.cancel_order(order_id, body.reason)
    return {"success": True, "order": order.snapshot()}
