"""Marketplace seed helpers shared by the service and API tests"""

from decimal import Decimal

SELLER_ID = "SELLER-1"
SELLER_LOCATION = (12.9716, 77.5946)
CUSTOMER_LOCATION = (12.9352, 77.6245)
COURIER_IDS = ["COURIER-1", "COURIER-2", "COURIER-3", "COURIER-4", "COURIER-5"]


def place_order(services, order_id="ORD-1001", payment_method="online", status="preparing", **overrides):
    """Register a checkout order and move it to the requested seller status"""
    fields = dict(
        order_id=order_id,
        seller_id=SELLER_ID,
        customer_id="CUSTOMER-1",
        customer_latitude=CUSTOMER_LOCATION[0],
        customer_longitude=CUSTOMER_LOCATION[1],
        subtotal=Decimal("500.00"),
        discount=Decimal("0"),
        delivery_fee=Decimal("40.00"),
        platform_fee=Decimal("5.00"),
        tax=Decimal("25.00"),
        payment_method=payment_method,
    )
    fields.update(overrides)
    order = services.intake.register_order(**fields)
    if status in ("preparing", "ready"):
        services.intake.update_seller_status(order.id, "preparing")
    if status == "ready":
        services.intake.update_seller_status(order.id, "ready")
    return order


def deliver_order(services, order_id="ORD-1001", courier_id="COURIER-1", rating=None, review=None):
    """Drive an order through every phase and complete it"""
    lifecycle = services.lifecycle
    lifecycle.assign(order_id, courier_id)
    lifecycle.confirm_reached_pickup(order_id, courier_id)
    lifecycle.confirm_order_id(order_id, courier_id, order_id)
    lifecycle.confirm_reached_drop(order_id, courier_id)
    return lifecycle.complete_delivery(order_id, courier_id, rating=rating, review=review)
