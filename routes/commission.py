"""Commission rule administration routes"""

import logging

from fastapi import APIRouter, Depends

from routes.dependencies import ServiceContainer, get_services
from routes.schemas import CommissionRuleIn, CourierRuleIn, SellerDefaultCommissionIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/commission", tags=["commission"])


@router.post("/rules", status_code=201)
def create_commission_rule(body: CommissionRuleIn, services: ServiceContainer = Depends(get_services)):
    rule = services.rules.create_seller_rule(
        commission_type=body.type,
        value=body.value,
        min_amount=body.min_amount,
        max_amount=body.max_amount,
        priority=body.priority,
        seller_id=body.seller_id,
        name=body.name,
        active=body.active,
    )
    return {"success": True, "rule_id": rule.id}


@router.post("/courier-rules", status_code=201)
def create_courier_rule(body: CourierRuleIn, services: ServiceContainer = Depends(get_services)):
    rule = services.rules.create_courier_rule(
        name=body.name,
        min_distance=body.min_distance,
        max_distance=body.max_distance,
        per_km_rate=body.per_km_rate,
        base_payout=body.base_payout,
        priority=body.priority,
        active=body.active,
    )
    return {"success": True, "rule_id": rule.id}


@router.get("/courier-rules/calculate")
def calculate_courier_earning(distance: float, services: ServiceContainer = Depends(get_services)):
    return {"success": True, "distance": distance, **services.rules.calculate_courier_earning(distance)}


@router.put("/sellers/{seller_id}/default")
def set_seller_default_commission(
    seller_id: str,
    body: SellerDefaultCommissionIn,
    services: ServiceContainer = Depends(get_services),
):
    seller = services.rules.set_seller_default(seller_id, body.type, body.value)
    return {
        "success": True,
        "seller_id": seller.id,
        "default_commission": {
            "type": seller.default_commission_type,
            "value": str(seller.default_commission_value),
        },
    }
