"""Request bodies for the delivery API"""

from decimal import Decimal
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

PaymentMethodLiteral = Literal["cash", "online"]
SellerStatusLiteral = Literal["preparing", "ready"]
CommissionTypeLiteral = Literal["amount", "percentage"]


class SellerIn(BaseModel):
    seller_id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    commission_type: CommissionTypeLiteral = "percentage"
    commission_value: Decimal = Decimal("10")


class CourierIn(BaseModel):
    courier_id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class OrderIn(BaseModel):
    order_id: str
    seller_id: str
    customer_id: str
    customer_latitude: float
    customer_longitude: float
    subtotal: Decimal
    discount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    payment_method: PaymentMethodLiteral = "online"
    notified_courier_ids: List[str] = Field(default_factory=list)


class PaymentConfirmationIn(BaseModel):
    method: PaymentMethodLiteral


class SellerStatusIn(BaseModel):
    status: SellerStatusLiteral


class NotifiedCouriersIn(BaseModel):
    courier_ids: List[str]


class CancelIn(BaseModel):
    reason: Optional[str] = None


class CourierActionIn(BaseModel):
    courier_id: str


class AcceptIn(CourierActionIn):
    courier_location: Optional[Tuple[float, float]] = None


class ConfirmOrderIdIn(CourierActionIn):
    order_id: str
    proof_image_url: Optional[str] = None
    courier_location: Optional[Tuple[float, float]] = None


class CompleteIn(CourierActionIn):
    rating: Optional[int] = None
    review: Optional[str] = None


class WithdrawalIn(BaseModel):
    amount: Decimal


class RejectWithdrawalIn(BaseModel):
    reason: Optional[str] = None


class CommissionRuleIn(BaseModel):
    type: CommissionTypeLiteral
    value: Decimal
    min_amount: Decimal = Decimal("0")
    max_amount: Optional[Decimal] = None
    priority: int = 0
    seller_id: Optional[str] = None
    name: Optional[str] = None
    active: bool = True


class CourierRuleIn(BaseModel):
    name: str
    min_distance: Decimal = Decimal("0")
    max_distance: Optional[Decimal] = None
    per_km_rate: Decimal
    base_payout: Decimal
    priority: int = 0
    active: bool = True


class SellerDefaultCommissionIn(BaseModel):
    type: CommissionTypeLiteral
    value: Decimal
