"""
DeliveryBay Delivery Marketplace - Database Schema
==================================================

Schema for the delivery core:
- Orders with a single explicit delivery phase and route snapshots
- Per-actor wallets backed by an append-only transaction ledger
- Withdrawal requests with optimistic balance holds
- Seller commission rules and distance-keyed courier payout rules
- Platform commission records and the settlement step journal
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text, Float, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


MONEY = Numeric(12, 2)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Top-level order status visible to customers and sellers"""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryPhase(Enum):
    """Fine-grained delivery lifecycle, in order"""
    UNASSIGNED = "unassigned"
    EN_ROUTE_TO_PICKUP = "en_route_to_pickup"
    AT_PICKUP = "at_pickup"
    EN_ROUTE_TO_DELIVERY = "en_route_to_delivery"
    AT_DELIVERY = "at_delivery"
    COMPLETED = "completed"


class DeliveryStatus(Enum):
    """Coarse delivery status exposed to courier apps"""
    ACCEPTED = "accepted"
    REACHED_PICKUP = "reached_pickup"
    ORDER_CONFIRMED = "order_confirmed"
    DELIVERED = "delivered"


class PaymentMethod(Enum):
    CASH = "cash"
    ONLINE = "online"


class SettlementStatus(Enum):
    NOT_STARTED = "not_started"
    PARTIAL = "partial"
    SETTLED = "settled"


class ActorType(Enum):
    """Wallet owners"""
    COURIER = "courier"
    SELLER = "seller"


class TransactionType(Enum):
    PAYMENT = "payment"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    BONUS = "bonus"
    DEDUCTION = "deduction"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WithdrawalStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    PROCESSED = "Processed"


class CommissionType(Enum):
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


class SettlementStepStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# ACTORS
# ============================================================================

class Seller(Base):
    """Seller (restaurant/store) with pickup location and default commission"""
    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Default rule applied when none of the seller's bracket rules match
    default_commission_type: Mapped[str] = mapped_column(
        String(20), default=CommissionType.PERCENTAGE.value, nullable=False
    )
    default_commission_value: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("10"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Seller(id={self.id}, name={self.name})>"


class Courier(Base):
    """Delivery courier with last known location"""
    __tablename__ = "couriers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    last_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Courier(id={self.id}, name={self.name})>"


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """Customer order moving through the delivery lifecycle"""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, nullable=False)

    # Parties
    seller_id: Mapped[str] = mapped_column(String(64), ForeignKey("sellers.id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    customer_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Assignment - courier_id is only ever written by the conditional assignment update
    courier_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("couriers.id"), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notified_courier_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Delivery state
    delivery_phase: Mapped[str] = mapped_column(
        String(30), default=DeliveryPhase.UNASSIGNED.value, nullable=False
    )
    delivery_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    route_to_pickup: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    route_to_delivery: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    # Seller -> customer distance estimated when the courier accepted
    assignment_distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reached_pickup_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    order_id_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reached_drop_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    proof_image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # Pricing breakdown
    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    tax: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Payment signal from checkout
    payment_method: Mapped[str] = mapped_column(String(20), default=PaymentMethod.ONLINE.value, nullable=False)
    payment_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Feedback
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    review: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    settlement_status: Mapped[str] = mapped_column(
        String(20), default=SettlementStatus.NOT_STARTED.value, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_order_subtotal_positive"),
        CheckConstraint("discount >= 0", name="ck_order_discount_positive"),
        CheckConstraint("total >= 0", name="ck_order_total_positive"),
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_order_rating_range"),
        Index("ix_orders_status_phase", "status", "delivery_phase"),
    )

    @property
    def food_price(self) -> Decimal:
        """Commissionable amount: subtotal minus discount, never fees or tax"""
        return Decimal(str(self.subtotal)) - Decimal(str(self.discount or 0))

    def snapshot(self) -> dict:
        def _ts(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "status": self.status,
            "seller_id": self.seller_id,
            "customer_id": self.customer_id,
            "courier_id": self.courier_id,
            "assigned_at": _ts(self.assigned_at),
            "payment_method": self.payment_method,
            "payment_confirmed": self.payment_confirmed,
            "delivery_state": {
                "status": self.delivery_status,
                "current_phase": self.delivery_phase,
                "route_to_pickup": self.route_to_pickup,
                "route_to_delivery": self.route_to_delivery,
                "accepted_at": _ts(self.accepted_at),
                "reached_pickup_at": _ts(self.reached_pickup_at),
                "order_id_confirmed_at": _ts(self.order_id_confirmed_at),
                "reached_drop_at": _ts(self.reached_drop_at),
                "delivered_at": _ts(self.delivered_at),
            },
            "pricing": {
                "subtotal": str(self.subtotal),
                "discount": str(self.discount),
                "delivery_fee": str(self.delivery_fee),
                "platform_fee": str(self.platform_fee),
                "tax": str(self.tax),
                "total": str(self.total),
            },
            "proof_image_url": self.proof_image_url,
            "rating": self.rating,
            "review": self.review,
            "settlement_status": self.settlement_status,
        }

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, phase={self.delivery_phase}, courier={self.courier_id})>"


# ============================================================================
# WALLET LEDGER
# ============================================================================

class Wallet(Base):
    """Per-actor wallet with running balance fields"""
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    cumulative_earned: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    cumulative_withdrawn: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    # Physical cash custody for couriers (COD); never mixed into balance
    cash_in_hand: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("actor_type", "actor_id", name="uq_wallet_actor"),
        CheckConstraint("cash_in_hand >= 0", name="ck_wallet_cash_in_hand_positive"),
        CheckConstraint("cumulative_withdrawn >= 0", name="ck_wallet_withdrawn_positive"),
    )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "balance": str(self.balance),
            "cumulative_earned": str(self.cumulative_earned),
            "cumulative_withdrawn": str(self.cumulative_withdrawn),
            "cash_in_hand": str(self.cash_in_hand),
        }

    def __repr__(self):
        return f"<Wallet(id={self.id}, actor={self.actor_type}:{self.actor_id}, balance={self.balance})>"


class WalletTransaction(Base):
    """Append-only wallet ledger entry"""
    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value, nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_wallet_transaction_amount_positive"),
        CheckConstraint(
            "transaction_type IN ('payment', 'withdrawal', 'refund', 'bonus', 'deduction')",
            name="ck_wallet_transaction_type_valid",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_wallet_transaction_status_valid",
        ),
        Index("ix_wallet_transactions_order_type", "wallet_id", "order_id", "transaction_type"),
        # One live order payment per wallet
        Index(
            "uq_wallet_transactions_order_payment",
            "wallet_id",
            "order_id",
            unique=True,
            sqlite_where=text("transaction_type = 'payment' AND status IN ('pending', 'completed')"),
            postgresql_where=text("transaction_type = 'payment' AND status IN ('pending', 'completed')"),
        ),
    )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "type": self.transaction_type,
            "status": self.status,
            "order_id": self.order_id,
            "description": self.description,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return (
            f"<WalletTransaction(id={self.id}, wallet={self.wallet_id}, type={self.transaction_type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class WithdrawalRequest(Base):
    """Actor withdrawal request linked to a pending ledger entry"""
    __tablename__ = "withdrawal_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WithdrawalStatus.PENDING.value, nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("wallet_transactions.id"), nullable=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawal_amount_positive"),
        # At most one Pending request per wallet
        Index(
            "uq_withdrawal_one_pending_per_wallet",
            "wallet_id",
            unique=True,
            sqlite_where=text("status = 'Pending'"),
            postgresql_where=text("status = 'Pending'"),
        ),
    )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "status": self.status,
            "transaction_id": self.transaction_id,
            "rejection_reason": self.rejection_reason,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<WithdrawalRequest(id={self.id}, wallet={self.wallet_id}, amount={self.amount}, status={self.status})>"


# ============================================================================
# COMMISSION RULES
# ============================================================================

class CommissionRule(Base):
    """Seller commission bracket; seller_id NULL means platform-wide"""
    __tablename__ = "commission_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("sellers.id"), nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    commission_type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    min_bound: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    max_bound: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("commission_type IN ('amount', 'percentage')", name="ck_commission_rule_type_valid"),
        CheckConstraint("min_bound >= 0", name="ck_commission_rule_min_positive"),
    )

    def __repr__(self):
        return (
            f"<CommissionRule(id={self.id}, seller={self.seller_id}, {self.commission_type}={self.value}, "
            f"range=[{self.min_bound}, {self.max_bound}], priority={self.priority})>"
        )


class CourierPayoutRule(Base):
    """Distance-keyed courier payout bracket"""
    __tablename__ = "courier_payout_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_distance: Mapped[Decimal] = mapped_column(Numeric(10, 3), default=Decimal("0"), nullable=False)
    max_distance: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 3), nullable=True)
    base_payout: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    per_km_rate: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("min_distance >= 0", name="ck_courier_rule_min_positive"),
        CheckConstraint("base_payout >= 0", name="ck_courier_rule_base_positive"),
        CheckConstraint("per_km_rate >= 0", name="ck_courier_rule_rate_positive"),
    )

    def __repr__(self):
        return (
            f"<CourierPayoutRule(id={self.id}, name={self.name}, "
            f"range=[{self.min_distance}, {self.max_distance}], base={self.base_payout}, per_km={self.per_km_rate})>"
        )


# ============================================================================
# SETTLEMENT
# ============================================================================

class PlatformCommission(Base):
    """Immutable platform commission record, one per delivered order"""
    __tablename__ = "platform_commissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False, unique=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    courier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    food_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    seller_commission: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    courier_earning: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def snapshot(self) -> dict:
        return {
            "order_id": self.order_id,
            "seller_id": self.seller_id,
            "courier_id": self.courier_id,
            "food_price": str(self.food_price),
            "seller_commission": str(self.seller_commission),
            "courier_earning": str(self.courier_earning),
            "distance_km": self.distance_km,
        }

    def __repr__(self):
        return f"<PlatformCommission(order_id={self.order_id}, commission={self.seller_commission})>"


class SettlementStep(Base):
    """Settlement progress journal, one row per order and step"""
    __tablename__ = "settlement_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False)
    step_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    step_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "step_name", name="uq_settlement_step_order_step"),
        Index("ix_settlement_steps_status", "status"),
    )

    def __repr__(self):
        return f"<SettlementStep(order_id={self.order_id}, step_name={self.step_name}, status={self.status})>"
