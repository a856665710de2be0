"""
Settlement tests
Exactly-once wallet credits, COD cash custody, the platform commission record,
resumable partial settlements and delivered notifications.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from models import PlatformCommission, SettlementStep, WalletTransaction
from routes.dependencies import build_services
from services.commission_engine import round2
from services.settlement_orchestrator import FINANCIAL_STEPS, STEP_SELLER_CREDIT
from tests.fixtures.marketplace import (
    CUSTOMER_LOCATION, SELLER_ID, SELLER_LOCATION, deliver_order, place_order,
)
from utils.exceptions import NotFoundError, PreconditionFailedError
from utils.geo import haversine_km

ORDER_ID = "ORD-1001"
COURIER = "COURIER-1"


def balance(services, actor_type, actor_id):
    wallet = services.ledger.get_or_create_wallet(actor_type, actor_id)
    return services.ledger.get_wallet(wallet.id)


def payment_count(session_factory, order_id):
    with session_factory() as session:
        return session.execute(
            select(func.count(WalletTransaction.id)).where(
                WalletTransaction.order_id == order_id,
                WalletTransaction.transaction_type == "payment",
            )
        ).scalar_one()


class TestSettlementFigures:
    """6km delivery, food 500, 10% seller commission"""

    def test_wallets_credited(self, marketplace):
        place_order(marketplace, ORDER_ID)
        result = deliver_order(marketplace, ORDER_ID, COURIER, rating=4)

        assert result.settlement.settlement_complete, "Every financial step should complete"
        assert result.settlement.courier_earning == Decimal("20.00"), "10 + (6 - 4) * 5"
        assert result.settlement.seller_commission == Decimal("50.00")
        assert result.settlement.seller_payout == Decimal("450.00")
        assert result.earnings["courier_earning"] == "20.00"
        assert balance(marketplace, "courier", COURIER).balance == Decimal("20.00")
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00")
        assert result.order.settlement_status == "settled"

    def test_fees_and_tax_are_not_commissionable(self, marketplace):
        place_order(marketplace, ORDER_ID, discount=Decimal("100.00"))
        result = deliver_order(marketplace, ORDER_ID, COURIER)

        assert result.settlement.food_price == Decimal("400.00"), "Food price is subtotal minus discount"
        assert result.settlement.seller_payout == Decimal("360.00")

    def test_platform_commission_recorded_once(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID)
        deliver_order(marketplace, ORDER_ID, COURIER)
        marketplace.settlement.resume(ORDER_ID)

        with session_factory() as session:
            rows = session.execute(
                select(PlatformCommission).where(PlatformCommission.order_id == ORDER_ID)
            ).scalars().all()
        assert len(rows) == 1, "Exactly one commission record per order"
        snapshot = rows[0].snapshot()
        assert snapshot["seller_commission"] == "50.00"
        assert snapshot["courier_earning"] == "20.00"
        assert snapshot["distance_km"] == pytest.approx(6.0)

    def test_great_circle_distance_when_provider_fails(self, session_factory, publisher, scheduler, failing_provider):
        container = build_services(
            session_factory,
            routing_provider=failing_provider,
            publisher=publisher,
            scheduler=scheduler,
            synchronous_notifications=True,
        )
        try:
            container.intake.register_seller(
                SELLER_ID, "Spice Route Kitchen", *SELLER_LOCATION, "percentage", Decimal("10")
            )
            container.intake.register_courier(COURIER, "Courier One")
            place_order(container, ORDER_ID)
            result = deliver_order(container, ORDER_ID, COURIER)
        finally:
            container.shutdown()

        distance = round(haversine_km(*SELLER_LOCATION, *CUSTOMER_LOCATION), 3)
        expected = round2(Decimal("10") + (Decimal(str(distance)) - Decimal("4")) * Decimal("5"))
        assert result.settlement.distance_km == pytest.approx(distance)
        assert result.settlement.courier_earning == expected, "Payout follows the great-circle fallback"


class TestExactlyOnce:
    """Repeated or concurrent completion never double-credits"""

    def test_completion_replay(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID)
        deliver_order(marketplace, ORDER_ID, COURIER)
        replay = marketplace.lifecycle.complete_delivery(ORDER_ID, COURIER)

        assert replay.idempotent
        assert replay.settlement.courier_earning == Decimal("20.00"), "Replay reports the settled figures"
        assert replay.settlement.seller_payout == Decimal("450.00")
        assert payment_count(session_factory, ORDER_ID) == 2, "One courier and one seller payment"
        assert balance(marketplace, "courier", COURIER).balance == Decimal("20.00")

    def test_concurrent_completion(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID)
        lifecycle = marketplace.lifecycle
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)
        lifecycle.confirm_reached_drop(ORDER_ID, COURIER)

        barrier = threading.Barrier(2)

        def complete(_):
            barrier.wait()
            return lifecycle.complete_delivery(ORDER_ID, COURIER)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(complete, range(2)))

        assert sorted(r.idempotent for r in results) == [False, True], "One completion, one replay"
        assert payment_count(session_factory, ORDER_ID) == 2
        assert balance(marketplace, "courier", COURIER).balance == Decimal("20.00")
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00")

    def test_settle_rejects_undelivered_order(self, marketplace):
        place_order(marketplace, ORDER_ID)
        with pytest.raises(PreconditionFailedError):
            marketplace.settlement.settle(ORDER_ID)

    def test_unknown_order(self, marketplace):
        with pytest.raises(NotFoundError):
            marketplace.settlement.resume("ORD-404")


class TestCashOnDelivery:
    def test_cash_in_hand_tracks_total(self, marketplace):
        place_order(marketplace, ORDER_ID, payment_method="cash")
        result = deliver_order(marketplace, ORDER_ID, COURIER)

        wallet = balance(marketplace, "courier", COURIER)
        assert result.settlement.cash_collected == Decimal("570.00"), "Courier holds the full order total"
        assert wallet.cash_in_hand == Decimal("570.00")
        assert wallet.balance == Decimal("20.00"), "Cash custody does not touch the earnings balance"

    def test_cash_counted_once_across_resume(self, marketplace):
        place_order(marketplace, ORDER_ID, payment_method="cash")
        deliver_order(marketplace, ORDER_ID, COURIER)
        marketplace.settlement.resume(ORDER_ID)
        marketplace.settlement.resume(ORDER_ID)
        assert balance(marketplace, "courier", COURIER).cash_in_hand == Decimal("570.00")

    def test_online_order_collects_no_cash(self, marketplace):
        place_order(marketplace, ORDER_ID, payment_method="online")
        result = deliver_order(marketplace, ORDER_ID, COURIER)
        assert result.settlement.cash_collected is None
        assert balance(marketplace, "courier", COURIER).cash_in_hand == Decimal("0.00")


class TestPartialSettlement:
    """A failed step keeps earlier steps and resume finishes the rest"""

    def test_seller_step_failure_then_resume(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID, payment_method="cash")
        with patch.object(marketplace.rules, "resolve_for_seller", side_effect=RuntimeError("rules store offline")):
            result = deliver_order(marketplace, ORDER_ID, COURIER)

        assert result.order.status == "delivered", "Completion stands even when settlement is partial"
        assert not result.settlement.settlement_complete
        assert result.settlement.failed_step == STEP_SELLER_CREDIT
        assert result.order.settlement_status == "partial"
        assert balance(marketplace, "courier", COURIER).balance == Decimal("20.00"), "Courier step kept"
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("0.00")

        with session_factory() as session:
            failed = session.execute(
                select(SettlementStep).where(
                    SettlementStep.order_id == ORDER_ID, SettlementStep.step_name == STEP_SELLER_CREDIT
                )
            ).scalar_one()
        assert failed.status == "failed"
        assert "rules store offline" in failed.error_message

        resumed = marketplace.settlement.resume(ORDER_ID)
        assert resumed.settlement_complete
        assert resumed.completed_steps == FINANCIAL_STEPS
        assert balance(marketplace, "courier", COURIER).balance == Decimal("20.00"), "Courier not credited twice"
        assert balance(marketplace, "courier", COURIER).cash_in_hand == Decimal("570.00"), "Cash not counted twice"
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00")
        assert marketplace.intake.get_order(ORDER_ID).settlement_status == "settled"

    def test_concurrent_resumes_credit_seller_once(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID)
        with patch.object(marketplace.rules, "resolve_for_seller", side_effect=RuntimeError("rules store offline")):
            deliver_order(marketplace, ORDER_ID, COURIER)
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("0.00")

        resolve_for_seller = marketplace.rules.resolve_for_seller
        barrier = threading.Barrier(2, timeout=10)

        def resolve_together(*args, **kwargs):
            barrier.wait()
            return resolve_for_seller(*args, **kwargs)

        with patch.object(marketplace.rules, "resolve_for_seller", side_effect=resolve_together):
            with ThreadPoolExecutor(max_workers=2) as pool:
                results = list(pool.map(lambda _: marketplace.settlement.resume(ORDER_ID), range(2)))

        assert all(r.settlement_complete for r in results), f"Both resumes should report success: {results}"
        assert all(r.seller_payout == Decimal("450.00") for r in results)
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00"), "Seller credited once"
        assert payment_count(session_factory, ORDER_ID) == 2, "One courier and one seller payment"
        assert marketplace.intake.get_order(ORDER_ID).settlement_status == "settled"

        with session_factory() as session:
            steps = session.execute(
                select(SettlementStep).where(SettlementStep.order_id == ORDER_ID)
            ).scalars().all()
            commissions = session.execute(
                select(func.count(PlatformCommission.id)).where(PlatformCommission.order_id == ORDER_ID)
            ).scalar_one()
        assert {s.step_name: s.status for s in steps} == {name: "completed" for name in FINANCIAL_STEPS}
        assert commissions == 1

    def test_failure_never_downgrades_completed_step(self, marketplace, session_factory):
        place_order(marketplace, ORDER_ID)
        deliver_order(marketplace, ORDER_ID, COURIER)
        marketplace.settlement._record_failure(ORDER_ID, STEP_SELLER_CREDIT, "late failure from a losing run")

        with session_factory() as session:
            row = session.execute(
                select(SettlementStep).where(
                    SettlementStep.order_id == ORDER_ID, SettlementStep.step_name == STEP_SELLER_CREDIT
                )
            ).scalar_one()
        assert row.status == "completed", "A completed journal row is final"
        assert marketplace.settlement.describe(ORDER_ID).settlement_complete

    def test_duplicate_order_payment_rejected_by_storage(self, marketplace):
        place_order(marketplace, ORDER_ID)
        deliver_order(marketplace, ORDER_ID, COURIER)
        wallet = marketplace.ledger.get_or_create_wallet("seller", SELLER_ID)

        with pytest.raises(IntegrityError):
            marketplace.ledger.credit(wallet.id, Decimal("450"), "payment", order_id=ORDER_ID)
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00"), "Rolled back with the insert"

    def test_describe_reports_failed_step(self, marketplace):
        place_order(marketplace, ORDER_ID)
        with patch.object(marketplace.rules, "resolve_for_seller", side_effect=RuntimeError("boom")):
            deliver_order(marketplace, ORDER_ID, COURIER)

        described = marketplace.settlement.describe(ORDER_ID)
        assert described.failed_step == STEP_SELLER_CREDIT
        assert described.courier_earning == Decimal("20.00")
        assert described.seller_payout is None


class TestDeliveredNotifications:
    def test_seller_and_customer_notified(self, marketplace, publisher):
        place_order(marketplace, ORDER_ID)
        deliver_order(marketplace, ORDER_ID, COURIER)

        assert "order_delivered" in publisher.events(f"seller:{SELLER_ID}")
        assert "order_delivered" in publisher.events("customer:CUSTOMER-1")

    def test_publisher_failure_does_not_fail_completion(self, marketplace, publisher):
        place_order(marketplace, ORDER_ID)
        lifecycle = marketplace.lifecycle
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)

        publisher.should_fail = True
        result = lifecycle.complete_delivery(ORDER_ID, COURIER)

        assert result.order.status == "delivered"
        assert result.settlement.settlement_complete
        assert balance(marketplace, "seller", SELLER_ID).balance == Decimal("450.00")
