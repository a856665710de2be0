"""
Order lifecycle tests
Race-safe assignment, eligibility, phase transitions, idempotent replays,
the delayed order-id confirmation reminder and notification side effects.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from models import DeliveryPhase, OrderStatus
from services.route_estimator import METHOD_EXTERNAL
from tests.fixtures.marketplace import COURIER_IDS, deliver_order, place_order
from utils.delivery_state_mapper import DeliveryStateMapper
from utils.exceptions import ConflictError, NotFoundError, PreconditionFailedError, ValidationError

ORDER_ID = "ORD-1001"
COURIER = "COURIER-1"
OTHER_COURIER = "COURIER-2"


@pytest.fixture
def lifecycle(marketplace):
    return marketplace.lifecycle


@pytest.fixture
def order(marketplace):
    return place_order(marketplace, ORDER_ID, status="preparing")


class TestAssignment:
    """assign(order, courier, location)"""

    def test_assign_sets_courier_phase_and_route(self, lifecycle, order, routing_provider):
        result = lifecycle.assign(ORDER_ID, COURIER, courier_location=(12.98, 77.60))

        snapshot = result.order.snapshot()
        assert snapshot["courier_id"] == COURIER
        assert snapshot["delivery_state"]["current_phase"] == DeliveryPhase.EN_ROUTE_TO_PICKUP.value
        assert snapshot["delivery_state"]["status"] == "accepted", "Coarse status mirrors the phase"
        assert snapshot["delivery_state"]["accepted_at"] is not None
        assert result.route["method"] == METHOD_EXTERNAL
        assert routing_provider.calls[0][0] == (12.98, 77.60), "Pickup route starts at the courier location"
        assert result.earnings is not None and "commission" in result.earnings, "Estimated earnings are returned"
        assert not result.idempotent

    def test_assign_without_location_uses_seller(self, lifecycle, order, routing_provider):
        lifecycle.assign(ORDER_ID, COURIER)
        origin, destination, _ = routing_provider.calls[0]
        assert origin == destination, "Courier with no known location starts at the seller"

    def test_concurrent_assign_exactly_one_wins(self, lifecycle, order):
        """N couriers racing for one order: 1 success, N-1 conflicts"""
        barrier = threading.Barrier(len(COURIER_IDS))

        def attempt(courier_id):
            barrier.wait()
            try:
                lifecycle.assign(ORDER_ID, courier_id)
                return ("ok", courier_id)
            except ConflictError:
                return ("conflict", courier_id)

        with ThreadPoolExecutor(max_workers=len(COURIER_IDS)) as pool:
            outcomes = list(pool.map(attempt, COURIER_IDS))

        winners = [courier for status, courier in outcomes if status == "ok"]
        conflicts = [courier for status, courier in outcomes if status == "conflict"]
        assert len(winners) == 1, f"Exactly one courier should win, got {winners}"
        assert len(conflicts) == len(COURIER_IDS) - 1, "Every other courier should get a conflict"
        assert lifecycle._reload(ORDER_ID).courier_id == winners[0], "Stored courier is the winner"

    def test_second_courier_conflicts(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        with pytest.raises(ConflictError):
            lifecycle.assign(ORDER_ID, OTHER_COURIER)
        assert lifecycle._reload(ORDER_ID).courier_id == COURIER, "Courier reference is immutable once set"

    def test_same_courier_replay_is_idempotent(self, lifecycle, order):
        first = lifecycle.assign(ORDER_ID, COURIER)
        second = lifecycle.assign(ORDER_ID, COURIER)
        assert second.idempotent
        assert second.order.assigned_at == first.order.assigned_at, "Replay must not re-stamp assignment"

    def test_pending_order_requires_notification(self, marketplace, lifecycle):
        place_order(marketplace, ORDER_ID, status="pending")
        with pytest.raises(PreconditionFailedError):
            lifecycle.assign(ORDER_ID, COURIER)

        marketplace.intake.record_notified_couriers(ORDER_ID, [COURIER])
        result = lifecycle.assign(ORDER_ID, COURIER)
        assert result.order.courier_id == COURIER, "Notified courier may accept a pending order"

    def test_ready_order_open_to_any_courier(self, marketplace, lifecycle):
        place_order(marketplace, ORDER_ID, status="ready")
        result = lifecycle.assign(ORDER_ID, "COURIER-5")
        assert result.order.courier_id == "COURIER-5"

    def test_unknown_order_and_courier(self, lifecycle, order):
        with pytest.raises(NotFoundError):
            lifecycle.assign("ORD-404", COURIER)
        with pytest.raises(NotFoundError):
            lifecycle.assign(ORDER_ID, "COURIER-404")

    def test_cancelled_order_is_terminal(self, marketplace, lifecycle, order):
        marketplace.intake.cancel_order(ORDER_ID, "Customer changed mind")
        with pytest.raises(PreconditionFailedError):
            lifecycle.assign(ORDER_ID, COURIER)

    def test_invalid_courier_location(self, lifecycle, order):
        with pytest.raises(ValidationError):
            lifecycle.assign(ORDER_ID, COURIER, courier_location=(123.0, 10.0))

    def test_assignment_notifies_order_channel(self, lifecycle, order, publisher):
        lifecycle.assign(ORDER_ID, COURIER)
        assert "courier_assigned" in publisher.events(f"order:{ORDER_ID}")

    def test_earnings_estimate_uses_assignment_distance(self, lifecycle, order):
        result = lifecycle.assign(ORDER_ID, COURIER)
        distance = Decimal(result.earnings["breakdown"]["distance"])
        assert Decimal("5") < distance < Decimal("5.5"), "Seller to customer is about 5.2km"


class TestPickup:
    """confirm_reached_pickup and the delayed confirmation reminder"""

    def test_reached_pickup_schedules_reminder(self, lifecycle, order, scheduler):
        lifecycle.assign(ORDER_ID, COURIER)
        result = lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)

        assert result.order.delivery_phase == DeliveryPhase.AT_PICKUP.value
        assert result.order.reached_pickup_at is not None
        job_id = f"order-id-confirmation:{ORDER_ID}"
        assert job_id in scheduler.jobs, "Reminder should be scheduled"
        assert scheduler.jobs[job_id][0] == 10, "Reminder fires after the configured delay"

    def test_reminder_publishes_while_at_pickup(self, lifecycle, order, scheduler, publisher):
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)

        assert scheduler.run(f"order-id-confirmation:{ORDER_ID}") is True
        assert "request_order_id_confirmation" in publisher.events(f"delivery:{ORDER_ID}")

    def test_reminder_is_silent_after_order_moves_on(self, lifecycle, order, scheduler, publisher):
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)

        assert scheduler.run(f"order-id-confirmation:{ORDER_ID}") is False
        assert "request_order_id_confirmation" not in publisher.events(f"delivery:{ORDER_ID}")

    def test_replay_is_noop(self, lifecycle, order, scheduler):
        lifecycle.assign(ORDER_ID, COURIER)
        first = lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        scheduler.jobs.clear()

        replay = lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        assert replay.idempotent
        assert replay.order.reached_pickup_at == first.order.reached_pickup_at
        assert not scheduler.jobs, "Replay must not schedule another reminder"

    def test_scheduler_failure_does_not_fail_request(self, lifecycle, order, scheduler):
        scheduler.should_fail = True
        lifecycle.assign(ORDER_ID, COURIER)
        result = lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        assert result.order.delivery_phase == DeliveryPhase.AT_PICKUP.value

    def test_only_assigned_courier(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        with pytest.raises(PreconditionFailedError):
            lifecycle.confirm_reached_pickup(ORDER_ID, OTHER_COURIER)

    def test_unassigned_order(self, lifecycle, order):
        with pytest.raises(PreconditionFailedError):
            lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)


class TestConfirmOrderId:
    """Order id check at pickup, proof URL, seller -> customer route"""

    @pytest.fixture
    def at_pickup(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)

    def test_confirm_moves_out_for_delivery(self, lifecycle, at_pickup, publisher):
        result = lifecycle.confirm_order_id(
            ORDER_ID, COURIER, ORDER_ID, proof_image_url="https://cdn.example.com/proof/1.jpg"
        )

        assert result.order.delivery_phase == DeliveryPhase.EN_ROUTE_TO_DELIVERY.value
        assert result.order.status == OrderStatus.OUT_FOR_DELIVERY.value
        assert result.order.delivery_status == "order_confirmed"
        assert result.order.proof_image_url == "https://cdn.example.com/proof/1.jpg"
        assert result.route["distance"] == 6.0, "Delivery route comes from the provider"
        assert "courier_en_route" in publisher.events(f"order:{ORDER_ID}")

    def test_mismatched_id_rejected_without_mutation(self, lifecycle, at_pickup):
        with pytest.raises(ValidationError):
            lifecycle.confirm_order_id(ORDER_ID, COURIER, "ORD-9999")
        assert lifecycle._reload(ORDER_ID).delivery_phase == DeliveryPhase.AT_PICKUP.value

    def test_id_comparison_is_trimmed_and_case_insensitive(self, lifecycle, at_pickup):
        result = lifecycle.confirm_order_id(ORDER_ID, COURIER, "  ord-1001 ")
        assert result.order.delivery_phase == DeliveryPhase.EN_ROUTE_TO_DELIVERY.value

    @pytest.mark.parametrize("url", ["ftp://files.example.com/p.jpg", "not a url", "https://"])
    def test_malformed_proof_url(self, lifecycle, at_pickup, url):
        with pytest.raises(ValidationError):
            lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID, proof_image_url=url)

    def test_replay_returns_stored_route(self, lifecycle, at_pickup, routing_provider):
        first = lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)
        calls_before = len(routing_provider.calls)

        replay = lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)
        assert replay.idempotent
        assert replay.route == first.route
        assert len(routing_provider.calls) == calls_before, "Replay must not recompute the route"

    def test_legacy_confirmation_from_en_route_to_pickup(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        result = lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)
        assert result.order.delivery_phase == DeliveryPhase.EN_ROUTE_TO_DELIVERY.value

    def test_notification_failure_is_swallowed(self, lifecycle, at_pickup, publisher):
        publisher.should_fail = True
        result = lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)
        assert result.order.status == OrderStatus.OUT_FOR_DELIVERY.value


class TestDropAndCompletion:
    """confirm_reached_drop and complete_delivery"""

    @pytest.fixture
    def out_for_delivery(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)
        lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID)

    def test_reached_drop_before_pickup_confirmation(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        with pytest.raises(PreconditionFailedError):
            lifecycle.confirm_reached_drop(ORDER_ID, COURIER)

    def test_reached_drop_and_replay(self, lifecycle, out_for_delivery):
        first = lifecycle.confirm_reached_drop(ORDER_ID, COURIER)
        replay = lifecycle.confirm_reached_drop(ORDER_ID, COURIER)

        assert first.order.delivery_phase == DeliveryPhase.AT_DELIVERY.value
        assert replay.idempotent
        assert replay.order.reached_drop_at == first.order.reached_drop_at

    def test_complete_from_en_route_to_delivery(self, lifecycle, out_for_delivery):
        result = lifecycle.complete_delivery(ORDER_ID, COURIER, rating=5, review="  Quick and friendly  ")

        assert result.order.status == OrderStatus.DELIVERED.value
        assert result.order.delivery_phase == DeliveryPhase.COMPLETED.value
        assert result.order.delivery_status == "delivered"
        assert result.order.rating == 5
        assert result.order.review == "Quick and friendly", "Review is trimmed"
        assert result.settlement.settlement_complete

    @pytest.mark.parametrize("rating", [0, 6, 4.5, "5", True])
    def test_invalid_rating(self, lifecycle, out_for_delivery, rating):
        with pytest.raises(ValidationError):
            lifecycle.complete_delivery(ORDER_ID, COURIER, rating=rating)
        assert lifecycle._reload(ORDER_ID).status == OrderStatus.OUT_FOR_DELIVERY.value, "Nothing was mutated"

    def test_review_too_long(self, lifecycle, out_for_delivery):
        with pytest.raises(ValidationError):
            lifecycle.complete_delivery(ORDER_ID, COURIER, review="x" * 1001)

    def test_complete_before_pickup(self, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        with pytest.raises(PreconditionFailedError):
            lifecycle.complete_delivery(ORDER_ID, COURIER)

    def test_replays_after_delivery_do_not_touch_wallets(self, marketplace, lifecycle, order):
        deliver_order(marketplace, ORDER_ID, COURIER)
        courier_wallet = marketplace.ledger.get_or_create_wallet("courier", COURIER)
        seller_wallet = marketplace.ledger.get_or_create_wallet("seller", "SELLER-1")
        courier_balance = marketplace.ledger.get_wallet(courier_wallet.id).balance
        seller_balance = marketplace.ledger.get_wallet(seller_wallet.id).balance

        for replay in (
            lambda: lifecycle.confirm_reached_pickup(ORDER_ID, COURIER),
            lambda: lifecycle.confirm_order_id(ORDER_ID, COURIER, ORDER_ID),
            lambda: lifecycle.confirm_reached_drop(ORDER_ID, COURIER),
            lambda: lifecycle.complete_delivery(ORDER_ID, COURIER),
        ):
            assert replay().idempotent, "Replays after delivery succeed silently"

        assert marketplace.ledger.get_wallet(courier_wallet.id).balance == courier_balance
        assert marketplace.ledger.get_wallet(seller_wallet.id).balance == seller_balance

    def test_completion_replay_reports_earnings(self, marketplace, lifecycle, order):
        first = deliver_order(marketplace, ORDER_ID, COURIER)
        replay = lifecycle.complete_delivery(ORDER_ID, COURIER)

        assert replay.idempotent
        assert replay.earnings == first.earnings, "Replay carries the same earnings shape as the first call"
        assert replay.earnings["courier_earning"] == "20.00"

    def test_completion_replay_ignores_bad_rating(self, marketplace, lifecycle, order):
        deliver_order(marketplace, ORDER_ID, COURIER, rating=4)
        replay = lifecycle.complete_delivery(ORDER_ID, COURIER, rating=9)

        assert replay.idempotent, "A retry after delivery succeeds silently"
        assert replay.order.rating == 4, "The recorded rating is unchanged"

    def test_cancel_blocks_transitions(self, marketplace, lifecycle, order):
        lifecycle.assign(ORDER_ID, COURIER)
        marketplace.intake.cancel_order(ORDER_ID)
        with pytest.raises(PreconditionFailedError):
            lifecycle.confirm_reached_pickup(ORDER_ID, COURIER)


class TestDeliveryStateMapper:
    """Single phase with a mapping table to coarse and order status"""

    def test_coarse_status_table(self):
        expected = {
            DeliveryPhase.UNASSIGNED: None,
            DeliveryPhase.EN_ROUTE_TO_PICKUP: "accepted",
            DeliveryPhase.AT_PICKUP: "reached_pickup",
            DeliveryPhase.EN_ROUTE_TO_DELIVERY: "order_confirmed",
            DeliveryPhase.AT_DELIVERY: "order_confirmed",
            DeliveryPhase.COMPLETED: "delivered",
        }
        for phase, status in expected.items():
            assert DeliveryStateMapper.coarse_status(phase) == status, f"Wrong coarse status for {phase.value}"

    def test_phase_ordering(self):
        assert DeliveryStateMapper.has_reached("at_delivery", DeliveryPhase.AT_PICKUP)
        assert not DeliveryStateMapper.has_reached("at_pickup", DeliveryPhase.AT_DELIVERY)

    def test_out_for_delivery_allows_drop_and_completion(self):
        assert DeliveryStateMapper.can_enter("at_pickup", DeliveryPhase.COMPLETED, "out_for_delivery")
        assert not DeliveryStateMapper.can_enter("at_pickup", DeliveryPhase.COMPLETED, "preparing")

    def test_unknown_phase_treated_as_unassigned(self):
        assert DeliveryStateMapper.parse_phase("teleporting") == DeliveryPhase.UNASSIGNED
