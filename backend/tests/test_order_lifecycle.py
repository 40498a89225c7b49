from datetime import datetime, timedelta
from decimal import Decimal

from app.models.v3 import OrderStatus, VehicleStatus, TransactionType, PaymentStatus
from app.services import settlement, order_state

from helpers import fund, balance_of, ledger_sum, transactions_of, vehicle_status, order_count


async def _confirmed_order(db, world, promo_code=None, funds=54):
    await fund(db, world.customer.id, funds)
    result = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                   promo_code=promo_code, payment_method="WALLET")
    assert result.success, result.message
    return result.data.order.id


class TestBooking:
    async def test_book_without_promotion(self, db, world):
        result = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        assert result.success, result.message
        order = result.data.order
        assert order.status == OrderStatus.PENDING
        assert order.base_price == Decimal("40")
        assert order.deposit_amount == Decimal("4")
        assert order.discount_amount == Decimal("0")
        assert order.total_price == Decimal("40")
        assert len(order.order_code) == 6
        assert result.data.payment is None
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.RENTED
        assert [f.flow_type for f in order.flows] == ["created"]

    async def test_book_with_promotion_keeps_deposit_on_base(self, db, world):
        result = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                       promo_code="SAVE10")
        order = result.data.order
        assert order.discount_amount == Decimal("4")
        assert order.total_price == Decimal("36")
        assert order.deposit_amount == Decimal("4")
        assert order.promotion_id == world.promo.id

    async def test_book_with_wallet_confirms(self, db, world):
        order_id = await _confirmed_order(db, world, promo_code="SAVE10")
        order = await order_state.load_order(db, order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert await balance_of(db, world.customer.id) == Decimal("50")
        deposits = await transactions_of(db, order_id, TransactionType.DEPOSIT)
        assert [tx.amount for tx in deposits] == [Decimal("-4")]
        assert deposits[0].idempotency_key == f"order-{order_id}-DEPOSIT"
        assert [f.flow_type for f in order.flows] == ["created", "confirmed"]
        assert order.payments[0].status == PaymentStatus.COMPLETED

    async def test_book_with_wallet_and_no_money_rolls_back(self, db, world):
        result = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                       payment_method="WALLET")
        assert not result.success
        assert result.error == "insufficient_funds"
        assert result.status_code == 402
        assert await order_count(db) == 0
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE

    async def test_start_in_the_past(self, db, world):
        start = datetime.now() - timedelta(hours=1)
        result = await settlement.book(db, world.customer.id, world.vehicle.id, start, start + timedelta(hours=2))
        assert result.error == "validation_error"

    async def test_end_before_start(self, db, world):
        result = await settlement.book(db, world.customer.id, world.vehicle.id, world.end, world.start)
        assert result.error == "validation_error"
        assert await order_count(db) == 0

    async def test_unknown_promotion_fails_booking(self, db, world):
        result = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end,
                                       promo_code="NOPE")
        assert result.error == "not_found"
        assert await order_count(db) == 0
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE

    async def test_unknown_vehicle(self, db, world):
        result = await settlement.book(db, world.customer.id, 999, world.start, world.end)
        assert result.error == "not_found"

    async def test_unknown_customer(self, db, world):
        result = await settlement.book(db, 999, world.vehicle.id, world.start, world.end)
        assert result.error == "not_found"

    async def test_vehicle_already_booked(self, db, world):
        first = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        assert first.success
        second = await settlement.book(db, world.other.id, world.vehicle.id,
                                       world.start + timedelta(hours=1), world.end + timedelta(hours=1))
        assert second.error == "conflict"
        assert await order_count(db) == 1

    async def test_pay_deposit_later(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        await fund(db, world.customer.id, 10)
        result = await settlement.capture_deposit(db, booked.data.order.id, world.customer.id, "WALLET")
        assert result.success, result.message
        assert result.data.order.status == OrderStatus.CONFIRMED
        assert await balance_of(db, world.customer.id) == Decimal("6")

        again = await settlement.capture_deposit(db, booked.data.order.id, world.customer.id, "WALLET")
        assert again.error == "conflict"
        assert await balance_of(db, world.customer.id) == Decimal("6")

    async def test_pay_deposit_for_someone_else(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        await fund(db, world.other.id, 10)
        result = await settlement.capture_deposit(db, booked.data.order.id, world.other.id, "WALLET")
        assert result.error == "forbidden"
        assert await balance_of(db, world.other.id) == Decimal("10")


class TestFullRental:
    async def test_complete_with_wallet(self, db, world):
        order_id = await _confirmed_order(db, world, promo_code="SAVE10")

        started = await settlement.start(db, order_id, world.staff.id)
        assert started.success, started.message
        assert started.data.status == OrderStatus.ONGOING
        assert started.data.staff_id == world.staff.id

        result = await settlement.complete(db, order_id, world.staff.id, "WALLET")
        assert result.success, result.message
        outcome = result.data
        assert outcome.settlement.final_amount == Decimal("32")
        assert outcome.amount_charged == Decimal("32")
        assert outcome.order.status == OrderStatus.COMPLETED
        assert outcome.order.total_price == Decimal("36")
        assert outcome.order.return_time is not None
        assert outcome.order.return_time == outcome.order.completed_at
        assert abs(outcome.order.order_date - outcome.order.created_at) < timedelta(seconds=5)
        assert abs(outcome.order.completed_at - datetime.utcnow()) < timedelta(seconds=5)

        assert await balance_of(db, world.customer.id) == Decimal("18")
        assert await ledger_sum(db, world.customer.id) == Decimal("18")
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE
        payments = await transactions_of(db, order_id, TransactionType.PAYMENT)
        assert [tx.amount for tx in payments] == [Decimal("-32")]
        assert [f.flow_type for f in outcome.order.flows] == ["created", "confirmed", "started", "completed"]

    async def test_insufficient_funds_keeps_order_ongoing(self, db, world):
        order_id = await _confirmed_order(db, world, funds=4)
        await settlement.start(db, order_id, world.staff.id)

        result = await settlement.complete(db, order_id, world.staff.id, "WALLET")
        assert result.error == "insufficient_funds"

        reloaded = await order_state.load_order(db, order_id)
        assert reloaded.status == OrderStatus.ONGOING
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.RENTED
        assert await transactions_of(db, order_id, TransactionType.PAYMENT) == []
        assert await balance_of(db, world.customer.id) == Decimal("0")

        # 充值后可以再次结算
        await fund(db, world.customer.id, 40)
        retry = await settlement.complete(db, order_id, world.staff.id, "WALLET")
        assert retry.success, retry.message
        assert await balance_of(db, world.customer.id) == Decimal("4")

    async def test_complete_with_cash_by_staff(self, db, world):
        order_id = await _confirmed_order(db, world)
        await settlement.start(db, order_id, world.staff.id)
        result = await settlement.complete(db, order_id, world.staff.id, "CASH")
        assert result.success, result.message
        assert result.data.payment.method == "CASH"
        assert result.data.amount_charged == Decimal("36")
        assert await balance_of(db, world.customer.id) == Decimal("50")

    async def test_customer_cannot_return_vehicle(self, db, world):
        order_id = await _confirmed_order(db, world)
        await settlement.start(db, order_id, world.staff.id)
        for method in ("WALLET", "CASH"):
            result = await settlement.complete(db, order_id, world.customer.id, method)
            assert result.error == "forbidden"
        reloaded = await order_state.load_order(db, order_id)
        assert reloaded.status == OrderStatus.ONGOING
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.RENTED
        assert await transactions_of(db, order_id, TransactionType.PAYMENT) == []
        assert await balance_of(db, world.customer.id) == Decimal("50")


class TestCancel:
    async def test_cancel_confirmed_refunds_deposit(self, db, world):
        order_id = await _confirmed_order(db, world)
        assert await balance_of(db, world.customer.id) == Decimal("50")

        result = await settlement.cancel(db, order_id, world.customer.id, "行程取消")
        assert result.success, result.message
        assert result.data.previous_status == OrderStatus.CONFIRMED
        assert result.data.refunded_amount == Decimal("4")
        assert result.data.order.status == OrderStatus.CANCELED
        assert result.data.order.canceled_at is not None
        assert await balance_of(db, world.customer.id) == Decimal("54")
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE

        again = await settlement.cancel(db, order_id, world.customer.id)
        assert again.error == "conflict"
        assert await balance_of(db, world.customer.id) == Decimal("54")

    async def test_cancel_pending_has_no_refund(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        result = await settlement.cancel(db, booked.data.order.id, world.customer.id)
        assert result.success
        assert result.data.refunded_amount == Decimal("0")
        assert await transactions_of(db, booked.data.order.id) == []
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.AVAILABLE

    async def test_vehicle_can_be_booked_after_cancel(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        await settlement.cancel(db, booked.data.order.id, world.customer.id)
        result = await settlement.book(db, world.other.id, world.vehicle.id, world.start, world.end)
        assert result.success, result.message

    async def test_other_customer_cannot_cancel(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        order_id = booked.data.order.id
        result = await settlement.cancel(db, order_id, world.other.id)
        assert result.error == "forbidden"
        reloaded = await order_state.load_order(db, order_id)
        assert reloaded.status == OrderStatus.PENDING

    async def test_staff_can_cancel(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        result = await settlement.cancel(db, booked.data.order.id, world.staff.id)
        assert result.success

    async def test_ongoing_order_cannot_be_canceled(self, db, world):
        order_id = await _confirmed_order(db, world)
        await settlement.start(db, order_id, world.staff.id)
        result = await settlement.cancel(db, order_id, world.customer.id)
        assert result.error == "conflict"
        assert await vehicle_status(db, world.vehicle.id) == VehicleStatus.RENTED


class TestTransitions:
    async def test_start_requires_staff(self, db, world):
        order_id = await _confirmed_order(db, world)
        result = await settlement.start(db, order_id, world.customer.id)
        assert result.error == "forbidden"

    async def test_start_requires_confirmed(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        result = await settlement.start(db, booked.data.order.id, world.staff.id)
        assert result.error == "conflict"

    async def test_complete_requires_ongoing(self, db, world):
        order_id = await _confirmed_order(db, world)
        result = await settlement.complete(db, order_id, world.staff.id, "WALLET")
        assert result.error == "conflict"
        assert await balance_of(db, world.customer.id) == Decimal("50")

    async def test_completed_order_is_closed(self, db, world):
        order_id = await _confirmed_order(db, world)
        await settlement.start(db, order_id, world.staff.id)
        await settlement.complete(db, order_id, world.staff.id, "WALLET")

        for result in (
            await settlement.cancel(db, order_id, world.customer.id),
            await settlement.start(db, order_id, world.staff.id),
            await settlement.complete(db, order_id, world.staff.id, "WALLET"),
        ):
            assert result.error == "conflict"
        # 54 - 押金 4 - 尾款 36
        assert await balance_of(db, world.customer.id) == Decimal("14")

    async def test_unknown_order(self, db, world):
        result = await settlement.start(db, 999, world.staff.id)
        assert result.error == "not_found"


class TestLookup:
    async def test_get_by_code(self, db, world):
        booked = await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        code = booked.data.order.order_code
        order = await order_state.get_by_code(db, code.lower())
        assert order.id == booked.data.order.id

    async def test_list_orders_filters(self, db, world):
        await settlement.book(db, world.customer.id, world.vehicle.id, world.start, world.end)
        await settlement.book(db, world.other.id, world.spare.id, world.start, world.end)

        total, orders = await order_state.list_orders(db, customer_id=world.customer.id)
        assert total == 1
        assert orders[0].vehicle_id == world.vehicle.id

        total, _ = await order_state.list_orders(db, status=OrderStatus.PENDING)
        assert total == 2
        total, _ = await order_state.list_orders(db, status=OrderStatus.CONFIRMED)
        assert total == 0
