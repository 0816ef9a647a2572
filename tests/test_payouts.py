from datetime import datetime
from decimal import Decimal

import pytest

from app.core.exceptions import ConflictError, UpstreamError, ValidationError
from app.modules.payouts.earnings_calculator import calculate_delivery_earnings, to_money
from app.modules.payouts.service import PayoutService, weekly_period
from app.shared.database.models import Courier, CourierPayout, Delivery
from tests.fakes import FakePaymentClient

PERIOD_END = datetime(2026, 10, 12)
OFF_PEAK = datetime(2026, 10, 6, 16, 0)


class FailingPaymentClient:
    async def transfer(self, *args, **kwargs):
        raise UpstreamError("payments", "timeout")


def _settled_delivery(db, seed, number, delivered_at, courier=None):
    """Entrega ya completada y liquidada: 3.00 base + 0.50 distancia = 3.50"""
    courier = courier or seed.courier
    earnings = calculate_delivery_earnings(3.00, 4.0, 0, 0, OFF_PEAK)
    delivery = Delivery(
        company_id=seed.company.id,
        delivery_number=f"DLV-20261006-{number:05d}",
        order_id=seed.orders[0].id,
        restaurant_id=seed.restaurant.id,
        customer_id=seed.customer.id,
        courier_id=courier.id,
        status="delivered",
        pickup_address="Calle Mayor 1",
        pickup_latitude=40.4168,
        pickup_longitude=-3.7038,
        delivery_address="Calle Luna 5",
        delivery_latitude=40.4300,
        delivery_longitude=-3.7000,
        actual_delivery_time=delivered_at,
        settled_at=delivered_at,
        earnings=earnings.to_dict(),
    )
    db.add(delivery)
    db.commit()
    return delivery


def _set_balance(db, courier, amount):
    db.query(Courier).filter(Courier.id == courier.id).update({Courier.balance: Decimal(amount)})
    db.commit()


def _balance(db, courier):
    db.expire_all()
    return to_money(db.query(Courier).filter(Courier.id == courier.id).one().balance)


@pytest.fixture
def week_of_deliveries(db, seed):
    first = _settled_delivery(db, seed, 1, datetime(2026, 10, 6, 12, 0))
    second = _settled_delivery(db, seed, 2, datetime(2026, 10, 8, 19, 0))
    next_week = _settled_delivery(db, seed, 3, datetime(2026, 10, 13, 10, 0))
    _set_balance(db, seed.courier, "8.40")
    return first, second, next_week


def test_weekly_period_is_previous_monday_to_monday():
    start, end = weekly_period(now=datetime(2026, 10, 15, 9, 30))
    assert start == datetime(2026, 10, 5)
    assert end == datetime(2026, 10, 12)


def test_weekly_payout_is_idempotent(db, seed, week_of_deliveries, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)

    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)
    again = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    assert payout is not None
    assert again is None
    assert db.query(CourierPayout).count() == 1

    first, second, next_week = week_of_deliveries
    assert sorted(payout.delivery_ids) == sorted([first.id, second.id])
    assert payout.delivery_count == 2
    assert to_money(payout.gross_amount) == Decimal("7.00")
    assert to_money(payout.net_amount) == Decimal("5.60")
    assert payout.breakdown["deductions"] == 1.40
    assert payout.status == "pending"

    db.expire_all()
    assert db.query(Delivery).filter(Delivery.id == next_week.id).one().payout_id is None
    assert db.query(Delivery).filter(Delivery.id == first.id).one().payout_id == payout.id


def test_no_eligible_deliveries_is_a_no_op(db, seed, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)
    assert service.create_weekly_payout(seed.courier.id, PERIOD_END) is None
    assert db.query(CourierPayout).count() == 0


async def test_paid_transfer_completes_and_debits_balance(db, seed, week_of_deliveries, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)
    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = await service.process_payout(payout.id)

    assert result["payout"]["status"] == "completed"
    assert result["payout"]["transaction_id"] == "tr_1"
    assert payment_client.transfers[0]["amount_cents"] == 560
    assert payment_client.transfers[0]["idempotency_key"] == f"{payout.payout_number}-0"
    assert _balance(db, seed.courier) == Decimal("2.80")

    with pytest.raises(ConflictError):
        await service.process_payout(payout.id)


async def test_failed_transfer_is_kept_for_retry(db, seed, week_of_deliveries):
    failing = PayoutService(db, seed.company.id, FakePaymentClient(status="failed", failure_reason="cuenta cerrada"))
    payout = failing.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = await failing.process_payout(payout.id)
    assert result["success"] is False
    assert result["payout"]["status"] == "failed"
    assert result["payout"]["failure_reason"] == "cuenta cerrada"
    assert result["payout"]["retry_count"] == 1
    assert _balance(db, seed.courier) == Decimal("8.40")

    paying = FakePaymentClient()
    retried = await PayoutService(db, seed.company.id, paying).retry_payout(payout.id)
    assert retried["payout"]["status"] == "completed"
    assert paying.transfers[0]["idempotency_key"] == f"{payout.payout_number}-1"


async def test_processor_timeout_marks_failed(db, seed, week_of_deliveries):
    service = PayoutService(db, seed.company.id, FailingPaymentClient())
    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = await service.process_payout(payout.id)
    assert result["payout"]["status"] == "failed"
    assert result["payout"]["failed_at"] is not None


async def test_retry_failed_payouts_job(db, seed, week_of_deliveries):
    payout = PayoutService(db, seed.company.id, FailingPaymentClient()).create_weekly_payout(seed.courier.id, PERIOD_END)
    await PayoutService(db, seed.company.id, FailingPaymentClient()).process_payout(payout.id)

    result = await PayoutService(db, seed.company.id, FakePaymentClient()).retry_failed_payouts()
    assert result["count"] == 1
    assert result["payouts"][0]["status"] == "completed"


async def test_pending_transfer_completed_by_webhook(db, seed, week_of_deliveries):
    service = PayoutService(db, seed.company.id, FakePaymentClient(status="pending"))
    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = await service.process_payout(payout.id)
    assert result["payout"]["status"] == "processing"
    assert _balance(db, seed.courier) == Decimal("8.40")

    webhook = PayoutService(db, company_id=None).apply_transfer_update("tr_1", "paid")
    assert webhook["payout"]["status"] == "completed"
    assert _balance(db, seed.courier) == Decimal("2.80")

    repeated = PayoutService(db, company_id=None).apply_transfer_update("tr_1", "paid")
    assert repeated["message"] == "Evento ya aplicado"
    assert _balance(db, seed.courier) == Decimal("2.80")


def test_cancel_releases_deliveries(db, seed, week_of_deliveries, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)
    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = service.cancel_payout(payout.id, "Importe en disputa")
    assert result["payout"]["status"] == "cancelled"

    db.expire_all()
    assert db.query(Delivery).filter(Delivery.payout_id == payout.id).count() == 0

    with pytest.raises(ConflictError):
        service.cancel_payout(payout.id)


def test_adjustment_moves_payout_and_balance(db, seed, week_of_deliveries, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)
    payout = service.create_weekly_payout(seed.courier.id, PERIOD_END)

    result = service.add_adjustment(payout.id, -1.00, "Pedido dañado")
    assert result["payout"]["net_amount"] == 4.60
    assert result["payout"]["breakdown"]["adjustments"] == -1.0
    assert _balance(db, seed.courier) == Decimal("7.40")

    with pytest.raises(ValidationError):
        service.add_adjustment(payout.id, -10.00, "Demasiado")


def test_summary_reports_open_payouts(db, seed, week_of_deliveries, payment_client):
    service = PayoutService(db, seed.company.id, payment_client)
    service.create_weekly_payout(seed.courier.id, PERIOD_END)

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    summary = service.get_payout_summary(courier)

    assert summary["balance"] == 8.40
    assert summary["pending_payouts"] == 5.60
    assert summary["available_for_instant"] == 2.80
    assert summary["last_payout"] is None


async def test_instant_payout_withdraws_available_balance(db, seed, payment_client):
    _settled_delivery(db, seed, 1, datetime(2026, 10, 6, 12, 0))
    _set_balance(db, seed.courier, "10.00")
    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()

    result = await PayoutService(db, seed.company.id, payment_client).request_instant_payout(courier)

    payout = result["payout"]
    assert payout["payout_type"] == "instant"
    assert payout["status"] == "completed"
    assert payout["fee"] == 0.99
    assert payout["net_amount"] == 9.01
    assert payment_client.transfers[0]["amount_cents"] == 901
    assert _balance(db, seed.courier) == Decimal("0.00")
    assert db.query(Delivery).filter(Delivery.payout_id.is_(None)).count() == 0


async def test_instant_payout_below_minimum(db, seed, payment_client):
    _set_balance(db, seed.courier, "3.00")
    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()

    with pytest.raises(ValidationError):
        await PayoutService(db, seed.company.id, payment_client).request_instant_payout(courier)


async def test_failed_payout_still_reserves_balance(db, seed, week_of_deliveries):
    failing = PayoutService(db, seed.company.id, FakePaymentClient(status="failed", failure_reason="cuenta cerrada"))
    payout = failing.create_weekly_payout(seed.courier.id, PERIOD_END)
    await failing.process_payout(payout.id)
    _set_balance(db, seed.courier, "12.00")

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    summary = failing.get_payout_summary(courier)
    assert summary["pending_payouts"] == 5.60
    assert summary["available_for_instant"] == 6.40

    paying = FakePaymentClient()
    instant = await PayoutService(db, seed.company.id, paying).request_instant_payout(courier)
    assert instant["payout"]["gross_amount"] == 6.40
    assert _balance(db, seed.courier) == Decimal("5.60")

    retried = await PayoutService(db, seed.company.id, paying).retry_failed_payouts()
    assert retried["payouts"][0]["status"] == "completed"
    assert [t["amount_cents"] for t in paying.transfers] == [541, 560]
    assert _balance(db, seed.courier) == Decimal("0.00")


async def test_instant_payout_refused_while_failed_payout_owes_balance(db, seed, week_of_deliveries):
    failing = PayoutService(db, seed.company.id, FailingPaymentClient())
    payout = failing.create_weekly_payout(seed.courier.id, PERIOD_END)
    await failing.process_payout(payout.id)

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    with pytest.raises(ValidationError):
        await PayoutService(db, seed.company.id, FakePaymentClient()).request_instant_payout(courier)
