from decimal import Decimal

import pytest

from app.core.exceptions import AuthorizationError, ConflictError, ValidationError
from app.modules.deliveries.proof_service import ProofService, generate_otp
from app.modules.deliveries.schemas import AssignRequest, ProofOfDeliverySubmit, StatusUpdate
from app.modules.payouts.earnings_calculator import EarningsBreakdown, courier_credit, to_money
from app.shared.database.models import Courier, Delivery, Order

TO_ARRIVED = ["accepted", "arriving_restaurant", "at_restaurant", "picked_up", "in_transit", "arrived"]


@pytest.fixture
def proof_service(db, seed, realtime):
    return ProofService(db, seed.company.id, realtime)


async def _drive_to(delivery_service, seed, delivery_id, statuses, courier=None, user=None):
    courier = courier or seed.courier
    user = user or seed.rider_user
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=courier.id), seed.staff)
    for status in statuses:
        await delivery_service.update_status(delivery_id, StatusUpdate(status=status), user, courier)


async def _deliver(delivery_service, seed, delivery_id):
    await _drive_to(delivery_service, seed, delivery_id, TO_ARRIVED + ["delivered"])


def test_otp_is_four_digits():
    for _ in range(50):
        otp = generate_otp()
        assert len(otp) == 4
        assert 1000 <= int(otp) <= 9999


async def test_delivered_settles_courier_earnings(delivery_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)

    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert delivery.status == "delivered"
    assert delivery.settled_at is not None

    breakdown = EarningsBreakdown.from_dict(delivery.earnings)
    assert breakdown.total == (
        breakdown.base_fee + breakdown.distance_bonus + breakdown.wait_time_bonus
        + breakdown.peak_hour_bonus + breakdown.tip
    )

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert to_money(courier.balance) == courier_credit(breakdown, 0.80)
    assert to_money(courier.lifetime_earnings) == courier_credit(breakdown, 0.80)
    assert courier.completed_deliveries == 1
    assert courier.completion_rate == 1.0
    assert courier.current_delivery_id is None

    order = db.query(Order).filter(Order.id == seed.orders[0].id).one()
    assert order.delivery_status == "delivered"


async def test_tip_only_once(delivery_service, proof_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)
    balance_before = to_money(db.query(Courier).filter(Courier.id == seed.courier.id).one().balance)

    result = await proof_service.add_tip(delivery_id, 5, seed.customer)
    assert result["tip_amount"] == 5.0
    assert result["delivery"]["earnings"]["tip"] == 5.0

    with pytest.raises(ConflictError):
        await proof_service.add_tip(delivery_id, 2, seed.customer)

    db.expire_all()
    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert to_money(courier.balance) == balance_before + Decimal("5.00")
    assert to_money(courier.total_tips) == Decimal("5.00")


@pytest.mark.parametrize("amount", [0, -1, 100.01, 250, 100.004, 0.004, "NaN"])
async def test_tip_amount_out_of_range(delivery_service, proof_service, seed, new_delivery, amount):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)

    with pytest.raises(ValidationError):
        await proof_service.add_tip(delivery_id, amount, seed.customer)


async def test_tip_requires_delivered(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)

    with pytest.raises(ConflictError):
        await proof_service.add_tip(delivery_id, 3, seed.customer)


async def test_only_owning_customer_can_tip(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)

    with pytest.raises(AuthorizationError):
        await proof_service.add_tip(delivery_id, 3, seed.rider_user)


async def test_rating_average_over_courier_deliveries(delivery_service, proof_service, seed, new_delivery, db):
    first = await new_delivery(0)
    await _deliver(delivery_service, seed, first)
    second = await new_delivery(1)
    await _deliver(delivery_service, seed, second)

    await proof_service.rate_delivery(first, 5, "Genial", seed.customer)
    result = await proof_service.rate_delivery(second, 3, None, seed.customer)

    assert result["courier_rating"] == 4.0
    assert result["courier_total_ratings"] == 2
    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.average_rating == 4.0
    assert courier.total_ratings == 2


async def test_rating_only_once_and_in_range(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)

    for invalid in (0, 6, 4.5, True):
        with pytest.raises(ValidationError):
            await proof_service.rate_delivery(delivery_id, invalid, None, seed.customer)

    await proof_service.rate_delivery(delivery_id, 4, None, seed.customer)
    with pytest.raises(ConflictError):
        await proof_service.rate_delivery(delivery_id, 5, None, seed.customer)


async def test_high_value_order_requires_otp(delivery_service, proof_service, seed, new_delivery, db):
    db.query(Order).filter(Order.id == seed.orders[0].id).update({Order.total: Decimal("80.00")})
    db.commit()
    delivery_id = await new_delivery(0)
    await _drive_to(delivery_service, seed, delivery_id, TO_ARRIVED)

    requirements = proof_service.get_requirements(delivery_id, seed.rider_user, seed.courier)["requirements"]
    assert requirements["otp_required"] is True

    with pytest.raises(ValidationError):
        await delivery_service.update_status(
            delivery_id, StatusUpdate(status="delivered"), seed.rider_user, seed.courier
        )

    stored = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    wrong = "0000" if stored.otp_code != "0000" else "1111"
    with pytest.raises(ValidationError):
        await proof_service.submit_proof(
            delivery_id, ProofOfDeliverySubmit(type="otp", otp_code=wrong, complete=True),
            seed.rider_user, seed.courier
        )
    db.expire_all()
    stored = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert stored.status == "arrived"
    assert stored.pod["otp_verified"] is False

    result = await proof_service.submit_proof(
        delivery_id, ProofOfDeliverySubmit(type="otp", otp_code=stored.otp_code, complete=True),
        seed.rider_user, seed.courier
    )
    assert result["otp_verified"] is True
    assert result["delivery"]["status"] == "delivered"


async def test_contactless_requires_photo(delivery_service, proof_service, seed, new_delivery, db):
    db.query(Order).filter(Order.id == seed.orders[0].id).update(
        {Order.delivery_instructions: "Entrega sin contacto, dejar en la puerta"}
    )
    db.commit()
    delivery_id = await new_delivery(0)
    await _drive_to(delivery_service, seed, delivery_id, TO_ARRIVED)

    with pytest.raises(ValidationError):
        await proof_service.submit_proof(
            delivery_id, ProofOfDeliverySubmit(type="customer_confirm", complete=True),
            seed.rider_user, seed.courier
        )

    result = await proof_service.submit_proof(
        delivery_id,
        ProofOfDeliverySubmit(type="photo", photo_url="https://img.example/pod.jpg", complete=True),
        seed.rider_user, seed.courier
    )
    assert result["delivery"]["status"] == "delivered"
    assert result["pod"]["photo_url"] == "https://img.example/pod.jpg"


async def test_pod_not_allowed_before_pickup(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _drive_to(delivery_service, seed, delivery_id, ["accepted"])

    with pytest.raises(ConflictError):
        await proof_service.submit_proof(
            delivery_id, ProofOfDeliverySubmit(type="customer_confirm"), seed.rider_user, seed.courier
        )


async def test_customer_can_only_confirm_reception(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _drive_to(delivery_service, seed, delivery_id, TO_ARRIVED)

    with pytest.raises(ValidationError):
        await proof_service.submit_proof(
            delivery_id, ProofOfDeliverySubmit(type="photo", photo_url="https://img.example/x.jpg"),
            seed.customer
        )

    result = await proof_service.submit_proof(
        delivery_id, ProofOfDeliverySubmit(type="customer_confirm", complete=True), seed.customer
    )
    assert result["delivery"]["status"] == "delivered"
    assert result["pod"]["customer_confirmed_at"] is not None


async def test_regenerated_otp_changes_code(delivery_service, proof_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _drive_to(delivery_service, seed, delivery_id, ["accepted"])
    before = db.query(Delivery).filter(Delivery.id == delivery_id).one().otp_code

    codes = set()
    for _ in range(5):
        await proof_service.regenerate_otp(delivery_id, seed.rider_user, seed.courier)
        db.expire_all()
        codes.add(db.query(Delivery).filter(Delivery.id == delivery_id).one().otp_code)

    assert len(codes - {before}) >= 1


async def test_tip_at_upper_limit_is_accepted(delivery_service, proof_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _deliver(delivery_service, seed, delivery_id)

    result = await proof_service.add_tip(delivery_id, 100, seed.customer)
    assert result["tip_amount"] == 100.0
