import pytest

from app.core.exceptions import (
    AuthorizationError, ConflictError, NoCourierAvailableError, ValidationError
)
from app.modules.deliveries.schemas import AssignRequest, DeliveryCreate, StatusUpdate
from app.shared.database.models import Courier, Delivery, DeliveryStatusHistory, Order


def _take_couriers_offline(db):
    db.query(Courier).update({Courier.shift_status: "offline", Courier.is_available: False})
    db.commit()


async def test_create_delivery_copies_pickup_and_destination(delivery_service, seed, db):
    result = await delivery_service.create_delivery(DeliveryCreate(order_id=seed.orders[0].id), seed.staff)

    delivery = result["delivery"]
    assert delivery["status"] == "pending"
    assert delivery["delivery_number"].startswith("DLV-")
    assert delivery["courier"] == {"state": "unassigned"}
    assert delivery["pickup"]["address"] == "Calle Mayor 1"
    assert delivery["destination"]["address"] == "Calle Luna 5"
    assert [entry["event"] for entry in delivery["status_history"]] == ["created"]

    stored = db.query(Delivery).filter(Delivery.id == delivery["id"]).one()
    assert len(stored.otp_code) == 4
    assert stored.earnings["base_fee"] == 3.0

    order = db.query(Order).filter(Order.id == seed.orders[0].id).one()
    assert order.delivery_id == delivery["id"]
    assert order.delivery_status == "pending"


async def test_create_rejects_non_delivery_order(delivery_service, seed):
    with pytest.raises(ValidationError):
        await delivery_service.create_delivery(DeliveryCreate(order_id=seed.dine_in.id), seed.staff)


async def test_only_one_open_delivery_per_order(delivery_service, seed, new_delivery):
    await new_delivery(0)
    with pytest.raises(ConflictError):
        await delivery_service.create_delivery(DeliveryCreate(order_id=seed.orders[0].id), seed.staff)


async def test_courier_cannot_create_deliveries(delivery_service, seed):
    with pytest.raises(AuthorizationError):
        await delivery_service.create_delivery(DeliveryCreate(order_id=seed.orders[0].id), seed.rider_user)


async def test_auto_assign_picks_nearest_courier(delivery_service, seed, db):
    result = await delivery_service.create_delivery(
        DeliveryCreate(order_id=seed.orders[0].id, auto_assign=True), seed.staff
    )

    assert result["assignment"]["courier_id"] == seed.courier.id
    delivery = result["delivery"]
    assert delivery["status"] == "assigned"
    assert delivery["courier"] == {"state": "assigned", "courier_id": seed.courier.id}
    assert delivery["attempts"] == 1

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.current_delivery_id == delivery["id"]
    assert courier.shift_status == "on_delivery"
    assert courier.is_available is False

    order = db.query(Order).filter(Order.id == seed.orders[0].id).one()
    assert order.delivery_status == "assigned"
    assert order.driver_info["id"] == seed.courier.id


async def test_no_courier_in_radius_leaves_delivery_pending(delivery_service, seed, db):
    _take_couriers_offline(db)

    result = await delivery_service.create_delivery(
        DeliveryCreate(order_id=seed.orders[0].id, auto_assign=True), seed.staff
    )
    assert result["assignment"] is None
    assert result["delivery"]["status"] == "pending"

    with pytest.raises(NoCourierAvailableError) as exc_info:
        await delivery_service.dispatch.assign(
            result["delivery"]["id"], AssignRequest(auto_assign=True), seed.staff
        )
    assert exc_info.value.details["retryable"] is True

    delivery = db.query(Delivery).filter(Delivery.id == result["delivery"]["id"]).one()
    assert delivery.status == "pending"
    assert delivery.courier_id is None


async def test_busy_courier_cannot_be_assigned_twice(delivery_service, seed, new_delivery):
    first = await new_delivery(0)
    second = await new_delivery(1)

    await delivery_service.dispatch.assign(first, AssignRequest(courier_id=seed.courier.id), seed.staff)
    with pytest.raises(ConflictError):
        await delivery_service.dispatch.assign(second, AssignRequest(courier_id=seed.courier.id), seed.staff)


async def test_assigning_non_pending_delivery_conflicts(delivery_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=seed.courier.id), seed.staff)

    with pytest.raises(ConflictError):
        await delivery_service.dispatch.assign(
            delivery_id, AssignRequest(courier_id=seed.far_courier.id), seed.staff
        )


async def test_reject_returns_to_queue_and_excludes_courier(delivery_service, seed, db, new_delivery):
    delivery_id = await new_delivery(0)
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(auto_assign=True), seed.staff)

    result = await delivery_service.dispatch.reject(delivery_id, seed.rider_user, seed.courier, "Muy lejos")
    assert result["delivery"]["status"] == "pending"
    assert result["delivery"]["courier"] == {"state": "unassigned"}

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.current_delivery_id is None
    assert courier.is_available is True

    reassigned = await delivery_service.dispatch.assign(delivery_id, AssignRequest(auto_assign=True), seed.staff)
    assert reassigned["courier"]["id"] == seed.far_courier.id
    assert reassigned["delivery"]["attempts"] == 2

    events = [h.event for h in db.query(DeliveryStatusHistory).filter(
        DeliveryStatusHistory.delivery_id == delivery_id
    ).order_by(DeliveryStatusHistory.id)]
    assert events == ["created", "assigned", "rejected", "assigned"]


async def test_only_assigned_courier_can_accept(delivery_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=seed.courier.id), seed.staff)

    with pytest.raises(AuthorizationError):
        await delivery_service.dispatch.accept(delivery_id, seed.far_rider_user, seed.far_courier)

    result = await delivery_service.dispatch.accept(delivery_id, seed.rider_user, seed.courier)
    assert result["delivery"]["status"] == "accepted"
    assert result["delivery"]["timestamps"]["accepted_at"] is not None


async def test_cancel_releases_courier(delivery_service, seed, db, new_delivery):
    delivery_id = await new_delivery(0)
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=seed.courier.id), seed.staff)

    result = await delivery_service.cancel_delivery(delivery_id, "Cliente canceló", seed.staff)
    assert result["delivery"]["status"] == "cancelled"

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.current_delivery_id is None
    assert courier.cancelled_deliveries == 1
    assert courier.total_deliveries == 1

    with pytest.raises(ConflictError):
        await delivery_service.cancel_delivery(delivery_id, "Otra vez", seed.staff)


async def _fail_in_transit(delivery_service, seed, delivery_id):
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=seed.courier.id), seed.staff)
    for status in ["accepted", "arriving_restaurant", "at_restaurant", "picked_up", "in_transit", "failed"]:
        await delivery_service.update_status(delivery_id, StatusUpdate(status=status), seed.rider_user, seed.courier)


async def test_failed_delivery_releases_courier_and_counts_attempt(delivery_service, seed, db, new_delivery):
    delivery_id = await new_delivery(0)
    await _fail_in_transit(delivery_service, seed, delivery_id)

    db.expire_all()
    stored = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert stored.status == "failed"
    assert stored.courier_id == seed.courier.id

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.current_delivery_id is None
    assert courier.is_available is True
    assert courier.shift_status == "online"
    assert courier.total_deliveries == 1
    assert courier.completed_deliveries == 0
    assert courier.completion_rate == 0.0

    order = db.query(Order).filter(Order.id == seed.orders[0].id).one()
    assert order.delivery_status == "failed"


async def test_failed_delivery_back_to_pending_clears_courier(delivery_service, seed, db, new_delivery):
    delivery_id = await new_delivery(0)
    await _fail_in_transit(delivery_service, seed, delivery_id)

    with pytest.raises(AuthorizationError):
        await delivery_service.update_status(
            delivery_id, StatusUpdate(status="pending"), seed.rider_user, seed.courier
        )

    result = await delivery_service.update_status(delivery_id, StatusUpdate(status="pending"), seed.staff)
    delivery = result["delivery"]
    assert delivery["status"] == "pending"
    assert delivery["courier"] == {"state": "unassigned"}
    assert delivery["attempts"] == 1

    db.expire_all()
    order = db.query(Order).filter(Order.id == seed.orders[0].id).one()
    assert order.delivery_status == "pending"
    assert order.driver_info is None

    retried = await delivery_service.dispatch.assign(
        delivery_id, AssignRequest(courier_id=seed.far_courier.id), seed.staff
    )
    assert retried["delivery"]["attempts"] == 2
