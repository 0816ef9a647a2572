import pytest

from app.core.exceptions import AuthorizationError, ConflictError, UpstreamError
from app.modules.deliveries.schemas import AssignRequest, LocationUpdate, StatusUpdate
from app.modules.deliveries.tracking_service import TrackingService
from app.shared.database.models import Courier, Delivery
from app.shared.services.routing_client import RouteInfo
from tests.fakes import FakeRoutingClient

ROUTE_STATUSES = ["accepted", "arriving_restaurant", "at_restaurant", "picked_up", "in_transit"]


async def _assign(delivery_service, seed, delivery_id):
    await delivery_service.dispatch.assign(delivery_id, AssignRequest(courier_id=seed.courier.id), seed.staff)


async def _advance(delivery_service, seed, delivery_id, statuses):
    for status in statuses:
        await delivery_service.update_status(delivery_id, StatusUpdate(status=status), seed.rider_user, seed.courier)


def _location(lat=40.4200, lng=-3.7030, sequence=None):
    return LocationUpdate(latitude=lat, longitude=lng, sequence=sequence)


async def test_location_history_is_capped_and_trimmed(delivery_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    for i in range(500):
        result = await delivery_service.tracking.update_location(
            delivery_id, _location(40.4200 + i * 0.00001), seed.rider_user, seed.courier
        )
    assert result["history_size"] == 500

    result = await delivery_service.tracking.update_location(
        delivery_id, _location(40.4300), seed.rider_user, seed.courier
    )
    assert result["history_size"] == 300

    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert len(delivery.location_history) == 300
    assert delivery.location_history[-1]["latitude"] == 40.4300


async def test_location_updates_courier_position(delivery_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    await delivery_service.tracking.update_location(
        delivery_id, _location(40.4250, -3.7010), seed.rider_user, seed.courier
    )

    courier = db.query(Courier).filter(Courier.id == seed.courier.id).one()
    assert courier.current_latitude == 40.4250
    assert courier.current_longitude == -3.7010


async def test_stale_sequence_is_ignored(delivery_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    fresh = await delivery_service.tracking.update_location(
        delivery_id, _location(40.4250, sequence=5), seed.rider_user, seed.courier
    )
    stale = await delivery_service.tracking.update_location(
        delivery_id, _location(40.4100, sequence=3), seed.rider_user, seed.courier
    )

    assert fresh["accepted"] is True
    assert stale["accepted"] is False
    assert stale["stale"] is True

    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert delivery.current_latitude == 40.4250
    assert delivery.location_sequence == 5
    assert len(delivery.location_history) == 1


async def test_other_courier_cannot_report_location(delivery_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    with pytest.raises(AuthorizationError):
        await delivery_service.tracking.update_location(
            delivery_id, _location(), seed.far_rider_user, seed.far_courier
        )


async def test_location_rejected_after_delivery_closed(delivery_service, seed, new_delivery):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)
    await delivery_service.cancel_delivery(delivery_id, "Cancelada por el cliente", seed.staff)

    with pytest.raises(ConflictError):
        await delivery_service.tracking.update_location(delivery_id, _location(), seed.rider_user, seed.courier)


async def test_eta_not_available_for_pending_delivery(delivery_service, seed, new_delivery):
    delivery_id = await new_delivery(0)

    result = await delivery_service.tracking.get_eta(delivery_id, seed.staff)
    assert result["available"] is False
    assert result["reason"] == "not_trackable"


async def test_eta_without_any_location(delivery_service, seed, new_delivery, db):
    db.query(Courier).update({Courier.current_latitude: None, Courier.current_longitude: None})
    db.commit()

    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    result = await delivery_service.tracking.get_eta(delivery_id, seed.staff)
    assert result["available"] is False
    assert result["reason"] == "no_location"


async def test_eta_falls_back_to_straight_line(db, seed, realtime, delivery_service, new_delivery):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)
    await _advance(delivery_service, seed, delivery_id, ROUTE_STATUSES)
    await delivery_service.tracking.update_location(delivery_id, _location(), seed.rider_user, seed.courier)

    tracking = TrackingService(
        db, seed.company.id, realtime, FakeRoutingClient(error=UpstreamError("routing", "timeout"))
    )
    result = await tracking.get_eta(delivery_id, seed.customer)

    assert result["available"] is True
    eta = result["eta"]
    assert eta["degraded"] is True
    assert eta["source"] == "straight_line"
    assert eta["destination_type"] == "customer"
    assert eta["duration_minutes"] >= 1


async def test_eta_uses_route_and_prep_buffer_while_inbound(db, seed, realtime, delivery_service, new_delivery):
    delivery_id = await new_delivery(0)
    await _assign(delivery_service, seed, delivery_id)

    routing = FakeRoutingClient(route=RouteInfo(distance_km=1.2, duration_minutes=6, duration_in_traffic_minutes=7))
    tracking = TrackingService(db, seed.company.id, realtime, routing)
    result = await tracking.get_eta(delivery_id, seed.rider_user, seed.courier)

    eta = result["eta"]
    assert eta["degraded"] is False
    assert eta["destination_type"] == "restaurant"
    assert eta["duration_minutes"] == 7 + 5
    assert eta["traffic_condition"] == "moderate"
    assert routing.calls[0][1] == (seed.restaurant.latitude, seed.restaurant.longitude)

    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).one()
    assert delivery.estimated_pickup_time is not None


async def test_customer_of_other_delivery_cannot_read_eta(delivery_service, seed, new_delivery, db):
    delivery_id = await new_delivery(0)
    db.query(Delivery).filter(Delivery.id == delivery_id).update({Delivery.customer_id: seed.owner.id})
    db.commit()

    with pytest.raises(AuthorizationError):
        await delivery_service.tracking.get_eta(delivery_id, seed.customer)
