# app/modules/deliveries/serializers.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.shared.database.models import Courier, Delivery, DeliveryStatusHistory
from .state_machine import Assigned, allowed_next, courier_ref, ENGAGED_STATUSES


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def history_to_dict(entry: DeliveryStatusHistory, include_notes: bool = True) -> Dict[str, Any]:
    data = {"event": entry.event, "timestamp": _iso(entry.created_at)}
    if include_notes:
        data["note"] = entry.note
        data["actor_user_id"] = entry.actor_user_id
    return data


def courier_ref_to_dict(delivery: Delivery) -> Dict[str, Any]:
    ref = courier_ref(delivery.courier_id)
    if isinstance(ref, Assigned):
        return {"state": "assigned", "courier_id": ref.courier_id}
    return {"state": "unassigned"}


def courier_public_info(courier: Optional[Courier]) -> Optional[Dict[str, Any]]:
    if courier is None:
        return None
    return {
        "id": courier.id,
        "name": courier.first_name,
        "vehicle_type": courier.vehicle_type,
        "rating": round(courier.average_rating or 0, 1),
        "photo": courier.photo_url,
    }


def delivery_to_dict(delivery: Delivery, history: Optional[List[DeliveryStatusHistory]] = None) -> Dict[str, Any]:
    """Vista completa para personal, repartidor asignado y cliente dueño"""
    data = {
        "id": delivery.id,
        "delivery_number": delivery.delivery_number,
        "order_id": delivery.order_id,
        "restaurant_id": delivery.restaurant_id,
        "customer_id": delivery.customer_id,
        "courier": courier_ref_to_dict(delivery),
        "status": delivery.status,
        "previous_status": delivery.previous_status,
        "allowed_next": allowed_next(delivery.status),
        "is_priority": delivery.is_priority,
        "attempts": delivery.attempts,
        "pickup": {
            "address": delivery.pickup_address,
            "latitude": delivery.pickup_latitude,
            "longitude": delivery.pickup_longitude,
            "contact_name": delivery.pickup_contact_name,
            "contact_phone": delivery.pickup_contact_phone,
        },
        "destination": {
            "address": delivery.delivery_address,
            "latitude": delivery.delivery_latitude,
            "longitude": delivery.delivery_longitude,
            "instructions": delivery.delivery_instructions,
            "customer_name": delivery.customer_name,
            "customer_phone": delivery.customer_phone,
        },
        "distance": {
            "trip_km": delivery.trip_distance_km,
            "estimated_km": delivery.estimated_distance_km,
            "estimated_minutes": delivery.estimated_duration_minutes,
            "actual_km": delivery.actual_distance_km,
            "actual_minutes": delivery.actual_duration_minutes,
        },
        "timestamps": {
            "created_at": _iso(delivery.created_at),
            "assigned_at": _iso(delivery.assigned_at),
            "accepted_at": _iso(delivery.accepted_at),
            "arrived_restaurant_at": _iso(delivery.arrived_restaurant_at),
            "picked_up_at": _iso(delivery.actual_pickup_time),
            "arrived_customer_at": _iso(delivery.arrived_customer_at),
            "delivered_at": _iso(delivery.actual_delivery_time),
            "estimated_pickup_time": _iso(delivery.estimated_pickup_time),
            "estimated_delivery_time": _iso(delivery.estimated_delivery_time),
            "cancelled_at": _iso(delivery.cancelled_at),
        },
        "cancellation": {
            "cancelled_by": delivery.cancelled_by,
            "reason": delivery.cancellation_reason,
        } if delivery.cancelled_at else None,
        "current_location": {
            "latitude": delivery.current_latitude,
            "longitude": delivery.current_longitude,
            "updated_at": _iso(delivery.location_updated_at),
            "sequence": delivery.location_sequence,
        } if delivery.location_updated_at else None,
        "location_history_size": len(delivery.location_history or []),
        "earnings": delivery.earnings,
        "settled": delivery.settled_at is not None,
        "tip_amount": _money(delivery.tip_amount),
        "rating": {
            "value": delivery.customer_rating,
            "comment": delivery.customer_comment,
            "rated_at": _iso(delivery.rated_at),
        } if delivery.customer_rating else None,
        "proof_of_delivery": delivery.pod,
        "issues": delivery.issues or [],
    }
    if history is not None:
        data["status_history"] = [history_to_dict(entry) for entry in history]
    return data


def tracking_to_dict(
    delivery: Delivery,
    history: List[DeliveryStatusHistory],
    courier: Optional[Courier],
    eta: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Vista pública por código de seguimiento: sin notas internas ni datos de contacto"""
    location = None
    if delivery.status in ENGAGED_STATUSES and delivery.location_updated_at:
        location = {
            "latitude": delivery.current_latitude,
            "longitude": delivery.current_longitude,
            "updated_at": _iso(delivery.location_updated_at),
        }

    return {
        "tracking_code": delivery.delivery_number,
        "status": delivery.status,
        "is_priority": delivery.is_priority,
        "restaurant_address": delivery.pickup_address,
        "estimated_delivery_time": _iso(delivery.estimated_delivery_time),
        "delivered_at": _iso(delivery.actual_delivery_time),
        "courier": courier_public_info(courier),
        "current_location": location,
        "eta": eta,
        "history": [history_to_dict(entry, include_notes=False) for entry in history],
    }
