# app/modules/couriers/service.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.auth.permissions import Capability, ensure_capability, is_staff
from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.shared.database.models import Courier, CourierShift, Delivery, User
from .repository import CourierRepository
from .schemas import CourierCreate, CourierPositionUpdate, ShiftStartRequest
import logging

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> float:
    return float(value or 0)


def courier_to_dict(courier: Courier) -> Dict[str, Any]:
    return {
        "id": courier.id,
        "user_id": courier.user_id,
        "full_name": courier.full_name,
        "phone": courier.phone,
        "photo_url": courier.photo_url,
        "vehicle_type": courier.vehicle_type,
        "verification_status": courier.verification_status,
        "shift_status": courier.shift_status,
        "is_available": courier.is_available,
        "current_delivery_id": courier.current_delivery_id,
        "current_shift_id": courier.current_shift_id,
        "location": {
            "latitude": courier.current_latitude,
            "longitude": courier.current_longitude,
            "updated_at": _iso(courier.location_updated_at),
        } if courier.current_latitude is not None else None,
        "stats": courier_stats(courier),
        "balance": _money(courier.balance),
        "lifetime_earnings": _money(courier.lifetime_earnings),
    }


def courier_stats(courier: Courier) -> Dict[str, Any]:
    return {
        "total_deliveries": courier.total_deliveries,
        "completed_deliveries": courier.completed_deliveries,
        "cancelled_deliveries": courier.cancelled_deliveries,
        "completion_rate": round(courier.completion_rate or 0, 4),
        "average_rating": round(courier.average_rating or 0, 1),
        "total_ratings": courier.total_ratings,
        "total_earnings": _money(courier.total_earnings),
        "total_tips": _money(courier.total_tips),
    }


def shift_to_dict(shift: CourierShift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "status": shift.status,
        "started_at": _iso(shift.started_at),
        "ended_at": _iso(shift.ended_at),
        "breaks": shift.breaks or [],
        "on_break_since": _iso(shift.current_break_started_at),
        "total_break_minutes": shift.total_break_minutes,
        "deliveries_completed": shift.deliveries_completed,
        "deliveries_cancelled": shift.deliveries_cancelled,
        "distance_km": round(shift.distance_km or 0, 2),
        "earnings": {
            "delivery_fees": _money(shift.delivery_fees),
            "bonuses": _money(shift.bonuses),
            "tips": _money(shift.tips),
            "total": _money(shift.total_earnings),
        },
    }


def delivery_summary(delivery: Delivery) -> Dict[str, Any]:
    return {
        "id": delivery.id,
        "delivery_number": delivery.delivery_number,
        "status": delivery.status,
        "pickup_address": delivery.pickup_address,
        "delivery_address": delivery.delivery_address,
        "created_at": _iso(delivery.created_at),
        "delivered_at": _iso(delivery.actual_delivery_time),
        "distance_km": delivery.actual_distance_km or delivery.trip_distance_km,
        "earnings": delivery.earnings,
        "tip_amount": float(delivery.tip_amount) if delivery.tip_amount is not None else None,
        "rating": delivery.customer_rating,
    }


class CourierService:
    def __init__(self, db: Session, company_id: int):
        self.db = db
        self.company_id = company_id
        self.repository = CourierRepository(db)

    # ==================== PERFILES ====================

    def create_courier(self, data: CourierCreate, actor: User) -> Dict[str, Any]:
        """Perfil de repartidor para un usuario existente con rol 'courier'"""
        ensure_capability(actor, Capability.MANAGE_COURIERS)

        user = self.repository.get_user(data.user_id, self.company_id)
        if not user:
            raise NotFoundError("Usuario", data.user_id)
        if user.role != "courier":
            raise ValidationError("El usuario no tiene rol 'courier'", field="user_id")
        if self.repository.get_by_user_id(user.id):
            raise ConflictError("El usuario ya tiene perfil de repartidor", details={"user_id": user.id})

        courier = Courier(
            company_id=self.company_id,
            user_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=data.phone or user.phone,
            photo_url=data.photo_url,
            vehicle_type=data.vehicle_type,
            verification_status=data.verification_status,
            shift_status="offline",
            is_available=False,
            payout_account_id=data.payout_account_id,
        )
        with self.repository.transaction():
            self.db.add(courier)
        self.db.refresh(courier)

        logger.info(f"🛵 Repartidor {courier.id} creado para el usuario {user.id}")
        return {"success": True, "message": "Repartidor creado", "courier": courier_to_dict(courier)}

    def list_couriers(
        self,
        actor: User,
        shift_status: Optional[str] = None,
        verification_status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        if not is_staff(actor):
            raise AuthorizationError("Solo el personal puede listar repartidores")
        result = self.repository.list_couriers(
            self.company_id, shift_status=shift_status,
            verification_status=verification_status, skip=skip, limit=limit
        )
        couriers = [courier_to_dict(courier) for courier in result["items"]]
        return {
            "success": True,
            "message": f"{len(couriers)} repartidores",
            "couriers": couriers,
            "count": len(couriers),
            "total": result["total"],
        }

    def get_profile(self, courier: Courier) -> Dict[str, Any]:
        return {"success": True, "message": "Perfil de repartidor", "courier": courier_to_dict(courier)}

    def get_stats(self, courier_id: int, actor: User) -> Dict[str, Any]:
        courier = self.repository.get_by_id(courier_id, self.company_id)
        if not courier:
            raise NotFoundError("Repartidor", courier_id)
        if not is_staff(actor) and courier.user_id != actor.id:
            raise AuthorizationError("Solo puedes consultar tus propias estadísticas")

        shift = self.repository.get_open_shift(courier.id)
        return {
            "success": True,
            "message": "Estadísticas del repartidor",
            "courier_id": courier.id,
            "stats": courier_stats(courier),
            "current_shift": shift_to_dict(shift) if shift else None,
        }

    def update_position(self, courier: Courier, data: CourierPositionUpdate) -> Dict[str, Any]:
        """Posición del repartidor sin entrega en curso (alimenta la búsqueda por proximidad)"""
        now = datetime.now()
        with self.repository.transaction():
            self.repository.update_position(courier.id, data.latitude, data.longitude, now)
        self.db.refresh(courier)
        return {
            "success": True,
            "message": "Ubicación actualizada",
            "courier": courier_to_dict(courier),
        }

    def get_my_deliveries(self, courier: Courier, status: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        deliveries = self.repository.get_courier_deliveries(
            courier.id, statuses=[status] if status else None, limit=limit
        )
        items = [delivery_summary(delivery) for delivery in deliveries]
        return {"success": True, "message": f"{len(items)} entregas", "deliveries": items, "count": len(items)}

    # ==================== TURNOS ====================

    def _open_shift(self, courier: Courier) -> CourierShift:
        shift = self.repository.get_open_shift(courier.id)
        if not shift:
            raise ConflictError("No tienes un turno abierto", details={"courier_id": courier.id})
        return shift

    def _shift_response(self, courier: Courier, shift_id: int, message: str) -> Dict[str, Any]:
        self.db.refresh(courier)
        shift = self.repository.get_shift(shift_id)
        self.db.refresh(shift)
        return {
            "success": True,
            "message": message,
            "shift": shift_to_dict(shift),
            "courier_status": courier.shift_status,
        }

    def start_shift(self, courier: Courier, data: Optional[ShiftStartRequest] = None) -> Dict[str, Any]:
        """El repartidor verificado pasa a 'online' y disponible"""
        if not courier.is_verified:
            raise ValidationError("Solo los repartidores verificados pueden iniciar turno")
        if self.repository.get_open_shift(courier.id):
            raise ConflictError("Ya tienes un turno abierto", details={"courier_id": courier.id})

        now = datetime.now()
        with self.repository.transaction():
            shift = self.repository.add_shift(CourierShift(
                company_id=self.company_id,
                courier_id=courier.id,
                status="active",
                started_at=now,
                breaks=[],
                delivery_ids=[],
            ))
            values = {
                Courier.shift_status: "online",
                Courier.is_available: True,
                Courier.last_online_at: now,
                Courier.current_shift_id: shift.id,
            }
            if not self.repository.compare_and_set_shift_status(courier.id, ["offline"], values):
                raise ConflictError(
                    f"No se puede iniciar turno en estado '{courier.shift_status}'",
                    details={"courier_id": courier.id}
                )
            if data and data.latitude is not None and data.longitude is not None:
                self.repository.update_position(courier.id, data.latitude, data.longitude, now)
            shift_id = shift.id

        logger.info(f"🟢 Repartidor {courier.id} inicia turno {shift_id}")
        return self._shift_response(courier, shift_id, "Turno iniciado")

    @staticmethod
    def _close_break(shift: CourierShift, now: datetime) -> Dict[str, Any]:
        minutes = int(round((now - shift.current_break_started_at).total_seconds() / 60))
        breaks: List[Dict[str, Any]] = list(shift.breaks or [])
        breaks.append({
            "started_at": shift.current_break_started_at.isoformat(),
            "ended_at": now.isoformat(),
            "minutes": minutes,
        })
        return {"breaks": breaks, "minutes": minutes}

    def end_shift(self, courier: Courier) -> Dict[str, Any]:
        """Cierra el turno; rechazado con entrega en curso; cierra un descanso abierto"""
        shift = self._open_shift(courier)
        if courier.current_delivery_id is not None:
            raise ConflictError(
                "No puedes terminar el turno con una entrega en curso",
                details={"current_delivery_id": courier.current_delivery_id}
            )

        now = datetime.now()
        shift_values: Dict[Any, Any] = {
            CourierShift.status: "ended",
            CourierShift.ended_at: now,
            CourierShift.current_break_started_at: None,
        }
        if shift.status == "on_break" and shift.current_break_started_at:
            closed = self._close_break(shift, now)
            shift_values[CourierShift.breaks] = closed["breaks"]
            shift_values[CourierShift.total_break_minutes] = (shift.total_break_minutes or 0) + closed["minutes"]

        with self.repository.transaction():
            released = self.repository.compare_and_set_shift_status(
                courier.id,
                ["online", "on_break"],
                {
                    Courier.shift_status: "offline",
                    Courier.is_available: False,
                    Courier.current_shift_id: None,
                }
            )
            if not released:
                raise ConflictError(
                    "No puedes terminar el turno en el estado actual",
                    details={"courier_id": courier.id}
                )
            if not self.repository.update_shift(shift.id, ["active", "on_break"], shift_values):
                raise ConflictError("El turno ya estaba cerrado", details={"shift_id": shift.id})

        logger.info(f"🔴 Repartidor {courier.id} termina turno {shift.id}")
        return self._shift_response(courier, shift.id, "Turno terminado")

    def start_break(self, courier: Courier) -> Dict[str, Any]:
        """Solo en línea y sin entrega en curso"""
        shift = self._open_shift(courier)
        if shift.status != "active":
            raise ConflictError("Ya estás en descanso", details={"shift_id": shift.id})

        now = datetime.now()
        with self.repository.transaction():
            if not self.repository.compare_and_set_shift_status(
                courier.id, ["online"], {Courier.shift_status: "on_break", Courier.is_available: False}
            ):
                raise ConflictError(
                    "Solo puedes tomar un descanso estando en línea y sin entrega",
                    details={"shift_status": courier.shift_status}
                )
            if not self.repository.update_shift(
                shift.id, ["active"],
                {CourierShift.status: "on_break", CourierShift.current_break_started_at: now}
            ):
                raise ConflictError("El turno cambió durante la operación", details={"shift_id": shift.id})

        logger.info(f"☕ Repartidor {courier.id} inicia descanso")
        return self._shift_response(courier, shift.id, "Descanso iniciado")

    def end_break(self, courier: Courier) -> Dict[str, Any]:
        shift = self._open_shift(courier)
        if shift.status != "on_break" or not shift.current_break_started_at:
            raise ValidationError("No estás en descanso")

        now = datetime.now()
        closed = self._close_break(shift, now)
        with self.repository.transaction():
            if not self.repository.compare_and_set_shift_status(
                courier.id, ["on_break"], {Courier.shift_status: "online", Courier.is_available: True}
            ):
                raise ConflictError("El estado del repartidor cambió", details={"courier_id": courier.id})
            if not self.repository.update_shift(
                shift.id, ["on_break"],
                {
                    CourierShift.status: "active",
                    CourierShift.current_break_started_at: None,
                    CourierShift.breaks: closed["breaks"],
                    CourierShift.total_break_minutes: (shift.total_break_minutes or 0) + closed["minutes"],
                }
            ):
                raise ConflictError("El turno cambió durante la operación", details={"shift_id": shift.id})

        logger.info(f"▶️ Repartidor {courier.id} termina descanso ({closed['minutes']} min)")
        return self._shift_response(courier, shift.id, "Descanso terminado")

    def list_my_shifts(self, courier: Courier, limit: int = 20) -> Dict[str, Any]:
        shifts = [shift_to_dict(shift) for shift in self.repository.list_shifts(courier.id, limit)]
        return {"success": True, "message": f"{len(shifts)} turnos", "shifts": shifts, "count": len(shifts)}
