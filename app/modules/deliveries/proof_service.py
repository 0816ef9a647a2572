# app/modules/deliveries/proof_service.py
import secrets
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from fastapi import UploadFile
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.auth.permissions import (
    Capability, ensure_assigned_courier, ensure_capability, ensure_delivery_customer
)
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.shared.database.models import Courier, Delivery, Order, User
from app.shared.services.cloudinary_service import CloudinaryService
from app.shared.services.realtime import ConnectionManager, user_channel
from app.modules.payouts.earnings_calculator import EarningsBreakdown, to_money
from .lifecycle import DeliveryLifecycle
from .repository import DeliveryRepository
from .schemas import ProofOfDeliverySubmit
from .serializers import delivery_to_dict
from .state_machine import DeliveryStatus, HistoryEntry, TERMINAL_STATUSES
import logging

logger = logging.getLogger(__name__)

MAX_TIP = Decimal("100")
CONTACTLESS_KEYWORDS = ("contactless", "sin contacto", "no contact")

# Estados en los que el repartidor puede registrar la prueba de entrega
POD_STATUSES = frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED})


def generate_otp() -> str:
    """Código de entrega de 4 dígitos (1000-9999)"""
    return str(1000 + secrets.randbelow(9000))


def pod_requirements(delivery: Delivery, order: Optional[Order]) -> Dict[str, Any]:
    """Pruebas exigidas para cerrar la entrega"""
    instructions = ((order.delivery_instructions if order else None) or delivery.delivery_instructions or "").lower()
    contactless = any(keyword in instructions for keyword in CONTACTLESS_KEYWORDS)
    order_total = to_money(order.total) if order is not None and order.total is not None else Decimal("0")
    high_value = order_total >= to_money(settings.high_value_order_threshold)

    return {
        "photo_required": contactless,
        "otp_required": high_value,
        "signature_required": False,
        "customer_confirm_allowed": True,
        "contactless": contactless,
        "order_total": float(order_total),
        "high_value_threshold": settings.high_value_order_threshold,
    }


def ensure_completion_requirements(delivery: Delivery, order: Optional[Order]):
    """ValidationError si falta alguna prueba exigida para pasar a 'delivered'"""
    requirements = pod_requirements(delivery, order)
    pod = delivery.pod or {}

    if requirements["otp_required"] and not pod.get("otp_verified"):
        raise ValidationError(
            "Pedido de alto valor: se requiere verificar el código OTP antes de entregar",
            details={"requirements": requirements}
        )
    if requirements["photo_required"] and not pod.get("photo_url"):
        raise ValidationError(
            "Entrega sin contacto: se requiere foto de la entrega",
            details={"requirements": requirements}
        )


class ProofService:
    """Prueba de entrega, OTP, propinas y calificaciones"""

    def __init__(
        self,
        db: Session,
        company_id: int,
        realtime: Optional[ConnectionManager] = None,
        storage: Optional[CloudinaryService] = None
    ):
        self.db = db
        self.company_id = company_id
        self.repository = DeliveryRepository(db)
        self.lifecycle = DeliveryLifecycle(db, company_id, realtime)
        self._storage = storage

    @property
    def storage(self) -> CloudinaryService:
        if self._storage is None:
            self._storage = CloudinaryService()
        return self._storage

    def _get_delivery(self, delivery_id: int) -> Delivery:
        delivery = self.repository.get_delivery(delivery_id, self.company_id)
        if not delivery:
            raise NotFoundError("Entrega", delivery_id)
        return delivery

    # ==================== PRUEBA DE ENTREGA ====================

    def get_requirements(self, delivery_id: int, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        ensure_capability(actor, Capability.TRACK)
        delivery = self._get_delivery(delivery_id)
        ensure_assigned_courier(actor, delivery, courier)
        order = self.repository.get_order(delivery.order_id, self.company_id)
        return {
            "success": True,
            "message": "Requisitos de prueba de entrega",
            "requirements": pod_requirements(delivery, order),
        }

    def _authorize_pod(self, delivery: Delivery, data: ProofOfDeliverySubmit, actor: User, courier: Optional[Courier]):
        if actor.role == "customer":
            if data.type != "customer_confirm":
                raise ValidationError("El cliente solo puede confirmar la recepción", field="type")
            ensure_delivery_customer(actor, delivery)
            return
        ensure_capability(actor, Capability.UPDATE_STATUS)
        ensure_assigned_courier(actor, delivery, courier)

    def _gps_snapshot(self, delivery: Delivery, now: datetime) -> Dict[str, Any]:
        if delivery.current_latitude is None or delivery.current_longitude is None:
            return {"gps_coordinates": None, "gps_verified": False}
        max_age = timedelta(minutes=settings.pod_gps_max_age_minutes)
        fresh = delivery.location_updated_at is not None and now - delivery.location_updated_at <= max_age
        return {
            "gps_coordinates": {"latitude": delivery.current_latitude, "longitude": delivery.current_longitude},
            "gps_verified": fresh,
        }

    async def submit_proof(
        self,
        delivery_id: int,
        data: ProofOfDeliverySubmit,
        actor: User,
        courier: Optional[Courier] = None
    ) -> Dict[str, Any]:
        """
        Registrar la prueba de entrega.

        Para `otp` se compara el código y se guarda el resultado; un OTP
        incorrecto queda registrado pero impide cerrar la entrega.
        Con `complete=true` desde 'arrived' la entrega pasa a 'delivered'.
        """
        delivery = self._get_delivery(delivery_id)
        self._authorize_pod(delivery, data, actor, courier)

        if delivery.status not in POD_STATUSES:
            raise ConflictError(
                f"No se puede registrar la prueba en estado '{delivery.status}'",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )

        now = datetime.now()
        otp_verified = None
        if data.type == "otp":
            otp_verified = bool(delivery.otp_code) and secrets.compare_digest(
                str(data.otp_code), str(delivery.otp_code)
            )

        pod = {
            "type": data.type,
            "photo_url": data.photo_url,
            "signature_url": data.signature_url,
            "otp_verified": otp_verified,
            "recipient_name": data.recipient_name,
            "notes": data.notes,
            "submitted_by": actor.id,
            "completed_at": now.isoformat(),
            "customer_confirmed_at": now.isoformat() if data.type == "customer_confirm" else None,
        }
        pod.update(self._gps_snapshot(delivery, now))

        # Conservar una verificación OTP previa y la foto ya subida
        previous = delivery.pod or {}
        if otp_verified is None and previous.get("otp_verified"):
            pod["otp_verified"] = True
        if not pod["photo_url"] and previous.get("photo_url"):
            pod["photo_url"] = previous["photo_url"]

        with self.repository.transaction():
            written = self.repository.conditional_update(
                delivery.id,
                [Delivery.status == delivery.status],
                {"pod": pod}
            )
            if not written:
                raise ConflictError(
                    "La entrega cambió de estado durante la operación",
                    details={"delivery_id": delivery.id}
                )
            self.repository.add_history(delivery.id, HistoryEntry(
                event="pod_submitted",
                timestamp=now,
                note=f"Prueba de entrega: {data.type}" + (" (OTP incorrecto)" if otp_verified is False else ""),
                actor_user_id=actor.id
            ))

        self.repository.refresh(delivery)
        logger.info(f"📸 Prueba '{data.type}' registrada para {delivery.delivery_number}")

        if otp_verified is False:
            logger.warning(f"⚠️ OTP incorrecto en {delivery.delivery_number}")
            if data.complete:
                raise ValidationError(
                    "Código OTP incorrecto",
                    field="otp_code",
                    details={"delivery_id": delivery.id}
                )

        message = "Prueba de entrega registrada" if otp_verified is not False else "Código OTP incorrecto"
        if data.complete:
            order = self.repository.get_order(delivery.order_id, self.company_id)
            ensure_completion_requirements(delivery, order)
            await self.lifecycle.transition(
                delivery,
                DeliveryStatus.DELIVERED,
                actor_user_id=actor.id,
                note=f"Entregada con prueba '{data.type}'"
            )
            message = "Entrega completada"

        return {
            "success": True,
            "message": message,
            "pod": delivery.pod,
            "otp_verified": otp_verified,
            "delivery": delivery_to_dict(delivery),
        }

    async def upload_photo_proof(
        self,
        delivery_id: int,
        image_file: UploadFile,
        actor: User,
        courier: Optional[Courier] = None,
        recipient_name: Optional[str] = None,
        notes: Optional[str] = None,
        complete: bool = False
    ) -> Dict[str, Any]:
        """Subir la foto a Cloudinary y registrarla como prueba tipo 'photo'"""
        ensure_capability(actor, Capability.UPDATE_STATUS)
        delivery = self._get_delivery(delivery_id)
        ensure_assigned_courier(actor, delivery, courier)

        photo_url = await self.storage.upload_delivery_proof(
            image_file, delivery.delivery_number, actor.id, kind="photo"
        )
        return await self.submit_proof(
            delivery_id,
            ProofOfDeliverySubmit(
                type="photo",
                photo_url=photo_url,
                recipient_name=recipient_name,
                notes=notes,
                complete=complete
            ),
            actor,
            courier
        )

    async def regenerate_otp(self, delivery_id: int, actor: User, courier: Optional[Courier] = None) -> Dict[str, Any]:
        """Nuevo código; se envía solo al canal del cliente"""
        ensure_capability(actor, Capability.UPDATE_STATUS)
        delivery = self._get_delivery(delivery_id)
        ensure_assigned_courier(actor, delivery, courier)

        if delivery.status in TERMINAL_STATUSES:
            raise ConflictError(
                f"No se puede regenerar el código en estado '{delivery.status}'",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )

        otp = generate_otp()
        with self.repository.transaction():
            written = self.repository.conditional_update(
                delivery.id,
                [Delivery.status.notin_(list(TERMINAL_STATUSES))],
                {"otp_code": otp}
            )
            if not written:
                raise ConflictError("La entrega ya está cerrada", details={"delivery_id": delivery.id})

        self.repository.refresh(delivery)
        logger.info(f"🔑 OTP regenerado para {delivery.delivery_number}")

        if delivery.customer_id:
            await self.lifecycle.realtime.publish(
                user_channel(delivery.customer_id),
                "delivery:otp",
                {"delivery_id": delivery.id, "delivery_number": delivery.delivery_number, "otp_code": otp}
            )

        return {"success": True, "message": "Código de entrega regenerado y enviado al cliente"}

    # ==================== PROPINAS ====================

    async def add_tip(self, delivery_id: int, amount: Any, actor: User) -> Dict[str, Any]:
        """Propina única, solo sobre entregas 'delivered', importe en (0, 100]"""
        ensure_capability(actor, Capability.TIP)
        delivery = self._get_delivery(delivery_id)
        ensure_delivery_customer(actor, delivery)

        try:
            requested = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Importe de propina inválido", field="amount")
        if not requested.is_finite():
            raise ValidationError("Importe de propina inválido", field="amount")

        # El rango se comprueba antes de redondear: 100.004 no puede quedar en 100.00
        tip = to_money(requested)
        if requested <= 0 or requested > MAX_TIP or tip <= 0:
            raise ValidationError(
                f"La propina debe ser mayor que 0 y como máximo {MAX_TIP}",
                field="amount",
                details={"amount": str(requested)}
            )

        if delivery.status != DeliveryStatus.DELIVERED:
            raise ConflictError(
                "Solo se puede dar propina a entregas completadas",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )
        if delivery.tip_amount is not None:
            raise ConflictError("Esta entrega ya tiene propina", details={"delivery_id": delivery.id})

        now = datetime.now()
        values: Dict[str, Any] = {"tip_amount": tip, "tip_added_at": now}
        if delivery.earnings:
            values["earnings"] = EarningsBreakdown.from_dict(delivery.earnings).with_tip(tip).to_dict()

        with self.repository.transaction():
            written = self.repository.conditional_update(
                delivery.id,
                [Delivery.status == DeliveryStatus.DELIVERED, Delivery.tip_amount.is_(None)],
                values
            )
            if not written:
                raise ConflictError("Esta entrega ya tiene propina", details={"delivery_id": delivery.id})
            if delivery.courier_id:
                self.lifecycle.earnings.credit_tip(delivery.courier_id, delivery.id, tip)

        self.repository.refresh(delivery)
        logger.info(f"💶 Propina de {tip} en {delivery.delivery_number}")

        return {
            "success": True,
            "message": "Propina registrada",
            "tip_amount": float(tip),
            "delivery": delivery_to_dict(delivery),
        }

    # ==================== CALIFICACIONES ====================

    async def rate_delivery(self, delivery_id: int, rating: Any, comment: Optional[str], actor: User) -> Dict[str, Any]:
        """Calificación única 1-5; recalcula el promedio del repartidor"""
        ensure_capability(actor, Capability.RATE)
        delivery = self._get_delivery(delivery_id)
        ensure_delivery_customer(actor, delivery)

        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("La calificación debe ser un entero entre 1 y 5", field="rating")

        if delivery.status != DeliveryStatus.DELIVERED:
            raise ConflictError(
                "Solo se pueden calificar entregas completadas",
                details={"delivery_id": delivery.id, "status": delivery.status}
            )
        if delivery.customer_rating is not None:
            raise ConflictError("Esta entrega ya fue calificada", details={"delivery_id": delivery.id})

        stats = None
        with self.repository.transaction():
            written = self.repository.conditional_update(
                delivery.id,
                [Delivery.status == DeliveryStatus.DELIVERED, Delivery.customer_rating.is_(None)],
                {"customer_rating": rating, "customer_comment": comment, "rated_at": datetime.now()}
            )
            if not written:
                raise ConflictError("Esta entrega ya fue calificada", details={"delivery_id": delivery.id})
            if delivery.courier_id:
                stats = self.repository.courier_rating_stats(delivery.courier_id)
                self.lifecycle.courier_repository.set_rating(
                    delivery.courier_id, round(stats["average"], 1), stats["count"]
                )

        self.repository.refresh(delivery)
        logger.info(f"⭐ Entrega {delivery.delivery_number} calificada con {rating}")

        return {
            "success": True,
            "message": "Calificación registrada",
            "courier_rating": round(stats["average"], 1) if stats else None,
            "courier_total_ratings": stats["count"] if stats else 0,
            "delivery": delivery_to_dict(delivery),
        }
