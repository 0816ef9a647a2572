# app/modules/deliveries/router.py
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Path, Query, UploadFile, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from app.config.database import get_db
from app.core.auth.dependencies import (
    get_current_company_id, get_current_courier, get_current_user, get_optional_courier
)
from app.shared.database.models import Courier, User
from app.shared.services.realtime import delivery_channel, get_realtime_manager
from .dispatch_service import DispatchService
from .proof_service import ProofService
from .repository import DeliveryRepository
from .schemas import (
    AssignRequest, CancelRequest, ChatMessageCreate, DeliveryCreate, DeliveryListResponse,
    DeliveryResponse, ETAResponse, IssueReport, LocationUpdate, LocationUpdateResponse,
    ProofOfDeliverySubmit, RatingRequest, RejectRequest, StatusUpdate, TipRequest, TrackingResponse
)
from .service import DeliveryService
from .tracking_service import TrackingService
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

# ==================== SEGUIMIENTO PÚBLICO ====================

@router.get("/track/{code}", response_model=TrackingResponse)
async def track_delivery(
    code: str = Path(..., description="Número de seguimiento DLV-YYYYMMDD-NNNNN"),
    db: Session = Depends(get_db)
):
    """
    DL014: Seguimiento público por código

    **Funcionalidad:**
    - Estado actual, ETA y datos básicos del repartidor
    - Ubicación solo mientras la entrega es rastreable
    - Historial de eventos sin notas internas
    - No requiere autenticación
    """
    service = DeliveryService(db, company_id=None)
    return await service.track_by_code(code)


@router.websocket("/ws/track/{code}")
async def track_delivery_ws(websocket: WebSocket, code: str, db: Session = Depends(get_db)):
    """Eventos en tiempo real de una entrega (delivery:status, delivery:location, ...)"""
    delivery = DeliveryRepository(db).get_by_number(code)
    if not delivery:
        await websocket.close(code=4404)
        return

    manager = get_realtime_manager()
    connection_id = await manager.connect(websocket, delivery_channel(delivery.id))
    try:
        await websocket.send_json({
            "event": "delivery:status",
            "data": {"delivery_id": delivery.id, "status": delivery.status}
        })
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(connection_id)

# ==================== ALTA Y CONSULTAS ====================

@router.post("", response_model=DeliveryResponse)
async def create_delivery(
    data: DeliveryCreate,
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL001: Crear entrega para un pedido a domicilio

    **Funcionalidad:**
    - Copia la recogida del restaurante y el destino del pedido
    - Genera número de seguimiento y código OTP
    - Estima ganancias y distancia del trayecto
    - Con `auto_assign` busca el repartidor más cercano

    **Validaciones:**
    - El pedido debe ser de tipo 'delivery'
    - Un pedido no puede tener dos entregas abiertas
    """
    service = DeliveryService(db, current_company_id)
    return await service.create_delivery(data, current_user)


@router.get("", response_model=DeliveryListResponse)
async def list_deliveries(
    status: Optional[str] = Query(None, description="Filtrar por estado"),
    courier_id: Optional[int] = Query(None, description="Filtrar por repartidor"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL002: Listado de entregas del tenant"""
    service = DeliveryService(db, current_company_id)
    return service.list_deliveries(current_user, status=status, courier_id=courier_id, skip=skip, limit=limit)


@router.get("/active", response_model=DeliveryListResponse)
async def get_active_deliveries(
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL003: Entregas en curso (el repartidor solo ve las suyas)"""
    service = DeliveryService(db, current_company_id)
    return service.get_active_deliveries(current_user, courier)


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL004: Detalle de la entrega con historial de estados"""
    service = DeliveryService(db, current_company_id)
    return service.get_delivery(delivery_id, current_user, courier)

# ==================== DESPACHO ====================

@router.post("/{delivery_id}/assign")
async def assign_delivery(
    data: AssignRequest,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL005: Asignar repartidor

    **Funcionalidad:**
    - Manual: `courier_id` de un repartidor verificado y libre
    - Automática: el repartidor disponible más cercano dentro del radio
    - Escribe los datos del repartidor en el pedido

    **Concurrencia:**
    - UPDATE condicional sobre entrega y repartidor en la misma transacción
    - Dos asignaciones simultáneas nunca comparten repartidor ni entrega
    """
    service = DispatchService(db, current_company_id)
    return await service.assign(delivery_id, data, current_user)


@router.post("/{delivery_id}/accept", response_model=DeliveryResponse)
async def accept_delivery(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL006: El repartidor asignado acepta la entrega"""
    service = DispatchService(db, current_company_id)
    return await service.accept(delivery_id, current_user, courier)


@router.post("/{delivery_id}/reject", response_model=DeliveryResponse)
async def reject_delivery(
    data: RejectRequest = RejectRequest(),
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL007: El repartidor asignado rechaza la entrega

    **Funcionalidad:**
    - La entrega vuelve a 'pending' conservando los intentos
    - El repartidor queda libre y excluido de la próxima asignación automática
    """
    service = DispatchService(db, current_company_id)
    return await service.reject(delivery_id, current_user, courier, data.reason)

# ==================== ESTADOS ====================

@router.put("/{delivery_id}/status", response_model=DeliveryResponse)
async def update_delivery_status(
    data: StatusUpdate,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL008: Cambiar estado de la entrega

    **Funcionalidad:**
    - Valida la transición contra la tabla de estados
    - Estado e historial se escriben en una sola transacción
    - 'delivered' liquida ganancias y libera al repartidor
    - 'failed' libera al repartidor; 'failed' → 'pending' reprograma
    """
    service = DeliveryService(db, current_company_id)
    return await service.update_status(delivery_id, data, current_user, courier)


@router.post("/{delivery_id}/cancel", response_model=DeliveryResponse)
async def cancel_delivery(
    data: CancelRequest,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL009: Cancelar entrega (libera al repartidor)"""
    service = DeliveryService(db, current_company_id)
    return await service.cancel_delivery(delivery_id, data.reason, current_user)

# ==================== UBICACIÓN Y ETA ====================

@router.put("/{delivery_id}/location", response_model=LocationUpdateResponse)
async def update_delivery_location(
    data: LocationUpdate,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Courier = Depends(get_current_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL010: Reportar ubicación del repartidor

    **Funcionalidad:**
    - Actualiza la posición actual y el historial acotado
    - Propaga la posición al perfil del repartidor
    - Con `sequence`, las actualizaciones atrasadas se ignoran
    """
    service = TrackingService(db, current_company_id)
    return await service.update_location(delivery_id, data, current_user, courier)


@router.get("/{delivery_id}/eta", response_model=ETAResponse)
async def get_delivery_eta(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL011: Tiempo estimado de llegada

    **Funcionalidad:**
    - Destino: restaurante mientras va a recoger, cliente después
    - Proveedor de rutas con respaldo en línea recta (resultado `degraded`)
    - Sin ubicación reportada responde `available: false`
    """
    service = TrackingService(db, current_company_id)
    return await service.get_eta(delivery_id, current_user, courier)

# ==================== PRUEBA DE ENTREGA ====================

@router.get("/{delivery_id}/pod/requirements")
async def get_pod_requirements(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL012: Pruebas exigidas (foto si es sin contacto, OTP si es de alto valor)"""
    service = ProofService(db, current_company_id)
    return service.get_requirements(delivery_id, current_user, courier)


@router.post("/{delivery_id}/pod")
async def submit_proof_of_delivery(
    data: ProofOfDeliverySubmit,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL013: Registrar prueba de entrega

    **Funcionalidad:**
    - Tipos: photo, signature, otp, customer_confirm
    - OTP verificado contra el código de la entrega
    - Coordenadas GPS y verificación por antigüedad de la última ubicación
    - `complete=true` desde 'arrived' cierra la entrega
    """
    service = ProofService(db, current_company_id)
    return await service.submit_proof(delivery_id, data, current_user, courier)


@router.post("/{delivery_id}/pod/photo")
async def upload_proof_photo(
    delivery_id: int = Path(..., description="ID de la entrega"),
    photo: UploadFile = File(..., description="Foto de la entrega"),
    recipient_name: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    complete: bool = Form(False),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL013b: Subir foto de entrega a Cloudinary y registrarla como prueba"""
    service = ProofService(db, current_company_id)
    return await service.upload_photo_proof(
        delivery_id, photo, current_user, courier,
        recipient_name=recipient_name, notes=notes, complete=complete
    )


@router.post("/{delivery_id}/otp/regenerate")
async def regenerate_otp(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL015: Regenerar el código OTP y enviarlo al cliente"""
    service = ProofService(db, current_company_id)
    return await service.regenerate_otp(delivery_id, current_user, courier)

# ==================== PROPINA Y CALIFICACIÓN ====================

@router.post("/{delivery_id}/tip")
async def add_tip(
    data: TipRequest,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """
    DL016: Propina del cliente

    **Validaciones:**
    - Solo una vez y solo sobre entregas 'delivered'
    - Importe mayor que 0 y como máximo 100
    - Se abona íntegra al repartidor
    """
    service = ProofService(db, current_company_id)
    return await service.add_tip(delivery_id, data.amount, current_user)


@router.post("/{delivery_id}/rate")
async def rate_delivery(
    data: RatingRequest,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL017: Calificar la entrega (1-5, una sola vez) y recalcular el promedio del repartidor"""
    service = ProofService(db, current_company_id)
    return await service.rate_delivery(delivery_id, data.rating, data.comment, current_user)

# ==================== CHAT E INCIDENCIAS ====================

@router.post("/{delivery_id}/chat")
async def send_chat_message(
    data: ChatMessageCreate,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL018: Mensaje en el chat de la entrega"""
    service = DeliveryService(db, current_company_id)
    return await service.add_chat_message(delivery_id, data, current_user, courier)


@router.get("/{delivery_id}/chat")
async def get_chat_messages(
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    service = DeliveryService(db, current_company_id)
    return service.get_chat(delivery_id, current_user, courier)


@router.post("/{delivery_id}/issues")
async def report_delivery_issue(
    data: IssueReport,
    delivery_id: int = Path(..., description="ID de la entrega"),
    current_user: User = Depends(get_current_user),
    courier: Optional[Courier] = Depends(get_optional_courier),
    current_company_id: int = Depends(get_current_company_id),
    db: Session = Depends(get_db)
):
    """DL019: Reportar incidencia durante la entrega"""
    service = DeliveryService(db, current_company_id)
    return await service.report_issue(delivery_id, data, current_user, courier)
