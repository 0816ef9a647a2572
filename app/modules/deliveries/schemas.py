# app/modules/deliveries/schemas.py
from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any, List
from app.shared.schemas.common import BaseResponse
from .state_machine import DeliveryStatus

ISSUE_TYPES = (
    "wrong_address", "customer_unavailable", "order_damaged",
    "restaurant_delay", "vehicle_problem", "other"
)
POD_TYPES = ("photo", "signature", "otp", "customer_confirm")

class DeliveryCreate(BaseModel):
    order_id: int = Field(..., description="ID del pedido con fulfillment 'delivery'")
    is_priority: bool = Field(False, description="Entrega prioritaria")
    auto_assign: bool = Field(False, description="Intentar asignación automática al crear")
    base_fee: Optional[float] = Field(None, ge=0, description="Tarifa base; por defecto la configurada")

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": 42,
                "is_priority": False,
                "auto_assign": True
            }
        }

class AssignRequest(BaseModel):
    courier_id: Optional[int] = Field(None, description="Repartidor a asignar manualmente")
    auto_assign: bool = Field(False, description="Buscar el repartidor disponible más cercano")

    @validator("auto_assign", always=True)
    def courier_or_auto(cls, v, values):
        if v and values.get("courier_id") is not None:
            raise ValueError("Indica courier_id o auto_assign, no ambos")
        if not v and values.get("courier_id") is None:
            raise ValueError("Indica courier_id o auto_assign")
        return v

class StatusUpdate(BaseModel):
    status: str = Field(..., description="Estado destino")
    note: Optional[str] = Field(None, max_length=500)

    @validator("status")
    def known_status(cls, v):
        if v not in DeliveryStatus.ALL:
            raise ValueError(f"Estado desconocido: {v}")
        return v

class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)

class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    sequence: Optional[int] = Field(None, ge=0, description="Secuencia monótona del dispositivo")
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0, description="km/h")
    accuracy: Optional[float] = Field(None, ge=0, description="metros")

class ProofOfDeliverySubmit(BaseModel):
    type: str = Field(..., description="photo | signature | otp | customer_confirm")
    otp_code: Optional[str] = Field(None, description="Código de 4 dígitos (type=otp)")
    photo_url: Optional[str] = None
    signature_url: Optional[str] = None
    recipient_name: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=500)
    complete: bool = Field(False, description="Marcar como entregada tras registrar la prueba")

    @validator("type")
    def known_type(cls, v):
        if v not in POD_TYPES:
            raise ValueError(f"Tipo de prueba no soportado: {v}")
        return v

    @validator("otp_code", always=True)
    def otp_present(cls, v, values):
        if values.get("type") == "otp" and not v:
            raise ValueError("otp_code es requerido para pruebas tipo otp")
        return v

    @validator("photo_url", always=True)
    def photo_present(cls, v, values):
        if values.get("type") == "photo" and not v:
            raise ValueError("photo_url es requerido para pruebas tipo photo")
        return v

    @validator("signature_url", always=True)
    def signature_present(cls, v, values):
        if values.get("type") == "signature" and not v:
            raise ValueError("signature_url es requerido para pruebas tipo signature")
        return v

class TipRequest(BaseModel):
    amount: float = Field(..., description="Propina en EUR, (0, 100]")

class RatingRequest(BaseModel):
    rating: int = Field(..., description="Calificación entera 1-5")
    comment: Optional[str] = Field(None, max_length=500)

class ChatMessageCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)

class IssueReport(BaseModel):
    issue_type: str = Field(..., description="Tipo de incidencia")
    description: str = Field(..., min_length=5, max_length=1000)
    photo_urls: List[str] = Field(default_factory=list)

    @validator("issue_type")
    def known_issue(cls, v):
        if v not in ISSUE_TYPES:
            raise ValueError(f"Tipo de incidencia no soportado: {v}")
        return v

# ==================== RESPUESTAS ====================

class DeliveryResponse(BaseResponse):
    delivery: Dict[str, Any]
    assignment: Optional[Dict[str, Any]] = None

class DeliveryListResponse(BaseResponse):
    deliveries: List[Dict[str, Any]]
    count: int
    total: int

class LocationUpdateResponse(BaseResponse):
    accepted: bool
    stale: bool = False
    location: Optional[Dict[str, Any]] = None
    history_size: int = 0

class ETAResponse(BaseResponse):
    available: bool
    reason: Optional[str] = None
    eta: Optional[Dict[str, Any]] = None

class TrackingResponse(BaseResponse):
    tracking: Dict[str, Any]
