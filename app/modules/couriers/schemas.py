# app/modules/couriers/schemas.py
from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any, List
from app.shared.schemas.common import BaseResponse

VEHICLE_TYPES = ("bicycle", "scooter", "motorcycle", "car")
VERIFICATION_STATUSES = ("pending", "verified", "rejected", "suspended")

class CourierCreate(BaseModel):
    user_id: int = Field(..., description="Usuario con rol 'courier' de la empresa")
    vehicle_type: str = Field("scooter", description="bicycle | scooter | motorcycle | car")
    phone: Optional[str] = Field(None, max_length=50)
    photo_url: Optional[str] = None
    payout_account_id: Optional[str] = Field(None, description="Cuenta de destino en el procesador de pagos")
    verification_status: str = Field("pending", description="pending | verified | rejected | suspended")

    @validator("vehicle_type")
    def known_vehicle(cls, v):
        if v not in VEHICLE_TYPES:
            raise ValueError(f"Tipo de vehículo no soportado: {v}")
        return v

    @validator("verification_status")
    def known_verification(cls, v):
        if v not in VERIFICATION_STATUSES:
            raise ValueError(f"Estado de verificación no soportado: {v}")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": 7,
                "vehicle_type": "motorcycle",
                "phone": "+34 600 000 000",
                "verification_status": "verified"
            }
        }

class CourierPositionUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

class ShiftStartRequest(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

class CourierResponse(BaseResponse):
    courier: Dict[str, Any]

class CourierListResponse(BaseResponse):
    couriers: List[Dict[str, Any]]
    count: int
    total: int

class ShiftResponse(BaseResponse):
    shift: Dict[str, Any]
    courier_status: str

class ShiftListResponse(BaseResponse):
    shifts: List[Dict[str, Any]]
    count: int
