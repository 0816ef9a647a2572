from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

class UserLogin(BaseModel):
    """Schema para login de usuario"""
    email: str = Field(..., description="Email del usuario")
    password: str = Field(..., min_length=6, description="Contraseña del usuario")

    class Config:
        json_schema_extra = {
            "example": {
                "email": "repartidor@pizzeria.com",
                "password": "repartidor123"
            }
        }

class UserResponse(BaseModel):
    """Schema para respuesta de usuario"""
    id: int
    email: str
    first_name: str
    last_name: str
    role: str
    company_id: Optional[int] = None
    company_name: Optional[str] = None
    company_subdomain: Optional[str] = None
    courier_id: Optional[int] = None
    is_active: bool

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": 7,
                "email": "repartidor@pizzeria.com",
                "first_name": "Lucía",
                "last_name": "Gómez",
                "role": "courier",
                "company_id": 1,
                "courier_id": 3,
                "is_active": True
            }
        }

class TokenResponse(BaseModel):
    """Schema para respuesta de token"""
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class TokenPayload(BaseModel):
    """Schema para payload del token"""
    user_id: int
    email: str
    role: str
    company_id: Optional[int] = None
    exp: Optional[datetime] = None
