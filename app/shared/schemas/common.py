# app/shared/schemas/common.py
from pydantic import BaseModel, Field
from datetime import datetime

class BaseResponse(BaseModel):
    """Envoltorio común de las respuestas: success, message y timestamp"""
    success: bool
    message: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
