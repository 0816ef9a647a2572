# app/core/exceptions.py
"""
Errores de dominio del motor de despacho y su traducción a respuestas HTTP.

Los servicios lanzan estos errores; los routers no los capturan. Los handlers
registrados en main.py los convierten en el cuerpo estándar de error.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DeliveryEngineError(Exception):
    """Base de todos los errores de dominio"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DeliveryEngineError):
    """Entrada inválida (p. ej. calificación fuera de rango)"""

    def __init__(self, message: str, field: str = None, details: Optional[Dict[str, Any]] = None):
        if field:
            details = details or {}
            details["field"] = field
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class NotFoundError(DeliveryEngineError):
    def __init__(self, resource: str, identifier: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"{resource} '{identifier}' no encontrado",
            status.HTTP_404_NOT_FOUND,
            details
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(DeliveryEngineError):
    """Estado incompatible: doble asignación, propina duplicada, carrera perdida"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, status_code: int = status.HTTP_409_CONFLICT):
        super().__init__(message, status_code, details)


class TransitionError(ConflictError):
    """Transición de estado fuera de la tabla permitida"""

    def __init__(self, current_status: str, target_status: str, allowed: List[str]):
        allowed_text = ", ".join(allowed) if allowed else "ninguno (estado terminal)"
        super().__init__(
            f"Transición inválida de '{current_status}' a '{target_status}'. Estados permitidos: {allowed_text}",
            details={
                "current_status": current_status,
                "target_status": target_status,
                "allowed": allowed
            },
            status_code=status.HTTP_400_BAD_REQUEST
        )
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = allowed


class NoCourierAvailableError(ConflictError):
    """Ningún repartidor disponible en el radio; el llamador decide cuándo reintentar"""

    def __init__(self, delivery_id: int, radius_km: float):
        super().__init__(
            "No hay repartidores disponibles",
            details={"delivery_id": delivery_id, "radius_km": radius_km, "retryable": True}
        )


class AuthorizationError(DeliveryEngineError):
    def __init__(self, message: str = "No tienes permisos para esta operación", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


class UpstreamError(DeliveryEngineError):
    """Fallo de un proveedor externo (routing, pagos, almacenamiento)"""

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Servicio externo '{service}' no disponible: {message}",
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details
        )
        self.service = service


def error_body(message: str, error_code: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "message": message,
        "error_code": error_code,
        "details": details or {},
        "timestamp": datetime.now().isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Registrar handlers globales de errores"""

    @app.exception_handler(DeliveryEngineError)
    async def domain_exception_handler(request: Request, exc: DeliveryEngineError):
        logger.warning(f"⚠️ {exc.__class__.__name__} en {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.__class__.__name__, exc.details)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(x) for x in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body("Datos de entrada inválidos", "REQUEST_VALIDATION_ERROR", {"errors": errors})
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(
                exc.detail if isinstance(exc.detail, str) else "Error HTTP",
                "HTTP_ERROR",
                {"status_code": exc.status_code}
            ),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(request: Request, exc: Exception):
        logger.exception(f"❌ Error inesperado en {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Error interno del servidor", "INTERNAL_SERVER_ERROR")
        )
