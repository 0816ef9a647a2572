# app/modules/deliveries/__init__.py
"""
Módulo Deliveries - Despacho y seguimiento de entregas

Este módulo implementa el ciclo de vida completo de una entrega a domicilio:
- DL001-DL004: Alta, listado y detalle de entregas
- DL005-DL007: Asignación manual/automática, aceptación y rechazo
- DL008-DL009: Cambios de estado y cancelación
- DL010-DL011: Ubicación del repartidor y ETA
- DL012-DL015: Prueba de entrega, OTP y seguimiento público
- DL016-DL017: Propinas y calificaciones
- DL018-DL019: Chat e incidencias

Arquitectura:
- router.py: Endpoints de entregas (REST + WebSocket de seguimiento)
- state_machine.py: Tabla de transiciones y plan de transición
- lifecycle.py: Aplicación atómica de transiciones
- service.py: Alta, consultas, estados, chat e incidencias
- dispatch_service.py: Asignación de repartidores
- tracking_service.py: Ubicación y ETA
- proof_service.py: Prueba de entrega, propinas y calificaciones
- repository.py: Acceso a datos de entregas
- schemas.py: Modelos de request/response
"""

from .router import router
from .service import DeliveryService
from .repository import DeliveryRepository

__all__ = [
    "router",
    "DeliveryService",
    "DeliveryRepository"
]
