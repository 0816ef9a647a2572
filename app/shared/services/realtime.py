# app/shared/services/realtime.py
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def delivery_channel(delivery_id: int) -> str:
    return f"delivery:{delivery_id}"


def company_channel(company_id: int) -> str:
    return f"company:{company_id}"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


class ConnectionManager:
    """
    Conexiones WebSocket agrupadas por canal.

    Entrega al-menos-una-vez sin orden garantizado: una conexión que falla al
    enviar se descarta y el publicador nunca recibe el error.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.channels: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket, channel: str) -> str:
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        self.channels.setdefault(channel, set()).add(connection_id)
        logger.info(f"🔌 WebSocket conectado {connection_id} -> {channel}")
        return connection_id

    def disconnect(self, connection_id: str):
        self.active_connections.pop(connection_id, None)
        for channel in list(self.channels):
            self.channels[channel].discard(connection_id)
            if not self.channels[channel]:
                del self.channels[channel]
        logger.info(f"🔌 WebSocket desconectado {connection_id}")

    def subscriber_count(self, channel: str) -> int:
        return len(self.channels.get(channel, ()))

    async def publish(self, channel: str, event: str, data: Dict[str, Any]):
        message = json.dumps({
            "event": event,
            "data": data,
            "timestamp": datetime.now().isoformat()
        }, default=str)

        for connection_id in list(self.channels.get(channel, ())):
            websocket = self.active_connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.warning(f"⚠️ Error enviando a {connection_id}: {e}")
                self.disconnect(connection_id)


manager = ConnectionManager()


def get_realtime_manager() -> ConnectionManager:
    return manager
