# app/shared/services/payment_client.py
import httpx
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from app.config.settings import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    transfer_id: str
    # paid | pending | failed
    status: str
    failure_reason: Optional[str] = None


class PaymentClient:
    """Cliente del procesador de pagos para transferencias a cuentas de repartidores"""

    def __init__(self):
        self.base_url = settings.payment_base_url.rstrip("/")
        self.api_key = settings.payment_api_key
        self.timeout = settings.payment_timeout_seconds

    @property
    def enabled(self) -> bool:
        return settings.payment_available

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def transfer(
        self,
        account_id: str,
        amount_cents: int,
        currency: str,
        memo: str,
        idempotency_key: Optional[str] = None
    ) -> TransferResult:
        """
        Crear transferencia hacia la cuenta conectada del repartidor.

        La clave de idempotencia permite reintentar sin duplicar la transferencia.
        """
        if not self.enabled:
            raise UpstreamError("payments", "procesador de pagos deshabilitado")

        data = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "destination": account_id,
            "description": memo,
        }

        try:
            logger.info(f"💸 Enviando transferencia {amount_cents} {currency} a {account_id}")
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/transfers",
                    data=data,
                    headers=self._get_headers(idempotency_key)
                )
        except httpx.TimeoutException:
            logger.warning(f"⏱️ Timeout en transferencia a {account_id}")
            raise UpstreamError("payments", "timeout")
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Error de red en transferencia: {e}")
            raise UpstreamError("payments", str(e))

        if response.status_code >= 500:
            raise UpstreamError("payments", f"HTTP {response.status_code}")

        body = response.json()
        if response.status_code >= 400:
            error = body.get("error") or {}
            return TransferResult(
                transfer_id=body.get("id", ""),
                status="failed",
                failure_reason=error.get("message") or f"HTTP {response.status_code}"
            )

        status = "paid" if body.get("status", "paid") in ("paid", "succeeded") else body.get("status", "pending")
        logger.info(f"✅ Transferencia creada {body.get('id')} ({status})")
        return TransferResult(transfer_id=body.get("id", ""), status=status)
