from app.shared.services.payment_client import TransferResult


class FakePaymentClient:
    """Procesador de pagos en memoria: responde con el estado configurado"""

    def __init__(self, status="paid", failure_reason=None):
        self.status = status
        self.failure_reason = failure_reason
        self.transfers = []

    async def transfer(self, account_id, amount_cents, currency, memo, idempotency_key=None):
        self.transfers.append({
            "account_id": account_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_key": idempotency_key,
        })
        return TransferResult(
            transfer_id=f"tr_{len(self.transfers)}",
            status=self.status,
            failure_reason=self.failure_reason
        )


class FakeRoutingClient:
    """Proveedor de rutas con respuesta fija o error configurado"""

    def __init__(self, route=None, error=None):
        self._route = route
        self._error = error
        self.calls = []

    async def route(self, origin, destination):
        self.calls.append((origin, destination))
        if self._error:
            raise self._error
        return self._route
