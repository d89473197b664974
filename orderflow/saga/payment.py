"""
Saga: 決済ゲートウェイ クライアント

決済そのものは外部サービス。ここでは同期 API
POST /payments/authorize を httpx で呼ぶだけ。

- 2xx: {"approved": bool, "transaction_id": str, "reason": str}
- 4xx (408 / 429 以外): 拒否 (ビジネス上の結果。再試行しない)
- タイムアウト・通信エラー・408 / 429 / 5xx: PaymentUnavailable (一時障害)

Idempotency-Key に order_id を載せるので、再試行してもゲートウェイ側で
二重決済にならない前提。
"""

import logging
from dataclasses import dataclass

import httpx

from orderflow.shared.errors import PaymentUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429)


@dataclass
class PaymentResult:
    approved: bool
    transaction_id: str | None = None
    reason: str | None = None


class HttpPaymentGateway:
    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 5.0):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def authorize(self, order_id: str, amount: float) -> PaymentResult:
        try:
            resp = await self.client.post(
                f"{self.base_url}/payments/authorize",
                json={"order_id": order_id, "amount": amount, "currency": "USD"},
                headers={"Idempotency-Key": order_id},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise PaymentUnavailable(f"Payment gateway unreachable: {e!r}") from e

        if resp.status_code in RETRYABLE_STATUS_CODES or resp.is_server_error:
            raise PaymentUnavailable(f"Payment gateway returned {resp.status_code}")

        if resp.is_client_error:
            logger.info("Payment declined for %s with status %d", order_id, resp.status_code)
            return PaymentResult(approved=False, reason=_error_reason(resp))

        try:
            data = resp.json()
        except ValueError as e:
            raise PaymentUnavailable("Payment gateway returned a malformed response") from e

        return PaymentResult(
            approved=bool(data.get("approved")),
            transaction_id=data.get("transaction_id"),
            reason=data.get("reason"),
        )


def _error_reason(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        return str(data.get("reason") or data.get("message") or data)
    return str(data)
