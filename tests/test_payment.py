import json

import httpx
import pytest

from orderflow.shared.errors import PaymentUnavailable, TransientError


async def test_approved_payment(payment_gateway):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["Idempotency-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"approved": True, "transaction_id": "TXN-9", "reason": None})

    result = await payment_gateway(handler).authorize("ORD-1", 105.84)

    assert result.approved
    assert result.transaction_id == "TXN-9"
    assert seen["url"] == "http://payments.test/payments/authorize"
    assert seen["key"] == "ORD-1"
    assert seen["body"] == {"order_id": "ORD-1", "amount": 105.84, "currency": "USD"}


async def test_declined_in_body(payment_gateway):
    def handler(request):
        return httpx.Response(200, json={"approved": False, "reason": "Insufficient funds"})

    result = await payment_gateway(handler).authorize("ORD-1", 10.0)

    assert not result.approved
    assert result.reason == "Insufficient funds"


@pytest.mark.parametrize("status", [400, 402, 422])
async def test_client_errors_are_declines(payment_gateway, status):
    def handler(request):
        return httpx.Response(status, json={"reason": "Card rejected"})

    result = await payment_gateway(handler).authorize("ORD-1", 10.0)

    assert not result.approved
    assert result.reason == "Card rejected"


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
async def test_retryable_statuses_raise_unavailable(payment_gateway, status):
    def handler(request):
        return httpx.Response(status)

    with pytest.raises(PaymentUnavailable):
        await payment_gateway(handler).authorize("ORD-1", 10.0)


async def test_timeout_is_transient_not_a_decline(payment_gateway):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientError):
        await payment_gateway(handler).authorize("ORD-1", 10.0)


async def test_malformed_success_body_is_transient(payment_gateway):
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    with pytest.raises(PaymentUnavailable):
        await payment_gateway(handler).authorize("ORD-1", 10.0)
