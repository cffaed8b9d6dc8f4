import json
import httpx
import pytest
from tenacity import wait_none

from costpulse.core.exceptions import DeliveryError
from costpulse.services.notifications.email_service import EmailService, escape_html


def _service(handler, max_attempts=2):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EmailService(
        api_key="SG.test-key",
        from_email="finops@example.com",
        max_attempts=max_attempts,
        client=client,
        wait=wait_none(),
    )


@pytest.mark.asyncio
async def test_send_report_posts_sendgrid_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(202, headers={"X-Message-Id": "msg-123"})

    message_id = await _service(handler).send_report("Weekly", "<p>hi</p>", ["a@example.com", "b@example.com"])

    assert message_id == "msg-123"
    assert captured["auth"] == "Bearer SG.test-key"
    assert captured["body"]["personalizations"][0]["to"] == [{"email": "a@example.com"}, {"email": "b@example.com"}]
    assert captured["body"]["content"][0]["type"] == "text/html"


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(202)

    await _service(handler).send_report("Weekly", "<p>hi</p>", ["a@example.com"])

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_delivery_error():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429)

    with pytest.raises(DeliveryError) as exc:
        await _service(handler, max_attempts=2).send_report("Weekly", "<p>hi</p>", ["a@example.com"])

    assert exc.value.code == "delivery_exhausted"
    assert exc.value.status_code == 429
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejection_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="invalid from address")

    with pytest.raises(DeliveryError) as exc:
        await _service(handler).send_report("Weekly", "<p>hi</p>", ["a@example.com"])

    assert exc.value.code == "delivery_rejected"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(DeliveryError) as exc:
        await _service(handler).send_report("Weekly", "<p>hi</p>", ["a@example.com"])

    assert exc.value.code == "delivery_exhausted"


@pytest.mark.asyncio
async def test_recipient_bounds():
    service = _service(lambda request: httpx.Response(202))

    with pytest.raises(DeliveryError):
        await service.send_report("Weekly", "<p>hi</p>", [])
    with pytest.raises(DeliveryError):
        await service.send_report("Weekly", "<p>hi</p>", [f"user{i}@example.com" for i in range(51)])


def test_escape_html():
    assert escape_html("<script>alert('x')</script>") == "&lt;script&gt;alert(&#x27;x&#x27;)&lt;/script&gt;"
    assert escape_html(None) == ""
    assert escape_html(0) == "0"
