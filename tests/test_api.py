import asyncio
import json
import time

import httpx

from acp_merchant.payment import DECLINE_TOKEN

from conftest import WEBHOOK_SECRET, acp_headers, build_api


BASE = "/acp/v1/checkout_sessions"
CREATE_BODY = {"items": [{"sku": "mug", "quantity": 2}], "currency": "USD"}


async def _post(client, path, payload=None, **header_kwargs):
    body = b"" if payload is None else json.dumps(payload).encode()
    return await client.post(path, content=body, headers=acp_headers(body, **header_kwargs))


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_checkout_flow_end_to_end(client, receiver):
    resp = await _post(client, BASE, CREATE_BODY, idempotency_key="create_1")
    assert resp.status_code == 200
    assert resp.headers["Idempotency-Key"] == "create_1"
    assert resp.headers["Request-Id"].startswith("req_")
    session = resp.json()
    assert session["status"] == "not_ready_for_payment"
    assert session["amount_total"] == 2000
    assert session["line_items"][0]["unit_amount"] == 1000

    resp = await client.get(f"{BASE}/{session['id']}", headers=acp_headers())
    assert resp.status_code == 200
    assert resp.json()["id"] == session["id"]

    resp = await _post(
        client, f"{BASE}/{session['id']}/complete", {"payment_method_details": {"token": "tok_visa"}}
    )
    assert resp.status_code == 200
    completion = resp.json()
    assert completion["status"] == "completed"
    assert completion["session_id"] == session["id"]
    assert completion["order_id"].startswith("order_")

    resp = await client.get(f"{BASE}/{session['id']}", headers=acp_headers())
    assert resp.json()["status"] == "completed"
    assert resp.json()["order_id"] == completion["order_id"]

    resp = await _post(client, f"{BASE}/{session['id']}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancelled_at"]

    assert len(receiver.requests) == 1


async def test_duplicate_idempotency_key_is_rejected(client, app):
    first = await _post(client, BASE, CREATE_BODY, idempotency_key="dup_key")
    second = await _post(client, BASE, CREATE_BODY, idempotency_key="dup_key")

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "duplicate_request"
    assert second.headers["Idempotency-Key"] == "dup_key"
    assert (await app.state.container.sessions.stats())["total"] == 1


async def test_concurrent_duplicates_create_one_session(client, app):
    results = await asyncio.gather(
        *[_post(client, BASE, CREATE_BODY, idempotency_key="race_key") for _ in range(2)]
    )

    assert sorted(r.status_code for r in results) == [200, 409]
    assert (await app.state.container.sessions.stats())["total"] == 1


async def test_replay_mode_returns_original_response(settings, engine, sessionmaker, catalog, webhook_http):
    app = build_api(
        settings.model_copy(update={"idempotency_replay": True}),
        engine, sessionmaker, catalog, webhook_http,
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://merchant.test"
    ) as client:
        first = await _post(client, BASE, CREATE_BODY, idempotency_key="replay_key")
        second = await _post(client, BASE, CREATE_BODY, idempotency_key="replay_key")

    assert second.status_code == 200
    assert second.json() == first.json()
    assert (await app.state.container.sessions.stats())["total"] == 1


async def test_missing_authorization_does_not_burn_key(client):
    body = json.dumps(CREATE_BODY).encode()
    headers = acp_headers(body, idempotency_key="auth_key")
    del headers["Authorization"]

    resp = await client.post(BASE, content=body, headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {
        "error": {
            "type": "invalid_request",
            "code": "authentication_error",
            "message": "Authorization header required",
            "param": "$.headers.Authorization",
        }
    }

    resp = await _post(client, BASE, CREATE_BODY, idempotency_key="auth_key")
    assert resp.status_code == 200


async def test_stale_timestamp_is_rejected(client):
    resp = await _post(client, BASE, CREATE_BODY, timestamp=int(time.time()) - 3600)
    assert resp.status_code == 401
    assert "too old" in resp.json()["error"]["message"]


async def test_invalid_body_is_a_validation_error(client):
    resp = await _post(client, BASE, {"items": []}, idempotency_key="empty_items")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    assert resp.json()["error"]["param"] == "$.items"

    # the key was released with the failed request
    resp = await _post(client, BASE, CREATE_BODY, idempotency_key="empty_items")
    assert resp.status_code == 200


async def test_malformed_json_is_a_validation_error(client):
    body = b"{not json"
    resp = await client.post(BASE, content=body, headers=acp_headers(body))
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request"


async def test_unknown_session_is_404(client):
    resp = await client.get(f"{BASE}/acp_session_missing", headers=acp_headers())
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "session_not_found"

    resp = await _post(client, f"{BASE}/acp_session_missing/complete", {})
    assert resp.status_code == 404


async def test_declined_payment_returns_payment_failed(client):
    session = (await _post(client, BASE, CREATE_BODY)).json()

    resp = await _post(
        client, f"{BASE}/{session['id']}/complete", {"payment_method_details": {"token": DECLINE_TOKEN}}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "payment_failed"

    resp = await client.get(f"{BASE}/{session['id']}", headers=acp_headers())
    assert resp.json()["status"] == "cancelled"


async def test_double_complete_is_invalid_state(client):
    session = (await _post(client, BASE, CREATE_BODY)).json()
    assert (await _post(client, f"{BASE}/{session['id']}/complete", {})).status_code == 200

    resp = await _post(client, f"{BASE}/{session['id']}/complete", {})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_state"


async def test_update_via_post_and_put(client):
    session = (await _post(client, BASE, CREATE_BODY)).json()

    resp = await _post(client, f"{BASE}/{session['id']}", {"amount": "15.50"})
    assert resp.status_code == 200
    assert resp.json()["amount_total"] == 1550

    body = json.dumps({"currency": "EUR"}).encode()
    resp = await client.put(f"{BASE}/{session['id']}", content=body, headers=acp_headers(body))
    assert resp.status_code == 200
    assert resp.json()["currency"] == "EUR"
    assert resp.json()["amount_total"] == 1550


async def test_signed_requests(settings, engine, sessionmaker, catalog, webhook_http):
    app = build_api(
        settings.model_copy(update={"enable_signature_validation": True}),
        engine, sessionmaker, catalog, webhook_http,
    )
    body = json.dumps(CREATE_BODY).encode()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://merchant.test"
    ) as client:
        ok = await client.post(BASE, content=body, headers=acp_headers(body, secret=WEBHOOK_SECRET))
        bad = await client.post(
            BASE, content=body, headers=acp_headers(body + b"x", secret=WEBHOOK_SECRET)
        )

    assert ok.status_code == 200
    assert bad.status_code == 401
    assert bad.json()["error"]["message"] == "Invalid Signature"


async def test_unexpected_error_is_masked(client, app, monkeypatch):
    async def explode(session_id):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(app.state.container.checkout, "get_session", explode)

    resp = await client.get(f"{BASE}/acp_session_1", headers=acp_headers(idempotency_key="boom"))
    assert resp.status_code == 500
    assert resp.json()["error"] == {
        "type": "api_error",
        "code": "server_error",
        "message": "Internal server error",
        "param": None,
    }
    assert resp.headers["Idempotency-Key"] == "boom"


async def test_non_ascii_signature_is_an_authentication_error(
    settings, engine, sessionmaker, catalog, webhook_http
):
    app = build_api(
        settings.model_copy(update={"enable_signature_validation": True}),
        engine, sessionmaker, catalog, webhook_http,
    )
    body = json.dumps(CREATE_BODY).encode()
    headers = acp_headers(body)
    headers["Signature"] = "sha256=éé".encode("latin-1")
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://merchant.test"
    ) as client:
        resp = await client.post(BASE, content=body, headers=headers)

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "authentication_error"
    assert resp.json()["error"]["param"] == "$.headers.Signature"
