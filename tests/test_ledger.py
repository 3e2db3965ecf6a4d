"""Tests for the ledger HTTP client."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from actuator_relay.adapters import LedgerAuthError, LedgerClient, LedgerError
from actuator_relay.config import LedgerConfig


def _config(base_url: str, **overrides) -> LedgerConfig:
    values = dict(
        url=base_url,
        anon_key="anon-key",
        email="relay@example.test",
        password="secret",
    )
    values.update(overrides)
    return LedgerConfig(**values)


def _token_app(captured: dict) -> web.Application:
    async def token(request: web.Request) -> web.StreamResponse:
        captured["grant_type"] = request.query.get("grant_type")
        captured["apikey"] = request.headers.get("apikey")
        captured["body"] = await request.json()
        return web.json_response(
            {
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "expires_in": 3600,
                "user": {"id": "user-1"},
            }
        )

    async def rpc(request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        captured.setdefault("rpc", []).append(
            (name, await request.json(), request.headers.get("Authorization"))
        )
        if name == "pending_for_device":
            return web.json_response(
                [{"id": "c1", "command_type": "OPEN_DOOR", "payload": {}}, "junk"]
            )
        if name == "ack_command":
            return web.json_response(True)
        return web.Response(status=204)

    app = web.Application()
    app.router.add_post("/auth/v1/token", token)
    app.router.add_post("/rest/v1/rpc/{name}", rpc)
    return app


@pytest.mark.asyncio
async def test_sign_in_and_rpc_calls():
    captured: dict = {}

    async with TestServer(_token_app(captured)) as server:
        client = LedgerClient(_config(str(server.make_url("/"))))
        try:
            session = await client.sign_in()

            assert session.access_token == "access-1"
            assert session.refresh_token == "refresh-1"
            assert session.user_id == "user-1"
            assert (session.expires_at - session.issued_at).total_seconds() == 3600
            assert captured["grant_type"] == "password"
            assert captured["apikey"] == "anon-key"
            assert captured["body"] == {"email": "relay@example.test", "password": "secret"}

            rows = await client.pending_for_device("svc-1")
            claimed = await client.ack_command("c1")
            await client.complete_command("c1", False, "MQTT publish failed")
        finally:
            await client.close()

    assert rows == [{"id": "c1", "command_type": "OPEN_DOOR", "payload": {}}]
    assert claimed is True
    assert captured["rpc"] == [
        ("pending_for_device", {"p_device_id": "svc-1"}, "Bearer access-1"),
        ("ack_command", {"p_command_id": "c1"}, "Bearer access-1"),
        (
            "complete_command",
            {"p_command_id": "c1", "p_success": False, "p_err": "MQTT publish failed"},
            "Bearer access-1",
        ),
    ]


@pytest.mark.asyncio
async def test_refresh_uses_refresh_grant():
    captured: dict = {}

    async with TestServer(_token_app(captured)) as server:
        client = LedgerClient(_config(str(server.make_url("/"))))
        try:
            await client.refresh("refresh-0")
        finally:
            await client.close()

    assert captured["grant_type"] == "refresh_token"
    assert captured["body"] == {"refresh_token": "refresh-0"}


@pytest.mark.asyncio
async def test_rejected_credentials_raise_auth_error():
    async def token(request: web.Request) -> web.StreamResponse:
        return web.json_response(
            {"error": "invalid_grant", "error_description": "Invalid login credentials"},
            status=400,
        )

    app = web.Application()
    app.router.add_post("/auth/v1/token", token)

    async with TestServer(app) as server:
        client = LedgerClient(_config(str(server.make_url("/"))))
        try:
            with pytest.raises(LedgerAuthError, match="Invalid login credentials"):
                await client.sign_in()
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_sign_in_requires_credentials():
    client = LedgerClient(_config("https://ledger.example.test", password=None))

    with pytest.raises(LedgerAuthError):
        await client.sign_in()
    await client.close()


@pytest.mark.asyncio
async def test_rpc_error_carries_status():
    async def rpc(request: web.Request) -> web.StreamResponse:
        return web.json_response({"message": "permission denied"}, status=403)

    app = web.Application()
    app.router.add_post("/rest/v1/rpc/{name}", rpc)

    async with TestServer(app) as server:
        client = LedgerClient(_config(str(server.make_url("/"))))
        try:
            with pytest.raises(LedgerError) as excinfo:
                await client.ack_command("c1")
        finally:
            await client.close()

    assert excinfo.value.status == 403
    assert "permission denied" in str(excinfo.value)


@pytest.mark.asyncio
async def test_pending_rejects_non_list_response():
    async def rpc(request: web.Request) -> web.StreamResponse:
        return web.json_response({"unexpected": True})

    app = web.Application()
    app.router.add_post("/rest/v1/rpc/{name}", rpc)

    async with TestServer(app) as server:
        client = LedgerClient(_config(str(server.make_url("/"))))
        try:
            with pytest.raises(LedgerError):
                await client.pending_for_device("svc-1")
        finally:
            await client.close()


def test_client_requires_url_and_key():
    with pytest.raises(ValueError):
        LedgerClient(LedgerConfig(url=None, anon_key="k"))
