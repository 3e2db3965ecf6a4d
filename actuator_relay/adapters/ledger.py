"""Command ledger adapter: auth and RPC calls over HTTP."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import aiohttp

from ..config import LedgerConfig

LOGGER = logging.getLogger(__name__)

AUTH_TIMEOUT_SECONDS = 30.0


class LedgerError(RuntimeError):
    """Raised when a ledger request fails in transport or is rejected."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class LedgerAuthError(LedgerError):
    """Raised when the ledger refuses the device credentials."""


@dataclass(slots=True)
class LedgerSession:
    """Access token issued by the ledger's auth endpoint."""

    access_token: str
    refresh_token: Optional[str]
    issued_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None


class LedgerClient:
    """Thin async client for the ledger's auth and RPC endpoints.

    RPC requests are sent without a client-side timeout: a slow answer is
    preferred over reissuing a claim or completion.
    """

    def __init__(
        self,
        config: LedgerConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        if not config.url or not config.anon_key:
            raise ValueError("Ledger url and anon_key are required")

        self.config = config
        self._base_url = config.url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._access_token: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    async def sign_in(self) -> LedgerSession:
        """Sign in with the device email/password."""

        if not self.config.email or not self.config.password:
            raise LedgerAuthError("Device email and password are required")

        return await self._token_request(
            "password",
            {"email": self.config.email, "password": self.config.password},
        )

    async def refresh(self, refresh_token: str) -> LedgerSession:
        """Exchange a refresh token for a new access token."""

        return await self._token_request(
            "refresh_token", {"refresh_token": refresh_token}
        )

    async def _token_request(
        self, grant_type: str, body: Mapping[str, Any]
    ) -> LedgerSession:
        session = await self._ensure_session()
        url = f"{self._base_url}/auth/v1/token"

        try:
            async with session.post(
                url,
                params={"grant_type": grant_type},
                json=dict(body),
                headers={"apikey": str(self.config.anon_key)},
                timeout=aiohttp.ClientTimeout(total=AUTH_TIMEOUT_SECONDS),
            ) as response:
                if response.status in (400, 401, 403):
                    detail = await _error_detail(response)
                    raise LedgerAuthError(
                        f"Authentication rejected ({grant_type}): {detail}",
                        status=response.status,
                    )
                if response.status >= 300:
                    detail = await _error_detail(response)
                    raise LedgerError(
                        f"Token request failed with status {response.status}: {detail}",
                        status=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerError(f"Token request failed: {exc}") from exc

        try:
            access_token = str(data["access_token"])
        except (KeyError, TypeError) as exc:
            raise LedgerAuthError("Token response missing access_token") from exc

        issued_at = datetime.now(timezone.utc)
        expires_in = data.get("expires_in") or 3600
        user = data.get("user") or {}

        ledger_session = LedgerSession(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=float(expires_in)),
            user_id=user.get("id") if isinstance(user, Mapping) else None,
        )
        self._access_token = access_token
        return ledger_session

    # ------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------
    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        """Invoke a ledger stored procedure and return its decoded result."""

        session = await self._ensure_session()
        url = f"{self._base_url}/rest/v1/rpc/{name}"
        headers = {
            "apikey": str(self.config.anon_key),
            "Authorization": f"Bearer {self._access_token or self.config.anon_key}",
            "Accept": "application/json",
        }

        try:
            async with session.post(url, json=dict(params), headers=headers) as response:
                if response.status >= 300:
                    detail = await _error_detail(response)
                    raise LedgerError(
                        f"RPC {name} failed with status {response.status}: {detail}",
                        status=response.status,
                    )
                if response.status == 204:
                    return None
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerError(f"RPC {name} failed: {exc}") from exc

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise LedgerError(f"RPC {name} returned invalid JSON") from exc

    async def pending_for_device(self, device_id: str) -> list[dict[str, Any]]:
        rows = await self.rpc("pending_for_device", {"p_device_id": device_id})
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise LedgerError(
                f"pending_for_device returned {type(rows).__name__}, expected list"
            )
        return [row for row in rows if isinstance(row, dict)]

    async def ack_command(self, command_id: str) -> bool:
        claimed = await self.rpc("ack_command", {"p_command_id": command_id})
        return bool(claimed)

    async def complete_command(
        self, command_id: str, success: bool, error_message: Optional[str]
    ) -> None:
        await self.rpc(
            "complete_command",
            {
                "p_command_id": command_id,
                "p_success": bool(success),
                "p_err": error_message,
            },
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session


async def _error_detail(response: aiohttp.ClientResponse) -> str:
    text = (await response.text()).strip()
    try:
        payload = json.loads(text)
    except ValueError:
        return text[:200]
    if isinstance(payload, dict):
        for key in ("message", "error_description", "msg", "error"):
            if payload.get(key):
                return str(payload[key])
    return text[:200]
