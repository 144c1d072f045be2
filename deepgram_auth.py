"""Deepgram credentials and usage accounting via the deepgram-auth edge function.

The edge function hands out short-lived API keys and tracks per-user minutes.
When there is no signed-in session, or the function is unreachable, the
locally configured key is used instead unless it is still a placeholder.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from error_classifier import make_error
from errors import AUTH_FAILED, VoiceServiceError
from models import ErrorKind, UsageRecord, UsageStatus

logger = logging.getLogger(__name__)

FUNCTION_PATH = "/functions/v1/deepgram-auth"
EXPIRY_MARGIN_S = 60.0
FALLBACK_TTL_S = 3600.0
REQUEST_TIMEOUT_S = 10.0


@dataclass
class Credentials:
    api_key: str
    expires_at: float  # epoch seconds


def is_usable_key(key: Optional[str]) -> bool:
    """False for empty keys and the placeholders shipped in sample env files."""
    if not key or len(key) <= 10:
        return False
    return "YOUR_" not in key and "_HERE" not in key


def _parse_expiry(value: Any, default: float) -> float:
    if not value:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()


class DeepgramAuthManager:
    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        access_token: Optional[str] = None,
        fallback_api_key: Optional[str] = None,
        dev_mode: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._function_url = supabase_url.rstrip("/") + FUNCTION_PATH
        self._anon_key = anon_key
        self._access_token = access_token
        self._fallback_api_key = fallback_api_key
        self._dev_mode = dev_mode
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._credentials: Optional[Credentials] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def current_credentials(self) -> Optional[Credentials]:
        return self._credentials

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token
        self.clear_credentials()

    def has_valid_credentials(self) -> bool:
        return (
            self._credentials is not None
            and self._credentials.expires_at > self._clock() + EXPIRY_MARGIN_S
        )

    def clear_credentials(self) -> None:
        self._credentials = None

    async def get_api_key(self) -> str:
        if self.has_valid_credentials():
            return self._credentials.api_key
        async with self._refresh_lock:
            # Another caller may have refreshed while we waited.
            if self.has_valid_credentials():
                return self._credentials.api_key
            return await self._refresh_credentials()

    async def validate_usage(self) -> UsageStatus:
        if not self._access_token:
            logger.warning("No active session for usage validation (dev_mode=%s)", self._dev_mode)
            return UsageStatus(can_use=self._dev_mode)

        try:
            data = await self._invoke("validate_usage")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Server-side usage validation failed, allowing usage: %s", exc)
            return UsageStatus(can_use=True)

        return UsageStatus(
            can_use=bool(data.get("can_use", True)),
            current_usage=data.get("current_usage") or 0,
            quota=data.get("quota"),
            remaining=data.get("remaining"),
        )

    async def log_usage(self, record: UsageRecord) -> None:
        usage_data = {
            "duration": record.duration_minutes,
            "model": record.model,
            "feature": record.feature,
        }
        if not self._access_token:
            logger.info("No active session, usage logged locally: %s", usage_data)
            return

        try:
            await self._invoke("log_usage", usage_data=usage_data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Server-side usage logging failed: %s; local record: %s", exc, usage_data)
            return
        logger.info("Logged usage to server: %s", usage_data)

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _refresh_credentials(self) -> str:
        if self._access_token:
            try:
                data = await self._invoke("get_token")
                api_key = data.get("api_key")
                if api_key:
                    expires_at = _parse_expiry(
                        data.get("expires_at"), self._clock() + FALLBACK_TTL_S
                    )
                    self._credentials = Credentials(api_key=api_key, expires_at=expires_at)
                    logger.info("Authenticated with deepgram-auth edge function")
                    return api_key
                logger.warning("deepgram-auth edge function returned no API key")
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("deepgram-auth edge function failed: %s", exc)
        else:
            logger.warning("No active session for Deepgram authentication, trying local key")

        if is_usable_key(self._fallback_api_key):
            logger.warning(
                "Using local Deepgram API key (len=%d)", len(self._fallback_api_key)
            )
            self._credentials = Credentials(
                api_key=self._fallback_api_key,
                expires_at=self._clock() + FALLBACK_TTL_S,
            )
            return self._fallback_api_key

        if self._fallback_api_key:
            logger.error("Local Deepgram API key is a placeholder; set DEEPGRAM_API_KEY")
        raise VoiceServiceError(make_error(ErrorKind.CONNECTION, AUTH_FAILED))

    async def _invoke(self, action: str, **payload: Any) -> dict[str, Any]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._access_token}",
        }
        response = await self._client().post(
            self._function_url, json={"action": action, **payload}, headers=headers
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected deepgram-auth response for {action!r}")
        return data

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S)
        return self._http_client
