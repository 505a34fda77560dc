from __future__ import annotations

import asyncio
import logging
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from codex_oauth_proxy.gateway.errors import CredentialFetchError

DEFAULT_EXPIRES_IN_SECONDS = 3600.0

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class Credential:
    token: str
    expires_at: float
    fetched_at: float


def resolve_tls_verify(ca_bundle_path: str | Path | None) -> ssl.SSLContext | bool:
    if ca_bundle_path and Path(ca_bundle_path).is_file():
        context = ssl.create_default_context(cafile=str(ca_bundle_path))
        logger.info("tls_ca_bundle_loaded path=%s", ca_bundle_path)
        return context
    logger.warning(
        "tls_verification_disabled reason=ca_bundle_missing path=%s", ca_bundle_path
    )
    return False


def _is_certificate_error(exc: BaseException) -> bool:
    current: BaseException | None = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _coerce_expires_in(raw: Any) -> float:
    if isinstance(raw, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(raw, (int, float)) and raw > 0:
        return float(raw)
    if isinstance(raw, str):
        try:
            parsed = float(raw.strip())
        except ValueError:
            return DEFAULT_EXPIRES_IN_SECONDS
        if parsed > 0:
            return parsed
    return DEFAULT_EXPIRES_IN_SECONDS


class CredentialCache:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        ca_bundle_path: str | Path | None = None,
        refresh_interval_seconds: float = 900.0,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._refresh_interval_seconds = max(0.0, float(refresh_interval_seconds))
        self._clock = clock
        self._tls_verify = resolve_tls_verify(ca_bundle_path)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(max(0.1, float(timeout_seconds))),
            verify=self._tls_verify,
            transport=transport,
        )
        self._credential: Credential | None = None
        self._pending_fetch: asyncio.Task[Credential] | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def tls_verify(self) -> ssl.SSLContext | bool:
        return self._tls_verify

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def refresh_interval_seconds(self) -> float:
        return self._refresh_interval_seconds

    async def initialize(self) -> None:
        await self.refresh()
        self.start_auto_refresh()

    def start_auto_refresh(self) -> None:
        if self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(
            self._run_refresh_loop(), name="oauth-token-refresh"
        )
        logger.info(
            "oauth_token_auto_refresh_scheduled interval_seconds=%.0f",
            self._refresh_interval_seconds,
        )

    async def close(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            finally:
                self._refresh_task = None
        if self._pending_fetch is not None:
            self._pending_fetch.cancel()
        await self.client.aclose()

    def has_valid_token(self) -> bool:
        credential = self._credential
        return credential is not None and self._clock() < credential.expires_at

    def next_refresh_info(self) -> dict[str, Any] | None:
        credential = self._credential
        if credential is None:
            return None
        remaining = max(0.0, credential.expires_at - self._clock())
        return {
            "seconds": int(remaining),
            "time": datetime.fromtimestamp(credential.expires_at, UTC).isoformat(),
        }

    async def get_token(self) -> str:
        credential = self._credential
        if credential is not None and self._clock() < credential.expires_at:
            return credential.token
        if credential is not None:
            logger.info("oauth_token_expired action=fetch")
        refreshed = await self.refresh()
        return refreshed.token

    async def refresh(self) -> Credential:
        # Callers arriving while a fetch is in flight join it instead of
        # issuing their own token request.
        pending = self._pending_fetch
        if pending is None:
            pending = asyncio.create_task(
                self._fetch_and_store(), name="oauth-token-fetch"
            )
            self._pending_fetch = pending
        return await asyncio.shield(pending)

    async def run_scheduled_refresh(self) -> bool:
        logger.info("oauth_token_auto_refresh_start")
        try:
            await self.refresh()
        except Exception as exc:
            logger.warning(
                "oauth_token_auto_refresh_failed error=%s keep_cached=%s",
                str(exc),
                self.has_valid_token(),
            )
            return False
        return True

    async def fetch_credential(self) -> Credential:
        logger.info("oauth_token_fetch_start token_url=%s", self._token_url)
        try:
            response = await self.client.post(
                self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            if _is_certificate_error(exc):
                logger.error(
                    "oauth_token_fetch_error reason=certificate_verification_failed "
                    "hint=check_ca_bundle_path"
                )
            logger.error(
                "oauth_token_fetch_error reason=request_error token_url=%s error_type=%s error=%s",
                self._token_url,
                exc.__class__.__name__,
                str(exc) or repr(exc),
            )
            raise CredentialFetchError(
                f"No response received from OAuth server: {str(exc) or repr(exc)}"
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "oauth_token_fetch_error status=%d body=%s",
                response.status_code,
                response.text[:500],
            )
            raise CredentialFetchError(
                f"OAuth server returned status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            logger.error("oauth_token_fetch_error reason=invalid_json")
            raise CredentialFetchError("OAuth server returned invalid JSON") from exc

        raw_token = body.get("access_token") if isinstance(body, dict) else None
        access_token = str(raw_token).strip() if raw_token is not None else ""
        if not access_token:
            logger.error("oauth_token_fetch_error reason=missing_access_token")
            raise CredentialFetchError("OAuth response did not include an access_token")

        expires_in = _coerce_expires_in(body.get("expires_in"))
        fetched_at = self._clock()
        credential = Credential(
            token=access_token,
            expires_at=fetched_at + expires_in,
            fetched_at=fetched_at,
        )
        logger.info("oauth_token_acquired expires_in=%.0f", expires_in)
        return credential

    async def _fetch_and_store(self) -> Credential:
        try:
            credential = await self.fetch_credential()
            self._credential = credential
            return credential
        finally:
            self._pending_fetch = None

    async def _run_refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval_seconds)
            await self.run_scheduled_refresh()
