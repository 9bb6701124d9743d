"""
Provider abstraction consumed by the sync engine.

Each accounting provider wraps its REST API behind the same async surface.
Provider methods report per-item failures in their return values; only
whole-call failures (network, auth) raise ``ProviderError``.
"""
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from ledgersync.core.config import settings
from ledgersync.services.accounting.errors import ProviderError, RateLimitedError
from ledgersync.services.accounting.rate_budget import RateLimitConfig, get_rate_limit
from ledgersync.services.accounting.types import MappedTransaction, ProviderConnection

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER = timedelta(seconds=60)


# ─── Provider result shapes ────────────────────────────────────────────────────

@dataclass
class TransactionSyncResult:
    transaction_id: str
    success: bool
    provider_transaction_id: str | None = None
    provider_entity_type: str | None = None
    error: str | None = None


@dataclass
class SyncResult:
    synced_count: int = 0
    failed_count: int = 0
    results: list[TransactionSyncResult] = field(default_factory=list)

    def add(self, result: TransactionSyncResult) -> None:
        self.results.append(result)
        if result.success:
            self.synced_count += 1
        else:
            self.failed_count += 1


@dataclass
class AttachmentResult:
    success: bool
    attachment_id: str | None = None
    error: str | None = None


@dataclass
class DeleteAttachmentResult:
    success: bool
    error: str | None = None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class ProviderAccount:
    id: str
    name: str
    code: str | None = None
    currency: str | None = None


@dataclass
class ProviderTenant:
    id: str
    name: str


@dataclass
class ConnectionCheck:
    connected: bool
    error: str | None = None


# ─── Base class ────────────────────────────────────────────────────────────────

class AccountingProvider:
    id: str = ""
    name: str = ""
    token_url: str = ""
    authorize_url: str = ""
    scopes: tuple[str, ...] = ()
    consent_params: dict[str, str] = {}
    supports_attachment_delete: bool = False
    supports_history_notes: bool = False

    def __init__(self, connection: ProviderConnection, *, client: httpx.AsyncClient | None = None):
        self.connection = connection
        self.access_token = connection.access_token
        self._client = client
        self._owns_client = client is None

    @property
    def rate_limit(self) -> RateLimitConfig:
        return get_rate_limit(self.id)

    @property
    def client_credentials(self) -> tuple[str, str]:
        return "", ""

    # ── lifecycle ──────────────────────────────────────────────────────────────

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AccountingProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── OAuth ──────────────────────────────────────────────────────────────────

    def build_consent_url(self, state: str, redirect_uri: str) -> str:
        """Authorization-code consent URL; ``state`` comes back on the callback."""
        client_id, _ = self.client_credentials
        if not client_id:
            raise ProviderError(f"{self.name} OAuth client is not configured")
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            **self.consent_params,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_grant(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "exchange authorization code",
        )

    def is_token_expired(self, expires_at: datetime | None) -> bool:
        """True when the token is expired or expires within the safety buffer."""
        if expires_at is None:
            return True
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - TOKEN_EXPIRY_BUFFER <= datetime.now(timezone.utc)

    async def refresh_tokens(self, refresh_token: str) -> TokenSet:
        return await self._token_grant(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh tokens",
            current_refresh_token=refresh_token,
        )

    async def _token_grant(self, data: dict, action: str, current_refresh_token: str | None = None) -> TokenSet:
        """OAuth2 token endpoint call with HTTP basic client auth."""
        body = await self._client_auth_post(self.token_url, action, data=data)
        refresh_token = body.get("refresh_token") or current_refresh_token
        if not body.get("access_token") or not refresh_token:
            raise ProviderError(f"{self.name} returned an incomplete token response while trying to {action}")
        tokens = TokenSet(
            access_token=body["access_token"],
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(body.get("expires_in", 1800))),
        )
        self.access_token = tokens.access_token
        return tokens

    async def disconnect(self) -> None:
        """Revoke the grant at the provider. Providers without a revocation endpoint do nothing."""

    # ── operations ─────────────────────────────────────────────────────────────

    async def get_tenants(self) -> list[ProviderTenant]:
        raise NotImplementedError

    async def check_connection(self) -> ConnectionCheck:
        try:
            await self.get_tenants()
        except ProviderError as exc:
            return ConnectionCheck(connected=False, error=str(exc))
        return ConnectionCheck(connected=True)

    async def get_accounts(self, tenant_id: str) -> list[ProviderAccount]:
        raise NotImplementedError

    async def sync_transactions(
        self,
        transactions: list[MappedTransaction],
        target_account_id: str,
        tenant_id: str,
    ) -> SyncResult:
        raise NotImplementedError

    async def upload_attachment(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        entity_type: str | None = None,
    ) -> AttachmentResult:
        raise NotImplementedError

    async def delete_attachment(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        attachment_id: str,
    ) -> DeleteAttachmentResult:
        return DeleteAttachmentResult(
            success=False, error=f"{self.name} does not support deleting attachments"
        )

    async def add_transaction_history_note(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        note: str,
    ) -> None:
        raise NotImplementedError

    # ── HTTP helpers ───────────────────────────────────────────────────────────

    def _check(self, response: httpx.Response, action: str) -> Any:
        """Return the decoded JSON body or raise a classified ProviderError."""
        if response.status_code == 429:
            raise RateLimitedError(
                f"{self.name} rate limit exceeded while trying to {action} (429)",
                status_code=429,
            )
        if response.status_code >= 400:
            detail = response.text[:500]
            logger.warning("%s API error %s on %s: %s", self.name, response.status_code, action, detail)
            raise ProviderError(
                f"{self.name} API error {response.status_code} while trying to {action}: {detail}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def _request(self, method: str, url: str, action: str, **kwargs) -> Any:
        headers = {"Authorization": f"Bearer {self.access_token}", "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} request failed while trying to {action}: {exc}") from exc
        return self._check(response, action)

    async def _client_auth_post(self, url: str, action: str, **kwargs) -> Any:
        """POST authenticated with the app's client credentials instead of a bearer token."""
        client_id, client_secret = self.client_credentials
        if not client_id or not client_secret:
            raise ProviderError(f"{self.name} OAuth client is not configured")
        basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
        headers = {"Authorization": f"Basic {basic}", "Accept": "application/json"}
        try:
            response = await self.client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} request failed while trying to {action}: {exc}") from exc
        return self._check(response, action)
