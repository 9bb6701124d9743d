"""
Connection lifecycle for one team and one provider.

    consent URL → callback (code exchange, tenant) → target account → sync
    check at any time, disconnect to revoke and forget the credentials

Sync records outlive their connection: reconnecting to the same tenant picks
up where the previous connection left off.
"""
import logging
from datetime import datetime, timezone

from ledgersync.core.config import settings
from ledgersync.core.security import create_oauth_state
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import (
    AccountingConfigError,
    ProviderError,
    UnknownTargetAccountError,
)
from ledgersync.services.accounting.providers.base import ConnectionCheck
from ledgersync.services.accounting.reconcile import open_provider
from ledgersync.services.accounting.types import ProviderConnection

logger = logging.getLogger(__name__)


def redirect_uri(provider_id: str) -> str:
    return f"{settings.accounting_oauth_redirect_base.rstrip('/')}/{provider_id}/callback"


def _pending_connection(team_id: str, provider_id: str, tenant_id: str | None = None) -> ProviderConnection:
    return ProviderConnection(
        team_id=team_id,
        provider=provider_id,
        provider_tenant_id=tenant_id,
        target_account_id=None,
        access_token="",
        refresh_token="",
        expires_at=datetime.now(timezone.utc),
    )


def build_consent_url(ctx: SyncContext, team_id: str, provider_id: str) -> str:
    """Provider consent URL whose ``state`` binds the callback to ``team_id``."""
    provider = ctx.provider_factory(_pending_connection(team_id, provider_id))
    return provider.build_consent_url(create_oauth_state(team_id, provider_id), redirect_uri(provider_id))


async def complete_connection(
    ctx: SyncContext,
    team_id: str,
    provider_id: str,
    *,
    code: str,
    tenant_id: str | None = None,
) -> ProviderConnection:
    """Exchange the callback's code for tokens and store the connection.

    ``tenant_id`` is only known up front for QuickBooks (``realmId`` on the
    callback); the other providers report the granted tenants themselves.
    The target account survives a reconnect to the same tenant.
    """
    connection = _pending_connection(team_id, provider_id, tenant_id)
    async with ctx.provider_factory(connection) as provider:
        tokens = await provider.exchange_code(code, redirect_uri(provider_id))
        connection.access_token = tokens.access_token
        connection.refresh_token = tokens.refresh_token
        connection.expires_at = tokens.expires_at
        tenants = await provider.get_tenants()

    if not tenants:
        raise AccountingConfigError(f"No {provider_id} organisation was granted to team {team_id}")
    if len(tenants) > 1:
        logger.info(
            "%s granted %d organisations to team %s, using %s",
            provider_id, len(tenants), team_id, tenants[0].id,
        )
    connection.provider_tenant_id = tenants[0].id

    existing = await ctx.store.get_connection(team_id, provider_id)
    if existing is not None and existing.provider_tenant_id == connection.provider_tenant_id:
        connection.target_account_id = existing.target_account_id

    await ctx.store.save_connection(connection)
    logger.info("Team %s connected %s tenant %s", team_id, provider_id, connection.provider_tenant_id)
    return connection


async def select_target_account(
    ctx: SyncContext, team_id: str, provider_id: str, account_id: str
) -> ProviderConnection:
    provider, connection = await open_provider(ctx, team_id, provider_id, require_target=False)
    async with provider:
        accounts = await provider.get_accounts(connection.provider_tenant_id)
    if account_id not in {account.id for account in accounts}:
        raise UnknownTargetAccountError(
            f"{account_id} is not a bank account of {provider_id} tenant {connection.provider_tenant_id}"
        )
    await ctx.store.set_target_account(team_id, provider_id, account_id)
    connection.target_account_id = account_id
    return connection


async def check_connection(ctx: SyncContext, team_id: str, provider_id: str) -> ConnectionCheck:
    try:
        provider, _ = await open_provider(ctx, team_id, provider_id, require_target=False)
    except AccountingConfigError as exc:
        return ConnectionCheck(connected=False, error=str(exc))
    async with provider:
        return await provider.check_connection()


async def disconnect(ctx: SyncContext, team_id: str, provider_id: str) -> bool:
    """Revoke at the provider (best effort) and delete the stored connection."""
    connection = await ctx.store.get_connection(team_id, provider_id)
    if connection is None:
        return False
    async with ctx.provider_factory(connection) as provider:
        try:
            await provider.disconnect()
        except ProviderError as exc:
            logger.warning("Could not revoke %s grant for team %s: %s", provider_id, team_id, exc)
    await ctx.store.delete_connection(team_id, provider_id)
    logger.info("Team %s disconnected %s", team_id, provider_id)
    return True
