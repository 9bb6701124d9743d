"""
Reconciliation pass for one team and one provider.

    connection → categorize → export new/failed → fan out attachment jobs

Both the export phase and the attachment-only phase draw job indexes from
the same ``JobCounter``, so every attachment job of the run lands in its own
rate-budget slot.
"""
import logging
from collections.abc import Callable

from ledgersync.schemas.accounting import AttachmentSyncPayload, RemovedAttachmentPayload
from ledgersync.services.accounting.attachments import sync_attachments
from ledgersync.services.accounting.categorize import categorize
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import AccountingConfigError, ProviderError
from ledgersync.services.accounting.export import export_transactions, schedule_attachment_sync
from ledgersync.services.accounting.providers.base import AccountingProvider
from ledgersync.services.accounting.rate_budget import JobCounter
from ledgersync.services.accounting.types import (
    SYNC_TYPE_AUTO,
    AttachmentSyncSummary,
    ProviderConnection,
    ReconciliationSummary,
    RemovedAttachment,
)

logger = logging.getLogger(__name__)


async def open_provider(
    ctx: SyncContext,
    team_id: str,
    provider_id: str,
    *,
    require_target: bool = True,
) -> tuple[AccountingProvider, ProviderConnection]:
    """Load the team's connection and return a provider with a usable access token.

    Raises ``AccountingConfigError`` for anything that makes the whole run
    pointless: no connection, no tenant, no target account, or tokens that
    can no longer be refreshed.
    """
    connection = await ctx.store.get_connection(team_id, provider_id)
    if connection is None:
        raise AccountingConfigError(f"Team {team_id} has no {provider_id} connection")
    if not connection.provider_tenant_id:
        raise AccountingConfigError(f"{provider_id} connection for team {team_id} has no tenant")
    if require_target and not connection.target_account_id:
        raise AccountingConfigError(f"{provider_id} connection for team {team_id} has no target account")

    provider = ctx.provider_factory(connection)
    if provider.is_token_expired(connection.expires_at):
        logger.info("Refreshing %s tokens for team %s", provider_id, team_id)
        try:
            tokens = await provider.refresh_tokens(connection.refresh_token)
        except ProviderError as exc:
            await provider.aclose()
            raise AccountingConfigError(f"Could not refresh {provider_id} tokens: {exc}") from exc
        await ctx.store.save_tokens(team_id, provider_id, tokens)
        connection.access_token = tokens.access_token
        connection.refresh_token = tokens.refresh_token
        connection.expires_at = tokens.expires_at

    return provider, connection


async def run_reconciliation(
    ctx: SyncContext,
    team_id: str,
    provider_id: str,
    *,
    transaction_ids: list[str] | None = None,
    sync_type: str = SYNC_TYPE_AUTO,
    on_progress: Callable[[int], None] | None = None,
) -> ReconciliationSummary:
    provider, connection = await open_provider(ctx, team_id, provider_id)
    tenant_id = connection.provider_tenant_id

    async with provider:
        if transaction_ids is not None:
            transactions = await ctx.store.get_transactions(team_id, transaction_ids)
        else:
            transactions = await ctx.store.get_transactions(team_id, since_days=ctx.lookback_days)

        records = await ctx.store.get_sync_records(team_id, [tx.id for tx in transactions], provider.id)
        plan = categorize(transactions, records)
        logger.info(
            "%s reconciliation for team %s: %d to export, %d attachment syncs, %d complete",
            provider.id, team_id, len(plan.to_export), len(plan.to_sync_attachments), len(plan.already_complete),
        )

        summary = ReconciliationSummary(skipped_count=len(plan.already_complete))
        counter = JobCounter()

        # ─── Export phase ────────────────────────────────────────────────────
        by_id = {tx.id: tx for tx in transactions}
        exported = await export_transactions(
            ctx,
            provider,
            [by_id[tx_id] for tx_id in plan.to_export],
            team_id=team_id,
            tenant_id=tenant_id,
            target_account_id=connection.target_account_id,
            sync_type=sync_type,
            counter=counter,
            on_progress=on_progress,
        )
        summary.exported_count = exported.synced_count
        summary.failed_count = exported.failed_count

        # ─── Attachment-only phase ───────────────────────────────────────────
        for item in plan.to_sync_attachments:
            await schedule_attachment_sync(ctx, counter, AttachmentSyncPayload(
                team_id=team_id,
                provider=provider.id,
                provider_tenant_id=tenant_id,
                transaction_id=item.transaction_id,
                provider_transaction_id=item.provider_transaction_id,
                provider_entity_type=item.provider_entity_type,
                sync_type=sync_type,
                new_attachment_ids=item.new_attachment_ids,
                removed_attachments=[
                    RemovedAttachmentPayload(
                        attachment_id=r.attachment_id,
                        provider_attachment_id=r.provider_attachment_id,
                    )
                    for r in item.removed_attachments
                ],
                existing_mapping=item.existing_mapping,
            ))
            summary.attachments_synced_count += 1

        await ctx.store.mark_connection_synced(team_id, provider.id)

    if on_progress is not None:
        on_progress(100)
    logger.info(
        "%s reconciliation for team %s done: %d exported, %d attachment jobs, %d skipped, %d failed",
        provider.id, team_id, summary.exported_count, summary.attachments_synced_count,
        summary.skipped_count, summary.failed_count,
    )
    return summary


async def run_attachment_sync(ctx: SyncContext, payload: AttachmentSyncPayload) -> AttachmentSyncSummary | None:
    """Body of one delayed attachment job.

    The mapping is re-read from the store when a record exists, so a job that
    is delivered twice does not upload the same file twice.
    """
    provider, _ = await open_provider(ctx, payload.team_id, payload.provider, require_target=False)

    async with provider:
        found = await ctx.store.get_transactions(payload.team_id, [payload.transaction_id])
        if not found:
            logger.warning("Transaction %s no longer exists, skipping attachment sync", payload.transaction_id)
            return None
        transaction = found[0]

        records = await ctx.store.get_sync_records(payload.team_id, [payload.transaction_id], payload.provider)
        record = records.get(payload.transaction_id)
        mapping = dict(record.synced_attachment_mapping) if record is not None else dict(payload.existing_mapping)

        return await sync_attachments(
            ctx,
            provider,
            team_id=payload.team_id,
            tenant_id=payload.provider_tenant_id,
            transaction=transaction,
            provider_transaction_id=payload.provider_transaction_id,
            new_attachment_ids=payload.new_attachment_ids,
            removed_attachments=[
                RemovedAttachment(attachment_id=r.attachment_id, provider_attachment_id=r.provider_attachment_id)
                for r in payload.removed_attachments
            ],
            existing_mapping=mapping,
            provider_entity_type=payload.provider_entity_type,
            sync_type=payload.sync_type,
        )
