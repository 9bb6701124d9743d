"""
Export orchestrator.

Pushes transactions to a provider in fixed-size batches, records one sync
record per transaction, and fans out one delayed attachment job for every
transaction that gained a provider-side identity.

Batches run strictly in order. A batch that blows up as a whole (network,
auth) marks its own transactions failed and the run moves on; failed
transactions are retried by the next reconciliation pass, never in-process.
"""
import logging
from collections.abc import Callable, Sequence

from ledgersync.schemas.accounting import AttachmentSyncPayload
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import EXPORT_FAILED
from ledgersync.services.accounting.mapping import eligible_attachments, map_transaction
from ledgersync.services.accounting.providers.base import AccountingProvider, TransactionSyncResult
from ledgersync.services.accounting.rate_budget import JobCounter, attachment_job_delay
from ledgersync.services.accounting.types import (
    STATUS_FAILED,
    STATUS_SYNCED,
    ExportSummary,
    SourceTransaction,
    SyncRecord,
)

logger = logging.getLogger(__name__)

SYNC_ATTACHMENTS_JOB = "ledgersync.services.accounting.tasks.sync_attachments"


async def schedule_attachment_sync(
    ctx: SyncContext,
    counter: JobCounter,
    payload: AttachmentSyncPayload,
) -> int:
    """Enqueue one attachment job at the next pre-spread slot; returns the delay in ms."""
    delay_ms = attachment_job_delay(payload.provider, counter.take())
    await ctx.scheduler.schedule(
        SYNC_ATTACHMENTS_JOB,
        payload.model_dump(mode="json"),
        ctx.queue,
        delay_ms=delay_ms,
    )
    return delay_ms


def _align(batch: Sequence[SourceTransaction], results: list[TransactionSyncResult]) -> list[TransactionSyncResult]:
    by_id = {r.transaction_id: r for r in results}
    return [
        by_id.get(tx.id)
        or TransactionSyncResult(transaction_id=tx.id, success=False, error="Transaction not returned by provider")
        for tx in batch
    ]


async def export_transactions(
    ctx: SyncContext,
    provider: AccountingProvider,
    transactions: Sequence[SourceTransaction],
    *,
    team_id: str,
    tenant_id: str,
    target_account_id: str,
    sync_type: str,
    counter: JobCounter,
    on_progress: Callable[[int], None] | None = None,
) -> ExportSummary:
    summary = ExportSummary()
    if not transactions:
        return summary

    size = max(1, ctx.batch_size)
    batches = [transactions[i:i + size] for i in range(0, len(transactions), size)]

    for number, batch in enumerate(batches, start=1):
        try:
            mapped = [map_transaction(tx) for tx in batch]
            result = await provider.sync_transactions(mapped, target_account_id, tenant_id)
            outcomes = _align(batch, result.results)
        except Exception as exc:
            logger.error(
                "%s export batch %d/%d failed for team %s: %s",
                provider.id, number, len(batches), team_id, exc,
            )
            message = str(exc) or type(exc).__name__
            outcomes = [TransactionSyncResult(transaction_id=tx.id, success=False, error=message) for tx in batch]

        by_id = {tx.id: tx for tx in batch}
        for outcome in outcomes:
            ok = outcome.success
            # A fresh provider object has no attachments yet; a failed attempt's mapping is void
            await ctx.store.upsert_sync_record(SyncRecord(
                transaction_id=outcome.transaction_id,
                team_id=team_id,
                provider=provider.id,
                provider_tenant_id=tenant_id,
                status=STATUS_SYNCED if ok else STATUS_FAILED,
                provider_transaction_id=outcome.provider_transaction_id if ok else None,
                provider_entity_type=outcome.provider_entity_type if ok else None,
                sync_type=sync_type,
                error_code=None if ok else EXPORT_FAILED,
                error_message=None if ok else (outcome.error or "Export failed"),
                synced_attachment_mapping={},
            ))
            summary.results.append(outcome)

            if not ok:
                summary.failed_count += 1
                continue
            summary.synced_count += 1

            attachments = eligible_attachments(by_id[outcome.transaction_id])
            if outcome.provider_transaction_id and attachments:
                await schedule_attachment_sync(ctx, counter, AttachmentSyncPayload(
                    team_id=team_id,
                    provider=provider.id,
                    provider_tenant_id=tenant_id,
                    transaction_id=outcome.transaction_id,
                    provider_transaction_id=outcome.provider_transaction_id,
                    provider_entity_type=outcome.provider_entity_type,
                    sync_type=sync_type,
                    new_attachment_ids=[a.id for a in attachments],
                ))
                summary.attachment_jobs += 1

        if on_progress is not None:
            on_progress(number * 100 // len(batches))

    logger.info(
        "%s export for team %s: %d synced, %d failed, %d attachment jobs",
        provider.id, team_id, summary.synced_count, summary.failed_count, summary.attachment_jobs,
    )
    return summary
