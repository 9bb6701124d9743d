"""
Reconciliation categorizer. Pure: no DB, no network.

Splits a team's candidate transactions by comparing them with their sync
records for one provider:

    to_export            no record, or the last export failed
    to_sync_attachments  exported, but attachments drifted or some failed
    already_complete     nothing to do

The result is recomputed on every pass and never stored, which is what
makes re-running a pass safe.
"""
from collections.abc import Iterable, Mapping

from ledgersync.services.accounting.types import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    AttachmentSyncItem,
    CategorizationResult,
    RemovedAttachment,
    SourceTransaction,
    SyncRecord,
)


def current_attachment_ids(transaction: SourceTransaction) -> list[str]:
    """Attachment ids that take part in sync; attachments without a name are ignored."""
    return [a.id for a in transaction.attachments if a.name is not None]


def categorize(
    transactions: Iterable[SourceTransaction],
    sync_records: Mapping[str, SyncRecord],
) -> CategorizationResult:
    result = CategorizationResult()

    for tx in transactions:
        record = sync_records.get(tx.id)

        # A failed record with a provider anchor is handled like "partial" below
        if record is None or (record.status == STATUS_FAILED and not record.provider_transaction_id):
            result.to_export.append(tx.id)
            continue

        current = current_attachment_ids(tx)
        mapping = record.synced_attachment_mapping or {}
        current_set = set(current)

        new_ids = [att_id for att_id in current if att_id not in mapping]
        removed = [
            RemovedAttachment(attachment_id=att_id, provider_attachment_id=provider_id)
            for att_id, provider_id in mapping.items()
            if att_id not in current_set
        ]

        needs_sync = bool(new_ids or removed) or record.status in (STATUS_PARTIAL, STATUS_FAILED)
        if not needs_sync:
            result.already_complete.append(tx.id)
        elif record.provider_transaction_id:
            result.to_sync_attachments.append(
                AttachmentSyncItem(
                    transaction_id=tx.id,
                    provider_transaction_id=record.provider_transaction_id,
                    new_attachment_ids=new_ids,
                    removed_attachments=removed,
                    provider_entity_type=record.provider_entity_type,
                    existing_mapping=dict(mapping),
                )
            )
        else:
            # Drift without a provider anchor: nothing to attach to, export again
            result.to_export.append(tx.id)

    return result
