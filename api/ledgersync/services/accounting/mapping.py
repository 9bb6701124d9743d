"""Internal transaction → provider-agnostic MappedTransaction."""
from ledgersync.services.accounting.types import (
    MappedAttachment,
    MappedTransaction,
    SourceAttachment,
    SourceTransaction,
)


def eligible_attachments(transaction: SourceTransaction) -> list[SourceAttachment]:
    """Attachments with enough metadata to be fetched and uploaded."""
    return [a for a in transaction.attachments if a.name is not None and a.path]


def map_transaction(tx: SourceTransaction) -> MappedTransaction:
    return MappedTransaction(
        id=tx.id,
        date=tx.date.isoformat(),
        amount=tx.amount,
        currency=tx.currency,
        description=tx.description or tx.name,
        reference=tx.reference,
        counterparty_name=tx.counterparty_name,
        category_slug=tx.category_slug,
        category_reporting_code=tx.category_reporting_code,
        tax_amount=tx.tax_amount,
        tax_rate=tx.tax_rate,
        tax_type=tx.tax_type,
        note=tx.note,
        attachments=[
            MappedAttachment(
                id=a.id,
                name=a.name,
                path=a.path,
                mime_type=a.mime_type,
                size=a.size,
            )
            for a in eligible_attachments(tx)
        ],
    )
