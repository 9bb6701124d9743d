"""Plain data shapes shared by the sync engine (no DB, no network)."""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

# Sync record statuses (no record at all means "never attempted")
STATUS_SYNCED = "synced"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

SYNC_TYPE_AUTO = "auto"
SYNC_TYPE_MANUAL = "manual"


@dataclass
class SourceAttachment:
    id: str
    name: str | None
    path: str | None = None          # relative to the upload dir
    mime_type: str | None = None     # as stored, may be wrong or generic
    size: int | None = None


@dataclass
class SourceTransaction:
    id: str
    team_id: str
    date: date
    amount: Decimal
    currency: str
    name: str
    description: str | None = None
    counterparty_name: str | None = None
    reference: str | None = None
    note: str | None = None
    category_slug: str | None = None
    category_reporting_code: str | None = None
    tax_amount: Decimal | None = None
    tax_rate: Decimal | None = None
    tax_type: str | None = None
    attachments: list[SourceAttachment] = field(default_factory=list)


@dataclass
class SyncRecord:
    """State of one transaction at one provider; (transaction_id, provider) is the key."""
    transaction_id: str
    team_id: str
    provider: str
    provider_tenant_id: str
    status: str
    provider_transaction_id: str | None = None
    provider_entity_type: str | None = None
    sync_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    synced_attachment_mapping: dict[str, str | None] = field(default_factory=dict)


@dataclass
class ProviderConnection:
    team_id: str
    provider: str
    provider_tenant_id: str | None
    target_account_id: str | None
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass
class RemovedAttachment:
    attachment_id: str
    provider_attachment_id: str | None


@dataclass
class AttachmentSyncItem:
    transaction_id: str
    provider_transaction_id: str
    new_attachment_ids: list[str]
    removed_attachments: list[RemovedAttachment]
    provider_entity_type: str | None = None
    existing_mapping: dict[str, str | None] = field(default_factory=dict)


@dataclass
class CategorizationResult:
    to_export: list[str] = field(default_factory=list)
    to_sync_attachments: list[AttachmentSyncItem] = field(default_factory=list)
    already_complete: list[str] = field(default_factory=list)


@dataclass
class MappedAttachment:
    id: str
    name: str
    path: str
    mime_type: str | None
    size: int | None


@dataclass
class MappedTransaction:
    """Provider-agnostic export shape, built per batch and never persisted."""
    id: str
    date: str                        # ISO YYYY-MM-DD
    amount: Decimal
    currency: str
    description: str
    reference: str | None
    counterparty_name: str | None
    category_slug: str | None
    category_reporting_code: str | None
    tax_amount: Decimal | None
    tax_rate: Decimal | None
    tax_type: str | None
    note: str | None
    attachments: list[MappedAttachment] = field(default_factory=list)


# ─── Run summaries ─────────────────────────────────────────────────────────────

@dataclass
class ExportSummary:
    synced_count: int = 0
    failed_count: int = 0
    results: list = field(default_factory=list)   # list[TransactionSyncResult]
    attachment_jobs: int = 0


@dataclass
class AttachmentSyncSummary:
    uploaded_count: int
    deleted_count: int
    failed_count: int
    updated_mapping: dict[str, str | None]
    status: str


@dataclass
class ReconciliationSummary:
    exported_count: int = 0
    attachments_synced_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
