import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.core.database import Base


class AccountingConnection(Base):
    """OAuth connection between a team and one accounting provider."""
    __tablename__ = "accounting_connections"
    __table_args__ = (
        UniqueConstraint("team_id", "provider", name="accounting_connections_team_provider_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id", ondelete="CASCADE"), index=True
    )
    provider: Mapped[str] = mapped_column(String(20))            # xero | quickbooks | fortnox
    provider_tenant_id: Mapped[str | None] = mapped_column(Text)  # Xero tenant / QBO realm
    target_account_id: Mapped[str | None] = mapped_column(Text)   # provider bank account
    encrypted_access_token: Mapped[str] = mapped_column(Text)
    encrypted_refresh_token: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    auto_sync: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AccountingSyncRecord(Base):
    """Export state of one transaction at one provider; the audit trail of the sync engine."""
    __tablename__ = "accounting_sync_records"
    __table_args__ = (
        # One sync record per transaction per provider
        UniqueConstraint(
            "transaction_id", "provider", name="accounting_sync_records_transaction_provider_key"
        ),
        Index("idx_accounting_sync_team_provider", "team_id", "provider"),
        Index("idx_accounting_sync_status", "team_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), index=True
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id", ondelete="CASCADE")
    )
    provider: Mapped[str] = mapped_column(String(20))
    provider_tenant_id: Mapped[str] = mapped_column(Text)
    provider_transaction_id: Mapped[str | None] = mapped_column(Text)
    # Purchase | SalesReceipt | Voucher | BankTransaction
    provider_entity_type: Mapped[str | None] = mapped_column(String(50))
    # { "internal-attachment-id": "provider-attachment-id" | null }
    synced_attachment_mapping: Mapped[dict] = mapped_column(
        JSONB, default=dict, server_default=text("'{}'::jsonb")
    )
    sync_type: Mapped[str | None] = mapped_column(String(10))   # manual | auto
    status: Mapped[str] = mapped_column(String(10), default="synced")  # synced | partial | failed
    error_code: Mapped[str | None] = mapped_column(String(50))
    error_message: Mapped[str | None] = mapped_column(Text)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()")
    )
