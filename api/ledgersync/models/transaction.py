import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, ForeignKey, Numeric, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.core.database import Base


class Transaction(Base):
    """A bank transaction owned by a team, the unit exported to accounting providers."""
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id", ondelete="CASCADE"), index=True
    )
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    counterparty_name: Mapped[str | None] = mapped_column(String(255))
    reference: Mapped[str | None] = mapped_column(String(255))
    note: Mapped[str | None] = mapped_column(Text)
    category_slug: Mapped[str | None] = mapped_column(String(100))
    category_reporting_code: Mapped[str | None] = mapped_column(String(50))  # e.g. BAS account "4000"
    tax_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 3))   # percent
    tax_type: Mapped[str | None] = mapped_column(String(50))          # vat | gst | sales_tax
    status: Mapped[str] = mapped_column(String(20), default="posted")  # posted | pending | excluded
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()")
    )

    attachments: Mapped[list["TransactionAttachment"]] = relationship(
        back_populates="transaction", order_by="TransactionAttachment.created_at"
    )


class TransactionAttachment(Base):
    """A receipt or invoice file stored under the upload directory."""
    __tablename__ = "transaction_attachments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), index=True
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("teams.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str | None] = mapped_column(String(255))
    path: Mapped[str | None] = mapped_column(Text)      # relative to settings.upload_dir
    type: Mapped[str | None] = mapped_column(String(100))  # stored MIME type, may be wrong
    size: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()")
    )

    transaction: Mapped["Transaction"] = relationship(back_populates="attachments")
