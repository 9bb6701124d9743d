"""
SQLAlchemy-backed store for the sync engine.

Sync records are upserted on (transaction_id, provider). Identity columns
(provider_transaction_id, provider_entity_type, sync_type) are never
overwritten with NULL, so a provider anchor survives every later write.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ledgersync.core.security import decrypt_value, encrypt_value
from ledgersync.models.accounting import AccountingConnection, AccountingSyncRecord
from ledgersync.models.transaction import Transaction
from ledgersync.services.accounting.providers.base import TokenSet
from ledgersync.services.accounting.types import (
    ProviderConnection,
    SourceAttachment,
    SourceTransaction,
    SyncRecord,
)

logger = logging.getLogger(__name__)


def _to_source(tx: Transaction) -> SourceTransaction:
    return SourceTransaction(
        id=str(tx.id),
        team_id=str(tx.team_id),
        date=tx.date.date() if isinstance(tx.date, datetime) else tx.date,
        amount=tx.amount,
        currency=tx.currency,
        name=tx.name,
        description=tx.description,
        counterparty_name=tx.counterparty_name,
        reference=tx.reference,
        note=tx.note,
        category_slug=tx.category_slug,
        category_reporting_code=tx.category_reporting_code,
        tax_amount=tx.tax_amount,
        tax_rate=tx.tax_rate,
        tax_type=tx.tax_type,
        attachments=[
            SourceAttachment(id=str(a.id), name=a.name, path=a.path, mime_type=a.type, size=a.size)
            for a in tx.attachments
        ],
    )


def _to_record(row: AccountingSyncRecord) -> SyncRecord:
    return SyncRecord(
        transaction_id=str(row.transaction_id),
        team_id=str(row.team_id),
        provider=row.provider,
        provider_tenant_id=row.provider_tenant_id,
        status=row.status,
        provider_transaction_id=row.provider_transaction_id,
        provider_entity_type=row.provider_entity_type,
        sync_type=row.sync_type,
        error_code=row.error_code,
        error_message=row.error_message,
        synced_attachment_mapping=dict(row.synced_attachment_mapping or {}),
    )


class SqlSyncStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ─── Connections (credential store) ──────────────────────────────────────

    async def get_connection(self, team_id: str, provider: str) -> ProviderConnection | None:
        async with self.session_factory() as db:
            row = (await db.execute(
                select(AccountingConnection).where(
                    AccountingConnection.team_id == uuid.UUID(team_id),
                    AccountingConnection.provider == provider,
                )
            )).scalar_one_or_none()
        if row is None:
            return None
        return ProviderConnection(
            team_id=team_id,
            provider=provider,
            provider_tenant_id=row.provider_tenant_id,
            target_account_id=row.target_account_id,
            access_token=decrypt_value(row.encrypted_access_token),
            refresh_token=decrypt_value(row.encrypted_refresh_token),
            expires_at=row.expires_at,
        )

    async def save_connection(self, connection: ProviderConnection) -> None:
        """Create or replace the team's connection to ``connection.provider``."""
        stmt = insert(AccountingConnection).values(
            team_id=uuid.UUID(connection.team_id),
            provider=connection.provider,
            provider_tenant_id=connection.provider_tenant_id,
            target_account_id=connection.target_account_id,
            encrypted_access_token=encrypt_value(connection.access_token),
            encrypted_refresh_token=encrypt_value(connection.refresh_token),
            expires_at=connection.expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="accounting_connections_team_provider_key",
            set_={
                "provider_tenant_id": stmt.excluded.provider_tenant_id,
                "target_account_id": stmt.excluded.target_account_id,
                "encrypted_access_token": stmt.excluded.encrypted_access_token,
                "encrypted_refresh_token": stmt.excluded.encrypted_refresh_token,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def set_target_account(self, team_id: str, provider: str, account_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(AccountingConnection)
                .where(
                    AccountingConnection.team_id == uuid.UUID(team_id),
                    AccountingConnection.provider == provider,
                )
                .values(target_account_id=account_id)
            )
            await db.commit()

    async def delete_connection(self, team_id: str, provider: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(AccountingConnection).where(
                    AccountingConnection.team_id == uuid.UUID(team_id),
                    AccountingConnection.provider == provider,
                )
            )
            await db.commit()
        return result.rowcount > 0

    async def save_tokens(self, team_id: str, provider: str, tokens: TokenSet) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(AccountingConnection)
                .where(
                    AccountingConnection.team_id == uuid.UUID(team_id),
                    AccountingConnection.provider == provider,
                )
                .values(
                    encrypted_access_token=encrypt_value(tokens.access_token),
                    encrypted_refresh_token=encrypt_value(tokens.refresh_token),
                    expires_at=tokens.expires_at,
                )
            )
            await db.commit()

    async def mark_connection_synced(self, team_id: str, provider: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(AccountingConnection)
                .where(
                    AccountingConnection.team_id == uuid.UUID(team_id),
                    AccountingConnection.provider == provider,
                )
                .values(last_synced_at=datetime.now(timezone.utc))
            )
            await db.commit()

    async def list_auto_sync_connections(self) -> list[tuple[str, str]]:
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(AccountingConnection.team_id, AccountingConnection.provider).where(
                    AccountingConnection.auto_sync == True,  # noqa: E712
                )
            )).all()
        return [(str(team_id), provider) for team_id, provider in rows]

    # ─── Transactions ────────────────────────────────────────────────────────

    async def get_transactions(
        self,
        team_id: str,
        transaction_ids: list[str] | None = None,
        since_days: int | None = None,
    ) -> list[SourceTransaction]:
        query = (
            select(Transaction)
            .options(selectinload(Transaction.attachments))
            .where(Transaction.team_id == uuid.UUID(team_id))
            .order_by(Transaction.date, Transaction.id)
        )
        if transaction_ids is not None:
            if not transaction_ids:
                return []
            query = query.where(Transaction.id.in_([uuid.UUID(t) for t in transaction_ids]))
        else:
            query = query.where(Transaction.status == "posted")
            if since_days is not None:
                cutoff = datetime.now(timezone.utc) - timedelta(days=since_days)
                query = query.where(Transaction.date >= cutoff)

        async with self.session_factory() as db:
            rows = (await db.execute(query)).scalars().all()
        return [_to_source(tx) for tx in rows]

    # ─── Sync records ────────────────────────────────────────────────────────

    async def get_sync_records(
        self, team_id: str, transaction_ids: list[str], provider: str
    ) -> dict[str, SyncRecord]:
        if not transaction_ids:
            return {}
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(AccountingSyncRecord).where(
                    AccountingSyncRecord.team_id == uuid.UUID(team_id),
                    AccountingSyncRecord.provider == provider,
                    AccountingSyncRecord.transaction_id.in_([uuid.UUID(t) for t in transaction_ids]),
                )
            )).scalars().all()
        return {str(row.transaction_id): _to_record(row) for row in rows}

    async def upsert_sync_record(self, record: SyncRecord) -> None:
        values = {
            "transaction_id": uuid.UUID(record.transaction_id),
            "team_id": uuid.UUID(record.team_id),
            "provider": record.provider,
            "provider_tenant_id": record.provider_tenant_id,
            "provider_transaction_id": record.provider_transaction_id,
            "provider_entity_type": record.provider_entity_type,
            "sync_type": record.sync_type,
            "status": record.status,
            "error_code": record.error_code,
            "error_message": record.error_message,
            "synced_attachment_mapping": record.synced_attachment_mapping,
        }
        stmt = insert(AccountingSyncRecord).values(**values)
        table = AccountingSyncRecord.__table__
        stmt = stmt.on_conflict_do_update(
            constraint="accounting_sync_records_transaction_provider_key",
            set_={
                "provider_tenant_id": stmt.excluded.provider_tenant_id,
                "provider_transaction_id": func.coalesce(
                    stmt.excluded.provider_transaction_id, table.c.provider_transaction_id
                ),
                "provider_entity_type": func.coalesce(
                    stmt.excluded.provider_entity_type, table.c.provider_entity_type
                ),
                "sync_type": func.coalesce(stmt.excluded.sync_type, table.c.sync_type),
                "status": stmt.excluded.status,
                "error_code": stmt.excluded.error_code,
                "error_message": stmt.excluded.error_message,
                "synced_attachment_mapping": stmt.excluded.synced_attachment_mapping,
                "synced_at": func.now(),
            },
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()
