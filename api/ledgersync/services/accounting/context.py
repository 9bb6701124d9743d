"""
Explicit collaborators of the sync engine.

One ``SyncContext`` is built at process start (API startup or Celery worker
init) and passed to every engine function, so the reconciliation logic can
be driven in tests with in-memory fakes instead of a broker and database.
"""
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from ledgersync.core.config import settings
from ledgersync.services.accounting.providers.base import AccountingProvider, TokenSet
from ledgersync.services.accounting.types import ProviderConnection, SourceTransaction, SyncRecord


class SyncStore(Protocol):
    async def get_connection(self, team_id: str, provider: str) -> ProviderConnection | None: ...

    async def save_connection(self, connection: ProviderConnection) -> None: ...

    async def set_target_account(self, team_id: str, provider: str, account_id: str) -> None: ...

    async def delete_connection(self, team_id: str, provider: str) -> bool: ...

    async def save_tokens(self, team_id: str, provider: str, tokens: TokenSet) -> None: ...

    async def mark_connection_synced(self, team_id: str, provider: str) -> None: ...

    async def list_auto_sync_connections(self) -> list[tuple[str, str]]: ...

    async def get_transactions(
        self,
        team_id: str,
        transaction_ids: list[str] | None = None,
        since_days: int | None = None,
    ) -> list[SourceTransaction]: ...

    async def get_sync_records(
        self, team_id: str, transaction_ids: list[str], provider: str
    ) -> dict[str, SyncRecord]: ...

    async def upsert_sync_record(self, record: SyncRecord) -> None: ...


class Storage(Protocol):
    async def download(self, path: str) -> bytes: ...


class JobScheduler(Protocol):
    async def schedule(self, job_name: str, payload: dict, queue: str, delay_ms: int = 0) -> None: ...


@dataclass
class SyncContext:
    store: SyncStore
    storage: Storage
    scheduler: JobScheduler
    provider_factory: Callable[[ProviderConnection], AccountingProvider]
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)
    queue: str = field(default_factory=lambda: settings.accounting_queue)
    batch_size: int = field(default_factory=lambda: settings.accounting_export_batch_size)
    lookback_days: int = field(default_factory=lambda: settings.accounting_sync_lookback_days)
