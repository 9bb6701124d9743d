"""Celery entry points of the accounting sync engine.

Each task drives the async engine with ``asyncio.run``. Every call gets a
fresh event loop, so the worker's database engine uses ``NullPool`` and never
hands a connection from one loop to the next.
"""
import asyncio
import logging
from dataclasses import asdict

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ledgersync.core.config import settings
from ledgersync.schemas.accounting import AttachmentSyncPayload
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import AccountingConfigError
from ledgersync.services.accounting.providers.registry import get_provider
from ledgersync.services.accounting.reconcile import run_attachment_sync, run_reconciliation
from ledgersync.services.accounting.scheduler import CeleryJobScheduler
from ledgersync.services.accounting.storage import LocalStorage
from ledgersync.services.accounting.store import SqlSyncStore
from ledgersync.services.accounting.types import SYNC_TYPE_AUTO
from ledgersync.worker import celery_app

logger = logging.getLogger(__name__)

_context: SyncContext | None = None


def get_context() -> SyncContext:
    global _context
    if _context is None:
        engine = create_async_engine(settings.database_url, poolclass=NullPool)
        _context = SyncContext(
            store=SqlSyncStore(async_sessionmaker(engine, expire_on_commit=False)),
            storage=LocalStorage(),
            scheduler=CeleryJobScheduler(celery_app),
            provider_factory=get_provider,
        )
    return _context


@celery_app.task(name="ledgersync.services.accounting.tasks.sync_all_teams")
def sync_all_teams() -> int:
    """Beat task: queue one reconciliation per auto-sync connection."""
    connections = asyncio.run(get_context().store.list_auto_sync_connections())
    for team_id, provider in connections:
        reconcile_team.apply_async(
            kwargs={"team_id": team_id, "provider": provider, "sync_type": SYNC_TYPE_AUTO},
        )
    logger.info("Queued accounting reconciliation for %d connection(s)", len(connections))
    return len(connections)


@celery_app.task(
    bind=True,
    name="ledgersync.services.accounting.tasks.reconcile_team",
    soft_time_limit=settings.accounting_task_soft_time_limit,
)
def reconcile_team(
    self,
    team_id: str,
    provider: str,
    transaction_ids: list[str] | None = None,
    sync_type: str = SYNC_TYPE_AUTO,
) -> dict:
    def _progress(percent: int) -> None:
        self.update_state(state="PROGRESS", meta={"percent": percent})

    try:
        summary = asyncio.run(run_reconciliation(
            get_context(),
            team_id,
            provider,
            transaction_ids=transaction_ids,
            sync_type=sync_type,
            on_progress=_progress,
        ))
    except AccountingConfigError as exc:
        logger.error("Accounting reconciliation aborted for team %s (%s): %s", team_id, provider, exc)
        raise
    return asdict(summary)


@celery_app.task(name="ledgersync.services.accounting.tasks.sync_attachments")
def sync_attachments(payload: dict) -> dict | None:
    job = AttachmentSyncPayload.model_validate(payload)
    summary = asyncio.run(run_attachment_sync(get_context(), job))
    return asdict(summary) if summary is not None else None
