import uuid

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.database import async_session, get_db
from ledgersync.core.security import decode_oauth_state, get_current_team_id
from ledgersync.models.accounting import AccountingConnection, AccountingSyncRecord
from ledgersync.models.transaction import Transaction
from ledgersync.schemas.accounting import (
    ConnectionResponse,
    ConnectionStatusResponse,
    ConsentUrlResponse,
    ExportQueuedResponse,
    ExportRequest,
    ProviderAccountResponse,
    SyncRecordResponse,
    TargetAccountRequest,
    TaskStatusResponse,
)
from ledgersync.services.accounting import connections
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import (
    AccountingConfigError,
    ProviderError,
    UnknownTargetAccountError,
)
from ledgersync.services.accounting.providers.registry import get_provider, is_known_provider
from ledgersync.services.accounting.reconcile import open_provider
from ledgersync.services.accounting.scheduler import CeleryJobScheduler
from ledgersync.services.accounting.storage import LocalStorage
from ledgersync.services.accounting.store import SqlSyncStore
from ledgersync.services.accounting.tasks import reconcile_team
from ledgersync.services.accounting.types import SYNC_TYPE_MANUAL
from ledgersync.worker import celery_app

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/accounting", tags=["accounting"])


# ─── Helpers ───────────────────────────────────────────────────────────────

def _require_provider(provider: str) -> str:
    if not is_known_provider(provider):
        raise HTTPException(status_code=404, detail=f"Unknown accounting provider: {provider}")
    return provider


async def _require_connection(db: AsyncSession, team_id: uuid.UUID, provider: str) -> AccountingConnection:
    connection = (await db.execute(
        select(AccountingConnection).where(
            AccountingConnection.team_id == team_id,
            AccountingConnection.provider == provider,
        )
    )).scalar_one_or_none()
    if connection is None:
        raise HTTPException(status_code=404, detail=f"No {provider} connection for this team")
    return connection


def _api_context() -> SyncContext:
    return SyncContext(
        store=SqlSyncStore(async_session),
        storage=LocalStorage(),
        scheduler=CeleryJobScheduler(celery_app),
        provider_factory=get_provider,
    )


# ─── Connection lifecycle ──────────────────────────────────────────────────

@router.get("/{provider}/connect", response_model=ConsentUrlResponse)
async def start_connection(provider: str, team_id: uuid.UUID = Depends(get_current_team_id)):
    """Consent URL the client redirects the user to."""
    _require_provider(provider)
    try:
        url = connections.build_consent_url(_api_context(), str(team_id), provider)
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return ConsentUrlResponse(provider=provider, consent_url=url)


@router.get("/{provider}/callback", response_model=ConnectionResponse)
async def complete_connection(
    provider: str,
    state: str,
    code: str | None = None,
    realm_id: str | None = Query(None, alias="realmId"),
    error: str | None = None,
):
    """OAuth redirect target. The team comes from the signed ``state``, not a bearer token."""
    _require_provider(provider)
    team_id = decode_oauth_state(state, provider)
    if team_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OAuth state")
    if error or not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{provider} authorization was not granted: {error or 'missing code'}",
        )

    try:
        connection = await connections.complete_connection(
            _api_context(), team_id, provider, code=code, tenant_id=realm_id,
        )
    except AccountingConfigError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return connection


@router.put("/{provider}/target-account", response_model=ConnectionResponse)
async def set_target_account(
    provider: str,
    payload: TargetAccountRequest,
    team_id: uuid.UUID = Depends(get_current_team_id),
):
    _require_provider(provider)
    try:
        return await connections.select_target_account(_api_context(), str(team_id), provider, payload.account_id)
    except UnknownTargetAccountError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except AccountingConfigError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/{provider}/connection", response_model=ConnectionStatusResponse)
async def get_connection_status(provider: str, team_id: uuid.UUID = Depends(get_current_team_id)):
    _require_provider(provider)
    check = await connections.check_connection(_api_context(), str(team_id), provider)
    return ConnectionStatusResponse(provider=provider, connected=check.connected, error=check.error)


@router.delete("/{provider}/connection", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(provider: str, team_id: uuid.UUID = Depends(get_current_team_id)):
    """Revoke and forget the connection. Sync records are kept."""
    _require_provider(provider)
    if not await connections.disconnect(_api_context(), str(team_id), provider):
        raise HTTPException(status_code=404, detail=f"No {provider} connection for this team")


# ─── Export and sync status ──────────────────────────────────────────────

@router.post("/{provider}/export", response_model=ExportQueuedResponse, status_code=202)
@limiter.limit("10/minute")
async def export_transactions(
    request: Request,
    provider: str,
    payload: ExportRequest,
    team_id: uuid.UUID = Depends(get_current_team_id),
    db: AsyncSession = Depends(get_db),
):
    """Queue a manual reconciliation restricted to the given transactions."""
    _require_provider(provider)
    connection = await _require_connection(db, team_id, provider)
    if not connection.target_account_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Select a target account for {provider} before exporting",
        )

    requested = list(dict.fromkeys(payload.transaction_ids))
    known = set((await db.execute(
        select(Transaction.id).where(Transaction.team_id == team_id, Transaction.id.in_(requested))
    )).scalars().all())
    unknown = [str(t) for t in requested if t not in known]
    if unknown:
        raise HTTPException(status_code=404, detail=f"Unknown transactions: {', '.join(unknown[:10])}")

    result = reconcile_team.apply_async(kwargs={
        "team_id": str(team_id),
        "provider": provider,
        "transaction_ids": [str(t) for t in requested],
        "sync_type": SYNC_TYPE_MANUAL,
    })
    return ExportQueuedResponse(task_id=result.id, provider=provider, transaction_count=len(requested))


@router.get("/{provider}/sync-records", response_model=list[SyncRecordResponse])
async def list_sync_records(
    provider: str,
    status_filter: str | None = Query(None, alias="status", pattern="^(synced|partial|failed)$"),
    limit: int = Query(100, ge=1, le=1000),
    team_id: uuid.UUID = Depends(get_current_team_id),
    db: AsyncSession = Depends(get_db),
):
    _require_provider(provider)
    query = (
        select(AccountingSyncRecord)
        .where(
            AccountingSyncRecord.team_id == team_id,
            AccountingSyncRecord.provider == provider,
        )
        .order_by(AccountingSyncRecord.synced_at.desc())
        .limit(limit)
    )
    if status_filter:
        query = query.where(AccountingSyncRecord.status == status_filter)
    return (await db.execute(query)).scalars().all()


@router.get("/{provider}/accounts", response_model=list[ProviderAccountResponse])
async def list_provider_accounts(
    provider: str,
    team_id: uuid.UUID = Depends(get_current_team_id),
):
    """Bank accounts at the provider, used to pick the export target."""
    _require_provider(provider)
    try:
        client, connection = await open_provider(_api_context(), str(team_id), provider, require_target=False)
    except AccountingConfigError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    async with client:
        try:
            return await client.get_accounts(connection.provider_tenant_id)
        except ProviderError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(task_id: str, team_id: uuid.UUID = Depends(get_current_team_id)):
    result = AsyncResult(task_id, app=celery_app)
    info = result.info if isinstance(result.info, dict) else None
    return TaskStatusResponse(
        task_id=task_id,
        state=result.state,
        percent=info.get("percent") if info and result.state == "PROGRESS" else None,
        result=info if result.state == "SUCCESS" else None,
    )
