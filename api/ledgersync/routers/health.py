import asyncio

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.database import get_db
from ledgersync.worker import celery_app

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "service": settings.app_name}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/workers")
async def health_workers():
    """Ping the Celery workers that run reconciliation and attachment jobs."""
    replies = await asyncio.to_thread(celery_app.control.ping, timeout=1.0)
    if not replies:
        raise HTTPException(status_code=503, detail="No sync workers responded")
    return {"status": "ok", "workers": len(replies)}
