import uuid
from datetime import datetime

from pydantic import BaseModel, Field


# ─── Job payloads (Celery, JSON) ──────────────────────────────────────────────

class RemovedAttachmentPayload(BaseModel):
    attachment_id: str
    provider_attachment_id: str | None = None


class AttachmentSyncPayload(BaseModel):
    team_id: str
    provider: str
    provider_tenant_id: str
    transaction_id: str
    provider_transaction_id: str
    provider_entity_type: str | None = None
    sync_type: str | None = None
    new_attachment_ids: list[str] = Field(default_factory=list)
    removed_attachments: list[RemovedAttachmentPayload] = Field(default_factory=list)
    existing_mapping: dict[str, str | None] = Field(default_factory=dict)


# ─── API ──────────────────────────────────────────────────────────────────────

class ExportRequest(BaseModel):
    transaction_ids: list[uuid.UUID] = Field(min_length=1, max_length=5000)


class ExportQueuedResponse(BaseModel):
    task_id: str
    provider: str
    transaction_count: int


class SyncRecordResponse(BaseModel):
    transaction_id: uuid.UUID
    provider: str
    provider_transaction_id: str | None
    provider_entity_type: str | None
    sync_type: str | None
    status: str
    error_code: str | None
    error_message: str | None
    synced_attachment_mapping: dict[str, str | None]
    synced_at: datetime

    model_config = {"from_attributes": True}


class ProviderAccountResponse(BaseModel):
    id: str
    name: str
    code: str | None
    currency: str | None

    model_config = {"from_attributes": True}


class TaskStatusResponse(BaseModel):
    task_id: str
    state: str
    percent: int | None = None
    result: dict | None = None


class ConsentUrlResponse(BaseModel):
    provider: str
    consent_url: str


class ConnectionResponse(BaseModel):
    provider: str
    provider_tenant_id: str | None
    target_account_id: str | None
    expires_at: datetime

    model_config = {"from_attributes": True}


class TargetAccountRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=100)


class ConnectionStatusResponse(BaseModel):
    provider: str
    connected: bool
    error: str | None = None
