"""
Attachment sync engine.

Brings the provider-side attachments of one exported transaction in line
with the transaction's current files:

    1. deletions: best effort at the provider, always untracked locally;
       ids no longer in the mapping are skipped (re-delivered jobs)
    2. dedup: ids already in the mapping are skipped (re-delivered jobs)
    3. uploads: bounded concurrency, per-attachment validation and retry
    4. persist: mapping, status (synced | partial) and first error
    5. history: optional note on providers that support it

A failed attachment never fails the transaction; it leaves the record
``partial`` so the next reconciliation pass retries it.
"""
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from ledgersync.core.config import settings
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.errors import (
    ATTACHMENT_DOWNLOAD_FAILED,
    ATTACHMENT_NOT_FOUND,
    ATTACHMENT_TOO_LARGE,
    ATTACHMENT_UNSUPPORTED_TYPE,
    ATTACHMENT_UPLOAD_FAILED,
    NON_RETRYABLE_CODES,
    ProviderError,
    is_rate_limit_error,
)
from ledgersync.services.accounting.executor import run_with_concurrency
from ledgersync.services.accounting.mime import (
    MB,
    ensure_file_extension,
    get_attachment_config,
    resolve_mime_type,
)
from ledgersync.services.accounting.providers.base import AccountingProvider
from ledgersync.services.accounting.types import (
    STATUS_PARTIAL,
    STATUS_SYNCED,
    AttachmentSyncSummary,
    RemovedAttachment,
    SourceAttachment,
    SourceTransaction,
    SyncRecord,
)

logger = logging.getLogger(__name__)

MAX_UPLOAD_ATTEMPTS = 3
BASE_BACKOFF_SECONDS = 2
RATE_LIMIT_BACKOFF_SECONDS = 30


@dataclass
class UploadOutcome:
    attachment_id: str
    success: bool
    provider_attachment_id: str | None = None
    error_code: str | None = None
    error: str | None = None
    attempts: int = 0


def backoff_seconds(attempt: int, error: BaseException | str | None) -> float:
    """Wait before retrying after failed ``attempt`` (1-based)."""
    base = RATE_LIMIT_BACKOFF_SECONDS if is_rate_limit_error(error) else BASE_BACKOFF_SECONDS
    return base * 2 ** (attempt - 1)


def _wait_for_retry(retry_state: RetryCallState) -> float:
    return backoff_seconds(retry_state.attempt_number, retry_state.outcome.exception())


def _log_retry(attachment_id: str):
    def _before_sleep(retry_state: RetryCallState) -> None:
        logger.info(
            "Upload of attachment %s failed (attempt %d/%d), retrying in %ss: %s",
            attachment_id, retry_state.attempt_number, MAX_UPLOAD_ATTEMPTS,
            retry_state.next_action.sleep, retry_state.outcome.exception(),
        )
    return _before_sleep


async def _upload_one(
    ctx: SyncContext,
    provider: AccountingProvider,
    attachment: SourceAttachment,
    *,
    tenant_id: str,
    provider_transaction_id: str,
    provider_entity_type: str | None,
) -> UploadOutcome:
    outcome = UploadOutcome(attachment_id=attachment.id, success=False)

    try:
        if not attachment.path:
            raise FileNotFoundError(f"Attachment {attachment.id} has no storage path")
        content = await ctx.storage.download(attachment.path)
    except Exception as exc:
        logger.warning("Download failed for attachment %s: %s", attachment.id, exc)
        outcome.error_code, outcome.error = ATTACHMENT_DOWNLOAD_FAILED, "Download failed"
        return outcome

    resolution = resolve_mime_type(attachment.mime_type, attachment.name, content, provider.id)
    if resolution.mime_type is None:
        outcome.error_code, outcome.error = ATTACHMENT_UNSUPPORTED_TYPE, resolution.error
        return outcome

    limit = get_attachment_config(provider.id).max_size_bytes
    if len(content) > limit:
        outcome.error_code = ATTACHMENT_TOO_LARGE
        outcome.error = (
            f"File size {len(content) / MB:.1f} MB exceeds {provider.name} limit of {limit // MB} MB"
        )
        return outcome

    file_name = ensure_file_extension(attachment.name or attachment.id, resolution.mime_type)
    retrying = AsyncRetrying(
        stop=stop_after_attempt(MAX_UPLOAD_ATTEMPTS),
        wait=_wait_for_retry,
        sleep=ctx.sleep,
        before_sleep=_log_retry(attachment.id),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                outcome.attempts = attempt.retry_state.attempt_number
                result = await provider.upload_attachment(
                    tenant_id=tenant_id,
                    transaction_id=provider_transaction_id,
                    file_name=file_name,
                    mime_type=resolution.mime_type,
                    content=content,
                    entity_type=provider_entity_type,
                )
                if not result.success:
                    raise ProviderError(result.error or "Upload failed")
    except Exception as exc:
        logger.error("Upload of attachment %s gave up after %d attempts: %s", attachment.id, outcome.attempts, exc)
        outcome.error_code = ATTACHMENT_UPLOAD_FAILED
        outcome.error = str(exc)
        return outcome

    outcome.success = True
    outcome.provider_attachment_id = result.attachment_id
    return outcome


async def sync_attachments(
    ctx: SyncContext,
    provider: AccountingProvider,
    *,
    team_id: str,
    tenant_id: str,
    transaction: SourceTransaction,
    provider_transaction_id: str,
    new_attachment_ids: Sequence[str],
    removed_attachments: Sequence[RemovedAttachment],
    existing_mapping: dict[str, str | None],
    provider_entity_type: str | None = None,
    sync_type: str | None = None,
) -> AttachmentSyncSummary:
    mapping = dict(existing_mapping)

    # ── 1. Deletions ─────────────────────────────────────────────────────────
    deleted = 0
    for removed in removed_attachments:
        # Already untracked by an earlier delivery of this job
        if removed.attachment_id not in mapping:
            continue
        if removed.provider_attachment_id:
            try:
                result = await provider.delete_attachment(
                    tenant_id=tenant_id,
                    transaction_id=provider_transaction_id,
                    attachment_id=removed.provider_attachment_id,
                )
                if not result.success:
                    logger.warning(
                        "Could not delete %s attachment %s: %s",
                        provider.id, removed.provider_attachment_id, result.error,
                    )
            except Exception as exc:
                logger.warning(
                    "Could not delete %s attachment %s: %s",
                    provider.id, removed.provider_attachment_id, exc,
                )
        # The local file is gone, so it must not stay tracked either way
        del mapping[removed.attachment_id]
        deleted += 1

    # ── 2. Dedup ─────────────────────────────────────────────────────────────
    pending = [att_id for att_id in dict.fromkeys(new_attachment_ids) if att_id not in mapping]

    # ── 3. Uploads ───────────────────────────────────────────────────────────
    available = {a.id: a for a in transaction.attachments if a.name is not None}
    missing = [
        UploadOutcome(att_id, False, error_code=ATTACHMENT_NOT_FOUND, error=f"Attachment {att_id} not found")
        for att_id in pending
        if att_id not in available
    ]
    to_upload = [available[att_id] for att_id in pending if att_id in available]

    rate = provider.rate_limit

    async def _upload(attachment: SourceAttachment) -> UploadOutcome:
        try:
            return await _upload_one(
                ctx, provider, attachment,
                tenant_id=tenant_id,
                provider_transaction_id=provider_transaction_id,
                provider_entity_type=provider_entity_type,
            )
        except Exception as exc:
            logger.exception("Unexpected error uploading attachment %s", attachment.id)
            return UploadOutcome(attachment.id, False, error_code=ATTACHMENT_UPLOAD_FAILED, error=str(exc))

    uploaded_outcomes = await run_with_concurrency(
        to_upload,
        _upload,
        max_concurrent=rate.max_concurrent,
        call_delay_ms=rate.call_delay_ms,
        sleep=ctx.sleep,
    )

    # ── 4. Persist ───────────────────────────────────────────────────────────
    uploaded = 0
    failures: list[UploadOutcome] = []
    for outcome in [*missing, *uploaded_outcomes]:
        if outcome.success:
            mapping[outcome.attachment_id] = outcome.provider_attachment_id
            uploaded += 1
        else:
            failures.append(outcome)
            log = logger.info if outcome.error_code in NON_RETRYABLE_CODES else logger.warning
            log(
                "Attachment %s of transaction %s not synced (%s): %s",
                outcome.attachment_id, transaction.id, outcome.error_code, outcome.error,
            )

    status = STATUS_PARTIAL if failures else STATUS_SYNCED
    error_code = failures[0].error_code if failures else None
    error_message = None
    if failures:
        error_message = failures[0].error or f"{len(failures)} attachment(s) failed to upload"

    await ctx.store.upsert_sync_record(SyncRecord(
        transaction_id=transaction.id,
        team_id=team_id,
        provider=provider.id,
        provider_tenant_id=tenant_id,
        status=status,
        provider_transaction_id=provider_transaction_id,
        provider_entity_type=provider_entity_type,
        sync_type=sync_type,
        error_code=error_code,
        error_message=error_message,
        synced_attachment_mapping=mapping,
    ))

    # ── 5. History note ──────────────────────────────────────────────────────
    if provider.supports_history_notes and (uploaded or deleted):
        try:
            await provider.add_transaction_history_note(
                tenant_id=tenant_id,
                transaction_id=provider_transaction_id,
                note=f"{settings.app_name}: {uploaded} attachment(s) added, {deleted} removed",
            )
        except Exception as exc:
            logger.warning("Could not add history note to %s %s: %s", provider.id, provider_transaction_id, exc)

    logger.info(
        "Attachment sync for transaction %s on %s: %d uploaded, %d deleted, %d failed",
        transaction.id, provider.id, uploaded, deleted, len(failures),
    )
    return AttachmentSyncSummary(
        uploaded_count=uploaded,
        deleted_count=deleted,
        failed_count=len(failures),
        updated_mapping=mapping,
        status=status,
    )
