"""
Attachment sync engine tests — uploads, deletions, retries and status.
"""
import asyncio

from accounting_fakes import PDF_BYTES, TEAM_ID, TENANT_ID, FakeProvider, make_transaction
from ledgersync.services.accounting.attachments import backoff_seconds, sync_attachments
from ledgersync.services.accounting.errors import (
    ATTACHMENT_DOWNLOAD_FAILED,
    ATTACHMENT_NOT_FOUND,
    ATTACHMENT_TOO_LARGE,
    ATTACHMENT_UNSUPPORTED_TYPE,
    ATTACHMENT_UPLOAD_FAILED,
    RateLimitedError,
)
from ledgersync.services.accounting.mime import MB
from ledgersync.services.accounting.providers.base import AccountingProvider, AttachmentResult
from ledgersync.services.accounting.types import (
    STATUS_PARTIAL,
    STATUS_SYNCED,
    RemovedAttachment,
    SyncRecord,
)


def _sync(ctx, provider, tx, *, new=(), removed=(), mapping=None):
    return asyncio.run(sync_attachments(
        ctx,
        provider,
        team_id=TEAM_ID,
        tenant_id=TENANT_ID,
        transaction=tx,
        provider_transaction_id=f"P-{tx.id}",
        new_attachment_ids=list(new),
        removed_attachments=list(removed),
        existing_mapping=dict(mapping or {}),
        provider_entity_type="BankTransaction",
    ))


def _failing(times: int, error: str = "Xero API error 500") -> list:
    return [AttachmentResult(success=False, error=error) for _ in range(times)]


class NoDeleteProvider(FakeProvider):
    delete_attachment = AccountingProvider.delete_attachment


class TestBackoff:
    def test_plain_error_doubles_from_two_seconds(self):
        assert [backoff_seconds(n, "timeout") for n in (1, 2, 3)] == [2, 4, 8]

    def test_rate_limit_doubles_from_thirty_seconds(self):
        assert [backoff_seconds(n, RateLimitedError("slow down", 429)) for n in (1, 2)] == [30, 60]

    def test_rate_limit_waits_strictly_longer(self):
        assert backoff_seconds(1, "HTTP 429 Too Many Requests") > backoff_seconds(1, "HTTP 500")


class TestUploads:
    def test_all_uploaded(self, ctx, provider, store, seed):
        tx = make_transaction("t1", "a", "b")
        seed(tx)
        summary = _sync(ctx, provider, tx, new=["a", "b"])

        assert summary.status == STATUS_SYNCED
        assert summary.uploaded_count == 2
        assert summary.updated_mapping == {"a": "pa-1", "b": "pa-2"}
        record = store.record("t1")
        assert record.status == STATUS_SYNCED
        assert record.synced_attachment_mapping == {"a": "pa-1", "b": "pa-2"}
        assert record.provider_transaction_id == "P-t1"

    def test_two_of_three_is_partial(self, ctx, provider, store, seed):
        tx = make_transaction("t1", "a", "b", "c")
        seed(tx)
        provider.upload_script["b.pdf"] = _failing(3)

        summary = _sync(ctx, provider, tx, new=["a", "b", "c"])

        assert summary.status == STATUS_PARTIAL
        assert (summary.uploaded_count, summary.failed_count) == (2, 1)
        assert set(summary.updated_mapping) == {"a", "c"}
        record = store.record("t1")
        assert record.error_code == ATTACHMENT_UPLOAD_FAILED
        assert record.error_message == "Xero API error 500"

    def test_retry_then_success(self, ctx, provider, sleep, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        provider.upload_script["a.pdf"] = _failing(2)

        summary = _sync(ctx, provider, tx, new=["a"])

        assert summary.status == STATUS_SYNCED
        assert provider.uploads == ["a.pdf"] * 3
        assert sleep.calls == [2, 4]

    def test_rate_limit_backs_off_longer(self, ctx, provider, sleep, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        provider.upload_script["a.pdf"] = [RateLimitedError("Xero rate limit exceeded (429)", 429)]

        _sync(ctx, provider, tx, new=["a"])
        assert sleep.calls == [30]

    def test_rate_limit_reported_in_result_backs_off_longer(self, ctx, provider, sleep, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        provider.upload_script["a.pdf"] = _failing(2, error="Xero rate limit exceeded while trying to upload attachment (429)")

        summary = _sync(ctx, provider, tx, new=["a"])

        assert sleep.calls == [30, 60]
        assert summary.uploaded_count == 1

    def test_gives_up_after_three_attempts(self, ctx, provider, sleep, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        provider.upload_script["a.pdf"] = _failing(5)

        summary = _sync(ctx, provider, tx, new=["a"])
        assert provider.uploads == ["a.pdf"] * 3
        assert summary.failed_count == 1

    def test_already_mapped_ids_are_skipped(self, ctx, provider, seed):
        tx = make_transaction("t1", "a", "b")
        seed(tx)
        summary = _sync(ctx, provider, tx, new=["a", "b"], mapping={"a": "p1"})

        assert provider.uploads == ["b.pdf"]
        assert summary.updated_mapping == {"a": "p1", "b": "pa-1"}


class TestValidation:
    def test_too_large_is_never_uploaded(self, ctx, provider, store, storage, sleep):
        tx = make_transaction("t1", "big")
        store.add_transactions(tx)
        storage.put("team-1/big.pdf", b"%PDF" + b"0" * (4 * MB))

        summary = _sync(ctx, provider, tx, new=["big"])

        assert provider.uploads == []
        assert sleep.calls == []
        assert summary.failed_count == 1
        assert store.record("t1").error_code == ATTACHMENT_TOO_LARGE

    def test_size_limit_is_per_provider(self, ctx, store, storage):
        quickbooks = FakeProvider(provider_id="quickbooks")
        tx = make_transaction("t1", "big")
        store.add_transactions(tx)
        storage.put("team-1/big.pdf", b"%PDF" + b"0" * (4 * MB))

        summary = _sync(ctx, quickbooks, tx, new=["big"])
        assert summary.uploaded_count == 1

    def test_unsupported_type(self, ctx, provider, store, storage):
        tx = make_transaction("t1", "notes")
        attachment = tx.attachments[0]
        attachment.name, attachment.mime_type, attachment.path = "notes.txt", "text/plain", "team-1/notes.txt"
        store.add_transactions(tx)
        storage.put("team-1/notes.txt", b"just some text")

        _sync(ctx, provider, tx, new=["notes"])

        assert provider.uploads == []
        assert store.record("t1").error_code == ATTACHMENT_UNSUPPORTED_TYPE

    def test_download_failure(self, ctx, provider, store):
        tx = make_transaction("t1", "a")
        store.add_transactions(tx)  # no bytes in storage

        _sync(ctx, provider, tx, new=["a"])

        record = store.record("t1")
        assert record.error_code == ATTACHMENT_DOWNLOAD_FAILED
        assert record.error_message == "Download failed"

    def test_attachment_deleted_before_job_ran(self, ctx, provider, store, seed):
        tx = make_transaction("t1", "a")
        seed(tx)

        summary = _sync(ctx, provider, tx, new=["a", "gone"])

        assert summary.uploaded_count == 1
        assert summary.failed_count == 1
        assert store.record("t1").error_code == ATTACHMENT_NOT_FOUND

    def test_file_name_gets_extension(self, ctx, provider, store, storage):
        tx = make_transaction("t1", "a")
        tx.attachments[0].name = "receipt"
        store.add_transactions(tx)
        storage.put(tx.attachments[0].path, PDF_BYTES)

        _sync(ctx, provider, tx, new=["a"])
        assert provider.uploads == ["receipt.pdf"]


class TestDeletions:
    def test_removed_attachment_is_deleted_and_untracked(self, ctx, provider, store):
        tx = make_transaction("t1")
        store.add_transactions(tx)

        summary = _sync(
            ctx, provider, tx,
            removed=[RemovedAttachment("a", "p1")],
            mapping={"a": "p1"},
        )

        assert provider.deletes == ["p1"]
        assert summary.updated_mapping == {}
        assert (summary.uploaded_count, summary.deleted_count) == (0, 1)
        assert summary.status == STATUS_SYNCED

    def test_unknown_provider_id_is_only_untracked(self, ctx, provider, store):
        tx = make_transaction("t1")
        store.add_transactions(tx)

        summary = _sync(ctx, provider, tx, removed=[RemovedAttachment("a", None)], mapping={"a": None})

        assert provider.deletes == []
        assert summary.updated_mapping == {}

    def test_provider_without_delete_support_still_untracks(self, ctx, store):
        tx = make_transaction("t1")
        store.add_transactions(tx)
        summary = _sync(ctx, NoDeleteProvider(), tx, removed=[RemovedAttachment("a", "p1")], mapping={"a": "p1"})

        assert summary.updated_mapping == {}
        assert summary.status == STATUS_SYNCED

    def test_already_untracked_removal_is_not_deleted_again(self, ctx, provider, store):
        tx = make_transaction("t1")
        store.add_transactions(tx)

        summary = _sync(ctx, provider, tx, removed=[RemovedAttachment("a", "p1")], mapping={})

        assert provider.deletes == []
        assert summary.deleted_count == 0
        assert summary.status == STATUS_SYNCED


class TestRecordState:
    def test_clean_run_clears_previous_error(self, ctx, provider, store, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        store.add_record(SyncRecord(
            transaction_id="t1",
            team_id=TEAM_ID,
            provider="xero",
            provider_tenant_id=TENANT_ID,
            status=STATUS_PARTIAL,
            provider_transaction_id="P-t1",
            error_code=ATTACHMENT_UPLOAD_FAILED,
            error_message="Xero API error 500",
        ))

        _sync(ctx, provider, tx, new=["a"])

        record = store.record("t1")
        assert record.status == STATUS_SYNCED
        assert record.error_code is None
        assert record.error_message is None

    def test_history_note_added_when_supported(self, ctx, store, seed):
        xero = FakeProvider(history_notes=True)
        tx = make_transaction("t1", "a")
        seed(tx)

        _sync(ctx, xero, tx, new=["a"])
        assert len(xero.notes) == 1
        assert "1 attachment(s) added" in xero.notes[0]

    def test_no_history_note_without_support(self, ctx, provider, seed):
        tx = make_transaction("t1", "a")
        seed(tx)
        _sync(ctx, provider, tx, new=["a"])
        assert provider.notes == []
