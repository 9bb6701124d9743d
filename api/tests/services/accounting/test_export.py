"""
Export orchestrator tests — fake provider, store and scheduler.
"""
import asyncio

from accounting_fakes import TARGET_ACCOUNT, TEAM_ID, TENANT_ID, make_transaction
from ledgersync.services.accounting.errors import EXPORT_FAILED
from ledgersync.services.accounting.export import SYNC_ATTACHMENTS_JOB, export_transactions
from ledgersync.services.accounting.rate_budget import JobCounter
from ledgersync.services.accounting.types import (
    STATUS_FAILED,
    STATUS_SYNCED,
    SYNC_TYPE_MANUAL,
    SourceAttachment,
    SyncRecord,
)


def _export(ctx, provider, transactions, counter=None, on_progress=None):
    return asyncio.run(export_transactions(
        ctx,
        provider,
        transactions,
        team_id=TEAM_ID,
        tenant_id=TENANT_ID,
        target_account_id=TARGET_ACCOUNT,
        sync_type=SYNC_TYPE_MANUAL,
        counter=counter or JobCounter(),
        on_progress=on_progress,
    ))


class TestBatching:
    def test_sixty_transactions_split_50_10_and_first_batch_failure_is_contained(self, ctx, provider, store):
        transactions = [make_transaction(f"t{i:02d}") for i in range(60)]
        provider.failing_batches = {1}
        progress = []

        summary = _export(ctx, provider, transactions, on_progress=progress.append)

        assert [len(call) for call in provider.sync_calls] == [50, 10]
        assert summary.failed_count == 50
        assert summary.synced_count == 10
        assert progress == [50, 100]

        failed = store.record("t00")
        assert failed.status == STATUS_FAILED
        assert failed.error_code == EXPORT_FAILED
        assert "503" in failed.error_message
        assert failed.provider_transaction_id is None

        synced = store.record("t55")
        assert synced.status == STATUS_SYNCED
        assert synced.provider_transaction_id == "P-t55"
        assert synced.error_code is None

    def test_batch_size_comes_from_context(self, ctx, provider):
        ctx.batch_size = 2
        _export(ctx, provider, [make_transaction(f"t{i}") for i in range(5)])
        assert [len(call) for call in provider.sync_calls] == [2, 2, 1]

    def test_empty_input_makes_no_calls(self, ctx, provider):
        summary = _export(ctx, provider, [])
        assert provider.sync_calls == []
        assert summary.synced_count == summary.failed_count == 0


class TestPerTransactionResults:
    def test_rejected_transaction_recorded_failed(self, ctx, provider, store):
        provider.rejected_transactions = {"t2"}
        summary = _export(ctx, provider, [make_transaction("t1"), make_transaction("t2")])

        assert summary.synced_count == 1
        record = store.record("t2")
        assert record.status == STATUS_FAILED
        assert record.error_message == "Account code is invalid"

    def test_transaction_missing_from_response(self, ctx, provider, store):
        provider.omitted_transactions = {"t1"}
        _export(ctx, provider, [make_transaction("t1")])
        assert store.record("t1").error_message == "Transaction not returned by provider"

    def test_retry_after_failure_clears_error_fields(self, ctx, provider, store):
        store.add_record(SyncRecord(
            transaction_id="t1",
            team_id=TEAM_ID,
            provider="xero",
            provider_tenant_id=TENANT_ID,
            status=STATUS_FAILED,
            error_code=EXPORT_FAILED,
            error_message="Xero API error 500",
        ))
        _export(ctx, provider, [make_transaction("t1")])

        record = store.record("t1")
        assert record.status == STATUS_SYNCED
        assert record.error_code is None
        assert record.error_message is None
        assert record.provider_transaction_id == "P-t1"

    def test_every_upsert_writes_an_empty_mapping(self, ctx, provider, store):
        provider.rejected_transactions = {"t2"}
        _export(ctx, provider, [make_transaction("t1", "a"), make_transaction("t2", "b")])
        assert [r.synced_attachment_mapping for r in store.upserts] == [{}, {}]


class TestAttachmentJobs:
    def test_one_job_per_exported_transaction_with_attachments(self, ctx, provider, scheduler):
        transactions = [make_transaction("t1", "a", "b"), make_transaction("t2"), make_transaction("t3", "c")]
        summary = _export(ctx, provider, transactions)

        assert summary.attachment_jobs == 2
        assert [job["job_name"] for job in scheduler.jobs] == [SYNC_ATTACHMENTS_JOB] * 2
        assert [job["delay_ms"] for job in scheduler.jobs] == [0, 1100]
        assert all(job["queue"] == "accounting" for job in scheduler.jobs)

        payload = scheduler.jobs[0]["payload"]
        assert payload["transaction_id"] == "t1"
        assert payload["provider_transaction_id"] == "P-t1"
        assert payload["provider_entity_type"] == "BankTransaction"
        assert payload["new_attachment_ids"] == ["a", "b"]
        assert payload["removed_attachments"] == []
        assert payload["existing_mapping"] == {}
        assert payload["sync_type"] == SYNC_TYPE_MANUAL

    def test_unnamed_attachments_are_not_scheduled(self, ctx, provider, scheduler):
        tx = make_transaction("t1")
        tx.attachments.append(SourceAttachment(id="x", name=None, path="team-1/x.pdf"))
        _export(ctx, provider, [tx])
        assert scheduler.jobs == []

    def test_failed_export_schedules_nothing(self, ctx, provider, scheduler):
        provider.rejected_transactions = {"t1"}
        _export(ctx, provider, [make_transaction("t1", "a")])
        assert scheduler.jobs == []

    def test_counter_continues_from_earlier_jobs(self, ctx, provider, scheduler):
        counter = JobCounter(next_index=3)
        _export(ctx, provider, [make_transaction("t1", "a")], counter=counter)
        assert scheduler.jobs[0]["delay_ms"] == 3300
        assert counter.next_index == 4
