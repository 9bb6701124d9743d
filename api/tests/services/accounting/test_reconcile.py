"""
End-to-end reconciliation passes against in-memory collaborators.

Scheduled attachment jobs are executed by feeding their payload back into
``run_attachment_sync``, the way the Celery task does.
"""
import asyncio

import pytest

from accounting_fakes import TEAM_ID, TENANT_ID, make_connection, make_transaction
from ledgersync.schemas.accounting import AttachmentSyncPayload
from ledgersync.services.accounting.errors import AccountingConfigError, EXPORT_FAILED
from ledgersync.services.accounting.reconcile import run_attachment_sync, run_reconciliation
from ledgersync.services.accounting.types import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SYNCED,
    SYNC_TYPE_MANUAL,
    SyncRecord,
)


def _reconcile(ctx, **kwargs):
    return asyncio.run(run_reconciliation(ctx, TEAM_ID, "xero", **kwargs))


def _run_jobs(ctx, scheduler):
    """Execute and drain every scheduled attachment job."""
    jobs, scheduler.jobs = scheduler.jobs, []
    return [
        asyncio.run(run_attachment_sync(ctx, AttachmentSyncPayload.model_validate(job["payload"])))
        for job in jobs
    ]


def _record(tx_id, status=STATUS_SYNCED, provider_id="P-t1", mapping=None, **extra):
    return SyncRecord(
        transaction_id=tx_id,
        team_id=TEAM_ID,
        provider="xero",
        provider_tenant_id=TENANT_ID,
        status=status,
        provider_transaction_id=provider_id,
        provider_entity_type="BankTransaction" if provider_id else None,
        synced_attachment_mapping=dict(mapping or {}),
        **extra,
    )


@pytest.fixture(autouse=True)
def connection(store):
    store.add_connection(make_connection("xero"))


class TestFreshTransaction:
    def test_exported_and_attachments_synced(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "a", "b"))

        summary = _reconcile(ctx)

        assert summary.exported_count == 1
        assert [job["delay_ms"] for job in scheduler.jobs] == [0]

        [result] = _run_jobs(ctx, scheduler)
        assert result.uploaded_count == 2

        record = store.record("t1")
        assert record.status == STATUS_SYNCED
        assert record.provider_transaction_id == "P-t1"
        assert len(record.synced_attachment_mapping) == 2

    def test_second_pass_is_a_no_op(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "a", "b"))
        _reconcile(ctx)
        _run_jobs(ctx, scheduler)
        calls_before = (len(provider.sync_calls), len(provider.uploads))

        summary = _reconcile(ctx)

        assert summary.skipped_count == 1
        assert summary.exported_count == 0
        assert scheduler.jobs == []
        assert (len(provider.sync_calls), len(provider.uploads)) == calls_before

    def test_redelivered_job_uploads_nothing_twice(self, ctx, provider, scheduler, seed):
        seed(make_transaction("t1", "a"))
        _reconcile(ctx)
        job = scheduler.jobs[0]
        _run_jobs(ctx, scheduler)

        scheduler.jobs = [job]
        [again] = _run_jobs(ctx, scheduler)

        assert provider.uploads == ["a.pdf"]
        assert again.uploaded_count == 0
        assert again.status == STATUS_SYNCED


class TestAttachmentDrift:
    def test_local_deletion_is_mirrored(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1"))
        store.add_record(_record("t1", mapping={"a": "p1"}))

        summary = _reconcile(ctx)
        assert summary.exported_count == 0
        assert summary.attachments_synced_count == 1

        [result] = _run_jobs(ctx, scheduler)
        assert (result.uploaded_count, result.deleted_count) == (0, 1)
        assert provider.deletes == ["p1"]
        record = store.record("t1")
        assert record.synced_attachment_mapping == {}
        assert record.status == STATUS_SYNCED

    def test_redelivered_removal_job_deletes_once(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1"))
        store.add_record(_record("t1", mapping={"a": "p1"}))
        _reconcile(ctx)
        job = scheduler.jobs[0]
        _run_jobs(ctx, scheduler)

        scheduler.jobs = [job]
        [again] = _run_jobs(ctx, scheduler)

        assert provider.deletes == ["p1"]
        assert again.deleted_count == 0
        assert store.record("t1").synced_attachment_mapping == {}

    def test_swap_one_attachment_for_another(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "b", "c"))
        store.add_record(_record("t1", mapping={"a": "p1", "b": "p2"}))

        _reconcile(ctx)
        payload = scheduler.jobs[0]["payload"]
        assert payload["new_attachment_ids"] == ["c"]
        assert payload["removed_attachments"] == [{"attachment_id": "a", "provider_attachment_id": "p1"}]

        _run_jobs(ctx, scheduler)
        assert store.record("t1").synced_attachment_mapping == {"b": "p2", "c": "pa-1"}

    def test_partial_is_retried(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "a", "b"))
        store.add_record(_record("t1", STATUS_PARTIAL, mapping={"a": "p1"}))

        _reconcile(ctx)
        _run_jobs(ctx, scheduler)

        assert provider.uploads == ["b.pdf"]
        assert store.record("t1").status == STATUS_SYNCED

    def test_export_and_attachment_phases_share_the_job_counter(self, ctx, scheduler, store, seed):
        seed(make_transaction("t1", "a"), make_transaction("t2", "b"))
        store.add_record(_record("t2", provider_id="P-t2"))

        _reconcile(ctx)

        assert [(j["payload"]["transaction_id"], j["delay_ms"]) for j in scheduler.jobs] == [
            ("t1", 0),
            ("t2", 1100),
        ]


class TestFailedExports:
    def test_failed_without_anchor_is_exported_again(self, ctx, provider, store, seed):
        seed(make_transaction("t1"))
        store.add_record(_record("t1", STATUS_FAILED, provider_id=None, error_code=EXPORT_FAILED, error_message="boom"))

        summary = _reconcile(ctx)

        assert summary.exported_count == 1
        record = store.record("t1")
        assert record.status == STATUS_SYNCED
        assert record.error_code is None
        assert record.error_message is None

    def test_failed_with_anchor_is_not_exported_again(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "a"))
        store.add_record(_record("t1", STATUS_FAILED))

        _reconcile(ctx)

        assert provider.sync_calls == []
        assert len(scheduler.jobs) == 1

    def test_export_failure_is_counted(self, ctx, provider, seed):
        seed(make_transaction("t1"), make_transaction("t2"))
        provider.rejected_transactions = {"t2"}

        summary = _reconcile(ctx)
        assert (summary.exported_count, summary.failed_count) == (1, 1)


class TestRunScope:
    def test_manual_export_is_limited_to_given_ids(self, ctx, provider, store, seed):
        seed(make_transaction("t1"), make_transaction("t2"))

        _reconcile(ctx, transaction_ids=["t2"], sync_type=SYNC_TYPE_MANUAL)

        assert [tx.id for tx in provider.sync_calls[0]] == ["t2"]
        assert store.record("t2").sync_type == SYNC_TYPE_MANUAL
        assert store.record("t1") is None

    def test_progress_ends_at_100(self, ctx, seed):
        seed(make_transaction("t1"))
        progress = []
        _reconcile(ctx, on_progress=progress.append)
        assert progress[-1] == 100

    def test_connection_marked_synced(self, ctx, store, seed):
        seed(make_transaction("t1"))
        _reconcile(ctx)
        assert store.synced_connections == [(TEAM_ID, "xero")]


class TestConnection:
    def test_missing_connection(self, ctx, store):
        store.connections.clear()
        with pytest.raises(AccountingConfigError):
            _reconcile(ctx)

    def test_missing_target_account(self, ctx, store):
        store.add_connection(make_connection("xero", target_account_id=None))
        with pytest.raises(AccountingConfigError, match="target account"):
            _reconcile(ctx)

    def test_missing_tenant(self, ctx, store):
        store.add_connection(make_connection("xero", provider_tenant_id=None))
        with pytest.raises(AccountingConfigError, match="tenant"):
            _reconcile(ctx)

    def test_expired_tokens_are_refreshed_and_saved(self, ctx, provider, store, seed):
        store.add_connection(make_connection("xero", expired=True))
        seed(make_transaction("t1"))

        _reconcile(ctx)

        assert provider.refreshed_with == ["refresh-old"]
        [(team_id, provider_id, tokens)] = store.saved_tokens
        assert (team_id, provider_id, tokens.access_token) == (TEAM_ID, "xero", "access-new")

    def test_fresh_tokens_are_not_refreshed(self, ctx, provider, store, seed):
        seed(make_transaction("t1"))
        _reconcile(ctx)
        assert provider.refreshed_with == []
        assert store.saved_tokens == []

    def test_attachment_job_does_not_need_a_target_account(self, ctx, provider, store, scheduler, seed):
        seed(make_transaction("t1", "a"))
        _reconcile(ctx)
        store.add_connection(make_connection("xero", target_account_id=None))

        [result] = _run_jobs(ctx, scheduler)
        assert result.uploaded_count == 1

    def test_attachment_job_for_deleted_transaction_is_skipped(self, ctx, store, scheduler, seed):
        seed(make_transaction("t1", "a"))
        _reconcile(ctx)
        store.transactions.clear()

        assert _run_jobs(ctx, scheduler) == [None]
