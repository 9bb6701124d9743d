"""Shared fixtures for the accounting sync engine tests."""
import pytest

from accounting_fakes import FakeProvider, FakeScheduler, FakeStorage, FakeStore, PDF_BYTES, RecordingSleep
from ledgersync.services.accounting.context import SyncContext
from ledgersync.services.accounting.types import SourceTransaction


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def ctx(store, storage, scheduler, sleep, provider):
    def _factory(connection):
        provider.connection = connection
        return provider

    return SyncContext(
        store=store,
        storage=storage,
        scheduler=scheduler,
        provider_factory=_factory,
        sleep=sleep,
        queue="accounting",
        batch_size=50,
        lookback_days=90,
    )


@pytest.fixture
def seed(store, storage):
    """Register transactions and the bytes of their attachments."""
    def _seed(*transactions: SourceTransaction) -> None:
        store.add_transactions(*transactions)
        for tx in transactions:
            for attachment in tx.attachments:
                storage.put(attachment.path, PDF_BYTES)

    return _seed
