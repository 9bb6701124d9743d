import httpx

from ledgersync.services.accounting.errors import AccountingConfigError
from ledgersync.services.accounting.providers.base import AccountingProvider
from ledgersync.services.accounting.providers.fortnox import FortnoxProvider
from ledgersync.services.accounting.providers.quickbooks import QuickBooksProvider
from ledgersync.services.accounting.providers.xero import XeroProvider
from ledgersync.services.accounting.types import ProviderConnection

PROVIDERS: dict[str, type[AccountingProvider]] = {
    XeroProvider.id: XeroProvider,
    QuickBooksProvider.id: QuickBooksProvider,
    FortnoxProvider.id: FortnoxProvider,
}


def is_known_provider(provider_id: str) -> bool:
    return provider_id in PROVIDERS


def get_provider(
    connection: ProviderConnection,
    *,
    client: httpx.AsyncClient | None = None,
) -> AccountingProvider:
    provider_cls = PROVIDERS.get(connection.provider)
    if provider_cls is None:
        raise AccountingConfigError(f"Unknown accounting provider: {connection.provider}")
    return provider_cls(connection, client=client)
