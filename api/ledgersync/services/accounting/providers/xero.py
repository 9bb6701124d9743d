"""Xero: bank transactions (SPEND / RECEIVE) with file attachments and history notes."""
import logging
from urllib.parse import quote

from ledgersync.core.config import settings
from ledgersync.services.accounting.errors import ProviderError
from ledgersync.services.accounting.providers.base import (
    AccountingProvider,
    AttachmentResult,
    ProviderAccount,
    ProviderTenant,
    SyncResult,
    TransactionSyncResult,
)
from ledgersync.services.accounting.types import MappedTransaction

logger = logging.getLogger(__name__)

_API = "https://api.xero.com/api.xro/2.0"
_CONNECTIONS_URL = "https://api.xero.com/connections"
_REVOCATION_URL = "https://identity.xero.com/connect/revocation"
DEFAULT_ACCOUNT_CODE = "400"


class XeroProvider(AccountingProvider):
    id = "xero"
    name = "Xero"
    token_url = "https://identity.xero.com/connect/token"
    authorize_url = "https://login.xero.com/identity/connect/authorize"
    scopes = (
        "openid", "profile", "email", "offline_access",
        "accounting.transactions", "accounting.attachments",
        "accounting.settings", "accounting.contacts.read",
    )
    supports_history_notes = True

    @property
    def client_credentials(self) -> tuple[str, str]:
        return settings.xero_client_id, settings.xero_client_secret

    def _tenant_headers(self, tenant_id: str) -> dict:
        return {"xero-tenant-id": tenant_id}

    async def get_tenants(self) -> list[ProviderTenant]:
        body = await self._request("GET", _CONNECTIONS_URL, "list organisations")
        return [
            ProviderTenant(id=c["tenantId"], name=c.get("tenantName") or c["tenantId"])
            for c in body or []
            if c.get("tenantType", "ORGANISATION") == "ORGANISATION"
        ]

    async def disconnect(self) -> None:
        if self.connection.refresh_token:
            await self._client_auth_post(
                _REVOCATION_URL, "revoke tokens", data={"token": self.connection.refresh_token},
            )

    async def get_accounts(self, tenant_id: str) -> list[ProviderAccount]:
        body = await self._request(
            "GET", f"{_API}/Accounts", "list accounts",
            params={"where": 'Type=="BANK"'},
            headers=self._tenant_headers(tenant_id),
        )
        return [
            ProviderAccount(
                id=a["AccountID"],
                name=a.get("Name", ""),
                code=a.get("Code"),
                currency=a.get("CurrencyCode"),
            )
            for a in body.get("Accounts", [])
        ]

    def _bank_transaction(self, tx: MappedTransaction, target_account_id: str) -> dict:
        line = {
            "Description": tx.description,
            "Quantity": 1,
            "UnitAmount": float(abs(tx.amount)),
            "AccountCode": tx.category_reporting_code or DEFAULT_ACCOUNT_CODE,
        }
        if tx.tax_amount is not None:
            line["TaxAmount"] = float(abs(tx.tax_amount))
        payload = {
            "Type": "SPEND" if tx.amount < 0 else "RECEIVE",
            "LineItems": [line],
            "BankAccount": {"AccountID": target_account_id},
            "Date": tx.date,
            "Reference": tx.reference or tx.id,
            "CurrencyCode": tx.currency,
            "LineAmountTypes": "Inclusive" if tx.tax_amount is not None else "NoTax",
        }
        if tx.counterparty_name:
            payload["Contact"] = {"Name": tx.counterparty_name}
        return payload

    async def sync_transactions(
        self,
        transactions: list[MappedTransaction],
        target_account_id: str,
        tenant_id: str,
    ) -> SyncResult:
        body = await self._request(
            "PUT", f"{_API}/BankTransactions", "create bank transactions",
            params={"summarizeErrors": "false"},
            json={"BankTransactions": [self._bank_transaction(tx, target_account_id) for tx in transactions]},
            headers=self._tenant_headers(tenant_id),
        )
        created = body.get("BankTransactions", [])

        result = SyncResult()
        for index, tx in enumerate(transactions):
            item = created[index] if index < len(created) else {}
            errors = item.get("ValidationErrors") or []
            if item.get("BankTransactionID") and not item.get("HasValidationErrors"):
                result.add(TransactionSyncResult(
                    transaction_id=tx.id,
                    success=True,
                    provider_transaction_id=item["BankTransactionID"],
                    provider_entity_type="BankTransaction",
                ))
            else:
                message = errors[0].get("Message") if errors else "Transaction not created"
                result.add(TransactionSyncResult(transaction_id=tx.id, success=False, error=message))
        return result

    async def upload_attachment(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        entity_type: str | None = None,
    ) -> AttachmentResult:
        try:
            body = await self._request(
                "PUT",
                f"{_API}/BankTransactions/{transaction_id}/Attachments/{quote(file_name)}",
                "upload attachment",
                content=content,
                headers={**self._tenant_headers(tenant_id), "Content-Type": mime_type},
            )
        except ProviderError as exc:
            return AttachmentResult(success=False, error=str(exc))

        attachments = body.get("Attachments", [])
        if attachments and attachments[0].get("AttachmentID"):
            return AttachmentResult(success=True, attachment_id=attachments[0]["AttachmentID"])
        return AttachmentResult(success=False, error="Attachment not created")

    async def add_transaction_history_note(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        note: str,
    ) -> None:
        await self._request(
            "PUT",
            f"{_API}/BankTransactions/{transaction_id}/History",
            "add history note",
            json={"HistoryRecords": [{"Details": note[:250]}]},
            headers=self._tenant_headers(tenant_id),
        )
