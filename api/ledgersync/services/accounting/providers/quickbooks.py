"""QuickBooks Online: Purchase for expenses, SalesReceipt for income, Attachables for files."""
import json
import logging

from ledgersync.core.config import settings
from ledgersync.services.accounting.errors import ProviderError
from ledgersync.services.accounting.mime import ensure_file_extension
from ledgersync.services.accounting.providers.base import (
    AccountingProvider,
    AttachmentResult,
    DeleteAttachmentResult,
    ProviderAccount,
    ProviderTenant,
    SyncResult,
    TransactionSyncResult,
)
from ledgersync.services.accounting.types import MappedTransaction

logger = logging.getLogger(__name__)

_HOSTS = {
    "production": "https://quickbooks.api.intuit.com",
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
}
_ENTITY_TYPES = ("Purchase", "SalesReceipt")
_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"


class QuickBooksProvider(AccountingProvider):
    id = "quickbooks"
    name = "QuickBooks"
    token_url = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    authorize_url = "https://appcenter.intuit.com/connect/oauth2"
    scopes = ("com.intuit.quickbooks.accounting", "openid", "profile", "email")
    supports_attachment_delete = True

    @property
    def client_credentials(self) -> tuple[str, str]:
        return settings.quickbooks_client_id, settings.quickbooks_client_secret

    def _url(self, tenant_id: str, path: str) -> str:
        host = _HOSTS.get(settings.quickbooks_env, _HOSTS["production"])
        return f"{host}/v3/company/{tenant_id}{path}"

    async def get_tenants(self) -> list[ProviderTenant]:
        # The company (realm) is chosen on the consent screen and arrives with the callback
        realm_id = self.connection.provider_tenant_id
        if not realm_id:
            raise ProviderError("QuickBooks company (realmId) is unknown for this connection")
        body = await self._request("GET", self._url(realm_id, f"/companyinfo/{realm_id}"), "read company info")
        name = (body.get("CompanyInfo") or {}).get("CompanyName") or realm_id
        return [ProviderTenant(id=realm_id, name=name)]

    async def disconnect(self) -> None:
        token = self.connection.refresh_token or self.connection.access_token
        if token:
            await self._client_auth_post(_REVOKE_URL, "revoke tokens", json={"token": token})

    async def get_accounts(self, tenant_id: str) -> list[ProviderAccount]:
        body = await self._request(
            "GET", self._url(tenant_id, "/query"), "list accounts",
            params={"query": "select * from Account where AccountType = 'Bank'"},
        )
        return [
            ProviderAccount(
                id=a["Id"],
                name=a.get("Name", ""),
                code=a.get("AcctNum"),
                currency=(a.get("CurrencyRef") or {}).get("value"),
            )
            for a in body.get("QueryResponse", {}).get("Account", [])
        ]

    def _entity(self, tx: MappedTransaction, target_account_id: str) -> tuple[str, str, dict]:
        amount = float(abs(tx.amount))
        if tx.amount < 0:
            entity = {
                "PaymentType": "Cash",
                "AccountRef": {"value": target_account_id},
                "TotalAmt": amount,
                "TxnDate": tx.date,
                "CurrencyRef": {"value": tx.currency},
                "Line": [{
                    "Amount": amount,
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "AccountBasedExpenseLineDetail": {
                        "AccountRef": {"name": tx.category_slug or "Uncategorized Expense"},
                    },
                    "Description": tx.description,
                }],
            }
            kind, path = "Purchase", "/purchase"
        else:
            entity = {
                "DepositToAccountRef": {"value": target_account_id},
                "TotalAmt": amount,
                "TxnDate": tx.date,
                "CurrencyRef": {"value": tx.currency},
                "Line": [{
                    "Amount": amount,
                    "DetailType": "SalesItemLineDetail",
                    "SalesItemLineDetail": {"ItemRef": {"name": "Services"}},
                    "Description": tx.description,
                }],
            }
            kind, path = "SalesReceipt", "/salesreceipt"
        if tx.reference:
            entity["PrivateNote"] = tx.reference
        return kind, path, entity

    async def sync_transactions(
        self,
        transactions: list[MappedTransaction],
        target_account_id: str,
        tenant_id: str,
    ) -> SyncResult:
        result = SyncResult()
        # One call per transaction; chronological so entries appear in order
        for tx in sorted(transactions, key=lambda t: t.date):
            kind, path, entity = self._entity(tx, target_account_id)
            try:
                body = await self._request(
                    "POST", self._url(tenant_id, path), f"create {kind}",
                    # requestid makes a replayed create return the original object
                    params={"requestid": f"ledgersync-{tx.id}-{tx.date}"},
                    json=entity,
                )
            except ProviderError as exc:
                logger.error("QuickBooks transaction sync failed for %s: %s", tx.id, exc)
                result.add(TransactionSyncResult(transaction_id=tx.id, success=False, error=str(exc)))
                continue

            provider_id = (body.get(kind) or {}).get("Id")
            if provider_id:
                result.add(TransactionSyncResult(
                    transaction_id=tx.id,
                    success=True,
                    provider_transaction_id=provider_id,
                    provider_entity_type=kind,
                ))
            else:
                result.add(TransactionSyncResult(
                    transaction_id=tx.id, success=False, error="Transaction created but no ID returned"
                ))
        return result

    async def _find_entity_type(self, tenant_id: str, transaction_id: str) -> str | None:
        for kind in _ENTITY_TYPES:
            try:
                await self._request("GET", self._url(tenant_id, f"/{kind.lower()}/{transaction_id}"), f"read {kind}")
                return kind
            except ProviderError as exc:
                if exc.status_code not in (400, 404):
                    raise
        return None

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
        file_name = ensure_file_extension(file_name, mime_type)
        try:
            if entity_type not in _ENTITY_TYPES:
                entity_type = await self._find_entity_type(tenant_id, transaction_id)
            if entity_type is None:
                return AttachmentResult(
                    success=False, error=f"Transaction {transaction_id} not found in QuickBooks"
                )

            metadata = {
                "AttachableRef": [{"EntityRef": {"type": entity_type, "value": transaction_id}}],
                "FileName": file_name,
                "ContentType": mime_type,
            }
            body = await self._request(
                "POST", self._url(tenant_id, "/upload"), "upload attachment",
                files={
                    "file_metadata_01": (None, json.dumps(metadata), "application/json"),
                    "file_content_01": (file_name, content, mime_type),
                },
            )
        except ProviderError as exc:
            return AttachmentResult(success=False, error=str(exc))

        responses = body.get("AttachableResponse") or [{}]
        attachable = responses[0].get("Attachable") or {}
        if attachable.get("Id"):
            return AttachmentResult(success=True, attachment_id=attachable["Id"])
        fault = responses[0].get("Fault")
        return AttachmentResult(
            success=False,
            error=str(fault) if fault else "Attachment upload succeeded but no ID was returned",
        )

    async def delete_attachment(
        self,
        *,
        tenant_id: str,
        transaction_id: str,
        attachment_id: str,
    ) -> DeleteAttachmentResult:
        try:
            body = await self._request(
                "GET", self._url(tenant_id, f"/attachable/{attachment_id}"), "read attachable"
            )
            sync_token = (body.get("Attachable") or {}).get("SyncToken")
            if sync_token is None:
                return DeleteAttachmentResult(
                    success=False, error=f"Attachable {attachment_id} not found or missing SyncToken"
                )
            await self._request(
                "POST", self._url(tenant_id, "/attachable"), "delete attachable",
                params={"operation": "delete"},
                json={"Id": attachment_id, "SyncToken": sync_token},
            )
        except ProviderError as exc:
            return DeleteAttachmentResult(success=False, error=str(exc))
        return DeleteAttachmentResult(success=True)
