"""
Fortnox: every transaction becomes a balanced voucher.

    expense (amount < 0): debit expense account, credit bank account
    income  (amount > 0): debit bank account,  credit income account

Files go to the archive first and are then connected to the voucher.
"""
import logging
from datetime import date

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

_API = "https://api.fortnox.se/3"
DEFAULT_EXPENSE_ACCOUNT = "4000"
DEFAULT_INCOME_ACCOUNT = "3000"
VOUCHER_SERIES = "A"
ARCHIVE_FOLDER = "Ledgersync"


def parse_voucher_id(voucher_id: str) -> tuple[str, str, int] | None:
    """Split ``Series-Number-Year`` into its parts."""
    parts = voucher_id.split("-")
    if len(parts) != 3 or not all(parts) or not parts[2].isdigit():
        return None
    return parts[0], parts[1], int(parts[2])


class FortnoxProvider(AccountingProvider):
    id = "fortnox"
    name = "Fortnox"
    token_url = "https://apps.fortnox.se/oauth-v1/token"
    authorize_url = "https://apps.fortnox.se/oauth-v1/auth"
    scopes = ("bookkeeping", "companyinformation", "archive", "connectfile")
    consent_params = {"access_type": "offline", "account_type": "service"}

    @property
    def client_credentials(self) -> tuple[str, str]:
        return settings.fortnox_client_id, settings.fortnox_client_secret

    async def get_tenants(self) -> list[ProviderTenant]:
        body = await self._request("GET", f"{_API}/companyinformation", "read company information")
        info = body.get("CompanyInformation") or {}
        database = info.get("DatabaseNumber")
        return [ProviderTenant(id=str(database) if database else "default", name=info.get("CompanyName") or "Fortnox")]

    async def get_accounts(self, tenant_id: str) -> list[ProviderAccount]:
        body = await self._request("GET", f"{_API}/accounts", "list accounts", params={"limit": 500})
        accounts = []
        for a in body.get("Accounts", []):
            number = a.get("Number")
            # BAS chart: 19xx are cash and bank accounts
            if number is not None and 1900 <= int(number) < 2000 and a.get("Active", True):
                accounts.append(ProviderAccount(id=str(number), name=a.get("Description", ""), code=str(number)))
        return accounts

    def _voucher(self, tx: MappedTransaction, bank_account: str) -> dict:
        is_expense = tx.amount < 0
        amount = float(abs(tx.amount))
        contra = tx.category_reporting_code or (DEFAULT_EXPENSE_ACCOUNT if is_expense else DEFAULT_INCOME_ACCOUNT)
        if is_expense:
            rows = [(contra, amount, 0.0), (bank_account, 0.0, amount)]
        else:
            rows = [(bank_account, amount, 0.0), (contra, 0.0, amount)]
        return {
            "Voucher": {
                "Description": (tx.description or tx.counterparty_name or "Transaction")[:200],
                "TransactionDate": tx.date,
                "VoucherSeries": VOUCHER_SERIES,
                "Year": date.fromisoformat(tx.date).year,
                # Idempotency reference, max 100 chars
                "ReferenceNumber": f"ledgersync-{tx.id}"[:100],
                "VoucherRows": [
                    {"Account": int(account), "Debit": debit, "Credit": credit}
                    for account, debit, credit in rows
                ],
            }
        }

    async def sync_transactions(
        self,
        transactions: list[MappedTransaction],
        target_account_id: str,
        tenant_id: str,
    ) -> SyncResult:
        result = SyncResult()
        for tx in transactions:
            try:
                body = await self._request(
                    "POST", f"{_API}/vouchers", "create voucher", json=self._voucher(tx, target_account_id)
                )
                voucher = body.get("Voucher") or {}
                if not voucher.get("VoucherNumber"):
                    raise ProviderError("Failed to create voucher - no voucher number returned")
            except (ProviderError, ValueError) as exc:
                logger.error("Fortnox transaction sync failed for %s: %s", tx.id, exc)
                result.add(TransactionSyncResult(transaction_id=tx.id, success=False, error=str(exc)))
                continue

            result.add(TransactionSyncResult(
                transaction_id=tx.id,
                success=True,
                provider_transaction_id=f"{voucher['VoucherSeries']}-{voucher['VoucherNumber']}-{voucher['Year']}",
                provider_entity_type="Voucher",
            ))
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
        voucher = parse_voucher_id(transaction_id)
        if voucher is None:
            return AttachmentResult(success=False, error=f"Invalid voucher ID format: {transaction_id}")
        series, number, year = voucher

        try:
            body = await self._request(
                "POST", f"{_API}/archive", "upload file to archive",
                params={"path": ARCHIVE_FOLDER},
                files={"file": (file_name, content, mime_type)},
            )
            file_id = (body.get("File") or {}).get("Id")
            if not file_id:
                return AttachmentResult(success=False, error="Failed to upload file - no file ID returned")
            await self._request(
                "POST", f"{_API}/voucherfileconnections", "connect file to voucher",
                json={"VoucherFileConnection": {
                    "FileId": file_id,
                    "VoucherSeries": series,
                    "VoucherNumber": number,
                    "VoucherYear": year,
                }},
            )
        except ProviderError as exc:
            return AttachmentResult(success=False, error=str(exc))
        return AttachmentResult(success=True, attachment_id=file_id)
