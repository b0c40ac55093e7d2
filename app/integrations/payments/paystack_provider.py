from __future__ import annotations

import requests

from app.integrations.payments.base import (
    BankAccount,
    PaymentInitializeResult,
    PaymentRefundResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)
from app.utils.env import env_str


PAYSTACK_BASE = "https://api.paystack.co"


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, timeout: int = 25):
        self.secret_key = secret_key
        self.timeout = int(timeout)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, *, failure_code: str, json_body: dict | None = None, params: dict | None = None) -> dict:
        r = requests.request(
            method,
            f"{PAYSTACK_BASE}{path}",
            headers=self._headers(),
            json=json_body,
            params=params,
            timeout=self.timeout,
        )
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (str(j.get("message") or "") or f"HTTP {r.status_code}").strip()
            raise RuntimeError(f"{failure_code}:{msg}")
        return j if isinstance(j, dict) else {"payload": j}

    def initialize(self, *, email: str, amount_minor: int, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        payload = {
            "email": email,
            "amount": int(amount_minor),
            "reference": reference,
            "currency": "NGN",
            "metadata": metadata or {},
        }
        callback_url = env_str("PAYSTACK_CALLBACK_URL")
        if callback_url:
            payload["callback_url"] = callback_url
        j = self._request("POST", "/transaction/initialize", failure_code="PAYSTACK_INIT_FAILED", json_body=payload)
        data = j.get("data") or {}
        return PaymentInitializeResult(
            authorization_url=(data.get("authorization_url") or "").strip(),
            reference=(data.get("reference") or reference).strip(),
            provider=self.name,
            access_code=(data.get("access_code") or "").strip(),
            raw=j,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        j = self._request("GET", f"/transaction/verify/{ref}", failure_code="PAYSTACK_VERIFY_FAILED")
        data = j.get("data") or {}
        try:
            amount_minor = int(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount_minor = 0
        customer_email = ((data.get("customer") or {}).get("email") or "").strip()
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            amount_minor=amount_minor,
            currency=(data.get("currency") or "NGN").strip().upper(),
            customer=customer_email,
            raw=j,
        )

    def refund(self, reference: str, amount_minor: int | None = None) -> PaymentRefundResult:
        payload: dict = {"transaction": (reference or "").strip()}
        if amount_minor is not None:
            payload["amount"] = int(amount_minor)
        j = self._request("POST", "/refund", failure_code="PAYSTACK_REFUND_FAILED", json_body=payload)
        data = j.get("data") or {}
        return PaymentRefundResult(
            ok=True,
            reference=reference,
            amount_minor=amount_minor,
            status=str(data.get("status") or "pending").strip().lower(),
            refund_id=str(data.get("id") or ""),
            raw=j,
        )

    def resolve_bank_code(self, bank_name: str) -> str | None:
        wanted = (bank_name or "").strip().lower()
        if not wanted:
            return None
        j = self._request("GET", "/bank", failure_code="PAYSTACK_BANK_LIST_FAILED", params={"currency": "NGN"})
        banks = j.get("data") or []
        for bank in banks:
            if str(bank.get("name") or "").strip().lower() == wanted:
                return str(bank.get("code") or "") or None
        for bank in banks:
            if wanted in str(bank.get("name") or "").strip().lower():
                return str(bank.get("code") or "") or None
        return None

    def verify_account_number(self, account_number: str, bank_code: str) -> BankAccount:
        j = self._request(
            "GET",
            "/bank/resolve",
            failure_code="PAYSTACK_RESOLVE_FAILED",
            params={"account_number": account_number, "bank_code": bank_code},
        )
        data = j.get("data") or {}
        return BankAccount(
            account_number=str(data.get("account_number") or account_number),
            account_name=str(data.get("account_name") or "").strip(),
            bank_code=bank_code,
        )

    def create_transfer_recipient(self, *, account_number: str, bank_code: str, account_name: str) -> str:
        payload = {
            "type": "nuban",
            "name": account_name,
            "account_number": account_number,
            "bank_code": bank_code,
            "currency": "NGN",
        }
        j = self._request("POST", "/transferrecipient", failure_code="PAYSTACK_RECIPIENT_FAILED", json_body=payload)
        code = str((j.get("data") or {}).get("recipient_code") or "").strip()
        if not code:
            raise RuntimeError("PAYSTACK_RECIPIENT_FAILED:missing recipient_code")
        return code

    def initiate_transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str = "") -> TransferResult:
        payload = {
            "source": "balance",
            "amount": int(amount_minor),
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason or "Wallet withdrawal",
        }
        j = self._request("POST", "/transfer", failure_code="PAYSTACK_TRANSFER_FAILED", json_body=payload)
        data = j.get("data") or {}
        return TransferResult(
            ok=True,
            reference=str(data.get("reference") or reference),
            transfer_code=str(data.get("transfer_code") or ""),
            status=str(data.get("status") or "").strip().lower(),
            raw=j,
        )
