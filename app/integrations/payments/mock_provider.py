from __future__ import annotations

import uuid

from app.integrations.payments.base import (
    BankAccount,
    PaymentInitializeResult,
    PaymentRefundResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic sandbox provider.

    Calls are recorded on class-level lists so tests can assert on them.
    Set the ``fail_*`` class flags to simulate gateway outages.
    """

    name = "mock"

    refunds: list[dict] = []
    transfers: list[dict] = []
    fail_refunds = False
    fail_transfers = False
    fail_initialize = False

    _BANKS = {
        "access bank": "044",
        "gtbank": "058",
        "guaranty trust bank": "058",
        "first bank": "011",
        "opay": "999992",
        "kuda": "50211",
        "zenith bank": "057",
    }

    @classmethod
    def reset(cls) -> None:
        cls.refunds = []
        cls.transfers = []
        cls.fail_refunds = False
        cls.fail_transfers = False
        cls.fail_initialize = False

    def initialize(self, *, email: str, amount_minor: int, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        if type(self).fail_initialize:
            raise RuntimeError("MOCK_INIT_FAILED:forced")
        return PaymentInitializeResult(
            authorization_url=f"https://example.com/mock/pay?reference={reference}",
            reference=reference,
            provider=self.name,
            access_code=f"mock_{reference[-8:]}",
            raw={"email": email, "amount": int(amount_minor), "metadata": metadata or {}},
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        return PaymentVerifyResult(
            status="success",
            amount_minor=0,
            currency="NGN",
            customer="mock",
            raw={"reference": reference, "provider": self.name},
        )

    def refund(self, reference: str, amount_minor: int | None = None) -> PaymentRefundResult:
        if type(self).fail_refunds:
            raise RuntimeError("MOCK_REFUND_FAILED:forced")
        entry = {"reference": reference, "amount_minor": amount_minor}
        type(self).refunds.append(entry)
        return PaymentRefundResult(
            ok=True,
            reference=reference,
            amount_minor=amount_minor,
            status="pending",
            refund_id=f"rf_{uuid.uuid4().hex[:10]}",
            raw=entry,
        )

    def resolve_bank_code(self, bank_name: str) -> str | None:
        return self._BANKS.get((bank_name or "").strip().lower())

    def verify_account_number(self, account_number: str, bank_code: str) -> BankAccount:
        acct = (account_number or "").strip()
        if len(acct) != 10 or not acct.isdigit():
            raise RuntimeError("MOCK_RESOLVE_FAILED:Could not resolve account name")
        return BankAccount(account_number=acct, account_name="MOCK ACCOUNT HOLDER", bank_code=bank_code)

    def create_transfer_recipient(self, *, account_number: str, bank_code: str, account_name: str) -> str:
        return f"RCP_mock_{bank_code}_{account_number[-4:]}"

    def initiate_transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str = "") -> TransferResult:
        if type(self).fail_transfers:
            raise RuntimeError("MOCK_TRANSFER_FAILED:forced")
        entry = {
            "amount_minor": int(amount_minor),
            "recipient_code": recipient_code,
            "reference": reference,
            "reason": reason,
        }
        type(self).transfers.append(entry)
        return TransferResult(
            ok=True,
            reference=reference,
            transfer_code=f"TRF_mock_{uuid.uuid4().hex[:8]}",
            status="success",
            raw=entry,
        )
