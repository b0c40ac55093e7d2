from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentInitializeResult:
    authorization_url: str
    reference: str
    provider: str
    access_code: str = ""
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str
    amount_minor: int
    currency: str
    customer: str
    raw: dict | None = None


@dataclass
class PaymentRefundResult:
    ok: bool
    reference: str
    amount_minor: int | None
    status: str = ""
    refund_id: str = ""
    raw: dict | None = None


@dataclass
class BankAccount:
    account_number: str
    account_name: str
    bank_code: str


@dataclass
class TransferResult:
    ok: bool
    reference: str
    transfer_code: str = ""
    status: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def initialize(self, *, email: str, amount_minor: int, reference: str, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def refund(self, reference: str, amount_minor: int | None = None) -> PaymentRefundResult:
        raise NotImplementedError

    # Bank transfer primitives used by wallet withdrawals.

    def resolve_bank_code(self, bank_name: str) -> str | None:
        raise NotImplementedError

    def verify_account_number(self, account_number: str, bank_code: str) -> BankAccount:
        raise NotImplementedError

    def create_transfer_recipient(self, *, account_number: str, bank_code: str, account_name: str) -> str:
        raise NotImplementedError

    def initiate_transfer(self, *, amount_minor: int, recipient_code: str, reference: str, reason: str = "") -> TransferResult:
        raise NotImplementedError
