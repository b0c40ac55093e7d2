from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.integrations.payments.factory import build_payments_provider
from app.models import Severity, Wallet, WalletOwner, WalletTransaction, WalletTxnType, Withdrawal, WithdrawalStatus
from app.utils.env import env_int
from app.utils.errors import NotFoundError, ValidationError, WithdrawalFailed
from app.utils.events import log_event
from app.utils.sequences import WITHDRAWAL_PREFIX, next_number
from app.utils.wallets import find_wallet, get_or_create_wallet, post_txn


def min_withdrawal_minor() -> int:
    return env_int("MIN_WITHDRAWAL_MINOR", 100000, minimum=100)


def wallet_summary(owner_type, owner_id: int | None, *, limit: int = 50) -> dict:
    try:
        owner = WalletOwner.parse(owner_type)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    wallet = find_wallet(owner, owner_id)
    if wallet is None:
        raise NotFoundError(f"no {owner.value} wallet for {owner_id}")
    rows = (
        WalletTransaction.query.filter_by(wallet_id=int(wallet.id))
        .order_by(WalletTransaction.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return {"wallet": wallet.to_dict(), "transactions": [r.to_dict() for r in rows]}


def _clean_bank_details(bank_details: dict) -> dict:
    if not isinstance(bank_details, dict):
        raise ValidationError("bank details are required")
    bank_name = str(bank_details.get("bank_name") or "").strip()
    account_number = str(bank_details.get("account_number") or "").strip()
    if not bank_name or not account_number:
        raise ValidationError("bank_name and account_number are required")
    return {"bank_name": bank_name[:120], "account_number": account_number[:16]}


def _reverse(wallet_id: int, withdrawal_id: int, reference: str, amount_minor: int, error: str) -> None:
    """Append the compensating CREDIT; the original WITHDRAWAL row stays."""
    try:
        wallet = db.session.get(Wallet, int(wallet_id))
        post_txn(
            wallet,
            WalletTxnType.CREDIT,
            amount_minor,
            reference=f"{reference}:reversal",
            kind="withdrawal_reversal",
            description=f"Reversal of {reference}",
            count_as_earnings=False,
        )
        row = db.session.get(Withdrawal, int(withdrawal_id))
        row.status = WithdrawalStatus.FAILED.value
        row.error = error[:1000]
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("withdrawal_reversal_failed reference=%s", reference)
        log_event(
            "withdrawal_reversal_failed",
            severity=Severity.CRITICAL,
            message=f"withdrawal {reference} failed and could not be reversed",
            subject_type="withdrawal",
            subject_id=withdrawal_id,
            metadata={"amount_minor": amount_minor, "error": error[:400]},
        )
        raise


def request_withdrawal(owner_type, owner_id: int, amount_minor: int, bank_details: dict) -> Withdrawal:
    """Debit the wallet, then pay out through the gateway's transfer primitives.

    The debit commits first so concurrent withdrawals cannot overdraw; a
    failed transfer is compensated with a CREDIT entry and WithdrawalFailed.
    """
    try:
        owner = WalletOwner.parse(owner_type)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    if owner is WalletOwner.PLATFORM:
        raise ValidationError("platform wallet cannot be withdrawn from here")
    try:
        amount = int(amount_minor)
    except (TypeError, ValueError):
        raise ValidationError("amount_minor must be an integer") from None
    if amount < min_withdrawal_minor():
        raise ValidationError(f"minimum withdrawal is {min_withdrawal_minor()} minor units")
    bank = _clean_bank_details(bank_details)

    try:
        wallet = get_or_create_wallet(owner, owner_id)
        reference = next_number(WITHDRAWAL_PREFIX)
        post_txn(
            wallet,
            WalletTxnType.WITHDRAWAL,
            amount,
            reference=reference,
            kind="withdrawal",
            description=f"Withdrawal to {bank['bank_name']} {bank['account_number'][-4:]}",
        )
        withdrawal = Withdrawal(
            wallet_id=int(wallet.id),
            amount_minor=amount,
            reference=reference,
            bank_name=bank["bank_name"],
            account_number=bank["account_number"],
            status=WithdrawalStatus.PENDING.value,
        )
        db.session.add(withdrawal)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError("withdrawal could not be recorded, please retry") from None
    except Exception:
        db.session.rollback()
        raise

    wallet_id = int(wallet.id)
    withdrawal_id = int(withdrawal.id)
    try:
        provider = build_payments_provider()
        bank_code = provider.resolve_bank_code(bank["bank_name"])
        if not bank_code:
            raise RuntimeError(f"UNKNOWN_BANK:{bank['bank_name']}")
        account = provider.verify_account_number(bank["account_number"], bank_code)
        recipient_code = provider.create_transfer_recipient(
            account_number=account.account_number,
            bank_code=bank_code,
            account_name=account.account_name,
        )
        transfer = provider.initiate_transfer(
            amount_minor=amount,
            recipient_code=recipient_code,
            reference=reference,
            reason=f"SwiftCart {owner.value} withdrawal",
        )
        if not transfer.ok:
            raise RuntimeError(f"TRANSFER_REJECTED:{transfer.status}")
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        current_app.logger.warning("withdrawal_failed reference=%s error=%s", reference, error)
        _reverse(wallet_id, withdrawal_id, reference, amount, error)
        log_event(
            "withdrawal_failed",
            severity=Severity.MEDIUM,
            message=f"withdrawal {reference} failed and was reversed",
            subject_type=owner.value,
            subject_id=owner_id,
            metadata={"amount_minor": amount, "error": error[:400]},
        )
        raise WithdrawalFailed(str(e)[:200] or "transfer failed", details={"reference": reference}) from None

    try:
        withdrawal = db.session.get(Withdrawal, withdrawal_id)
        withdrawal.bank_code = bank_code
        withdrawal.account_name = account.account_name[:160]
        withdrawal.recipient_code = recipient_code[:64]
        withdrawal.transfer_code = (transfer.transfer_code or "")[:64] or None
        withdrawal.status = WithdrawalStatus.COMPLETED.value
        withdrawal.completed_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("withdrawal_status_update_failed reference=%s", reference)
        raise
    current_app.logger.info(
        json.dumps({"event": "withdrawal_completed", "reference": reference, "owner": owner.value, "amount_minor": amount})
    )
    return withdrawal
