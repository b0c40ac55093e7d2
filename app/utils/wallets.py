from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import Wallet, WalletOwner, WalletTransaction, WalletTxnType
from app.utils.errors import InsufficientBalance

PLATFORM_OWNER_ID = 0


def get_or_create_wallet(owner_type: WalletOwner | str, owner_id: int | None = None) -> Wallet:
    """Fetch the wallet for an owner, creating it inside the current transaction.

    The platform wallet is a singleton keyed on owner id 0.
    """
    owner = WalletOwner.parse(owner_type)
    oid = PLATFORM_OWNER_ID if owner is WalletOwner.PLATFORM else int(owner_id or 0)
    wallet = (
        Wallet.query.filter_by(owner_type=owner.value, owner_id=oid)
        .with_for_update()
        .first()
    )
    if wallet is not None:
        return wallet
    wallet = Wallet(owner_type=owner.value, owner_id=oid, balance_minor=0, total_earnings_minor=0, total_withdrawals_minor=0)
    try:
        with db.session.begin_nested():
            db.session.add(wallet)
    except IntegrityError:
        wallet = Wallet.query.filter_by(owner_type=owner.value, owner_id=oid).with_for_update().one()
    return wallet


def find_wallet(owner_type: WalletOwner | str, owner_id: int | None = None) -> Wallet | None:
    owner = WalletOwner.parse(owner_type)
    oid = PLATFORM_OWNER_ID if owner is WalletOwner.PLATFORM else int(owner_id or 0)
    return Wallet.query.filter_by(owner_type=owner.value, owner_id=oid).first()


def post_txn(
    wallet: Wallet,
    txn_type: WalletTxnType | str,
    amount_minor: int,
    *,
    reference: str,
    kind: str = "",
    order_id: int | None = None,
    description: str = "",
    count_as_earnings: bool = True,
) -> WalletTransaction | None:
    """Append one ledger entry and move the wallet balance with it.

    Must run inside the caller's transaction; the caller commits or rolls
    back both the entry and the balance together. A reference that was
    already posted is an idempotent no-op returning None.
    """
    ttype = txn_type if isinstance(txn_type, WalletTxnType) else WalletTxnType(str(txn_type).strip().upper())
    amount = int(amount_minor or 0)
    if amount <= 0:
        return None
    ref = (reference or "").strip()[:128]
    if not ref:
        raise ValueError("reference required")
    if WalletTransaction.query.filter_by(reference=ref).first() is not None:
        return None

    balance = int(wallet.balance_minor or 0)
    if ttype is WalletTxnType.CREDIT:
        balance += amount
        if count_as_earnings:
            wallet.total_earnings_minor = int(wallet.total_earnings_minor or 0) + amount
    else:
        if amount > balance:
            raise InsufficientBalance(
                "Insufficient wallet balance",
                details={"balance_minor": balance, "requested_minor": amount},
            )
        balance -= amount
        if ttype is WalletTxnType.WITHDRAWAL:
            wallet.total_withdrawals_minor = int(wallet.total_withdrawals_minor or 0) + amount

    wallet.balance_minor = balance
    wallet.updated_at = datetime.utcnow()
    row = WalletTransaction(
        wallet_id=int(wallet.id),
        txn_type=ttype.value,
        amount_minor=amount,
        balance_after_minor=balance,
        reference=ref,
        kind=(kind or "").strip()[:48] or None,
        order_id=int(order_id) if order_id is not None else None,
        description=(description or "").strip()[:240] or None,
    )
    db.session.add(wallet)
    db.session.add(row)
    db.session.flush()
    return row
