from datetime import datetime

from app.extensions import db
from app.models.enums import WalletTxnType, WithdrawalStatus


class Wallet(db.Model):
    __tablename__ = "wallets"
    __table_args__ = (
        db.UniqueConstraint("owner_type", "owner_id", name="uq_wallet_owner"),
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_type = db.Column(db.String(16), nullable=False, index=True)  # merchant | rider | platform
    owner_id = db.Column(db.Integer, nullable=False, default=0)

    balance_minor = db.Column(db.BigInteger, nullable=False, default=0)
    # Lifetime earnings for merchants/riders, total revenue for the platform wallet.
    total_earnings_minor = db.Column(db.BigInteger, nullable=False, default=0)
    total_withdrawals_minor = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="NGN", server_default="NGN")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "owner_type": self.owner_type or "",
            "owner_id": int(self.owner_id or 0),
            "balance_minor": int(self.balance_minor or 0),
            "total_earnings_minor": int(self.total_earnings_minor or 0),
            "total_withdrawals_minor": int(self.total_withdrawals_minor or 0),
            "currency": self.currency or "NGN",
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(db.Model):
    """Append-only ledger entry. Rows are never updated or deleted."""

    __tablename__ = "wallet_transactions"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)
    txn_type = db.Column(db.String(16), nullable=False)  # CREDIT | DEBIT | WITHDRAWAL
    amount_minor = db.Column(db.BigInteger, nullable=False)
    balance_after_minor = db.Column(db.BigInteger, nullable=False)
    reference = db.Column(db.String(128), nullable=False, unique=True, index=True)
    kind = db.Column(db.String(48), nullable=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    description = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @property
    def signed_amount_minor(self) -> int:
        return WalletTxnType(self.txn_type).sign * abs(int(self.amount_minor or 0))

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "type": self.txn_type or "",
            "amount_minor": int(self.amount_minor or 0),
            "balance_after_minor": int(self.balance_after_minor or 0),
            "reference": self.reference or "",
            "kind": self.kind or "",
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "description": self.description or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Withdrawal(db.Model):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)
    amount_minor = db.Column(db.BigInteger, nullable=False)
    reference = db.Column(db.String(64), nullable=False, unique=True, index=True)

    bank_name = db.Column(db.String(120), nullable=True)
    bank_code = db.Column(db.String(16), nullable=True)
    account_number = db.Column(db.String(16), nullable=True)
    account_name = db.Column(db.String(160), nullable=True)
    recipient_code = db.Column(db.String(64), nullable=True)
    transfer_code = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "amount_minor": int(self.amount_minor or 0),
            "reference": self.reference or "",
            "bank_name": self.bank_name or "",
            "account_number": self.account_number or "",
            "account_name": self.account_name or "",
            "transfer_code": self.transfer_code or "",
            "status": self.status or WithdrawalStatus.PENDING.value,
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
