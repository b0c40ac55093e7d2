from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import case, func

from app.extensions import db
from app.models import ReconciliationReport, Wallet, WalletTransaction, WalletTxnType


def _signed_sum_by_wallet() -> dict[int, int]:
    signed = case(
        (WalletTransaction.txn_type == WalletTxnType.CREDIT.value, WalletTransaction.amount_minor),
        else_=-WalletTransaction.amount_minor,
    )
    rows = (
        db.session.query(WalletTransaction.wallet_id, func.coalesce(func.sum(signed), 0))
        .group_by(WalletTransaction.wallet_id)
        .all()
    )
    return {int(wallet_id): int(total or 0) for wallet_id, total in rows}


def recompute_wallet_balances(*, since: str | None = None, tolerance_minor: int = 0) -> dict:
    """Check every wallet's stored balance against the sum of its signed entries."""
    wallets = Wallet.query.order_by(Wallet.owner_type.asc(), Wallet.owner_id.asc()).all()
    computed_by_wallet = _signed_sum_by_wallet()
    drift_items = []

    for wallet in wallets:
        computed = computed_by_wallet.get(int(wallet.id), 0)
        current = int(wallet.balance_minor or 0)
        drift = current - computed
        if abs(drift) > int(tolerance_minor):
            drift_items.append(
                {
                    "wallet_id": int(wallet.id),
                    "owner_type": wallet.owner_type,
                    "owner_id": int(wallet.owner_id or 0),
                    "stored_balance_minor": current,
                    "computed_balance_minor": computed,
                    "drift_minor": drift,
                }
            )

    return {
        "ok": not drift_items,
        "scope": "wallet_ledger",
        "since": since or "",
        "wallet_count": len(wallets),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, triggered_by: str | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "wallet_ledger")[:64],
        summary_json=json.dumps(summary, default=str)[:200000],
        wallet_count=int(summary.get("wallet_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        triggered_by=(triggered_by or "")[:64] or None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
