from __future__ import annotations

import argparse
import json
import sys


def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute wallet balances from the transaction ledger and report drift.")
    parser.add_argument("--since", default="", help="Optional since marker recorded in the report.")
    parser.add_argument("--tolerance", type=int, default=0, help="Allowed drift per wallet, in kobo.")
    parser.add_argument("--persist", action="store_true", help="Store the report in reconciliation_reports.")
    args = parser.parse_args()

    from app import create_app

    app = create_app()
    with app.app_context():
        from app.models import Severity
        from app.services.reconciliation_service import persist_report, recompute_wallet_balances
        from app.utils.events import log_event

        summary = recompute_wallet_balances(since=(args.since or None), tolerance_minor=max(0, args.tolerance))
        if args.persist:
            row = persist_report(summary, triggered_by="ops_cli")
            summary["report_id"] = int(row.id)
        drift_count = int(summary.get("drift_count") or 0)
        if drift_count:
            log_event(
                "wallet_ledger_drift",
                severity=Severity.CRITICAL,
                actor="ops_cli",
                message=f"{drift_count} wallet(s) disagree with their transaction history",
                subject_type="reconciliation",
                subject_id=summary.get("report_id"),
                metadata={"drift_count": drift_count},
            )

    print(json.dumps(summary, indent=2, default=str))
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
