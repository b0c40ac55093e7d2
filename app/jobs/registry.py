from __future__ import annotations

from app.jobs.delivery_retry import run_stuck_delivery_sweep
from app.jobs.escrow_runner import run_auto_release_sweep
from app.jobs.order_cleanup import run_order_cleanup_sweep
from app.jobs.payment_timeout import run_payment_timeout_sweep

SWEEPS = {
    "payment_timeout": run_payment_timeout_sweep,
    "order_cleanup": run_order_cleanup_sweep,
    "delivery_retry": run_stuck_delivery_sweep,
    "auto_release": run_auto_release_sweep,
}


def run_named_sweep(name: str) -> dict:
    key = (name or "").strip().lower().replace("-", "_")
    fn = SWEEPS.get(key)
    if fn is None:
        raise KeyError(key)
    return fn()
