from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.jobs.registry import SWEEPS, run_named_sweep
from app.models import JobRun, ReconciliationReport
from app.services.reconciliation_service import persist_report, recompute_wallet_balances
from app.utils.admin_auth import require_admin
from app.utils.errors import NotFoundError, ValidationError

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin")


@recon_bp.get("/reconciliation/wallets")
def wallet_reconciliation():
    err = require_admin()
    if err:
        return err
    since = (request.args.get("since") or "").strip() or None
    try:
        tolerance = int(request.args.get("tolerance_minor") or 0)
    except ValueError:
        raise ValidationError("tolerance_minor must be an integer") from None
    summary = recompute_wallet_balances(since=since, tolerance_minor=tolerance)
    report_id = None
    if (request.args.get("persist") or "").strip().lower() in ("1", "true", "yes"):
        report_id = int(persist_report(summary, triggered_by="admin_api").id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@recon_bp.get("/reconciliation/latest")
def latest_report():
    err = require_admin()
    if err:
        return err
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc()).first()
    return jsonify({"ok": True, "report": row.to_dict() if row else None}), 200


@recon_bp.post("/jobs/<string:name>/run")
def run_job(name: str):
    err = require_admin()
    if err:
        return err
    try:
        result = run_named_sweep(name)
    except KeyError:
        raise NotFoundError(f"unknown job {name}; expected one of {', '.join(sorted(SWEEPS))}") from None
    return jsonify({"ok": True, "job": name, "result": result}), 200


@recon_bp.get("/jobs/runs")
def job_runs():
    err = require_admin()
    if err:
        return err
    q = JobRun.query
    name = (request.args.get("job") or "").strip()
    if name:
        q = q.filter(JobRun.job_name == name)
    rows = q.order_by(JobRun.id.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
