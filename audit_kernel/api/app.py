"""
Audit Kernel API — FastAPI endpoints.

Exposes the kernel for dashboards and operators:
- Ledger reads (latest, timeline, status changes, stats)
- On-demand validation
- Run triggers and the run log
- Expiration monitoring
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audit_kernel.config.settings import KernelSettings, get_settings
from audit_kernel.errors import ConcurrentRunConflict, PersistenceError, UnknownRuleError
from audit_kernel.extension.expiration import ExpirationMonitor
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.config import ExpirationConfig, OrchestratorConfig, ValidationConfig
from audit_kernel.models.validation import ValidationVerdict
from audit_kernel.observability.logging import configure_logging
from audit_kernel.orchestrator.batch import BatchOrchestrator
from audit_kernel.orchestrator.source import InMemoryRecordSource, RecordSource
from audit_kernel.validation.engine import ValidationRuleEngine


# --- Request/Response Models ---

class IncrementalRunRequest(BaseModel):
    since: Optional[datetime] = None


class ValidationRunRequest(BaseModel):
    rules: Optional[List[str]] = None
    accounts: Optional[List[str]] = None


def _verdict_dict(verdict: ValidationVerdict) -> dict:
    data = verdict.model_dump(mode="json")
    data["tooltip"] = verdict.tooltip()
    return data


def _split_rules(rules: Optional[str]) -> Optional[List[str]]:
    if rules is None:
        return None
    return [r.strip() for r in rules.split(",") if r.strip()]


# --- Application Factory ---

def create_app(
    store: Optional[SnapshotStore] = None,
    source: Optional[RecordSource] = None,
    orchestrator_config: Optional[OrchestratorConfig] = None,
    validation_config: Optional[ValidationConfig] = None,
    expiration_config: Optional[ExpirationConfig] = None,
    settings: Optional[KernelSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.service_name, settings.log_level, settings.json_logs)

    app = FastAPI(
        title="Entitlement Audit Kernel API",
        description="Change ledger, extension linking and validation for entitlement requests",
        version="0.1.0",
    )

    # Initialize components
    ledger = store or SnapshotStore(settings.db_path)
    orchestrator = BatchOrchestrator(
        store=ledger,
        source=source or InMemoryRecordSource(),
        config=orchestrator_config or OrchestratorConfig(),
    )
    engine = ValidationRuleEngine(validation_config or ValidationConfig())
    monitor = ExpirationMonitor(ledger, expiration_config or ExpirationConfig())

    app.state.store = ledger
    app.state.orchestrator = orchestrator
    app.state.validation_engine = engine
    app.state.expiration_monitor = monitor

    @app.exception_handler(ConcurrentRunConflict)
    async def handle_conflict(request: Request, exc: ConcurrentRunConflict):
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(UnknownRuleError)
    async def handle_unknown_rule(request: Request, exc: UnknownRuleError):
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(PersistenceError)
    async def handle_persistence(request: Request, exc: PersistenceError):
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"status": "ok", "run_status": orchestrator.status.value}

    # === LEDGER ===

    @app.get("/records/{identifier}/latest")
    def latest(identifier: str):
        snapshot = ledger.latest(identifier)
        if snapshot is None:
            raise HTTPException(404, "Record not found")
        return snapshot.model_dump(mode="json")

    @app.get("/records/{identifier}/timeline")
    def timeline(identifier: str):
        snapshots = ledger.timeline(identifier)
        if not snapshots:
            raise HTTPException(404, "Record not found")
        return [s.model_dump(mode="json") for s in snapshots]

    @app.get("/records/{identifier}/status-changes")
    def status_changes(identifier: str):
        changes = ledger.status_changes(identifier)
        if not changes:
            raise HTTPException(404, "Record not found")
        return [c.model_dump(mode="json") for c in changes]

    @app.get("/accounts")
    def accounts():
        return ledger.accounts()

    @app.get("/ledger/stats")
    def stats():
        return ledger.stats().model_dump(mode="json")

    # === VALIDATION ===

    @app.get("/records/{identifier}/validation")
    def validate_record(identifier: str, rules: Optional[str] = None):
        snapshot = ledger.latest(identifier)
        if snapshot is None:
            raise HTTPException(404, "Record not found")
        return _verdict_dict(engine.validate(snapshot.payload, _split_rules(rules)))

    @app.post("/validation/run")
    def validate_all(req: Optional[ValidationRunRequest] = None):
        req = req or ValidationRunRequest()
        verdicts = engine.validate_latest(ledger, req.rules, req.accounts)
        failed = sum(1 for v in verdicts if not v.passed)
        return {
            "total": len(verdicts),
            "passed": len(verdicts) - failed,
            "failed": failed,
            "verdicts": [_verdict_dict(v) for v in verdicts],
        }

    @app.get("/validation/rules")
    def list_rules():
        return {"rules": engine.rule_ids, "enabled": sorted(engine.config.enabled_rules)}

    # === RUNS ===

    @app.post("/runs/incremental")
    def run_incremental(req: Optional[IncrementalRunRequest] = None):
        since = req.since if req else None
        return orchestrator.run_incremental(since).summary()

    @app.post("/runs/backfill")
    def run_backfill():
        return orchestrator.run_full_backfill().summary()

    @app.post("/runs/cancel")
    def cancel_run():
        return {"cancelled": orchestrator.cancel()}

    @app.get("/runs")
    def recent_runs(limit: int = 20):
        return [r.summary() for r in ledger.recent_runs(limit)]

    @app.get("/runs/status")
    def run_status():
        active = orchestrator.active_run
        last = ledger.last_completed_run()
        return {
            "status": orchestrator.status.value,
            "active_run_id": active.id if active else None,
            "last_completed_run": last.summary() if last else None,
        }

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        run = ledger.get_run(run_id)
        if run is None:
            raise HTTPException(404, "Run not found")
        return run.summary()

    # === EXPIRATIONS ===

    @app.get("/expirations")
    def expirations(
        window_days: Optional[int] = None,
        include_extended: bool = False,
        as_of: Optional[date] = None,
    ):
        items = monitor.find_expiring(window_days, as_of, include_extended)
        return {
            "total": len(items),
            "items": [i.model_dump(mode="json") for i in items],
        }

    return app


# Default application instance
app = create_app()
