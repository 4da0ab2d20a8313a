"""
Batch Orchestrator — the only entry point that mutates the ledger.

States:
  IDLE → RUNNING → (COMPLETED | FAILED | CANCELLED)

A run pages through the upstream source until no continuation token is
returned. Each page is normalized on a bounded worker pool, then classified
and appended record by record in upstream order, so two appends for one
identity never race. After ingestion, one Extension Linker pass covers the
accounts the run touched.

Behavioral Contract:
- One run at a time; a second request is rejected with ConcurrentRunConflict.
- Page fetches are retried with backoff; exhausting retries fails the run.
- A failing record (malformed or ledger write error) is counted and skipped.
- cancel() takes effect at the next record boundary; nothing is rolled back.
- Every run, whatever its outcome, ends with a run-log row carrying its
  partial counts.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, List, Optional, Set, Tuple
from uuid import uuid4

from audit_kernel.diff.classifier import DiffClassifier
from audit_kernel.errors import (
    AuditKernelError,
    ConcurrentRunConflict,
    MalformedRecordError,
    PersistenceError,
    RetryExhaustedError,
)
from audit_kernel.extension.linker import ExtensionLinker
from audit_kernel.ledger.store import SnapshotStore
from audit_kernel.models.config import OrchestratorConfig
from audit_kernel.models.record import Record
from audit_kernel.models.run import RecordPage, RunLog, RunMode, RunStatus
from audit_kernel.models.snapshot import ChangeType
from audit_kernel.normalization.dates import utcnow
from audit_kernel.normalization.normalizer import RecordNormalizer
from audit_kernel.observability.logging import bind_run, clear_run, get_logger
from audit_kernel.orchestrator.retry import RetryConfig, retry_call
from audit_kernel.orchestrator.source import RecordSource

logger = get_logger("audit_kernel.orchestrator.batch")


class RunCancelled(Exception):
    """Internal signal: the active run was cancelled between records."""
    pass


class BatchOrchestrator:
    def __init__(
        self,
        store: SnapshotStore,
        source: RecordSource,
        config: Optional[OrchestratorConfig] = None,
        normalizer: Optional[RecordNormalizer] = None,
        classifier: Optional[DiffClassifier] = None,
        linker: Optional[ExtensionLinker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.source = source
        self.config = config or OrchestratorConfig()
        self.normalizer = normalizer or RecordNormalizer()
        self._clock = clock or utcnow
        self.classifier = classifier or DiffClassifier(store, clock=self._clock)
        self.linker = linker or ExtensionLinker(store, max_workers=self.config.worker_count)
        self._sleep = sleep
        self._retry = RetryConfig.from_orchestrator(self.config)

        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self._active: Optional[RunLog] = None
        self._last_status = RunStatus.IDLE

    @property
    def status(self) -> RunStatus:
        """RUNNING while a run is active, else the outcome of the last run."""
        if self._active is not None:
            return RunStatus.RUNNING
        return self._last_status

    @property
    def active_run(self) -> Optional[RunLog]:
        return self._active

    def run_incremental(self, since: Optional[datetime] = None) -> RunLog:
        """Pull records modified since the cursor. The cursor defaults to the
        start of the last completed run; with no such run, pull everything."""
        if since is None:
            last = self.store.last_completed_run()
            since = last.started_at if last else None
        return self._run(RunMode.INCREMENTAL, since)

    def run_full_backfill(self) -> RunLog:
        return self._run(RunMode.FULL_BACKFILL, None)

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False when idle."""
        if self._active is None:
            return False
        self._cancel.set()
        logger.info("Run cancellation requested", active_run_id=self._active.id)
        return True

    # --- Run ---

    def _run(self, mode: RunMode, since: Optional[datetime]) -> RunLog:
        if not self._run_lock.acquire(blocking=False):
            active = self._active
            raise ConcurrentRunConflict(active.id if active else "unknown")

        run = RunLog(id=str(uuid4()), mode=mode, since=since, started_at=self._clock())
        token = bind_run(run.id)
        self._active = run
        self._cancel.clear()
        touched: Set[str] = set()
        try:
            logger.info(
                "Run started",
                mode=mode.value,
                since=since.isoformat() if since else None,
            )
            try:
                self._ingest(run, since, touched)
                run.status = RunStatus.COMPLETED
            except RunCancelled:
                run.status = RunStatus.CANCELLED
                run.error = "Cancelled"
            except RetryExhaustedError as e:
                run.status = RunStatus.FAILED
                run.error = e.message
            except AuditKernelError as e:
                run.status = RunStatus.FAILED
                run.error = e.message
                logger.error("Run aborted", error_code=e.code, error=e.message)
            except Exception as e:
                run.status = RunStatus.FAILED
                run.error = f"{type(e).__name__}: {e}"
                logger.exception("Run aborted by unexpected error")

            self._link(run, mode, touched)
            run.ended_at = self._clock()
            self.store.log_run(run)

            log = logger.info if run.status == RunStatus.COMPLETED else logger.warning
            log("Run finished", **_run_counts(run))
            return run
        finally:
            self._last_status = run.status
            self._active = None
            clear_run(token)
            self._run_lock.release()

    def _fetch(self, since: Optional[datetime], continuation: Optional[str]) -> RecordPage:
        return retry_call(
            self.source.fetch_page,
            since,
            continuation,
            config=self._retry,
            sleep=self._sleep,
            operation="fetch_page",
        )

    def _ingest(self, run: RunLog, since: Optional[datetime], touched: Set[str]) -> None:
        continuation: Optional[str] = None
        with ThreadPoolExecutor(max_workers=self.config.worker_count) as pool:
            while True:
                if self._cancel.is_set():
                    raise RunCancelled()
                page = self._fetch(since, continuation)
                run.pages_fetched += 1

                normalized = list(pool.map(self._normalize, page.records))
                for raw, (record, error) in zip(page.records, normalized):
                    if self._cancel.is_set():
                        raise RunCancelled()
                    self._process(run, raw, record, error, touched)

                continuation = page.continuation
                if continuation is None:
                    return

    def _normalize(self, raw: Any) -> Tuple[Optional[Record], Optional[MalformedRecordError]]:
        try:
            return self.normalizer.normalize(raw), None
        except MalformedRecordError as e:
            return None, e

    def _process(
        self,
        run: RunLog,
        raw: Any,
        record: Optional[Record],
        error: Optional[MalformedRecordError],
        touched: Set[str],
    ) -> None:
        run.records_processed += 1
        if record is None:
            run.failed_records += 1
            logger.warning(
                "Record skipped",
                error_code=error.code if error else None,
                error=error.message if error else None,
                details=error.details if error else None,
            )
            return

        try:
            observation = self.classifier.observe(record)
        except PersistenceError as e:
            run.failed_records += 1
            logger.error("Record failed", identity=record.identity, error=e.message)
            return

        change_type = observation.descriptor.change_type
        if change_type == ChangeType.UNCHANGED:
            run.unchanged += 1
            return

        run.new_snapshots += 1
        if change_type == ChangeType.STATUS_CHANGE:
            run.status_changes += 1
        elif change_type == ChangeType.OTHER_CHANGE:
            run.other_changes += 1

        for account in (record.account, observation.previous_account):
            if account is not None:
                touched.add(account)

    def _link(self, run: RunLog, mode: RunMode, touched: Set[str]) -> None:
        """Link touched accounts, or every account after a completed backfill."""
        if mode == RunMode.FULL_BACKFILL and run.status == RunStatus.COMPLETED:
            accounts: Optional[List[str]] = None
        elif touched:
            accounts = sorted(touched)
        else:
            return
        try:
            run.accounts_linked = self.linker.link_accounts(accounts)
        except PersistenceError as e:
            logger.error("Extension linking failed", error=e.message)
            if run.status == RunStatus.COMPLETED:
                run.status = RunStatus.FAILED
            run.error = run.error or e.message


def _run_counts(run: RunLog) -> dict:
    return {
        "status": run.status.value,
        "pages_fetched": run.pages_fetched,
        "records_processed": run.records_processed,
        "new_snapshots": run.new_snapshots,
        "changes_detected": run.changes_detected,
        "unchanged": run.unchanged,
        "failed_records": run.failed_records,
        "accounts_linked": run.accounts_linked,
        "error": run.error,
    }
