"""Check worker.

Periodically re-checks every tracked product that is due: fetch, extract,
ingest, then diff.  Products are processed by a bounded thread pool and a
failure on one product never affects the others in the batch.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from . import config, db
from .errors import PipelineError
from .extractor import extract
from .fetcher import fetch
from .ingestion import ingest_in, store_errors, with_store_retries
from .models import (CheckRun, CheckStatus, DueCheck, ExtractedProduct,
                     FetchResult, IngestResult, Notification)
from .notifications import record_changes
from .utils import utc_now

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], FetchResult]
Extractor = Callable[[str, str], ExtractedProduct]


@dataclass
class CheckOutcome:
    page: FetchResult
    extracted: ExtractedProduct
    result: IngestResult
    notifications: List[Notification] = field(default_factory=list)


@dataclass
class RunSummary:
    started_at: str
    finished_at: str = ""
    checked: int = 0
    succeeded: int = 0
    failed: int = 0
    notifications: int = 0
    runs: List[CheckRun] = field(default_factory=list)


def persist(extracted: ExtractedProduct, *, db_path: Optional[str] = None):
    """Ingest and diff in one transaction; returns (IngestResult, notifications)."""
    def attempt():
        with store_errors():
            with db.connect(db_path, write=True) as conn:
                result = ingest_in(conn, extracted)
                created = record_changes(conn, result)
        return result, created

    return with_store_retries(attempt)


def check_url(
    url: str,
    *,
    fetcher: Fetcher = fetch,
    extractor: Extractor = extract,
    db_path: Optional[str] = None,
) -> CheckOutcome:
    """Run the full pipeline once for one product URL.

    Raises FetchError, ExtractionError or IngestionError.
    """
    logger.debug("Fetching %s", url)
    page = fetcher(url)
    logger.debug("Extracting %s (%d chars via %s)", url, len(page.html), page.strategy_used)
    extracted = extractor(page.html, url)
    logger.debug("Ingesting %s (%d variants)", url, len(extracted.variants))
    result, created = persist(extracted, db_path=db_path)
    return CheckOutcome(page=page, extracted=extracted, result=result, notifications=created)


class CheckWorker:
    """Scheduled driver for product re-checks.

    ``start()`` runs a check immediately and then every ``interval_minutes``;
    ``trigger()`` wakes the loop for an immediate run; ``stop()`` ends it.
    """

    def __init__(
        self,
        *,
        fetcher: Optional[Fetcher] = None,
        extractor: Optional[Extractor] = None,
        db_path: Optional[str] = None,
        interval_minutes: Optional[float] = None,
        max_workers: Optional[int] = None,
        max_products: Optional[int] = None,
    ) -> None:
        self.fetcher = fetcher or fetch
        self.extractor = extractor or extract
        self.db_path = db_path
        self.interval_minutes = interval_minutes if interval_minutes is not None else config.CHECK_INTERVAL_MINUTES
        self.max_workers = max_workers or config.MAX_CONCURRENT_FETCHES
        self.max_products = max_products if max_products is not None else config.MAX_PRODUCTS_PER_RUN
        self.last_summary: Optional[RunSummary] = None

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # ---- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="check-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Check worker stopped")

    def trigger(self) -> None:
        """Run due checks now instead of waiting for the next interval."""
        logger.info("Immediate check run requested")
        self._wake.set()

    def _loop(self) -> None:
        logger.info(
            "Starting check worker (interval=%s min, workers=%d, max products=%d)",
            self.interval_minutes, self.max_workers, self.max_products,
        )
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error in check run")
            self._wake.wait(self.interval_minutes * 60)
            self._wake.clear()

    # ---- one run ------------------------------------------------------------

    def run_once(self) -> Optional[RunSummary]:
        """Check every due product once.  Returns None if a run is already active."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Check run already in progress; skipping")
            return None
        try:
            summary = RunSummary(started_at=utc_now())
            with db.connect(self.db_path) as conn:
                due = db.list_due_for_check(conn, self.interval_minutes, self.max_products)
            if not due:
                logger.info("No tracked products due for a check")
            else:
                logger.info("Checking %d products (%d workers)", len(due), self.max_workers)

            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="check") as pool:
                futures = [pool.submit(self.check_item, item) for item in due]
                for future in as_completed(futures):
                    run = future.result()
                    if run is None:
                        continue
                    summary.runs.append(run)
                    summary.checked += 1
                    summary.notifications += run.notifications_created
                    if run.status is CheckStatus.SUCCESS:
                        summary.succeeded += 1
                    else:
                        summary.failed += 1

            summary.finished_at = utc_now()
            self.last_summary = summary
            self.prune_history()
            if due:
                logger.info(
                    "Check run finished: %d ok, %d failed, %d notifications",
                    summary.succeeded, summary.failed, summary.notifications,
                )
            return summary
        finally:
            self._run_lock.release()

    def prune_history(self) -> int:
        """Trim check-run history to the newest CHECK_RUN_RETENTION rows per product."""
        try:
            with db.connect(self.db_path, write=True) as conn:
                removed = db.prune_check_runs(conn, config.CHECK_RUN_RETENTION)
        except sqlite3.Error:
            logger.exception("Could not prune check runs")
            return 0
        if removed:
            logger.debug("Pruned %d old check runs", removed)
        return removed

    def check_item(self, item: DueCheck) -> Optional[CheckRun]:
        """Check one product and record the outcome.  Never raises."""
        if self._stop.is_set():
            return None
        started = utc_now()
        t0 = time.monotonic()
        run = CheckRun(
            product_id=item.product_id,
            url=item.url,
            started_at=started,
            finished_at=started,
            status=CheckStatus.FAILED,
        )
        try:
            outcome = check_url(item.url, fetcher=self.fetcher, extractor=self.extractor, db_path=self.db_path)
        except PipelineError as e:
            run.error_kind = e.kind.value
            run.error_message = e.message
            logger.warning("Check failed for product %s (%s): %s", item.product_id, item.url, e)
        except Exception as e:
            run.error_kind = type(e).__name__
            run.error_message = str(e)
            logger.exception("Unexpected error checking product %s (%s)", item.product_id, item.url)
        else:
            run.status = CheckStatus.SUCCESS
            run.strategy_used = f"{outcome.page.strategy_used}/{outcome.extracted.strategy}"
            run.variants_found = len(outcome.result.variants)
            run.notifications_created = len(outcome.notifications)
            for note in outcome.result.notes:
                logger.info("Product %s: %s", item.product_id, note)

        run.finished_at = utc_now()
        run.duration_ms = int((time.monotonic() - t0) * 1000)
        try:
            with db.connect(self.db_path, write=True) as conn:
                db.record_check_run(conn, run)
                db.mark_checked(conn, item.tracked_item_ids, run.finished_at)
        except sqlite3.Error:
            logger.exception("Could not record check run for %s", item.url)
        return run


__all__ = ["CheckWorker", "CheckOutcome", "RunSummary", "check_url", "persist"]
