import threading
import time

import pytest

from restock_monitor import config, db
from restock_monitor.errors import FetchError, FetchErrorKind
from restock_monitor.models import (CheckRun, CheckStatus, ExtractedProduct, ExtractedVariant,
                                    FetchResult, StockStatus)
from restock_monitor.worker import CheckWorker, check_url


def _page(url):
    return FetchResult(html="<html></html>", final_url=url, strategy_used="http", status_code=200)


def _extract(html, url):
    return ExtractedProduct(
        url=url,
        name="Item",
        variants=[ExtractedVariant(attributes={}, price=10.0, stock_status=StockStatus.IN_STOCK)],
        strategy="structured-data",
    )


def _seed(db_path, count, trackers_per_product=1):
    urls = []
    with db.connect(db_path, write=True) as conn:
        for i in range(1, count + 1):
            url = f"https://shop.example.com/products/item-{i}"
            product = db.upsert_product(conn, url, f"Item {i}")
            for _ in range(trackers_per_product):
                db.add_tracked_item(conn, product.id)
            urls.append(url)
    return urls


def test_one_failure_does_not_affect_the_batch(db_path):
    urls = _seed(db_path, 5)
    failing = urls[2]

    def fetcher(url):
        if url == failing:
            raise FetchError(FetchErrorKind.TIMEOUT, "HTTP timeout after 15.0s")
        return _page(url)

    worker = CheckWorker(fetcher=fetcher, extractor=_extract, db_path=db_path, max_workers=3)
    summary = worker.run_once()

    assert (summary.checked, summary.succeeded, summary.failed) == (5, 4, 1)
    with db.connect(db_path) as conn:
        runs = {r["url"]: r for r in db.list_check_runs(conn)}
    assert len(runs) == 5
    for url in urls:
        expected = CheckStatus.FAILED.value if url == failing else CheckStatus.SUCCESS.value
        assert runs[url]["status"] == expected
    assert runs[failing]["error_kind"] == "Timeout"
    assert runs[urls[0]]["strategy_used"] == "http/structured-data"
    assert runs[urls[0]]["variants_found"] == 1


def test_unexpected_exceptions_are_recorded_as_failures(db_path):
    _seed(db_path, 1)

    def extractor(html, url):
        raise RuntimeError("parser exploded")

    worker = CheckWorker(fetcher=_page, extractor=extractor, db_path=db_path)
    summary = worker.run_once()

    assert summary.failed == 1
    assert summary.runs[0].error_kind == "RuntimeError"


def test_products_tracked_twice_are_fetched_once(db_path):
    _seed(db_path, 2, trackers_per_product=2)
    calls = []
    lock = threading.Lock()

    def fetcher(url):
        with lock:
            calls.append(url)
        return _page(url)

    worker = CheckWorker(fetcher=fetcher, extractor=_extract, db_path=db_path)
    summary = worker.run_once()

    assert summary.checked == 2
    assert sorted(calls) == sorted(set(calls))
    with db.connect(db_path) as conn:
        items = [db.get_tracked_item(conn, i) for i in range(1, 5)]
    assert all(item.last_checked_at for item in items)


def test_checked_products_are_not_due_until_interval_passes(db_path):
    _seed(db_path, 2)
    worker = CheckWorker(fetcher=_page, extractor=_extract, db_path=db_path, interval_minutes=30)

    assert worker.run_once().checked == 2
    assert worker.run_once().checked == 0


def test_failed_checks_are_rescheduled_like_successes(db_path):
    _seed(db_path, 1)

    def fetcher(url):
        raise FetchError(FetchErrorKind.BOT_BLOCKED, "challenge page")

    worker = CheckWorker(fetcher=fetcher, extractor=_extract, db_path=db_path)
    assert worker.run_once().failed == 1
    assert worker.run_once().checked == 0


def test_max_products_per_run(db_path):
    _seed(db_path, 4)
    worker = CheckWorker(fetcher=_page, extractor=_extract, db_path=db_path, max_products=3)
    assert worker.run_once().checked == 3
    assert worker.run_once().checked == 1


def test_price_change_on_recheck_creates_notification(db_path):
    urls = _seed(db_path, 1)
    prices = iter([29.99, 24.99])

    def extractor(html, url):
        product = _extract(html, url)
        product.variants[0].price = next(prices)
        return product

    worker = CheckWorker(fetcher=_page, extractor=extractor, db_path=db_path, interval_minutes=0)
    first = worker.run_once()
    second = worker.run_once()

    assert first.notifications == 0
    assert second.notifications == 1
    with db.connect(db_path) as conn:
        product = db.get_product_by_url(conn, urls[0])
        stats = db.check_run_stats(conn)
    assert product.name == "Item"
    assert stats["total"] == 2
    assert stats["success_rate"] == 1.0


def test_check_url_propagates_pipeline_errors(db_path):
    def fetcher(url):
        raise FetchError(FetchErrorKind.NOT_FOUND, "HTTP 404")

    with pytest.raises(FetchError) as exc:
        check_url("https://shop.example.com/products/gone", fetcher=fetcher, extractor=_extract)
    assert exc.value.kind is FetchErrorKind.NOT_FOUND


def test_start_and_stop(db_path):
    _seed(db_path, 1)
    done = threading.Event()

    def fetcher(url):
        done.set()
        return _page(url)

    worker = CheckWorker(fetcher=fetcher, extractor=_extract, db_path=db_path)
    worker.start()
    try:
        assert done.wait(10)
        assert worker.running
    finally:
        worker.stop(timeout=10)
    assert not worker.running


def test_pool_never_exceeds_max_workers(db_path):
    _seed(db_path, 6)
    lock = threading.Lock()
    active = 0
    peak = 0

    def fetcher(url):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return _page(url)

    worker = CheckWorker(fetcher=fetcher, extractor=_extract, db_path=db_path, max_workers=2)
    summary = worker.run_once()

    assert summary.checked == 6
    assert 1 <= peak <= 2


def test_check_run_history_is_pruned_per_product(db_path, monkeypatch):
    monkeypatch.setattr(config, "CHECK_RUN_RETENTION", 2)
    urls = _seed(db_path, 2)
    worker = CheckWorker(fetcher=_page, extractor=_extract, db_path=db_path, interval_minutes=0)

    for _ in range(4):
        assert worker.run_once().checked == 2

    with db.connect(db_path) as conn:
        runs = db.list_check_runs(conn)
    assert len(runs) == 4
    for url in urls:
        ids = [r["id"] for r in runs if r["url"] == url]
        assert len(ids) == 2
        assert min(ids) > 4


def test_prune_check_runs_keeps_newest_rows(db_path):
    _seed(db_path, 1)
    with db.connect(db_path, write=True) as conn:
        for i in range(5):
            db.record_check_run(conn, CheckRun(
                product_id=1,
                url="https://shop.example.com/products/item-1",
                started_at=f"2024-01-01T00:0{i}:00Z",
                finished_at=f"2024-01-01T00:0{i}:01Z",
                status=CheckStatus.SUCCESS,
            ))
        removed = db.prune_check_runs(conn, keep=3)

    assert removed == 2
    with db.connect(db_path) as conn:
        assert [r["id"] for r in db.list_check_runs(conn)] == [3, 4, 5]
