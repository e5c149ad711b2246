"""HTTP API.

Small JSON API over the product store:

* ``POST /products``: ``{"url": ...}``; fetches, extracts and ingests the
  page once and returns ``{product, variants, notes}``.  With
  ``"track": true`` the product is also added to the tracked items.
* ``GET /products/<id>``: product with its variants.
* ``GET /variants/<id>``: variant with price and stock history.
* ``POST /checks/run``: ask the check worker to run due checks now.
* ``GET /checks/stats``: check run success rate (``?since=<iso>``).
* ``GET /health``
"""

from __future__ import annotations

import json
import logging
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from . import config, db
from .errors import (ExtractionError, FetchError, FetchErrorKind, IngestionError,
                     IngestionErrorKind)
from .extractor import extract
from .fetcher import fetch
from .utils import is_http_url
from .worker import CheckWorker, check_url

logger = logging.getLogger(__name__)

_PRODUCT_RE = re.compile(r"^/products/(\d+)/?$")
_VARIANT_RE = re.compile(r"^/variants/(\d+)/?$")
_MAX_BODY_BYTES = 64 * 1024


class ApiHandler(BaseHTTPRequestHandler):
    """JSON request handler; collaborators hang off ``self.server``."""

    server: "ApiServer"

    def log_message(self, format, *args):
        """Override to use Python logging instead of stderr."""
        logger.info("%s - %s", self.address_string(), format % args)

    # ---- routing ------------------------------------------------------------

    def do_GET(self):
        path = urlparse(self.path).path
        try:
            if path in ("/health", "/health/"):
                self._send_json(200, {"status": "ok"})
                return
            if path in ("/checks/stats", "/checks/stats/"):
                self._send_stats()
                return
            m = _PRODUCT_RE.match(path)
            if m:
                self._send_product(int(m.group(1)))
                return
            m = _VARIANT_RE.match(path)
            if m:
                self._send_variant(int(m.group(1)))
                return
            self._send_error(404, "not found")
        except Exception:
            logger.exception("Error handling GET %s", self.path)
            self._send_error(500, "internal error")

    def do_POST(self):
        path = urlparse(self.path).path
        try:
            if path in ("/products", "/products/"):
                self._create_product()
                return
            if path in ("/checks/run", "/checks/run/"):
                self._run_checks()
                return
            self._send_error(404, "not found")
        except Exception:
            logger.exception("Error handling POST %s", self.path)
            self._send_error(500, "internal error")

    # ---- handlers -----------------------------------------------------------

    def _create_product(self):
        body = self._read_json()
        if body is None:
            return
        url = body.get("url")
        if not is_http_url(url):
            self._send_error(400, "url must be an absolute http(s) URL")
            return

        try:
            outcome = check_url(
                url.strip(),
                fetcher=self.server.fetcher,
                extractor=self.server.extractor,
                db_path=self.server.db_path,
            )
        except (FetchError, ExtractionError) as e:
            status = 404 if e.kind is FetchErrorKind.NOT_FOUND else 422
            logger.info("POST /products could not extract %s: %s", url, e)
            self._send_json(status, {
                "error": "could not extract product from this URL",
                "kind": e.kind.value,
                "detail": e.message,
            })
            return
        except IngestionError as e:
            status = 409 if e.kind is IngestionErrorKind.CONSTRAINT_VIOLATION else 503
            logger.warning("POST /products could not store %s: %s", url, e)
            self._send_json(status, {"error": "could not store product", "kind": e.kind.value})
            return

        payload = outcome.result.to_dict()
        if body.get("track"):
            variant_id = body.get("variant_id")
            if variant_id is not None and variant_id not in {v.id for v in outcome.result.variants}:
                self._send_error(400, "variant_id does not belong to this product")
                return
            with db.connect(self.server.db_path, write=True) as conn:
                item_id = db.add_tracked_item(
                    conn, outcome.result.product.id, user_id=body.get("user_id"),
                    variant_id=variant_id,
                    notifications_enabled=bool(body.get("notify", True)),
                )
                db.mark_checked(conn, [item_id])
            payload["tracked_item_id"] = item_id
        self._send_json(201, payload)

    def _run_checks(self):
        worker = self.server.worker
        if worker is None or not worker.running:
            self._send_error(503, "check worker is not running")
            return
        worker.trigger()
        self._send_json(202, {"status": "queued"})

    def _send_product(self, product_id: int):
        with db.connect(self.server.db_path) as conn:
            product = db.get_product(conn, product_id)
            variants = db.list_variants(conn, product_id) if product else []
        if product is None:
            self._send_error(404, f"product {product_id} not found")
            return
        self._send_json(200, {
            "product": product.to_dict(),
            "variants": [v.to_dict() for v in variants],
        })

    def _send_variant(self, variant_id: int):
        with db.connect(self.server.db_path) as conn:
            variant = db.get_variant(conn, variant_id)
            if variant is None:
                self._send_error(404, f"variant {variant_id} not found")
                return
            payload = variant.to_dict()
            payload["price_history"] = db.price_history(conn, variant_id)
            payload["stock_history"] = db.stock_history(conn, variant_id)
        self._send_json(200, payload)

    def _send_stats(self):
        qs = parse_qs(urlparse(self.path).query)
        since = (qs.get("since") or [None])[0]
        with db.connect(self.server.db_path) as conn:
            stats = db.check_run_stats(conn, since)
        self._send_json(200, stats)

    # ---- plumbing -----------------------------------------------------------

    def _read_json(self) -> Optional[dict]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length <= 0 or length > _MAX_BODY_BYTES:
            self._send_error(400, "request body must be a JSON object")
            return None
        try:
            body = json.loads(self.rfile.read(length).decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            self._send_error(400, "request body is not valid JSON")
            return None
        if not isinstance(body, dict):
            self._send_error(400, "request body must be a JSON object")
            return None
        return body

    def _send_json(self, status: int, payload: Any):
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_error(self, status: int, message: str):
        self._send_json(status, {"error": message})


class ApiServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, *, worker: Optional[CheckWorker] = None,
                 db_path: Optional[str] = None, fetcher=None, extractor=None):
        super().__init__(address, ApiHandler)
        self.worker = worker
        self.db_path = db_path
        self.fetcher = fetcher or (worker.fetcher if worker else fetch)
        self.extractor = extractor or (worker.extractor if worker else extract)


class MonitorApi:
    """Runs the API server on a background thread."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, **server_kwargs):
        self.host = host or config.API_HOST
        self.port = config.API_PORT if port is None else port
        self.server_kwargs = server_kwargs
        self.server: Optional[ApiServer] = None
        self.server_thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.server is not None

    def start(self) -> str:
        """Start the server and return the base URL."""
        if self.server is None:
            self.server = ApiServer((self.host, self.port), **self.server_kwargs)
            # port 0 picks a free port
            self.port = self.server.server_address[1]
            self.server_thread = threading.Thread(target=self.server.serve_forever, name="api", daemon=True)
            self.server_thread.start()
            logger.info("API server listening on http://%s:%d", self.host, self.port)
        return f"http://{self.host}:{self.port}"

    def stop(self) -> None:
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("API server stopped")


__all__ = ["ApiHandler", "ApiServer", "MonitorApi"]
