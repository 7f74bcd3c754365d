"""Flask endpoint: one scrape per GET /metrics.

Run with gunicorn:  gunicorn -c gunicorn_config.py "teradata_xport.app:create_app()"
"""
import datetime
import gzip
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from threading import Lock

from flask import Flask, Response, redirect, request

from .collectors import build_catalogue
from .config import load_settings
from .connector import TeradataConnector
from .custom_collectors import load_custom_collectors
from .logging_setup import configure_logging
from .metric_space import MetricSpace
from .orchestrator import ScrapeOrchestrator
from .rendering import CONTENT_TYPE, render

logger = logging.getLogger(__name__)

SCRAPE_TIMEOUT_HEADER = 'X-Prometheus-Scrape-Timeout-Seconds'


def make_text_response(body_bytes, status=200):
    """Create a response with the exposition content type and a
    gzip-compressed body when the client supports it via Accept-Encoding.
    """
    accept_enc = request.headers.get('Accept-Encoding', '') or ''
    logger.debug(f"Client Accept-Encoding header: '{accept_enc}'")
    if 'gzip' in accept_enc.lower():
        compressed = gzip.compress(body_bytes)
        logger.debug(f"Compressed response: {len(body_bytes)} -> {len(compressed)} bytes")
        resp = Response(compressed, status=status)
        resp.headers['Content-Encoding'] = 'gzip'
        resp.headers['Content-Type'] = CONTENT_TYPE
        resp.headers['Content-Length'] = str(len(compressed))
        return resp

    resp = Response(body_bytes, status=status)
    resp.headers['Content-Type'] = CONTENT_TYPE
    resp.headers['Content-Length'] = str(len(body_bytes))
    return resp


def effective_timeout(settings, header_value):
    """Deadline for one scrape: Prometheus' own timeout minus the offset, else scrape_timeout."""
    if header_value:
        try:
            prometheus_timeout = float(header_value)
        except ValueError:
            logger.warning(f"Ignoring invalid {SCRAPE_TIMEOUT_HEADER} header: {header_value!r}")
        else:
            return max(prometheus_timeout - settings.scrape_timeout_offset, 0.1)
    return settings.scrape_timeout


class ScrapeRunner:
    """Starts background scrapes with at most one in flight per target.

    A target still busy with an earlier scrape (one that outlived its
    request deadline) is left out of the next one and keeps its current
    values, so a hanging server ties up one thread instead of a queue.
    """

    def __init__(self, orchestrator, targets):
        self.orchestrator = orchestrator
        self.targets = list(targets)
        self._busy = set()
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.targets)), thread_name_prefix='scrape-request'
        )

    @property
    def busy(self):
        with self._lock:
            return set(self._busy)

    def submit(self):
        with self._lock:
            free = [t for t in self.targets if t.host not in self._busy]
            skipped = [t.host for t in self.targets if t.host in self._busy]
            self._busy.update(t.host for t in free)
        if skipped:
            logger.warning(f"Previous scrape still running for {skipped}; serving their current values")
        return [self._executor.submit(self._scrape, target) for target in free]

    def _scrape(self, target):
        try:
            return self.orchestrator.run([target])
        finally:
            with self._lock:
                self._busy.discard(target.host)


def create_app(settings=None, connector=None, space=None, catalogue=None):
    """Build the exporter app. Configuration errors and instrument
    definition conflicts are raised here, before anything is served."""
    if settings is None:
        settings = load_settings()
        configure_logging(settings.log_level, settings.timezone)
    space = space if space is not None else MetricSpace()
    if catalogue is None:
        catalogue = build_catalogue(space)
        custom = load_custom_collectors(
            space, settings.collector_files, settings.collectors, settings.base_dir,
            reserved=catalogue.instrument_names,
        )
        if custom:
            catalogue = catalogue.with_collectors(custom)
    connector = connector or TeradataConnector(max_connections=settings.max_connections)
    orchestrator = ScrapeOrchestrator(connector, catalogue)
    logger.info(f"Loaded {len(catalogue)} collector(s): {catalogue.names}")

    # Scrapes outlive a request that hit its deadline, so they need their own threads.
    runner = ScrapeRunner(orchestrator, settings.targets)

    app = Flask(__name__)
    app.extensions['teradata_xport'] = {
        'settings': settings,
        'space': space,
        'catalogue': catalogue,
        'orchestrator': orchestrator,
        'runner': runner,
    }

    @app.route('/')
    def index():
        return redirect('/metrics')

    @app.route('/metrics')
    def metrics():
        start = time.time()
        timeout = effective_timeout(settings, request.headers.get(SCRAPE_TIMEOUT_HEADER))
        done, pending = wait(runner.submit(), timeout=timeout)
        if pending:
            logger.error(
                f"Scrape of {len(pending)} target(s) exceeded timeout of {timeout} seconds; serving current values"
            )
        for future in done:
            if future.exception() is not None:
                logger.error(f"Error during scrape: {future.exception()!r}", exc_info=future.exception())

        body = render(space)
        if settings.log_scraped_metrics:
            log_time = datetime.datetime.now().isoformat()
            logger.info(f"--- Metrics scrape at {log_time} ---\n" + body.decode('utf-8') + "--- End scrape ---")
        logger.info(f"Request served in {time.time() - start:.3f} seconds")
        return make_text_response(body)

    return app
