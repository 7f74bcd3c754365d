"""One scrape cycle: every target, every collector, failures isolated.

Targets are scraped concurrently. On each reachable target the
availability collector runs first, then every other collector runs
concurrently against the same connection, which is closed once all of
them have settled. Nothing raised by a connector, a query or a mapping
function escapes run(); it is logged and the affected instruments keep
their previous values.
"""
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

from .errors import ConnectError, MappingError, QueryError
from .fanout import join_all
from .metric_space import WriteBatch

logger = logging.getLogger(__name__)

OK = "ok"
EMPTY = "empty"
QUERY_ERROR = "query_error"
MAPPING_ERROR = "mapping_error"


@dataclass
class CollectorOutcome:
    name: str
    status: str
    error: Optional[BaseException] = None
    samples: int = 0

    @property
    def ok(self):
        return self.status == OK


@dataclass
class TargetReport:
    host: str
    up: bool
    outcomes: List[CollectorOutcome] = field(default_factory=list)
    error: Optional[BaseException] = None
    duration: float = 0.0

    def failed(self):
        return [o for o in self.outcomes if not o.ok]


@dataclass
class ScrapeReport:
    targets: List[TargetReport] = field(default_factory=list)
    duration: float = 0.0

    def target(self, host):
        return next(t for t in self.targets if t.host == host)

    @property
    def up(self):
        return [t.host for t in self.targets if t.up]

    @property
    def down(self):
        return [t.host for t in self.targets if not t.up]


class ScrapeOrchestrator:
    def __init__(self, connector, catalogue, max_target_workers=None, max_collector_workers=None):
        self.connector = connector
        self.catalogue = catalogue
        self.max_target_workers = max_target_workers
        self.max_collector_workers = max_collector_workers

    def run(self, targets):
        start = time.time()
        outcomes = join_all(
            self._scrape_target, targets, self.max_target_workers, thread_name_prefix="scrape"
        )
        report = ScrapeReport()
        for outcome in outcomes:
            if outcome.error is None:
                report.targets.append(outcome.value)
                continue
            # _scrape_target handles its own failures; this is a bug guard.
            logger.error(f"[{outcome.item.host}] scrape aborted: {outcome.error!r}", exc_info=outcome.error)
            self._mark_down(outcome.item)
            report.targets.append(TargetReport(outcome.item.host, up=False, error=outcome.error))
        report.duration = time.time() - start
        logger.info(
            f"Scrape of {len(report.targets)} target(s) completed in {report.duration:.3f} seconds "
            f"(up: {report.up}, down: {report.down})"
        )
        return report

    def _mark_down(self, target):
        try:
            self.catalogue.mark_down(target)
        except Exception as e:
            logger.error(f"[{target.host}] failed to record target down: {e}")

    def _scrape_target(self, target):
        start = time.time()
        try:
            connection = self.connector.open(target)
        except ConnectError as e:
            logger.error(f"[{target.host}] connection failed: {e}")
            self._mark_down(target)
            return TargetReport(target.host, up=False, error=e, duration=time.time() - start)
        except Exception as e:
            logger.error(f"[{target.host}] connection failed: {e!r}", exc_info=True)
            self._mark_down(target)
            return TargetReport(target.host, up=False, error=e, duration=time.time() - start)

        report = TargetReport(target.host, up=False)
        try:
            probe = self._run_collector(connection, target, self.catalogue.availability)
            report.outcomes.append(probe)
            if not probe.ok:
                logger.error(f"[{target.host}] availability check failed ({probe.status}); target is down")
                self._mark_down(target)
                report.error = probe.error
                return report
            report.up = True
            results = join_all(
                partial(self._run_collector, connection, target),
                self.catalogue.collectors,
                self.max_collector_workers,
                thread_name_prefix=f"collect-{target.host}",
            )
            for result in results:
                if result.error is None:
                    report.outcomes.append(result.value)
                else:
                    report.outcomes.append(CollectorOutcome(result.item.name, MAPPING_ERROR, result.error))
            return report
        finally:
            try:
                connection.close()
            except Exception as e:
                logger.warning(f"[{target.host}] error while closing connection: {e}")
            report.duration = time.time() - start
            failed = report.failed()
            if failed:
                logger.warning(
                    f"[{target.host}] {len(failed)} of {len(report.outcomes)} collector(s) did not update: "
                    f"{[o.name for o in failed]}"
                )

    def _run_collector(self, connection, target, definition):
        host = target.host
        logger.debug(f"[{host}] executing collector {definition.name}")
        try:
            rows = connection.query(definition.query)
        except QueryError as e:
            logger.error(f"[{host}] error executing collector {definition.name} query: {e}")
            return CollectorOutcome(definition.name, QUERY_ERROR, e)
        except Exception as e:
            logger.error(f"[{host}] error executing collector {definition.name} query: {e!r}", exc_info=True)
            return CollectorOutcome(definition.name, QUERY_ERROR, e)

        if len(rows) == 0:
            logger.warning(f"[{host}] collector {definition.name} returned no rows")
            return CollectorOutcome(definition.name, EMPTY)

        batch = WriteBatch()
        try:
            definition.map_fn(rows, batch.bind_all(definition.instruments), target)
        except MappingError as e:
            logger.error(f"[{host}] error processing collector {definition.name} data: {e}")
            logger.debug(f"[{host}] {definition.name} rows: {[tuple(r) for r in rows]}")
            return CollectorOutcome(definition.name, MAPPING_ERROR, e)
        except Exception as e:
            logger.error(f"[{host}] error processing collector {definition.name} data: {e!r}", exc_info=True)
            logger.debug(f"[{host}] {definition.name} rows: {[tuple(r) for r in rows]}")
            return CollectorOutcome(definition.name, MAPPING_ERROR, e)
        count = batch.commit()
        return CollectorOutcome(definition.name, OK, samples=count)
