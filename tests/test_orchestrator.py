"""Tests for the scrape orchestrator: fan-out, ordering and failure isolation."""
import threading

import pytest

from teradata_xport.connector import Target
from teradata_xport.definitions import CollectorDefinition
from teradata_xport.errors import MappingError, QueryError
from teradata_xport.orchestrator import EMPTY, MAPPING_ERROR, OK, QUERY_ERROR, ScrapeOrchestrator
from teradata_xport.rendering import render

from tests.conftest import FakeConnector, make_catalogue, value


def hosts_in_snapshot(space, host):
    return {s.name for s in space.snapshot() if ("host", host) in s.labels}


def test_single_target_single_collector(space, catalogue, healthy_results):
    connector = FakeConnector({"a": {"SELECT 1": [(1,)], "SELECT x": [(1,)]}})
    ScrapeOrchestrator(connector, catalogue).run([Target("a")])
    assert value(space, "x", host="a") == 1
    assert value(space, "up", host="a") == 1


def test_reachable_and_unreachable_targets(space, catalogue, targets, healthy_results):
    connector = FakeConnector({"a": healthy_results})
    report = ScrapeOrchestrator(connector, catalogue).run(targets)

    assert value(space, "up", host="a") == 1
    assert value(space, "up", host="b") == 0
    assert hosts_in_snapshot(space, "b") == {"up"}
    assert report.up == ["a"]
    assert report.down == ["b"]


def test_every_target_gets_exactly_one_up_value(space, catalogue, healthy_results):
    targets = [Target(h) for h in "abcde"]
    connector = FakeConnector({"a": healthy_results, "c": healthy_results, "e": {"SELECT 1": QueryError("e", "x")}})
    ScrapeOrchestrator(connector, catalogue).run(targets)

    up_samples = [s for s in space.snapshot() if s.name == "up"]
    assert sorted(dict(s.labels)["host"] for s in up_samples) == list("abcde")
    assert {s.value for s in up_samples} <= {0, 1}
    assert value(space, "up", host="e") == 0


def test_unreachable_target_leaves_other_instruments_untouched(space, catalogue, healthy_results):
    target = Target("a")
    ScrapeOrchestrator(FakeConnector({"a": healthy_results}), catalogue).run([target])
    before = {s for s in space.snapshot() if s.name != "up"}

    ScrapeOrchestrator(FakeConnector({}), catalogue).run([target])

    assert value(space, "up", host="a") == 0
    assert {s for s in space.snapshot() if s.name != "up"} == before


def test_failed_query_does_not_stop_siblings(space, catalogue, healthy_results):
    results = dict(healthy_results, **{"SELECT x": QueryError("a", "permission denied")})
    report = ScrapeOrchestrator(FakeConnector({"a": results}), catalogue).run([Target("a")])

    assert value(space, "x", host="a") is None
    assert value(space, "y", host="a") == 20
    statuses = {o.name: o.status for o in report.target("a").outcomes}
    assert statuses == {"up": OK, "x": QUERY_ERROR, "y": OK}


def test_empty_result_is_not_fatal_and_keeps_old_value(space, catalogue, healthy_results):
    target = Target("a")
    ScrapeOrchestrator(FakeConnector({"a": healthy_results}), catalogue).run([target])
    results = dict(healthy_results, **{"SELECT x": [], "SELECT y": [(21,)]})
    report = ScrapeOrchestrator(FakeConnector({"a": results}), catalogue).run([target])

    assert value(space, "x", host="a") == 10
    assert value(space, "y", host="a") == 21
    assert {o.name: o.status for o in report.target("a").outcomes}["x"] == EMPTY


def test_mapping_failure_keeps_previous_value_and_sibling_updates(space, catalogue, healthy_results):
    target = Target("a")
    ScrapeOrchestrator(FakeConnector({"a": healthy_results}), catalogue).run([target])
    results = dict(healthy_results, **{"SELECT x": [("not a number",)], "SELECT y": [(30,)]})
    report = ScrapeOrchestrator(FakeConnector({"a": results}), catalogue).run([target])

    assert value(space, "x", host="a") == 10
    assert value(space, "y", host="a") == 30
    outcome = next(o for o in report.target("a").outcomes if o.name == "x")
    assert outcome.status == MAPPING_ERROR
    assert isinstance(outcome.error, MappingError)


def test_partial_mapping_is_discarded(space, healthy_results):
    pair = space.get_or_create("pair", "pair", ["host", "side"])

    def collect_pair(rows, metrics, target):
        metrics["pair"].set({"host": target.host, "side": "left"}, rows[0].number(0))
        metrics["pair"].set({"host": target.host, "side": "right"}, rows[0].number(1))

    catalogue = make_catalogue(space, [CollectorDefinition("pair", "SELECT pair", {"pair": pair}, collect_pair)])
    ScrapeOrchestrator(FakeConnector({"a": dict(healthy_results, **{"SELECT pair": [(1,)]})}), catalogue).run(
        [Target("a")]
    )
    assert pair.get({"host": "a", "side": "left"}) is None


def test_unexpected_exception_in_mapping_is_isolated(space, healthy_results):
    def broken(rows, metrics, target):
        raise ZeroDivisionError("bad row")

    z = space.get_or_create("z", "z", ["host"])
    catalogue = make_catalogue(space, [CollectorDefinition("z", "SELECT z", {"z": z}, broken)])
    results = dict(healthy_results, **{"SELECT z": [(1,)]})
    report = ScrapeOrchestrator(FakeConnector({"a": results}), catalogue).run([Target("a")])

    assert value(space, "x", host="a") == 10
    assert {o.name: o.status for o in report.target("a").outcomes}["z"] == MAPPING_ERROR


def test_availability_failure_marks_target_down_and_skips_collectors(space, catalogue, healthy_results):
    results = dict(healthy_results, **{"SELECT 1": QueryError("a", "session reset")})
    connector = FakeConnector({"a": results})
    ScrapeOrchestrator(connector, catalogue).run([Target("a")])

    assert value(space, "up", host="a") == 0
    assert value(space, "x", host="a") is None
    connection = connector.connections["a"][0]
    assert connection.queries == ["SELECT 1"]
    assert connection.close_count == 1


def test_availability_runs_before_other_collectors(space, catalogue, healthy_results):
    connector = FakeConnector({"a": healthy_results})
    ScrapeOrchestrator(connector, catalogue).run([Target("a")])
    queries = connector.connections["a"][0].queries
    assert queries[0] == "SELECT 1"
    assert sorted(queries[1:]) == ["SELECT x", "SELECT y"]


def test_connection_closed_exactly_once_after_collectors_settle(space, catalogue, healthy_results):
    results = dict(healthy_results, **{"SELECT x": QueryError("a", "boom")})
    connector = FakeConnector({"a": results, "b": healthy_results})
    ScrapeOrchestrator(connector, catalogue).run([Target("a"), Target("b")])
    for host in ("a", "b"):
        connections = connector.connections[host]
        assert len(connections) == 1
        assert connections[0].close_count == 1


def test_collectors_on_one_target_run_concurrently(space, healthy_results):
    barrier = threading.Barrier(2, timeout=5)

    def waiting(rows_value):
        def produce():
            barrier.wait()
            return [(rows_value,)]
        return produce

    catalogue = make_catalogue(space)
    results = dict(healthy_results, **{"SELECT x": waiting(1), "SELECT y": waiting(2)})
    ScrapeOrchestrator(FakeConnector({"a": results}), catalogue).run([Target("a")])
    assert value(space, "x", host="a") == 1
    assert value(space, "y", host="a") == 2


def test_slow_target_does_not_block_other_targets_from_starting(space, healthy_results):
    barrier = threading.Barrier(2, timeout=5)

    def waiting():
        barrier.wait()
        return [(1,)]

    catalogue = make_catalogue(space)
    results = dict(healthy_results, **{"SELECT 1": waiting})
    ScrapeOrchestrator(FakeConnector({"a": results, "b": results}), catalogue).run([Target("a"), Target("b")])
    assert value(space, "up", host="a") == 1
    assert value(space, "up", host="b") == 1


def test_connector_raising_unexpected_error_marks_down(space, catalogue):
    class Exploding(FakeConnector):
        def open(self, target):
            raise RuntimeError("driver crashed")

    report = ScrapeOrchestrator(Exploding({}), catalogue).run([Target("a")])
    assert value(space, "up", host="a") == 0
    assert isinstance(report.target("a").error, RuntimeError)


def test_repeated_scrape_is_idempotent(space, catalogue, targets, healthy_results):
    orchestrator = ScrapeOrchestrator(FakeConnector({"a": healthy_results}), catalogue)
    orchestrator.run(targets)
    first = render(space)
    orchestrator.run(targets)
    assert render(space) == first


def test_overlapping_scrapes_only_write_observed_values(space, catalogue):
    first = {"SELECT 1": [(1,)], "SELECT x": [(100,)], "SELECT y": [(200,)]}
    second = {"SELECT 1": [(1,)], "SELECT x": [(101,)], "SELECT y": [(201,)]}
    targets = [Target("a")]
    runs = [
        threading.Thread(target=ScrapeOrchestrator(FakeConnector({"a": first}), catalogue).run, args=(targets,)),
        threading.Thread(target=ScrapeOrchestrator(FakeConnector({"a": second}), catalogue).run, args=(targets,)),
    ]
    for t in runs:
        t.start()
    for t in runs:
        t.join()
    assert value(space, "x", host="a") in (100, 101)
    assert value(space, "y", host="a") in (200, 201)


def test_run_never_raises_under_total_outage(space, catalogue):
    targets = [Target(h) for h in ("a", "b", "c")]
    report = ScrapeOrchestrator(FakeConnector({}), catalogue).run(targets)
    assert report.down == ["a", "b", "c"]
    assert [s.value for s in space.snapshot()] == [0, 0, 0]


@pytest.mark.parametrize("workers", [1, 2])
def test_bounded_workers_still_complete(space, catalogue, targets, healthy_results, workers):
    connector = FakeConnector({"a": healthy_results, "b": healthy_results})
    ScrapeOrchestrator(connector, catalogue, max_target_workers=workers, max_collector_workers=workers).run(targets)
    assert value(space, "y", host="b") == 20
