"""Shared pytest fixtures: an in-memory connector standing in for Teradata."""
import threading

import pytest

from teradata_xport.connector import Connection, RowSet, Target, TargetConnector
from teradata_xport.definitions import Catalogue, CollectorDefinition
from teradata_xport.errors import ConnectError
from teradata_xport.metric_space import MetricSpace


class FakeConnection(Connection):
    def __init__(self, host, results):
        self.host = host
        self.results = results
        self.queries = []
        self.close_count = 0
        self._lock = threading.Lock()

    def query(self, sql):
        assert self.close_count == 0, "query on a closed connection"
        with self._lock:
            self.queries.append(sql)
        result = self.results.get(sql, [])
        if isinstance(result, Exception):
            raise result
        if callable(result):
            result = result()
        return RowSet(result)

    def close(self):
        self.close_count += 1


class FakeConnector(TargetConnector):
    """results: {host: {sql: rows | Exception | callable}}; hosts not listed are unreachable."""

    def __init__(self, results):
        self.results = results
        self.connections = {}

    def open(self, target):
        if target.host not in self.results:
            raise ConnectError(target.host, "connection refused")
        connection = FakeConnection(target.host, self.results[target.host])
        self.connections.setdefault(target.host, []).append(connection)
        return connection


def collect_up(rows, metrics, target):
    metrics["up"].set({"host": target.host}, rows[0].integer(0))


def collect_single(metric_key):
    def collect(rows, metrics, target):
        metrics[metric_key].set({"host": target.host}, rows[0].number(0))
    return collect


def make_catalogue(space, extra=()):
    """A small catalogue: up plus collectors x and y reading one cell each."""
    availability = CollectorDefinition(
        "up", "SELECT 1", {"up": space.get_or_create("up", "UP Status", ["host"])}, collect_up
    )
    collectors = [
        CollectorDefinition("x", "SELECT x", {"x": space.get_or_create("x", "x", ["host"])}, collect_single("x")),
        CollectorDefinition("y", "SELECT y", {"y": space.get_or_create("y", "y", ["host"])}, collect_single("y")),
    ]
    return Catalogue(availability, collectors + list(extra))


def value(space, name, **labels):
    return space.get(name).get(labels)


@pytest.fixture
def space():
    return MetricSpace()


@pytest.fixture
def catalogue(space):
    return make_catalogue(space)


@pytest.fixture
def targets():
    return [Target("a"), Target("b")]


@pytest.fixture
def healthy_results():
    return {"SELECT 1": [(1,)], "SELECT x": [(10,)], "SELECT y": [(20,)]}
