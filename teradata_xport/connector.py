"""Connections to configured targets.

The orchestrator only sees the TargetConnector / Connection interface and
RowSet results. TeradataConnector is the production implementation on top
of teradatasql.
"""
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from queue import Empty, LifoQueue
from threading import Lock, Semaphore
from types import MappingProxyType

import teradatasql

from .errors import ConnectError, MappingError, QueryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """One configured server. `host` is also the value of the `host` label."""

    host: str
    options: MappingProxyType = field(
        default_factory=lambda: MappingProxyType({}), repr=False, compare=False
    )

    @classmethod
    def from_config(cls, conn_config):
        config = dict(conn_config)
        host = config.get("host")
        if not host:
            raise ValueError("target is missing 'host'")
        return cls(host=str(host), options=MappingProxyType(config))


class Row(tuple):
    """One result row: an ordered tuple of driver-typed cells.

    Mapping functions read cells through the typed accessors so an
    unexpected column layout fails loudly as a MappingError.
    """

    def cell(self, index):
        try:
            return self[index]
        except IndexError:
            raise MappingError(f"row has {len(self)} columns, no column {index}") from None

    def text(self, index):
        value = self.cell(index)
        if value is None:
            return None
        if isinstance(value, str):
            return value.rstrip()
        return str(value)

    def integer(self, index):
        value = self.number(index)
        if isinstance(value, float):
            if not value.is_integer():
                raise MappingError(f"column {index}: expected an integer, got {value!r}")
            return int(value)
        return value

    def number(self, index):
        value = self.cell(index)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, Decimal):
            return int(value) if value == value.to_integral_value() else float(value)
        if isinstance(value, str):
            # Some DECIMAL/NUMBER columns come back as text.
            try:
                parsed = Decimal(value.strip())
            except InvalidOperation:
                raise MappingError(f"column {index}: not a number: {value!r}") from None
            return int(parsed) if parsed == parsed.to_integral_value() else float(parsed)
        raise MappingError(f"column {index}: expected a number, got {type(value).__name__}: {value!r}")


class RowSet(Sequence):
    """Ordered result of one query. Rows are wrapped on first access."""

    def __init__(self, raw_rows, columns=()):
        self._raw = raw_rows
        self._rows = [None] * len(raw_rows)
        self.columns = tuple(str(c).lower() for c in columns)

    def __len__(self):
        return len(self._raw)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self)))]
        row = self._rows[index]
        if row is None:
            row = Row(self._raw[index])
            self._rows[index] = row
        return row

    def __repr__(self):
        return f"RowSet(columns={self.columns!r}, rows={len(self)})"

    def index(self, column):
        """Position of `column` (case-insensitive) in the result."""
        try:
            return self.columns.index(column.lower())
        except ValueError:
            raise MappingError(f"column '{column}' not found in result set {list(self.columns)}") from None


class Connection:
    """Interface of an open connection to one target."""

    def query(self, sql):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class TargetConnector:
    """Interface: open(target) -> Connection, raising ConnectError."""

    def open(self, target):
        raise NotImplementedError


def build_dsn(conn_config):
    dsn = {
        "host": conn_config["host"],
        "user": conn_config.get("user"),
        "password": conn_config.get("password"),
    }
    # Include optional parameters if present
    for key in ["logmech", "connect_timeout", "database", "encryptdata", "sslmode"]:
        if key in conn_config:
            dsn[key] = str(conn_config[key])
    dsn = {k: v for k, v in dsn.items() if v is not None}
    logger.debug(f"Building DSN from connection config: {mask_password(dsn)}")
    return dsn


def mask_password(config):
    masked = dict(config)
    if masked.get("password") is not None:
        masked["password"] = "***"
    return masked


class TeradataConnection(Connection):
    """Sessions to one Teradata target for the duration of one scrape.

    Concurrent queries each borrow a session; up to `max_connections`
    sessions are opened, the extra ones lazily. close() closes them all.
    """

    def __init__(self, target, session, connect, max_connections=1):
        self.target = target
        self._connect = connect
        self._idle = LifoQueue()
        self._idle.put(session)
        self._sessions = [session]
        self._slots = Semaphore(max(1, max_connections))
        self._lock = Lock()
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def _borrow(self):
        try:
            return self._idle.get_nowait()
        except Empty:
            pass
        session = self._connect()
        with self._lock:
            self._sessions.append(session)
        logger.debug(f"{self.target.host}: opened additional session ({len(self._sessions)} total)")
        return session

    def query(self, sql):
        host = self.target.host
        with self._slots:
            if self._closed:
                raise QueryError(host, "connection is closed")
            try:
                session = self._borrow()
            except Exception as e:
                raise QueryError(host, f"could not open session: {e}") from e
            start = time.time()
            try:
                with session.cursor() as cursor:
                    cursor.execute(sql)
                    rows = cursor.fetchall() if cursor.description else []
                    columns = [col[0] for col in (cursor.description or [])]
            except Exception as e:
                raise QueryError(host, str(e)) from e
            finally:
                self._idle.put(session)
            logger.debug(f"{host}: query returned {len(rows)} row(s) in {time.time() - start:.3f}s")
            return RowSet(rows, columns)

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            try:
                session.close()
            except Exception as close_exc:
                logger.warning(f"{self.target.host}: failed to close session: {close_exc}")


class TeradataConnector(TargetConnector):
    def __init__(self, max_connections=1):
        self.max_connections = max_connections

    def _connect(self, target):
        conn_config = target.options
        dsn = build_dsn(conn_config)
        start_time = time.time()
        conn = teradatasql.connect(**dsn)
        # Set query band for session if present
        if conn_config.get("query_band"):
            try:
                with conn.cursor() as cursor:
                    cursor.execute(f"SET QUERY_BAND = '{conn_config['query_band']}' FOR SESSION;")
                logger.debug(f"{target.host}: set query band for session: {conn_config['query_band']}")
            except Exception as qb_exc:
                logger.warning(f"{target.host}: failed to set query band: {qb_exc}")
        logger.debug(f"{target.host}: connected in {time.time() - start_time:.2f} seconds")
        return conn

    def open(self, target):
        try:
            max_connections = int(target.options.get("max_connections", self.max_connections))
        except (TypeError, ValueError) as e:
            raise ConnectError(target.host, f"invalid max_connections: {e}") from e
        try:
            session = self._connect(target)
        except Exception as e:
            raise ConnectError(target.host, str(e)) from e
        return TeradataConnection(
            target, session, lambda: self._connect(target), max_connections=max_connections
        )
