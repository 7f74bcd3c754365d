"""Built-in catalogue of Teradata diagnostic collectors.

Each collector pairs one read-only query against the DBC views with a
mapping function that reads result cells by position. Every instrument
carries a `host` label with the target's identity.
"""
import logging
import re

from .definitions import Catalogue, CollectorDefinition
from .errors import MappingError

logger = logging.getLogger(__name__)


def _define(space, name, query, gauges, map_fn):
    """Register `gauges` ({key: (metric_name, help, label_names)}) and build a definition."""
    instruments = {
        key: space.get_or_create(metric_name, help_text, label_names)
        for key, (metric_name, help_text, label_names) in gauges.items()
    }
    return CollectorDefinition(name=name, query=query, instruments=instruments, map_fn=map_fn)


def parse_product_version(text):
    """'17.20.03.09' -> (17, 20, 3, 9). Missing parts are 0."""
    if text is None:
        raise MappingError("product version is NULL")
    match = re.match(r"\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:\.(\d+))?", str(text))
    if not match:
        raise MappingError(f"unrecognized product version: {text!r}")
    return tuple(int(part) if part else 0 for part in match.groups())


def _collect_up(rows, metrics, target):
    value = rows[0].integer(0)
    if value != 1:
        raise MappingError(f"availability probe returned {value!r}")
    metrics["up"].set({"host": target.host}, 1)


def _collect_product_version(rows, metrics, target):
    raw = rows[0].text(0)
    major, minor, _, _ = parse_product_version(raw)
    logger.debug(f"Fetched version of instance {target.host}: {raw}")
    metrics["version"].set({"host": target.host}, float(f"{major}.{minor:02d}"))


def _collect_local_time(rows, metrics, target):
    metrics["local_time"].set({"host": target.host}, rows[0].number(0))


def _collect_sessions(rows, metrics, target):
    for row in rows:
        database = row.text(0)
        metrics["sessions"].set({"host": target.host, "database": database, "state": "current"}, row.integer(1))


def _collect_client_sessions(rows, metrics, target):
    for row in rows:
        labels = {"host": target.host, "client": row.text(0), "user": row.text(1)}
        metrics["client_sessions"].set(labels, row.integer(2))


def _collect_database_space(rows, metrics, target):
    for row in rows:
        database = row.text(0)
        for offset, key in ((1, "perm"), (4, "spool"), (7, "temp")):
            for i, kind in enumerate(("current", "max", "peak")):
                labels = {"host": target.host, "database": database, "type": kind}
                metrics[key].set(labels, row.number(offset + i))


def _collect_amps(rows, metrics, target):
    metrics["amps"].set({"host": target.host}, rows[0].integer(0))


def _collect_cpu(rows, metrics, target):
    row = rows[0]
    busy, io_wait, total = row.number(2), row.number(3), row.number(4)
    if not total:
        raise MappingError(f"ResUsage interval {row.text(0)} {row.text(1)} has no CPU time")
    logger.debug(f"Fetched CPU usage for {target.host}: busy={busy} io_wait={io_wait} total={total}")
    metrics["busy"].set({"host": target.host}, busy * 100.0 / total)
    metrics["io_wait"].set({"host": target.host}, io_wait * 100.0 / total)


def _collect_transient_journal(rows, metrics, target):
    metrics["size"].set({"host": target.host}, rows[0].number(0))


def _collect_logon_events(rows, metrics, target):
    for row in rows:
        metrics["events"].set({"host": target.host, "event": row.text(0)}, row.integer(1))


def _collect_amp_usage(rows, metrics, target):
    for row in rows:
        labels = {"host": target.host, "user": row.text(0)}
        metrics["cpu"].set(labels, row.number(1))
        metrics["io"].set(labels, row.number(2))


def _collect_query_activity(rows, metrics, target):
    for row in rows:
        labels = {"host": target.host, "user": row.text(0)}
        metrics["count"].set(labels, row.integer(1))
        metrics["cpu"].set(labels, row.number(2))
        metrics["io"].set(labels, row.number(3))


def _collect_top_cpu_queries(rows, metrics, target):
    for row in rows:
        labels = {
            "host": target.host,
            "query_id": row.text(0),
            "user": row.text(1),
            "query_text": row.text(2),
        }
        metrics["cpu"].set(labels, row.number(3))
        metrics["io"].set(labels, row.number(4))


def _collect_skewed_tables(rows, metrics, target):
    for row in rows:
        labels = {"host": target.host, "database": row.text(0), "table": row.text(1)}
        metrics["size"].set(labels, row.number(2))
        metrics["skew"].set(labels, row.number(3))


def build_catalogue(space):
    """Register every built-in instrument on `space` and return the catalogue."""
    host = ("host",)

    availability = _define(
        space, "teradata_up", "SELECT 1",
        {"up": ("teradata_up", "UP Status", host)},
        _collect_up,
    )

    collectors = [
        _define(
            space, "teradata_product_version",
            "SELECT InfoData FROM DBC.DBCInfoV WHERE InfoKey = 'VERSION'",
            {"version": ("teradata_product_version", "Instance version (Major.Minor)", host)},
            _collect_product_version,
        ),
        _define(
            space, "teradata_instance_local_time",
            """SELECT CAST(CURRENT_DATE - DATE '1970-01-01' AS BIGINT) * 86400
                      + EXTRACT(HOUR FROM CURRENT_TIMESTAMP(0)) * 3600
                      + EXTRACT(MINUTE FROM CURRENT_TIMESTAMP(0)) * 60
                      + CAST(EXTRACT(SECOND FROM CURRENT_TIMESTAMP(0)) AS INTEGER)""",
            {"local_time": ("teradata_instance_local_time",
                            "Number of seconds since epoch on local instance", host)},
            _collect_local_time,
        ),
        _define(
            space, "teradata_sessions",
            """SELECT DefaultDataBase, COUNT(*)
               FROM DBC.SessionInfoV
               GROUP BY DefaultDataBase""",
            {"sessions": ("teradata_sessions", "Number of logged on sessions per default database",
                          ("host", "database", "state"))},
            _collect_sessions,
        ),
        _define(
            space, "teradata_client_sessions",
            """SELECT COALESCE(ClientIPAddress, 'unknown'), UserName, COUNT(*)
               FROM DBC.SessionInfoV
               GROUP BY 1, 2""",
            {"client_sessions": ("teradata_client_sessions", "Number of sessions per client address and user",
                                 ("host", "client", "user"))},
            _collect_client_sessions,
        ),
        _define(
            space, "teradata_database_space",
            """SELECT DatabaseName,
                      SUM(CurrentPerm), SUM(MaxPerm), SUM(PeakPerm),
                      SUM(CurrentSpool), SUM(MaxSpool), SUM(PeakSpool),
                      SUM(CurrentTemp), SUM(MaxTemp), SUM(PeakTemp)
               FROM DBC.DiskSpaceV
               GROUP BY DatabaseName""",
            {
                "perm": ("teradata_database_perm_bytes",
                         "Permanent space of the database in bytes (type=current|max|peak)",
                         ("host", "database", "type")),
                "spool": ("teradata_database_spool_bytes",
                          "Spool space of the database in bytes (type=current|max|peak)",
                          ("host", "database", "type")),
                "temp": ("teradata_database_temp_bytes",
                         "Temporary space of the database in bytes (type=current|max|peak)",
                         ("host", "database", "type")),
            },
            _collect_database_space,
        ),
        _define(
            space, "teradata_amps",
            "SELECT HASHAMP() + 1",
            {"amps": ("teradata_amps", "Number of AMPs in the system", host)},
            _collect_amps,
        ),
        _define(
            space, "teradata_cpu",
            """SELECT TheDate, TheTime,
                      SUM(CPUUServ + CPUUExec),
                      SUM(CPUIoWait),
                      SUM(CPUIdle + CPUIoWait + CPUUServ + CPUUExec)
               FROM DBC.ResUsageSpma
               WHERE TheDate >= CURRENT_DATE - 1
               GROUP BY TheDate, TheTime
               QUALIFY ROW_NUMBER() OVER (ORDER BY TheDate DESC, TheTime DESC) = 1""",
            {
                "busy": ("teradata_cpu_busy_percentage",
                         "Percentage of CPU time spent busy in the last ResUsage interval", host),
                "io_wait": ("teradata_cpu_io_wait_percentage",
                            "Percentage of CPU time spent waiting for I/O in the last ResUsage interval", host),
            },
            _collect_cpu,
        ),
        _define(
            space, "teradata_transient_journal",
            """SELECT COALESCE(SUM(CurrentPerm), 0)
               FROM DBC.TableSizeV
               WHERE DatabaseName = 'DBC' AND TableName = 'TransientJournal'""",
            {"size": ("teradata_transient_journal_bytes", "Current size of the transient journal in bytes", host)},
            _collect_transient_journal,
        ),
        _define(
            space, "teradata_logon_events",
            """SELECT Event, COUNT(*)
               FROM DBC.LogOnOffV
               WHERE LogDate = CURRENT_DATE
               GROUP BY Event""",
            {"events": ("teradata_logon_events", "Number of logon/logoff events today by event type",
                        ("host", "event"))},
            _collect_logon_events,
        ),
        _define(
            space, "teradata_amp_usage",
            """SELECT UserName, SUM(CpuTime), SUM(DiskIO)
               FROM DBC.AMPUsageV
               GROUP BY UserName""",
            {
                "cpu": ("teradata_user_cpu_seconds", "AMP CPU seconds accumulated by the user", ("host", "user")),
                "io": ("teradata_user_disk_io", "Logical disk I/Os accumulated by the user", ("host", "user")),
            },
            _collect_amp_usage,
        ),
        _define(
            space, "teradata_query_activity",
            """SELECT UserName, COUNT(*), SUM(AMPCPUTime), SUM(TotalIOCount)
               FROM DBC.QryLogV
               WHERE StartTime > CURRENT_TIMESTAMP - INTERVAL '1' HOUR
               GROUP BY UserName""",
            {
                "count": ("teradata_user_queries", "Queries logged for the user in the last hour",
                          ("host", "user")),
                "cpu": ("teradata_user_query_amp_cpu_seconds",
                        "AMP CPU seconds of the user's queries in the last hour", ("host", "user")),
                "io": ("teradata_user_query_io_count",
                       "Logical I/Os of the user's queries in the last hour", ("host", "user")),
            },
            _collect_query_activity,
        ),
        _define(
            space, "teradata_top_cpu_queries",
            """SELECT TOP 20 QueryID, UserName, SUBSTR(QueryText, 1, 200), AMPCPUTime, TotalIOCount
               FROM DBC.QryLogV
               WHERE StartTime > CURRENT_TIMESTAMP - INTERVAL '1' HOUR
               ORDER BY AMPCPUTime DESC""",
            {
                "cpu": ("teradata_query_amp_cpu_seconds", "AMP CPU seconds of the query",
                        ("host", "query_id", "user", "query_text")),
                "io": ("teradata_query_io_count", "Logical I/Os of the query",
                       ("host", "query_id", "user", "query_text")),
            },
            _collect_top_cpu_queries,
        ),
        _define(
            space, "teradata_skewed_tables",
            """SELECT TOP 50 DatabaseName, TableName, SUM(CurrentPerm),
                      CAST((1 - AVG(CurrentPerm) / NULLIFZERO(MAX(CurrentPerm))) * 100 AS DECIMAL(5,2))
               FROM DBC.TableSizeV
               GROUP BY DatabaseName, TableName
               HAVING SUM(CurrentPerm) > 1073741824
               ORDER BY 4 DESC""",
            {
                "size": ("teradata_table_size_bytes", "Current permanent size of the table in bytes",
                         ("host", "database", "table")),
                "skew": ("teradata_table_skew_percentage", "Skew factor of the table across AMPs",
                         ("host", "database", "table")),
            },
            _collect_skewed_tables,
        ),
    ]
    return Catalogue(availability, collectors)
