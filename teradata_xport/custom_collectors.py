"""Collectors defined in YAML collector files.

A collector file looks like:

    collector_name: space_by_owner
    queries:
      - query_name: owners
        query: SELECT OwnerName, SUM(CurrentPerm) AS perm FROM DBC.DiskSpaceV GROUP BY 1
    metrics:
      - metric_name: teradata_owner_perm_bytes
        help: Permanent space by owner
        query_ref: owners
        key_labels: [OwnerName]
        static_labels: {source: dbc}
        values: [perm]

Metrics that share a query text are served by a single query per scrape.
"""
import fnmatch
import logging
from collections import OrderedDict
from functools import partial
from pathlib import Path

import yaml

from .definitions import CollectorDefinition
from .errors import ConfigError, DefinitionConflict

logger = logging.getLogger(__name__)


def resolve_collectors(collector_files, selected, base_dir):
    """Load collector files matching `collector_files` globs under base_dir.

    Returns (matched, available): matched is a list of (name, collector dict)
    whose name matches one of the `selected` fnmatch patterns; available is
    every (name, path) that was found.
    """
    paths = []
    logger.info(f"Resolving collector files using patterns: {collector_files}")
    for pattern in collector_files:
        matched = sorted(str(p) for p in Path(base_dir).glob(pattern) if p.is_file())
        logger.debug(f"Pattern '{pattern}' matched files: {matched}")
        paths.extend(matched)

    matched_collectors = []
    available_collectors = []
    for file_path in paths:
        try:
            with open(file_path) as f:
                collector = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to parse collector file '{file_path}': {e}")
            continue
        collector_name = collector.get("collector_name") if isinstance(collector, dict) else None
        if not collector_name:
            logger.warning(f"Collector file '{file_path}' has no collector_name; skipping")
            continue
        available_collectors.append((collector_name, file_path))
        if any(fnmatch.fnmatch(collector_name, pattern) for pattern in selected):
            matched_collectors.append((collector_name, collector))

    logger.info(f"Matched collectors: {[name for name, _ in matched_collectors]}")
    logger.info(f"Available collectors: {[name for name, _ in available_collectors]}")
    return matched_collectors, available_collectors


def resolve_queries_from_metrics(collector_name, collector):
    """Group the collector's metrics by the SQL they read from."""
    query_map = {q["query_name"]: q["query"] for q in collector.get("queries", []) or []}
    grouped = OrderedDict()

    for metric in collector.get("metrics", []) or []:
        metric_name = metric.get("metric_name")
        if not metric_name:
            raise ConfigError(f"collector {collector_name}: metric without metric_name")
        query_ref = metric.get("query_ref")
        query_text = metric.get("query") or query_map.get(query_ref)
        if not query_text:
            raise ConfigError(f"collector {collector_name}: missing query for metric {metric_name}")
        if not metric.get("values") and metric.get("static_value") is None:
            raise ConfigError(f"collector {collector_name}: metric {metric_name} has no values or static_value")
        static_labels = {str(k): str(v) for k, v in (metric.get("static_labels") or {}).items()}
        key_labels = list(metric.get("key_labels") or [])
        label_names = ["host"] + key_labels + list(static_labels)
        if len(set(label_names)) != len(label_names):
            raise ConfigError(f"collector {collector_name}: metric {metric_name} repeats a label name: {label_names}")

        group = grouped.setdefault(query_text, {"query_name": query_ref, "metrics": []})
        group["metrics"].append({
            "metric_name": metric_name,
            "help": metric.get("help", "") or metric_name,
            "key_labels": key_labels,
            "static_labels": static_labels,
            "label_names": tuple(label_names),
            "value_column": (metric.get("values") or [None])[0],
            "static_value": metric.get("static_value"),
        })
    return grouped


def _collect_metrics(metrics, rows, instruments, target):
    for metric in metrics:
        gauge = instruments[metric["metric_name"]]
        label_positions = [(label, rows.index(label)) for label in metric["key_labels"]]
        value_position = rows.index(metric["value_column"]) if metric["static_value"] is None else None
        for row in rows:
            labels = {"host": target.host}
            for label, position in label_positions:
                labels[label] = row.text(position)
            labels.update(metric["static_labels"])
            if value_position is None:
                value = metric["static_value"]
            else:
                value = row.number(value_position)
            gauge.set(labels, value)


def build_definitions(space, collector_name, collector, reserved=()):
    """`reserved` holds instrument names owned by the built-in catalogue."""
    grouped = resolve_queries_from_metrics(collector_name, collector)
    for group in grouped.values():
        for metric in group["metrics"]:
            if metric["metric_name"] in reserved:
                raise DefinitionConflict(
                    f"collector {collector_name}: metric {metric['metric_name']} "
                    f"is already defined by the built-in catalogue"
                )
    definitions = []
    for index, (query_text, group) in enumerate(grouped.items()):
        if len(grouped) == 1:
            name = collector_name
        else:
            name = f"{collector_name}:{group['query_name'] or index}"
        instruments = {
            m["metric_name"]: space.get_or_create(m["metric_name"], m["help"], m["label_names"])
            for m in group["metrics"]
        }
        definitions.append(CollectorDefinition(
            name=name,
            query=query_text,
            instruments=instruments,
            map_fn=partial(_collect_metrics, group["metrics"]),
        ))
    return definitions


def load_custom_collectors(space, collector_files, selected, base_dir, reserved=()):
    """Build CollectorDefinitions for every selected YAML collector."""
    if not collector_files:
        return []
    matched, available = resolve_collectors(collector_files, selected, base_dir)
    if selected and not matched:
        logger.warning(
            f"Collector files were found, but none matched the requested names {selected}. "
            f"Available collector names: {[name for name, _ in available]}"
        )
    definitions = []
    for name, collector in matched:
        logger.info(f"Loading collector: {name}")
        definitions.extend(build_definitions(space, name, collector, reserved))
    return definitions
