"""Process-wide, label-keyed store of the latest observed gauge values.

A MetricSpace is constructed once at startup and handed to the catalogue
(which registers its instruments) and to the renderer. It keeps only the
last value written for each label tuple; there is no history.
"""
import logging
from collections import namedtuple
from decimal import Decimal
from threading import Lock

from .errors import DefinitionConflict, LabelError, MappingError

logger = logging.getLogger(__name__)

Sample = namedtuple("Sample", ["name", "labels", "value"])


def _label_value(value):
    # Drivers hand back NULL as None; keep it visible instead of failing.
    if value is None:
        return "null"
    return str(value)


def coerce_value(value):
    """Normalize a cell value into an int or float suitable for a gauge.

    Integers are kept as int so 64-bit counters are not rounded.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    raise MappingError(f"Gauge value must be numeric, got {type(value).__name__}: {value!r}")


class Gauge:
    """One named instrument with a fixed set of label names."""

    def __init__(self, name, help_text, label_names):
        self.name = name
        self.help = help_text
        self.label_names = tuple(label_names)
        self._values = {}
        self._lock = Lock()

    def __repr__(self):
        return f"Gauge({self.name!r}, labels={self.label_names!r})"

    def key(self, labels):
        """Return the label-value tuple for `labels`, in declared order."""
        if set(labels) != set(self.label_names) or len(labels) != len(self.label_names):
            raise LabelError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(_label_value(labels[name]) for name in self.label_names)

    def set(self, labels, value):
        self.apply(self.key(labels), coerce_value(value))

    def apply(self, key, value):
        with self._lock:
            self._values[key] = value

    def get(self, labels):
        key = self.key(labels)
        with self._lock:
            return self._values.get(key)

    def samples(self):
        with self._lock:
            items = list(self._values.items())
        return sorted(items, key=lambda item: item[0])


class MetricSpace:
    def __init__(self):
        self._gauges = {}
        self._lock = Lock()

    def get_or_create(self, name, help_text, label_names):
        label_names = tuple(label_names)
        if len(set(label_names)) != len(label_names):
            raise DefinitionConflict(f"{name}: duplicate label names {label_names}")
        with self._lock:
            gauge = self._gauges.get(name)
            if gauge is None:
                gauge = Gauge(name, help_text, label_names)
                self._gauges[name] = gauge
                return gauge
        if gauge.label_names != label_names:
            raise DefinitionConflict(
                f"{name}: already registered with labels {gauge.label_names}, "
                f"cannot re-register with {label_names}"
            )
        if gauge.help != help_text:
            logger.warning(f"Instrument {name} re-registered with a different help text; keeping the first")
        return gauge

    def get(self, name):
        with self._lock:
            return self._gauges.get(name)

    def instruments(self):
        with self._lock:
            gauges = list(self._gauges.values())
        return sorted(gauges, key=lambda g: g.name)

    def snapshot(self):
        """Return every recorded observation as Sample tuples.

        Ordered by instrument name, then by label values. Each label tuple is
        read atomically, so a concurrent set is either fully visible or not.
        """
        result = []
        for gauge in self.instruments():
            for key, value in gauge.samples():
                result.append(Sample(gauge.name, tuple(zip(gauge.label_names, key)), value))
        return result


class _BoundGauge:
    """Write-only view of a Gauge that stages values into a WriteBatch."""

    def __init__(self, batch, gauge):
        self._batch = batch
        self._gauge = gauge

    @property
    def name(self):
        return self._gauge.name

    @property
    def label_names(self):
        return self._gauge.label_names

    def set(self, labels, value):
        key = self._gauge.key(labels)
        value = coerce_value(value)
        self._batch._pending.append((self._gauge, key, value))


class WriteBatch:
    """Collects the writes of one mapping call and applies them together.

    Nothing reaches the gauges until commit(), so a mapping function that
    fails half-way through leaves previously recorded values untouched.
    """

    def __init__(self):
        self._pending = []

    def __len__(self):
        return len(self._pending)

    def bind(self, gauge):
        return _BoundGauge(self, gauge)

    def bind_all(self, instruments):
        return {name: self.bind(gauge) for name, gauge in instruments.items()}

    def commit(self):
        pending, self._pending = self._pending, []
        for gauge, key, value in pending:
            gauge.apply(key, value)
        return len(pending)
