"""Render a MetricSpace in the Prometheus text exposition format."""
from itertools import groupby

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily

CONTENT_TYPE = CONTENT_TYPE_LATEST


class MetricSpaceCollector:
    """prometheus_client collector backed by one MetricSpace snapshot per collect()."""

    def __init__(self, space):
        self.space = space

    def collect(self):
        samples = {
            name: list(group)
            for name, group in groupby(self.space.snapshot(), key=lambda s: s.name)
        }
        for gauge in self.space.instruments():
            family = GaugeMetricFamily(gauge.name, gauge.help, labels=gauge.label_names)
            for sample in samples.get(gauge.name, []):
                family.add_metric([value for _, value in sample.labels], sample.value)
            yield family


def render(space):
    registry = CollectorRegistry(auto_describe=False)
    registry.register(MetricSpaceCollector(space))
    return generate_latest(registry)
