"""Collector definitions and the catalogue the orchestrator runs."""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping

from .errors import DefinitionConflict

UP_LABELS = ("host",)


@dataclass(frozen=True)
class CollectorDefinition:
    """A query paired with the instruments its rows are mapped onto.

    map_fn(rows, instruments, target) records observations. It runs
    concurrently for different targets against the same instruments and
    must not keep state between calls.
    """

    name: str
    query: str
    instruments: Mapping = field(repr=False)
    map_fn: Callable = field(repr=False, compare=False)

    def __post_init__(self):
        if not self.instruments:
            raise DefinitionConflict(f"collector {self.name} declares no instruments")
        object.__setattr__(self, "instruments", MappingProxyType(dict(self.instruments)))


class Catalogue:
    """Static, ordered set of collectors built once at startup.

    `availability` is the reserved collector that runs first on every
    target; its first instrument is the `up` gauge.
    """

    def __init__(self, availability, collectors=()):
        self.availability = availability
        self.collectors = tuple(collectors)
        self.up = next(iter(availability.instruments.values()))
        if self.up.label_names != UP_LABELS:
            raise DefinitionConflict(
                f"availability instrument {self.up.name} must have labels {UP_LABELS}, "
                f"has {self.up.label_names}"
            )
        seen = set()
        for definition in (availability,) + self.collectors:
            if definition.name in seen:
                raise DefinitionConflict(f"duplicate collector name: {definition.name}")
            seen.add(definition.name)
        for definition in self.collectors:
            if any(gauge is self.up for gauge in definition.instruments.values()):
                raise DefinitionConflict(f"collector {definition.name} writes the reserved instrument {self.up.name}")

    def __len__(self):
        return 1 + len(self.collectors)

    def __iter__(self):
        yield self.availability
        yield from self.collectors

    @property
    def names(self):
        return [definition.name for definition in self]

    @property
    def instrument_names(self):
        return frozenset(gauge.name for definition in self for gauge in definition.instruments.values())

    def with_collectors(self, extra):
        return Catalogue(self.availability, self.collectors + tuple(extra))

    def mark_down(self, target):
        self.up.set({"host": target.host}, 0)
