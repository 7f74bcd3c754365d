"""Error taxonomy shared by the connector, the catalogue and the orchestrator."""


class ExporterError(Exception):
    """Base class for every error raised by the exporter."""


class ConfigError(ExporterError):
    """Settings file or environment could not be turned into a usable config."""


class DefinitionConflict(ExporterError):
    """Two instruments or collectors were registered under the same name
    with incompatible definitions. Raised at startup only."""


class ConnectError(ExporterError):
    def __init__(self, host, message):
        super().__init__(f"{host}: {message}")
        self.host = host


class QueryError(ExporterError):
    def __init__(self, host, message):
        super().__init__(f"{host}: {message}")
        self.host = host


class MappingError(ExporterError):
    """A row did not have the shape or cell types a mapping function expects."""


class LabelError(MappingError):
    """An observation supplied label names that differ from the instrument's."""
