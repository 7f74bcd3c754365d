"""Prometheus exporter that scrapes diagnostic queries from Teradata systems."""

__version__ = "0.3.0"
