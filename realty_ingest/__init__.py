"""Continuous listing ingestion from the Yandex.Realty mobile API."""

__version__ = "0.1.0"
