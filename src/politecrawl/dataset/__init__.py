"""Export of crawl results."""

from __future__ import annotations

from .exporter import BaseExporter, CsvExporter, JsonlExporter, get_exporter

__all__ = [
    "BaseExporter",
    "CsvExporter",
    "JsonlExporter",
    "get_exporter",
]
