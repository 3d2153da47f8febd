"""
Handles exporting crawled pages to flat files.
"""

from __future__ import annotations

import csv
import io
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, List, Mapping

import structlog

from politecrawl.utils.atomic import atomic_write_text

logger = structlog.get_logger(__name__)


class BaseExporter(ABC):
    """Abstract base class for all row exporters."""

    extension = ""

    @abstractmethod
    def render(self, rows: List[Mapping[str, Any]]) -> str:
        """Serialize rows to the exporter's text format."""

    def export_rows(self, rows: Iterable[Mapping[str, Any]], file_path: Path) -> bool:
        """
        Write ``rows`` to ``file_path`` atomically.

        Returns:
            True on success, False if the file could not be written
        """
        file_path = Path(file_path)
        materialized = list(rows)
        logger.info("Exporting rows", format=type(self).__name__, path=str(file_path), rows=len(materialized))
        try:
            atomic_write_text(file_path, self.render(materialized))
        except OSError as e:
            logger.error("Export failed", path=str(file_path), error=str(e))
            return False
        logger.info("Export complete", path=str(file_path))
        return True


class CsvExporter(BaseExporter):
    """Quoted CSV with a header taken from the first row. Lists are written as their length."""

    extension = ".csv"

    @staticmethod
    def _cell(value: Any) -> Any:
        if isinstance(value, (list, tuple, set)):
            return len(value)
        if value is None:
            return ""
        return value

    def render(self, rows: List[Mapping[str, Any]]) -> str:
        buffer = io.StringIO()
        if not rows:
            return ""
        fieldnames = list(rows[0].keys())
        writer = csv.DictWriter(buffer, fieldnames=fieldnames, quoting=csv.QUOTE_ALL, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({key: self._cell(row.get(key)) for key in fieldnames})
        return buffer.getvalue()


class JsonlExporter(BaseExporter):
    """One JSON object per line."""

    extension = ".jsonl"

    def render(self, rows: List[Mapping[str, Any]]) -> str:
        return "".join(json.dumps(dict(row), default=str) + "\n" for row in rows)


def get_exporter(format_name: str) -> BaseExporter:
    """Factory function to get the appropriate exporter."""
    if format_name == "csv":
        return CsvExporter()
    elif format_name == "jsonl":
        return JsonlExporter()
    else:
        raise ValueError(f"Unknown exporter format: {format_name}")
