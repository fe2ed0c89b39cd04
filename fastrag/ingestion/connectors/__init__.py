"""Connector implementations for external data sources."""

from __future__ import annotations

from typing import Any, Dict

from ..models import DataSource, SourceType, load_data_source
from .api import APIConnector
from .base import SourceConnector
from .database import DatabaseConnector
from .file import FileConnector

CONNECTOR_TYPES: Dict[SourceType, type[SourceConnector]] = {
    SourceType.FILE: FileConnector,
    SourceType.DATABASE: DatabaseConnector,
    SourceType.API: APIConnector,
}


def create_connector(data_source: DataSource | Dict[str, Any], **kwargs: Any) -> SourceConnector:
    """Build the connector matching ``data_source.type``.

    Extra keyword arguments (``session``, ``guard``, ``logger``...) are passed
    to the connector constructor.
    """

    if not isinstance(data_source, DataSource):
        data_source = load_data_source(data_source)
    connector_cls = CONNECTOR_TYPES[data_source.type]
    return connector_cls(data_source, **kwargs)


__all__ = [
    "APIConnector",
    "CONNECTOR_TYPES",
    "DatabaseConnector",
    "FileConnector",
    "SourceConnector",
    "create_connector",
]
