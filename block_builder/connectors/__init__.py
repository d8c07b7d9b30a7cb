"""Connector interfaces and implementations."""

from .base import (
    CatalogConnector,
    ConnectorError,
    DesignSourceConnector,
    GenerationConnector,
    PermanentConnectorError,
    TransientConnectorError,
)
from .catalog import FileCatalogConnector
from .reference import DesignReference, normalize_node_id, parse_design_reference
from .tool_client import ToolClient, ToolDesignSourceConnector, ToolGenerationConnector, ToolResult

__all__ = [
    "CatalogConnector",
    "ConnectorError",
    "DesignReference",
    "DesignSourceConnector",
    "FileCatalogConnector",
    "GenerationConnector",
    "PermanentConnectorError",
    "ToolClient",
    "ToolDesignSourceConnector",
    "ToolGenerationConnector",
    "ToolResult",
    "TransientConnectorError",
    "normalize_node_id",
    "parse_design_reference",
]
