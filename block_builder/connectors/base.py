"""Abstract interfaces for the external systems a workflow talks to.

The engine only depends on these contracts; concrete connectors (tool
clients, HTTP services, test fakes) plug in behind them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..models.workflow import (
    DesignContext,
    DesignMetadata,
    GeneratedArtifacts,
    StructureAnalysis,
    ValidationResult,
    VisualReference,
    WorkflowOptions,
)


class ConnectorError(Exception):
    """Failure reported by a connector.

    Attributes:
        retryable: Whether repeating the same call may succeed
        connector: Name of the connector that failed
    """

    retryable = False

    def __init__(self, message: str, connector: Optional[str] = None, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.connector = connector
        if retryable is not None:
            self.retryable = retryable


class TransientConnectorError(ConnectorError):
    """Timeouts, rate limits, temporary unavailability."""

    retryable = True


class PermanentConnectorError(ConnectorError):
    """Bad input, missing resources, authorization failures."""

    retryable = False


class DesignSourceConnector(ABC):
    """Source of design content, rendered references and node metadata."""

    name = "design-source"

    @abstractmethod
    async def get_design_context(self, reference: str) -> DesignContext:
        """Extract the structural content of the referenced design node.

        Raises:
            ConnectorError: If the content cannot be extracted
        """
        pass

    @abstractmethod
    async def get_visual_reference(self, reference: str) -> VisualReference:
        """Render the referenced node to an image.

        Raises:
            ConnectorError: If no image can be produced
        """
        pass

    @abstractmethod
    async def get_metadata(self, reference: str) -> DesignMetadata:
        """Fetch node metadata (name, type, layer structure)."""
        pass


class GenerationConnector(ABC):
    """Analysis, generation and validation service."""

    name = "generator"

    @abstractmethod
    async def analyze_structure(
        self,
        content: str,
        visual_reference: Optional[VisualReference] = None,
        metadata: Optional[DesignMetadata] = None,
    ) -> StructureAnalysis:
        pass

    @abstractmethod
    async def generate_artifacts(
        self,
        name: str,
        output_path: str,
        content: str,
        options: WorkflowOptions,
    ) -> GeneratedArtifacts:
        pass

    @abstractmethod
    async def validate_output(self, path: str, name: str, strict: bool = False) -> ValidationResult:
        pass


class CatalogConnector(ABC):
    """Downstream registry that learns about finished blocks."""

    name = "catalog"

    @abstractmethod
    async def register(self, name: str, path: str) -> Dict[str, Any]:
        """Register a generated block and return the catalog entry."""
        pass
