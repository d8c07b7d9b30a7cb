"""Connectors backed by a generic tool-calling client.

Design tools and generators are commonly exposed as named tools behind a
single ``call_tool(name, arguments)`` entry point. The adapters here map the
connector interfaces onto fixed tool names, parse the tool responses (JSON
text or already-decoded mappings) and classify failures so the retry layer
can tell transient from permanent errors.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from ..models.workflow import (
    ContentField,
    DesignContext,
    DesignMetadata,
    DesignTokens,
    GeneratedArtifacts,
    StructureAnalysis,
    ValidationResult,
    VisualReference,
    WorkflowOptions,
)
from ..utils.retry import DefaultErrorClassifier, ErrorClassifier, PatternErrorClassifier
from .base import (
    ConnectorError,
    DesignSourceConnector,
    GenerationConnector,
    PermanentConnectorError,
    TransientConnectorError,
)
from .reference import DesignReference, parse_design_reference

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "temporarily",
    "unavailable",
    "connection reset",
    "econnreset",
    "503",
    "502",
    "429",
)


@dataclass
class ToolResult:
    """Outcome of a single tool invocation."""

    success: bool
    data: Any = None
    error: Optional[str] = None


@runtime_checkable
class ToolClient(Protocol):
    """Anything that can invoke a named tool with keyword arguments."""

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        ...


def default_tool_classifier() -> ErrorClassifier:
    return PatternErrorClassifier(TRANSIENT_ERROR_PATTERNS, fallback=DefaultErrorClassifier())


class _ToolAdapter:
    """Shared invocation and response handling for tool-backed connectors."""

    name = "tool"

    def __init__(self, client: ToolClient, classifier: Optional[ErrorClassifier] = None) -> None:
        self.client = client
        self.classifier = classifier or default_tool_classifier()

    async def _invoke(self, tool: str, arguments: Dict[str, Any]) -> Any:
        """Call ``tool`` and return its payload.

        Raises:
            TransientConnectorError: For failures the classifier deems retryable
            PermanentConnectorError: For every other failure
        """
        logger.debug(f"Calling tool {tool}")
        try:
            result = await self.client.call_tool(tool, arguments)
        except ConnectorError:
            raise
        except Exception as e:
            raise self._classify(f"{tool} raised {type(e).__name__}: {e}", e) from e

        if not result.success:
            message = result.error or f"{tool} reported failure"
            raise self._classify(message, ConnectorError(message))
        if result.data is None or result.data == "":
            raise PermanentConnectorError(f"{tool} returned no data", connector=self.name)
        return result.data

    def _classify(self, message: str, exception: BaseException) -> ConnectorError:
        if self.classifier.is_retryable(exception):
            return TransientConnectorError(message, connector=self.name)
        return PermanentConnectorError(message, connector=self.name)

    def _decode(self, tool: str, data: Any) -> Dict[str, Any]:
        if isinstance(data, Mapping):
            return dict(data)
        if isinstance(data, (str, bytes)):
            try:
                decoded = json.loads(data)
            except json.JSONDecodeError as e:
                raise PermanentConnectorError(
                    f"{tool} returned malformed JSON: {e}", connector=self.name
                ) from e
            if isinstance(decoded, dict):
                return decoded
        raise PermanentConnectorError(
            f"{tool} returned {type(data).__name__}, expected an object", connector=self.name
        )


class ToolDesignSourceConnector(_ToolAdapter, DesignSourceConnector):
    """Design source backed by design-context, screenshot and metadata tools."""

    name = "design-source"

    CONTEXT_TOOL = "get_design_context"
    SCREENSHOT_TOOL = "get_screenshot"
    METADATA_TOOL = "get_metadata"

    def __init__(
        self,
        client: ToolClient,
        classifier: Optional[ErrorClassifier] = None,
        frameworks: str = "react",
        languages: str = "typescript,css",
    ) -> None:
        super().__init__(client, classifier)
        self.frameworks = frameworks
        self.languages = languages

    def _parse(self, reference: str) -> DesignReference:
        try:
            return parse_design_reference(reference)
        except ValueError as e:
            raise PermanentConnectorError(str(e), connector=self.name) from e

    def _node_id(self, reference: str) -> str:
        return self._parse(reference).node_id

    async def get_design_context(self, reference: str) -> DesignContext:
        parsed = self._parse(reference)
        data = await self._invoke(
            self.CONTEXT_TOOL,
            {
                "nodeId": parsed.node_id,
                "clientFrameworks": self.frameworks,
                "clientLanguages": self.languages,
                "forceCode": True,
            },
        )
        content = data if isinstance(data, str) else json.dumps(data)
        return DesignContext(content=content, reference=parsed.node_id, file_name=parsed.file_name)

    async def get_visual_reference(self, reference: str) -> VisualReference:
        data = await self._invoke(self.SCREENSHOT_TOOL, {"nodeId": self._node_id(reference)})
        try:
            if isinstance(data, Mapping):
                return VisualReference(data=str(data.get("data") or ""), format=data.get("format") or "png")
            return VisualReference(data=str(data), format="png")
        except ValidationError as e:
            raise PermanentConnectorError(
                f"{self.SCREENSHOT_TOOL} returned an unusable image: {e}", connector=self.name
            ) from e

    async def get_metadata(self, reference: str) -> DesignMetadata:
        node_id = self._node_id(reference)
        structure = self._decode(self.METADATA_TOOL, await self._invoke(self.METADATA_TOOL, {"nodeId": node_id}))
        return DesignMetadata(
            reference=node_id,
            node_name=str(structure.get("name") or "Unknown"),
            node_type=str(structure.get("type") or "Unknown"),
            structure=structure,
        )


class ToolGenerationConnector(_ToolAdapter, GenerationConnector):
    """Generator backed by analyze, generate and validate tools."""

    name = "generator"

    ANALYZE_TOOL = "analyze_block_structure"
    GENERATE_TOOL = "generate_block"
    VALIDATE_TOOL = "validate_block_output"

    async def analyze_structure(
        self,
        content: str,
        visual_reference: Optional[VisualReference] = None,
        metadata: Optional[DesignMetadata] = None,
    ) -> StructureAnalysis:
        arguments: Dict[str, Any] = {"generatedCode": content}
        if visual_reference is not None:
            arguments["screenshot"] = visual_reference.data
        if metadata is not None:
            arguments["metadata"] = metadata.model_dump_json()

        payload = self._decode(self.ANALYZE_TOOL, await self._invoke(self.ANALYZE_TOOL, arguments))
        return self._parse_analysis(payload)

    async def generate_artifacts(
        self,
        name: str,
        output_path: str,
        content: str,
        options: WorkflowOptions,
    ) -> GeneratedArtifacts:
        payload = self._decode(
            self.GENERATE_TOOL,
            await self._invoke(
                self.GENERATE_TOOL,
                {
                    "blockName": name,
                    "outputPath": output_path,
                    "generatedCode": content,
                    "persistContext": options.persist_artifacts,
                    # Validation runs as its own stage
                    "options": {"validateOutput": False},
                },
            ),
        )
        files = payload.get("files") or {}
        if not isinstance(files, Mapping):
            raise PermanentConnectorError(f"{self.GENERATE_TOOL} returned invalid files", connector=self.name)
        return GeneratedArtifacts(
            output_dir=str(payload.get("outputDir") or f"{output_path.rstrip('/')}/{name}"),
            files={str(role): str(text) for role, text in files.items() if text is not None},
        )

    async def validate_output(self, path: str, name: str, strict: bool = False) -> ValidationResult:
        payload = self._decode(
            self.VALIDATE_TOOL,
            await self._invoke(self.VALIDATE_TOOL, {"blockPath": path, "blockName": name, "strictMode": strict}),
        )
        errors = [str(e) for e in payload.get("errors") or []]
        validated = bool(payload.get("validated", not errors))
        return ValidationResult(
            validated=validated,
            errors=errors,
            warnings=[str(w) for w in payload.get("warnings") or []],
            status="PASSED" if validated and not errors else "FAILED",
        )

    def _parse_analysis(self, payload: Dict[str, Any]) -> StructureAnalysis:
        structure = payload.get("contentStructure") or {}
        tokens = payload.get("designTokens") or {}
        try:
            return StructureAnalysis(
                name=str(payload.get("blockName") or payload.get("name") or ""),
                block_type=payload.get("blockType", "single"),
                container_fields=[ContentField(**f) for f in structure.get("containerFields") or []],
                item_fields=[ContentField(**f) for f in structure.get("itemFields") or []],
                design_tokens=DesignTokens(**tokens),
                interactive_elements=list(payload.get("interactiveElements") or []),
            )
        except (ValidationError, TypeError) as e:
            raise PermanentConnectorError(
                f"{self.ANALYZE_TOOL} returned an unexpected analysis shape: {e}", connector=self.name
            ) from e
