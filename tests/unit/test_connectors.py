"""Tests for block_builder.connectors."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from block_builder.connectors import (
    FileCatalogConnector,
    PermanentConnectorError,
    ToolDesignSourceConnector,
    ToolGenerationConnector,
    ToolResult,
    TransientConnectorError,
    parse_design_reference,
)
from block_builder.connectors.tool_client import ToolClient
from block_builder.models.workflow import WorkflowOptions


class TestParseDesignReference:
    @pytest.mark.parametrize(
        "url",
        [
            "https://www.figma.com/design/AbC123/Landing-Page?node-id=13157-13513",
            "https://figma.com/file/AbC123/Landing-Page?node-id=13157-13513&t=xyz",
        ],
    )
    def test_design_and_file_urls(self, url):
        ref = parse_design_reference(url)
        assert ref.file_key == "AbC123"
        assert ref.node_id == "13157:13513"
        assert ref.file_name == "Landing-Page"

    def test_bare_node_ids(self):
        assert parse_design_reference("13157-13513").node_id == "13157:13513"
        assert parse_design_reference("13157:13513").node_id == "13157:13513"
        assert parse_design_reference("R1").node_id == "R1"
        assert parse_design_reference("R1").file_key is None

    @pytest.mark.parametrize(
        "reference",
        [
            "",
            "   ",
            "not a reference",
            "https://www.figma.com/design/AbC123/Landing",
            "https://www.figma.com/proto/AbC123/Landing?node-id=1-2",
            "https://www.figma.com/design/AbC123/Landing?node-id=",
        ],
    )
    def test_invalid_references(self, reference):
        with pytest.raises(ValueError):
            parse_design_reference(reference)


def _client(*results) -> AsyncMock:
    client = AsyncMock(spec=ToolClient)
    client.call_tool.side_effect = list(results)
    return client


class TestToolDesignSourceConnector:
    @pytest.mark.asyncio
    async def test_design_context_uses_node_id(self):
        client = _client(ToolResult(success=True, data="export function Hero() {}"))
        connector = ToolDesignSourceConnector(client)

        context = await connector.get_design_context(
            "https://www.figma.com/design/AbC123/Landing?node-id=1-2"
        )

        assert context.content == "export function Hero() {}"
        assert context.reference == "1:2"
        assert context.file_name == "Landing"
        tool, arguments = client.call_tool.await_args.args
        assert tool == ToolDesignSourceConnector.CONTEXT_TOOL
        assert arguments["nodeId"] == "1:2"

    @pytest.mark.asyncio
    async def test_visual_reference(self):
        connector = ToolDesignSourceConnector(_client(ToolResult(success=True, data="iVBORw0")))
        visual = await connector.get_visual_reference("1:2")
        assert visual.data == "iVBORw0"
        assert visual.format == "png"

    @pytest.mark.asyncio
    async def test_metadata_from_json_text(self):
        payload = json.dumps({"name": "Hero", "type": "FRAME", "children": []})
        connector = ToolDesignSourceConnector(_client(ToolResult(success=True, data=payload)))

        metadata = await connector.get_metadata("1:2")

        assert metadata.node_name == "Hero"
        assert metadata.node_type == "FRAME"
        assert metadata.structure["children"] == []

    @pytest.mark.asyncio
    async def test_transient_failure_classified(self):
        connector = ToolDesignSourceConnector(_client(ToolResult(success=False, error="Request timed out")))
        with pytest.raises(TransientConnectorError):
            await connector.get_visual_reference("1:2")

    @pytest.mark.asyncio
    async def test_permanent_failure_classified(self):
        connector = ToolDesignSourceConnector(_client(ToolResult(success=False, error="Node not found")))
        with pytest.raises(PermanentConnectorError):
            await connector.get_visual_reference("1:2")

    @pytest.mark.asyncio
    async def test_client_exceptions_classified(self):
        connector = ToolDesignSourceConnector(_client(ConnectionError("socket closed")))
        with pytest.raises(TransientConnectorError) as exc_info:
            await connector.get_design_context("1:2")
        assert exc_info.value.connector == "design-source"

    @pytest.mark.asyncio
    async def test_empty_data_is_permanent(self):
        connector = ToolDesignSourceConnector(_client(ToolResult(success=True, data="")))
        with pytest.raises(PermanentConnectorError):
            await connector.get_design_context("1:2")

    @pytest.mark.asyncio
    async def test_unparsable_reference_is_permanent(self):
        client = _client()
        connector = ToolDesignSourceConnector(client)
        with pytest.raises(PermanentConnectorError):
            await connector.get_design_context("https://example.com/nothing")
        client.call_tool.assert_not_awaited()


class TestToolGenerationConnector:
    @pytest.mark.asyncio
    async def test_analysis_parsing(self):
        payload = {
            "blockName": "cards",
            "blockType": "multi-item",
            "contentStructure": {
                "containerFields": [{"name": "title", "type": "text", "label": "Title", "component": "text"}],
                "itemFields": [{"name": "image", "type": "reference", "label": "Image", "component": "reference"}],
            },
            "designTokens": {"colors": ["#fff"], "typography": [], "spacing": ["8px"]},
            "interactiveElements": ["button"],
        }
        connector = ToolGenerationConnector(_client(ToolResult(success=True, data=json.dumps(payload))))

        analysis = await connector.analyze_structure("<div/>")

        assert analysis.name == "cards"
        assert analysis.block_type == "multi-item"
        assert [f.name for f in analysis.item_fields] == ["image"]
        assert analysis.design_tokens.spacing == ["8px"]
        assert analysis.interactive_elements == ["button"]

    @pytest.mark.asyncio
    async def test_malformed_analysis_is_permanent(self):
        connector = ToolGenerationConnector(_client(ToolResult(success=True, data="{not json")))
        with pytest.raises(PermanentConnectorError):
            await connector.analyze_structure("<div/>")

    @pytest.mark.asyncio
    async def test_generation_disables_inline_validation(self):
        payload = {"files": {"css": ".a{}", "javascript": "export default 1", "model": None}}
        client = _client(ToolResult(success=True, data=payload))
        connector = ToolGenerationConnector(client)

        artifacts = await connector.generate_artifacts("cards", "./blocks", "<div/>", WorkflowOptions())

        assert artifacts.output_dir == "./blocks/cards"
        assert set(artifacts.files) == {"css", "javascript"}
        arguments = client.call_tool.await_args.args[1]
        assert arguments["options"] == {"validateOutput": False}
        assert arguments["persistContext"] is True

    @pytest.mark.asyncio
    async def test_validation_status(self):
        payload = {"validated": False, "errors": ["missing css"], "warnings": ["unused token"]}
        connector = ToolGenerationConnector(_client(ToolResult(success=True, data=payload)))

        result = await connector.validate_output("./blocks/cards", "cards", strict=True)

        assert result.status == "FAILED"
        assert not result.passed
        assert result.warnings == ["unused token"]

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        connector = ToolGenerationConnector(_client(ToolResult(success=False, error="429 Too Many Requests")))
        with pytest.raises(TransientConnectorError):
            await connector.validate_output("./blocks/cards", "cards")


class TestFileCatalogConnector:
    @pytest.mark.asyncio
    async def test_register_persists_entries(self, tmp_path):
        catalog_path = tmp_path / "catalog" / "blocks.json"
        connector = FileCatalogConnector(catalog_path)

        entry = await connector.register("cards", "./blocks/cards")
        await connector.register("hero", "./blocks/hero")
        await connector.register("cards", "./blocks/cards-v2")

        assert entry["name"] == "cards"
        document = json.loads(catalog_path.read_text())
        assert set(document["blocks"]) == {"cards", "hero"}
        assert document["blocks"]["cards"]["path"] == "./blocks/cards-v2"
        assert [e["name"] for e in FileCatalogConnector(catalog_path).entries()] == ["cards", "hero"]

    @pytest.mark.asyncio
    async def test_corrupt_catalog_is_permanent(self, tmp_path):
        catalog_path = tmp_path / "blocks.json"
        catalog_path.write_text("[broken")
        with pytest.raises(PermanentConnectorError):
            await FileCatalogConnector(catalog_path).register("cards", "./blocks/cards")

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, tmp_path):
        with pytest.raises(PermanentConnectorError):
            await FileCatalogConnector(tmp_path / "blocks.json").register("", "./blocks")

    @pytest.mark.asyncio
    async def test_failed_write_removes_temp_file(self, tmp_path, monkeypatch):
        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("block_builder.connectors.catalog.os.replace", fail_replace)
        catalog_path = tmp_path / "blocks.json"

        with pytest.raises(TransientConnectorError, match="disk full"):
            await FileCatalogConnector(catalog_path).register("cards", "./blocks/cards")

        assert list(tmp_path.glob("*.tmp")) == []
        assert not catalog_path.exists()
