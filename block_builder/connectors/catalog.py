"""Catalog connector that records registrations in a JSON file."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List

from ..models.workflow import utc_now
from .base import CatalogConnector, PermanentConnectorError, TransientConnectorError

logger = logging.getLogger(__name__)


class FileCatalogConnector(CatalogConnector):
    """Keeps ``{"blocks": {name: entry}}`` in a JSON file.

    Registering a name again replaces its entry. Writes go through a
    temporary file and an atomic rename.
    """

    name = "catalog"

    def __init__(self, catalog_path: Path) -> None:
        self.catalog_path = Path(catalog_path)
        self._lock = Lock()

    async def register(self, name: str, path: str) -> Dict[str, Any]:
        if not name:
            raise PermanentConnectorError("Block name is required for registration", connector=self.name)
        return await asyncio.to_thread(self._register_sync, name, path)

    def entries(self) -> List[Dict[str, Any]]:
        """Return catalog entries sorted by name."""
        with self._lock:
            blocks = self._read()["blocks"]
        return [blocks[key] for key in sorted(blocks)]

    def _register_sync(self, name: str, path: str) -> Dict[str, Any]:
        entry = {"name": name, "path": path, "registered_at": utc_now().isoformat()}
        with self._lock:
            catalog = self._read()
            catalog["blocks"][name] = entry
            self._write(catalog)
        logger.info(f"Registered block '{name}' in catalog {self.catalog_path}")
        return entry

    def _read(self) -> Dict[str, Any]:
        if not self.catalog_path.exists():
            return {"blocks": {}}
        try:
            data = json.loads(self.catalog_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PermanentConnectorError(
                f"Catalog file {self.catalog_path} is corrupt: {e}", connector=self.name
            ) from e
        except OSError as e:
            raise TransientConnectorError(f"Cannot read catalog: {e}", connector=self.name) from e
        if not isinstance(data.get("blocks"), dict):
            data["blocks"] = {}
        return data

    def _write(self, catalog: Dict[str, Any]) -> None:
        tmp_name = None
        try:
            self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.catalog_path.parent, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(catalog, f, indent=2)
            os.replace(tmp_name, self.catalog_path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise TransientConnectorError(f"Cannot write catalog: {e}", connector=self.name) from e
