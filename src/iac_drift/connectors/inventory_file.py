import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from ..models import LiveResource

logger = logging.getLogger(__name__)


class InventoryError(ValueError):
    """The inventory source could not be read at all."""


class FileInventoryConnector:
    """
    Reads deployed resources from a JSON or YAML inventory export.

    The file holds either a list of resources or a mapping with a
    `resources` list. Each entry needs `provider`, `type` and `name`;
    `configuration` may be a JSON string or an inline mapping.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> Any:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise InventoryError(f"Error reading inventory file {self.path}: {e}") from e
        try:
            if self.path.suffix.lower() == ".json":
                return json.loads(text)
            return yaml.safe_load(text)
        except (ValueError, yaml.YAMLError) as e:
            raise InventoryError(f"Invalid inventory file {self.path}: {e}") from e

    def fetch_live_resources(self) -> List[LiveResource]:
        data = self._load()
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("resources", [])
        if not isinstance(data, list):
            raise InventoryError(f"Inventory file {self.path} must contain a list of resources")

        resources: List[LiveResource] = []
        for position, entry in enumerate(data):
            if not isinstance(entry, dict):
                logger.warning("Skipping inventory entry %d in %s: not a mapping", position, self.path)
                continue
            try:
                resources.append(LiveResource(**_normalize_keys(entry)))
            except ValidationError as e:
                logger.warning("Skipping inventory entry %d in %s: %s", position, self.path, e)
        logger.info("Loaded %d deployed resource(s) from %s", len(resources), self.path)
        return resources


def _normalize_keys(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Accepts `id` / `resourceId` as aliases of `resource_id`."""
    entry = dict(entry)
    for alias in ("resourceId", "id"):
        if alias in entry and "resource_id" not in entry:
            entry["resource_id"] = entry.pop(alias)
    if entry.get("resource_id") is not None:
        entry["resource_id"] = str(entry["resource_id"])
    return entry
