import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from ..models import LiveResource
from ..normalizer import normalize_provider_name
from .inventory_file import InventoryError

logger = logging.getLogger(__name__)


def provider_from_state(provider_field: str) -> str:
    """
    'provider["registry.terraform.io/hashicorp/aws"]' -> "aws".
    Also handles the legacy 'provider.aws' form and aliased providers.
    """
    if not provider_field:
        return "unknown"
    value = provider_field
    if "[" in value and "]" in value:
        value = value[value.index("[") + 1 : value.rindex("]")].strip('"')
    elif value.startswith("provider."):
        value = value[len("provider.") :]
    value = value.rsplit("/", 1)[-1]
    value = value.split(".", 1)[0]
    return normalize_provider_name(value)


def instance_name(name: str, index_key: Any) -> str:
    if index_key is None:
        return name
    if isinstance(index_key, str):
        return f'{name}["{index_key}"]'
    return f"{name}[{index_key}]"


class TerraformStateConnector:
    """
    Treats a Terraform state file (version 3+) as the inventory of what is
    deployed. Only managed resources are reported, one per instance.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def fetch_live_resources(self) -> List[LiveResource]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except OSError as e:
            raise InventoryError(f"Error reading Terraform state file {self.path}: {e}") from e
        except ValueError as e:
            raise InventoryError(f"Invalid JSON in Terraform state file {self.path}: {e}") from e
        if not isinstance(state, dict):
            raise InventoryError(f"Terraform state file {self.path} is not a JSON object")

        version = state.get("version")
        if isinstance(version, int) and version < 3:
            raise InventoryError(f"Unsupported Terraform state version {version} in {self.path}")

        entries = state.get("resources") or []
        if not isinstance(entries, list):
            raise InventoryError(f"Terraform state file {self.path}: 'resources' must be a list")

        resources: List[LiveResource] = []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("mode", "managed") != "managed":
                continue
            resource_type = entry.get("type")
            name = entry.get("name")
            if not resource_type or not name:
                logger.warning("Skipping state entry without type or name in %s", self.path)
                continue
            provider = provider_from_state(entry.get("provider", ""))
            module = entry.get("module")

            instances = entry.get("instances") or []
            if not isinstance(instances, list):
                logger.warning("Skipping %s.%s in %s: 'instances' is not a list", resource_type, name, self.path)
                continue
            for instance in instances:
                if not isinstance(instance, dict):
                    logger.warning("Skipping malformed instance of %s.%s in %s", resource_type, name, self.path)
                    continue
                attributes = instance.get("attributes") or {}
                if not isinstance(attributes, dict):
                    logger.warning("Skipping instance of %s.%s in %s: attributes are not an object", resource_type, name, self.path)
                    continue
                full_name = instance_name(name, instance.get("index_key"))
                if module:
                    full_name = f"{module}.{full_name}"
                resources.append(
                    LiveResource(
                        provider=provider,
                        type=resource_type,
                        name=full_name,
                        resource_id=str(attributes.get("id") or ""),
                        region=str(attributes.get("region") or ""),
                        status=str(instance.get("status") or ""),
                        configuration=attributes,
                    )
                )
        logger.info("Loaded %d resource instance(s) from state %s", len(resources), self.path)
        return resources
