import json
import logging
import re
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from ..models import (
    CanonicalResource,
    ChangeKind,
    DriftCategory,
    DriftDetails,
    DriftRecord,
    FieldChange,
    LiveResource,
    Severity,
    SourceFormat,
    UnresolvedRef,
    canonical_json,
)
from ..normalizer import normalize_live_type, normalize_provider_name
from .remediation import drift_message, remediation_hint

logger = logging.getLogger(__name__)

# Fields the platform fills in after creation. Format-wide lists apply to every
# resource of that format, type lists on top of that.
DEFAULT_COMPUTED_FIELDS_BY_FORMAT: Dict[SourceFormat, List[str]] = {
    SourceFormat.TERRAFORM: [
        "id",
        "arn",
        "self_link",
        "tags_all",
        "owner_id",
        "unique_id",
        "created_at",
        "updated_at",
        "creation_timestamp",
        "timeouts",
    ],
    SourceFormat.CLOUDFORMATION: [
        "id",
        "arn",
        "Arn",
        "StackId",
        "CreationTime",
        "LastUpdatedTime",
        "created_at",
        "updated_at",
    ],
    SourceFormat.KUBERNETES: [
        "uid",
        "resourceVersion",
        "selfLink",
        "creationTimestamp",
        "managedFields",
    ],
}

# Envelope keys that are only skipped on the resource itself. Nested keys with
# the same names (spec.template.metadata, roleRef.kind) are compared.
DEFAULT_TOP_LEVEL_FIELDS_BY_FORMAT: Dict[SourceFormat, List[str]] = {
    SourceFormat.KUBERNETES: ["apiVersion", "kind", "metadata", "status"],
}

DEFAULT_COMPUTED_FIELDS_BY_TYPE: Dict[str, List[str]] = {
    "ec2_instance": [
        "private_dns",
        "public_dns",
        "public_ip",
        "private_ip",
        "ipv6_addresses",
        "ebs_block_device",
        "root_block_device",
        "outpost_arn",
        "primary_network_interface_id",
        "instance_state",
        "instance_id",
    ],
    "s3_bucket": [
        "bucket_domain_name",
        "bucket_regional_domain_name",
        "hosted_zone_id",
        "region",
    ],
    "gce_instance": ["instance_id", "cpu_platform", "current_status", "label_fingerprint"],
    "gcs_bucket": ["url"],
    "azure_vm": ["virtual_machine_id", "private_ip_address", "public_ip_address"],
    "k8s_service": [
        "clusterIP",
        "clusterIPs",
        "internalTrafficPolicy",
        "ipFamilies",
        "ipFamilyPolicy",
        "sessionAffinity",
    ],
}

DEFAULT_SEVERITY: Dict[DriftCategory, Severity] = {
    DriftCategory.MISSING: Severity.MEDIUM,
    DriftCategory.MODIFIED: Severity.MEDIUM,
    DriftCategory.SHADOW: Severity.LOW,
}

_ESCALATING_HINTS = (Severity.HIGH, Severity.CRITICAL)


class ComputedFieldPolicy(BaseModel):
    """Which configuration fields to leave out of drift comparison."""

    by_format: Dict[SourceFormat, FrozenSet[str]] = Field(default_factory=dict)
    by_type: Dict[str, FrozenSet[str]] = Field(default_factory=dict)
    # Skipped on the resource itself only, never inside nested mappings
    top_level_by_format: Dict[SourceFormat, FrozenSet[str]] = Field(default_factory=dict)
    # Formats whose computed fields are dropped at every depth (Kubernetes
    # puts clusterIP under spec), not only at the top level.
    nested_formats: FrozenSet[SourceFormat] = frozenset({SourceFormat.KUBERNETES})

    def fields_for(self, resource: CanonicalResource) -> FrozenSet[str]:
        fields: Set[str] = set(self.by_format.get(resource.source_format, ()))
        fields |= self.by_type.get(resource.resource_type, frozenset())
        fields |= self.by_type.get(resource.raw_type, frozenset())
        return frozenset(fields)

    def top_level_fields_for(self, resource: CanonicalResource) -> FrozenSet[str]:
        return self.top_level_by_format.get(resource.source_format, frozenset())


def default_computed_field_policy() -> ComputedFieldPolicy:
    return ComputedFieldPolicy(
        by_format={k: frozenset(v) for k, v in DEFAULT_COMPUTED_FIELDS_BY_FORMAT.items()},
        by_type={k: frozenset(v) for k, v in DEFAULT_COMPUTED_FIELDS_BY_TYPE.items()},
        top_level_by_format={k: frozenset(v) for k, v in DEFAULT_TOP_LEVEL_FIELDS_BY_FORMAT.items()},
    )


def values_equal(declared: Any, actual: Any) -> bool:
    """Structural equality: key order is irrelevant, list order is not."""
    return canonical_json(declared) == canonical_json(actual)


def compare_configurations(
    declared: Dict[str, Any],
    actual: Dict[str, Any],
    computed_fields: Iterable[str] = (),
    nested_computed: bool = False,
    ignored_fields: Iterable[str] = (),
    ignore_unresolved: bool = False,
    top_level_fields: Iterable[str] = (),
    _prefix: str = "",
) -> List[FieldChange]:
    """
    Field-by-field comparison of a declared configuration with a deployed one.

    Nested mappings are compared recursively and reported with dotted paths;
    every other value (lists included) is compared as a whole.

    Args:
        declared: Configuration from the IaC definition.
        actual: Configuration reported by the inventory.
        computed_fields: Keys to skip on both sides.
        nested_computed: Skip computed keys at every depth, not just the top level.
        ignored_fields: Dotted paths to skip (Terraform lifecycle.ignore_changes).
        ignore_unresolved: Skip declared values that are unresolved references.
        top_level_fields: Keys to skip on both sides at this level only.

    Returns:
        A list of FieldChange objects, declared keys first, then keys only the
        deployed side has.
    """
    computed = frozenset(computed_fields)
    skipped = computed | frozenset(top_level_fields)
    ignored = frozenset(ignored_fields)
    changes: List[FieldChange] = []

    for key, declared_value in declared.items():
        path = f"{_prefix}{key}"
        if key in skipped or path in ignored:
            continue
        if ignore_unresolved and isinstance(declared_value, UnresolvedRef):
            continue
        if key not in actual:
            changes.append(
                FieldChange(
                    field=path,
                    declared_value=declared_value,
                    actual_value=None,
                    change_kind=ChangeKind.MISSING_IN_ACTUAL,
                )
            )
            continue
        actual_value = actual[key]
        if isinstance(declared_value, dict) and isinstance(actual_value, dict):
            changes.extend(
                compare_configurations(
                    declared_value,
                    actual_value,
                    computed if nested_computed else (),
                    nested_computed,
                    ignored,
                    ignore_unresolved,
                    _prefix=f"{path}.",
                )
            )
        elif not values_equal(declared_value, actual_value):
            changes.append(
                FieldChange(
                    field=path,
                    declared_value=declared_value,
                    actual_value=actual_value,
                    change_kind=ChangeKind.MODIFIED,
                )
            )

    for key, actual_value in actual.items():
        path = f"{_prefix}{key}"
        if key in declared or key in skipped or path in ignored:
            continue
        changes.append(
            FieldChange(
                field=path,
                declared_value=None,
                actual_value=actual_value,
                change_kind=ChangeKind.ADDED_IN_ACTUAL,
            )
        )

    return changes


def decode_live_configuration(live: LiveResource) -> Optional[Dict[str, Any]]:
    """The inventory's configuration as a mapping, or None when it cannot be compared."""
    if not live.configuration or not live.configuration.strip():
        return None
    try:
        decoded = json.loads(live.configuration)
    except ValueError as e:
        logger.debug("Skipping field diff for %s.%s: configuration is not JSON (%s)", live.type, live.name, e)
        return None
    if not isinstance(decoded, dict):
        logger.debug("Skipping field diff for %s.%s: configuration is not an object", live.type, live.name)
        return None
    return decoded


def _lookup_key(provider: str, resource_type: str, name: str) -> str:
    return f"{provider}:{resource_type}:{name}"


def build_live_index(live: List[LiveResource]) -> Dict[str, int]:
    """
    Maps lookup keys to positions in `live`. Each entry is indexed by name and,
    when present, by resource ID, under both its raw and its normalized type.
    The first entry to claim a key keeps it.
    """
    index: Dict[str, int] = {}
    for position, resource in enumerate(live):
        provider = normalize_provider_name(resource.provider)
        types = dict.fromkeys([resource.type, normalize_live_type(resource.provider, resource.type)])
        for resource_type in types:
            index.setdefault(_lookup_key(provider, resource_type, resource.name), position)
            if resource.resource_id:
                index.setdefault(_lookup_key(provider, resource_type, resource.resource_id), position)
    return index


def match_live_resource(resource: CanonicalResource, index: Dict[str, int]) -> Optional[int]:
    """Exact name first, then the last segment of a dotted address."""
    position = index.get(_lookup_key(resource.provider, resource.resource_type, resource.name))
    if position is not None:
        return position
    if "." in resource.address:
        short_name = resource.address.rsplit(".", 1)[-1]
        if short_name:
            return index.get(_lookup_key(resource.provider, resource.resource_type, short_name))
    return None


_MODULE_PREFIX_RE = re.compile(r"^(?:module\.[^.\[]+(?:\[[^\]]*\])?\.)+")
_INSTANCE_KEY_RE = re.compile(r"\[[^\]]*\]$")


def base_instance_name(name: str) -> str:
    """'module.net.web[0]' -> 'web': the name a state instance was declared under."""
    return _INSTANCE_KEY_RE.sub("", _MODULE_PREFIX_RE.sub("", name))


def build_instance_index(live: List[LiveResource]) -> Dict[str, List[int]]:
    """
    Groups count / for_each instances and module-nested resources (names like
    `web[0]` or `module.net.web`) under their base name, in inventory order.
    """
    index: Dict[str, List[int]] = {}
    for position, resource in enumerate(live):
        base_name = base_instance_name(resource.name)
        if not base_name or base_name == resource.name:
            continue
        provider = normalize_provider_name(resource.provider)
        for resource_type in dict.fromkeys([resource.type, normalize_live_type(resource.provider, resource.type)]):
            index.setdefault(_lookup_key(provider, resource_type, base_name), []).append(position)
    return index


def match_live_instances(resource: CanonicalResource, instance_index: Dict[str, List[int]]) -> List[int]:
    names = [resource.name]
    if "." in resource.address:
        names.append(resource.address.rsplit(".", 1)[-1])
    for name in names:
        positions = instance_index.get(_lookup_key(resource.provider, resource.resource_type, name))
        if positions:
            return positions
    return []


def severity_for(category: DriftCategory, resource: Optional[CanonicalResource] = None) -> Severity:
    if category != DriftCategory.SHADOW and resource is not None and resource.severity_hint in _ESCALATING_HINTS:
        return resource.severity_hint
    return DEFAULT_SEVERITY[category]


def _details(category: DriftCategory, label: str) -> DriftDetails:
    return DriftDetails(message=drift_message(category, label), remediation=remediation_hint(category))


def _ignored_changes(resource: CanonicalResource) -> Optional[List[str]]:
    """lifecycle.ignore_changes of a Terraform resource; None means ignore everything."""
    if resource.lifecycle is None:
        return []
    if "all" in resource.lifecycle.ignore_changes:
        return None
    return resource.lifecycle.ignore_changes


def detect_drift(
    declared: List[CanonicalResource],
    live: List[LiveResource],
    computed_fields: Optional[ComputedFieldPolicy] = None,
    ignore_unresolved: bool = False,
) -> List[DriftRecord]:
    """
    Compares declared resources with deployed ones.

    Args:
        declared: Resources from the IaC definition.
        live: Resources reported by the inventory.
        computed_fields: Fields to leave out of comparisons. Defaults to
                         default_computed_field_policy().
        ignore_unresolved: Do not report declared values that are unresolved
                           references as drift.

    Returns:
        Missing and modified records in declared order, then shadow records
        in inventory order.
    """
    policy = computed_fields or default_computed_field_policy()
    index = build_live_index(live)
    instance_index = build_instance_index(live)
    matched: Set[int] = set()
    records: List[DriftRecord] = []

    for resource in declared:
        position = match_live_resource(resource, index)
        positions = [position] if position is not None else match_live_instances(resource, instance_index)
        if not positions:
            records.append(
                DriftRecord(
                    category=DriftCategory.MISSING,
                    iac_resource=resource,
                    severity=severity_for(DriftCategory.MISSING, resource),
                    details=_details(DriftCategory.MISSING, resource.address),
                )
            )
            continue

        matched.update(positions)
        ignored = _ignored_changes(resource)
        if ignored is None:
            continue

        # One record per drifted instance of a count / for_each resource
        for position in positions:
            live_resource = live[position]
            actual_configuration = decode_live_configuration(live_resource)
            if actual_configuration is None:
                continue
            changes = compare_configurations(
                resource.configuration,
                actual_configuration,
                computed_fields=policy.fields_for(resource),
                nested_computed=resource.source_format in policy.nested_formats,
                ignored_fields=ignored,
                ignore_unresolved=ignore_unresolved,
                top_level_fields=policy.top_level_fields_for(resource),
            )
            if changes:
                records.append(
                    DriftRecord(
                        category=DriftCategory.MODIFIED,
                        iac_resource=resource,
                        actual_resource=live_resource,
                        severity=severity_for(DriftCategory.MODIFIED, resource),
                        field_changes=changes,
                        details=_details(DriftCategory.MODIFIED, resource.address),
                    )
                )

    for position, live_resource in enumerate(live):
        if position in matched:
            continue
        records.append(
            DriftRecord(
                category=DriftCategory.SHADOW,
                actual_resource=live_resource,
                severity=severity_for(DriftCategory.SHADOW),
                details=_details(DriftCategory.SHADOW, f"{live_resource.type}.{live_resource.name}"),
            )
        )

    logger.info(
        "Drift detection: %d declared, %d deployed, %d drift record(s)",
        len(declared),
        len(live),
        len(records),
    )
    return records
