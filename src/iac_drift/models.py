import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

# Wire form of an UnresolvedRef: {"$unresolved": kind, "target": ...}
MARKER_KEY = "$unresolved"


class SourceFormat(str, Enum):
    TERRAFORM = "terraform"
    CLOUDFORMATION = "cloudformation"
    KUBERNETES = "kubernetes"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DriftCategory(str, Enum):
    MISSING = "missing"  # Declared in IaC, not deployed
    SHADOW = "shadow"  # Deployed, not declared in IaC
    MODIFIED = "modified"  # Both sides present, configuration differs


class ChangeKind(str, Enum):
    MISSING_IN_ACTUAL = "missing_in_actual"
    ADDED_IN_ACTUAL = "added_in_actual"
    MODIFIED = "modified"


class UnresolvedRef(BaseModel):
    """
    An expression kept verbatim because it cannot be evaluated statically.

    `kind` tags where it came from: `_expr` / `_template` for Terraform,
    `_ref`, `_getatt`, `_sub`, ... for CloudFormation intrinsic functions.
    `target` holds the expression text or the function arguments.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    target: Any = None

    def as_plain(self) -> Dict[str, Any]:
        return {MARKER_KEY: self.kind, "target": to_plain(self.target)}

    @model_serializer
    def _serialize(self) -> Dict[str, Any]:
        return self.as_plain()


def to_plain(value: Any) -> Any:
    """Converts a configuration value into plain JSON-compatible data."""
    if isinstance(value, UnresolvedRef):
        return value.as_plain()
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def revive_markers(value: Any) -> Any:
    """Turns the wire form of markers back into UnresolvedRef, recursively."""
    if isinstance(value, dict):
        if set(value) == {MARKER_KEY, "target"} and isinstance(value[MARKER_KEY], str):
            return UnresolvedRef(kind=value[MARKER_KEY], target=revive_markers(value["target"]))
        return {k: revive_markers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [revive_markers(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """Stable serialization used for structural equality checks."""
    return json.dumps(
        to_plain(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


class Lifecycle(BaseModel):
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: List[str] = Field(default_factory=list)


class CanonicalResource(BaseModel):
    """One declared resource, whatever format it was written in."""

    source_format: SourceFormat
    address: str  # Unique within one parse: "type.name", logical ID, "Kind/ns/name"
    resource_type: str  # Normalized taxonomy name, e.g. "ec2_instance"
    raw_type: str  # As written in the source, e.g. "aws_instance"
    name: str
    provider: str
    configuration: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Terraform meta-arguments
    count: Any = None
    for_each: Any = None
    lifecycle: Optional[Lifecycle] = None
    severity_hint: Optional[Severity] = None
    source_name: Optional[str] = None
    # Tenant tags, set by map_to_resources
    definition_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("configuration", "count", "for_each", mode="before")
    @classmethod
    def markers_from_wire_form(cls, v: Any) -> Any:
        return revive_markers(v)

    @field_validator("depends_on")
    @classmethod
    def dedupe_depends_on(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))


class ParseError(BaseModel):
    """A recoverable problem with one block, resource or document."""

    source_name: str
    context: str
    cause: str
    index: Optional[int] = None
    identifier: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.context}: {self.cause}"


# --- Format-specific declarations that are not resources ---


class TerraformModuleCall(BaseModel):
    name: str
    source: Optional[str] = None
    version: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
    source_name: Optional[str] = None


class TerraformVariable(BaseModel):
    name: str
    type: Optional[str] = None
    description: Optional[str] = None
    default: Any = None
    sensitive: bool = False
    validations: List[Dict[str, Any]] = Field(default_factory=list)


class TerraformOutput(BaseModel):
    name: str
    value: Any = None
    description: Optional[str] = None
    sensitive: bool = False


class TerraformProviderConfig(BaseModel):
    name: str
    provider: str  # Normalized cloud name ("gcp" for "google")
    alias: Optional[str] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)


class TerraformProviderRequirement(BaseModel):
    source: Optional[str] = None
    version: Optional[str] = None


class TerraformSettings(BaseModel):
    required_version: Optional[str] = None
    required_providers: Dict[str, TerraformProviderRequirement] = Field(
        default_factory=dict
    )
    backend: Optional[str] = None
    backend_configuration: Dict[str, Any] = Field(default_factory=dict)


class TerraformDeclarations(BaseModel):
    modules: List[TerraformModuleCall] = Field(default_factory=list)
    variables: List[TerraformVariable] = Field(default_factory=list)
    outputs: List[TerraformOutput] = Field(default_factory=list)
    providers: List[TerraformProviderConfig] = Field(default_factory=list)
    data_sources: List[CanonicalResource] = Field(default_factory=list)
    settings: Optional[TerraformSettings] = None


class CloudFormationParameter(BaseModel):
    name: str
    type: Optional[str] = None
    default: Any = None
    description: Optional[str] = None
    allowed_values: List[Any] = Field(default_factory=list)
    no_echo: bool = False


class CloudFormationOutput(BaseModel):
    name: str
    value: Any = None
    description: Optional[str] = None
    export_name: Any = None
    condition: Optional[str] = None


class CloudFormationDeclarations(BaseModel):
    format_version: Optional[str] = None
    description: Optional[str] = None
    parameters: List[CloudFormationParameter] = Field(default_factory=list)
    outputs: List[CloudFormationOutput] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    transform: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ParseResult(BaseModel):
    """Everything one parse produced. Not modified after construction."""

    model_config = ConfigDict(frozen=True)

    source_format: SourceFormat
    source_name: str
    resources: List[CanonicalResource] = Field(default_factory=list)
    errors: List[ParseError] = Field(default_factory=list)
    terraform: Optional[TerraformDeclarations] = None
    cloudformation: Optional[CloudFormationDeclarations] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def nothing_parseable(self) -> bool:
        return not self.resources and bool(self.errors)

    @property
    def status(self) -> str:
        if self.nothing_parseable:
            return "nothing_parseable"
        if self.errors:
            return "partial"
        if not self.resources:
            return "empty"
        return "ok"

    def error_messages(self) -> List[str]:
        return [str(e) for e in self.errors]

    def summary(self) -> str:
        if self.nothing_parseable:
            return f"nothing parseable found in {self.source_name} ({len(self.errors)} error(s))"
        if self.errors:
            return (
                f"partially parsed {self.source_name}: {len(self.resources)} resource(s), "
                f"{len(self.errors)} error(s)"
            )
        return f"parsed {self.source_name}: {len(self.resources)} resource(s)"


# --- Deployed state and drift output ---


class LiveResource(BaseModel):
    """A deployed resource as reported by an inventory source."""

    provider: str
    type: str  # Provider-native type, e.g. "aws_instance" or "AWS::S3::Bucket"
    name: str
    resource_id: str = ""
    region: str = ""
    status: str = ""
    configuration: str = ""  # JSON-encoded object

    @field_validator("configuration", mode="before")
    @classmethod
    def encode_configuration(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v

    @field_validator("resource_id", "region", "status", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class FieldChange(BaseModel):
    field: str
    declared_value: Any = None
    actual_value: Any = None
    change_kind: ChangeKind


class DriftDetails(BaseModel):
    message: str
    remediation: str


class DriftRecord(BaseModel):
    category: DriftCategory
    iac_resource: Optional[CanonicalResource] = None  # Absent for shadow resources
    actual_resource: Optional[LiveResource] = None  # Absent for missing resources
    severity: Severity
    field_changes: List[FieldChange] = Field(default_factory=list)
    details: DriftDetails

    @property
    def resource_type(self) -> str:
        if self.iac_resource is not None:
            return self.iac_resource.resource_type
        return self.actual_resource.type if self.actual_resource else ""

    @property
    def resource_label(self) -> str:
        if self.iac_resource is not None:
            return self.iac_resource.address
        if self.actual_resource is not None:
            return f"{self.actual_resource.type}.{self.actual_resource.name}"
        return ""
