"""
CloudFormation template parser (JSON and YAML).

Intrinsic functions are never evaluated. They are rewritten into
`UnresolvedRef` markers so that `{"Ref": "X"}` in JSON and `!Ref X` in YAML
end up identical.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..models import (
    CanonicalResource,
    CloudFormationDeclarations,
    CloudFormationOutput,
    CloudFormationParameter,
    ParseError,
    ParseResult,
    SourceFormat,
    UnresolvedRef,
)
from ..normalizer import normalize_type, severity_hint_for
from .common import IaCParseFailure, decode_content, plain_yaml_value, read_file

logger = logging.getLogger(__name__)

INTRINSIC_FUNCTIONS: Dict[str, str] = {
    "Ref": "_ref",
    "Fn::GetAtt": "_getatt",
    "Fn::Sub": "_sub",
    "Fn::Join": "_join",
    "Fn::Select": "_select",
    "Fn::GetAZs": "_getazs",
    "Fn::FindInMap": "_findinmap",
    "Fn::Base64": "_base64",
    "Fn::If": "_if",
    "Fn::ImportValue": "_importvalue",
    "Fn::Split": "_split",
    "Fn::Cidr": "_cidr",
}

VALID_TYPE_PREFIXES = ("AWS::", "Custom::", "Alexa::")

# Resource attributes that are not Properties but matter to the stack.
RESOURCE_METADATA_KEYS = (
    "Condition",
    "DeletionPolicy",
    "UpdateReplacePolicy",
    "UpdatePolicy",
    "CreationPolicy",
    "Metadata",
)


class CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that understands the short-form intrinsic tags (`!Ref`, `!GetAtt`, ...)."""


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Dict[str, Any]:
    if tag_suffix in ("Ref", "Condition"):
        function = tag_suffix
    else:
        function = f"Fn::{tag_suffix}"
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {function: value}


CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


def load_template(text: str, source_name: str) -> Dict[str, Any]:
    """Decodes a template body, choosing JSON or YAML by file extension."""
    suffix = Path(source_name).suffix.lower()
    try:
        if suffix == ".json":
            template = json.loads(text)
        elif suffix in (".yaml", ".yml"):
            template = yaml.load(text, Loader=CloudFormationLoader)
        else:
            try:
                template = json.loads(text)
            except ValueError:
                template = yaml.load(text, Loader=CloudFormationLoader)
    except (ValueError, yaml.YAMLError) as e:
        raise IaCParseFailure(f"{source_name}: not a valid JSON or YAML template: {e}") from e

    if not isinstance(template, dict):
        raise IaCParseFailure(f"{source_name}: template must be a mapping at the top level")
    if not isinstance(template.get("Resources"), dict):
        raise IaCParseFailure(f"{source_name}: template has no Resources section")
    return plain_yaml_value(template)


def rewrite_intrinsics(value: Any) -> Any:
    """Replaces intrinsic-function mappings with `UnresolvedRef`, recursively."""
    if isinstance(value, list):
        return [rewrite_intrinsics(v) for v in value]
    if not isinstance(value, dict):
        return value
    if len(value) == 1:
        function, argument = next(iter(value.items()))
        kind = INTRINSIC_FUNCTIONS.get(function)
        if kind == "_ref" and isinstance(argument, str):
            return UnresolvedRef(kind=kind, target=argument)
        if kind == "_getatt":
            if isinstance(argument, str) and "." in argument:
                argument = argument.split(".", 1)
            return UnresolvedRef(kind=kind, target=rewrite_intrinsics(argument))
        if kind == "_join" and isinstance(argument, list) and len(argument) == 2:
            return UnresolvedRef(
                kind=kind,
                target={"delimiter": argument[0], "values": rewrite_intrinsics(argument[1])},
            )
        if kind is not None and kind != "_ref":
            return UnresolvedRef(kind=kind, target=rewrite_intrinsics(argument))
    return {k: rewrite_intrinsics(v) for k, v in value.items()}


def _depends_on_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    return None


def validate_template(template: Dict[str, Any], source_name: str = "<template>") -> List[ParseError]:
    """
    Structural checks that do not stop parsing: resource type prefixes,
    dangling DependsOn targets and empty templates.
    """
    findings: List[ParseError] = []
    resources = template.get("Resources") or {}
    if not resources:
        findings.append(
            ParseError(
                source_name=source_name,
                context=f"template {source_name}",
                cause="template must contain at least one resource",
            )
        )
        return findings

    for logical_id, definition in resources.items():
        if not isinstance(definition, dict):
            continue
        resource_type = definition.get("Type")
        if isinstance(resource_type, str) and resource_type and not resource_type.startswith(VALID_TYPE_PREFIXES):
            findings.append(
                ParseError(
                    source_name=source_name,
                    context=f"resource {logical_id}",
                    cause=f"invalid resource type '{resource_type}': must start with AWS::, Custom:: or Alexa::",
                    identifier=logical_id,
                )
            )
        for target in _depends_on_list(definition.get("DependsOn")) or []:
            if target not in resources:
                findings.append(
                    ParseError(
                        source_name=source_name,
                        context=f"resource {logical_id}",
                        cause=f"resource {logical_id}: DependsOn references non-existent resource {target}",
                        identifier=logical_id,
                    )
                )
    return findings


def _declarations(template: Dict[str, Any]) -> CloudFormationDeclarations:
    parameters = []
    for name, spec in (template.get("Parameters") or {}).items():
        spec = spec if isinstance(spec, dict) else {}
        parameters.append(
            CloudFormationParameter(
                name=name,
                type=spec.get("Type"),
                default=spec.get("Default"),
                description=spec.get("Description"),
                allowed_values=spec.get("AllowedValues") or [],
                no_echo=str(spec.get("NoEcho", "")).lower() == "true",
            )
        )

    outputs = []
    for name, spec in (template.get("Outputs") or {}).items():
        spec = spec if isinstance(spec, dict) else {}
        export = spec.get("Export")
        outputs.append(
            CloudFormationOutput(
                name=name,
                value=rewrite_intrinsics(spec.get("Value")),
                description=spec.get("Description"),
                export_name=rewrite_intrinsics(export.get("Name")) if isinstance(export, dict) else None,
                condition=spec.get("Condition"),
            )
        )

    format_version = template.get("AWSTemplateFormatVersion")
    return CloudFormationDeclarations(
        format_version=str(format_version) if format_version is not None else None,
        description=template.get("Description"),
        parameters=parameters,
        outputs=outputs,
        conditions=list((template.get("Conditions") or {}).keys()),
        transform=template.get("Transform"),
        metadata=template.get("Metadata") or {},
    )


def parse_cloudformation_content(content: Union[bytes, str], source_name: str) -> ParseResult:
    """
    Parses a CloudFormation template into canonical resources.

    Resources without a usable `Type` are reported and skipped; validation
    findings are reported and the resource is kept.

    Raises:
        IaCParseFailure: empty or undecodable content, neither JSON nor YAML,
            or no `Resources` mapping at the top level.
    """
    text = decode_content(content, source_name)
    template = load_template(text, source_name)

    resources: List[CanonicalResource] = []
    errors: List[ParseError] = []

    for index, (logical_id, definition) in enumerate(template["Resources"].items()):
        logical_id = str(logical_id)

        def error(cause: str) -> None:
            err = ParseError(
                source_name=source_name,
                context=f"resource {logical_id}",
                cause=cause,
                index=index,
                identifier=logical_id,
            )
            logger.warning("%s", err)
            errors.append(err)

        if not isinstance(definition, dict):
            error("resource definition must be a mapping")
            continue
        raw_type = definition.get("Type")
        if not isinstance(raw_type, str) or not raw_type:
            error("resource type is required")
            continue
        properties = definition.get("Properties", {})
        if properties is None:
            properties = {}
        if not isinstance(properties, dict):
            error("Properties must be a mapping")
            continue
        depends_on = _depends_on_list(definition.get("DependsOn"))
        if depends_on is None:
            error("DependsOn must be a string or a list of strings")
            continue

        resource_type, provider = normalize_type(SourceFormat.CLOUDFORMATION, raw_type)
        metadata = {
            key: rewrite_intrinsics(definition[key]) for key in RESOURCE_METADATA_KEYS if key in definition
        }
        resources.append(
            CanonicalResource(
                source_format=SourceFormat.CLOUDFORMATION,
                address=logical_id,
                resource_type=resource_type,
                raw_type=raw_type,
                name=logical_id,
                provider=provider,
                configuration=rewrite_intrinsics(properties),
                depends_on=depends_on,
                metadata=metadata,
                severity_hint=severity_hint_for(resource_type),
                source_name=source_name,
            )
        )

    for finding in validate_template(template, source_name):
        logger.warning("%s", finding)
        errors.append(finding)

    return ParseResult(
        source_format=SourceFormat.CLOUDFORMATION,
        source_name=source_name,
        resources=resources,
        errors=errors,
        cloudformation=_declarations(template),
    )


def parse_cloudformation_file(path: Union[str, Path]) -> ParseResult:
    return parse_cloudformation_content(read_file(path), str(path))
