import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..models import CanonicalResource, ParseError, ParseResult, SourceFormat
from ..normalizer import normalize_type, severity_hint_for
from .common import decode_content, parse_directory, plain_yaml_value, read_file

logger = logging.getLogger(__name__)

KUBERNETES_SUFFIXES = (".yaml", ".yml")

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "CustomResourceDefinition",
        "Node",
    }
)

WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet"})

# Top-level manifest fields that describe the object rather than configure it.
NON_CONFIGURATION_FIELDS = ("apiVersion", "kind", "metadata", "status")

DEFAULT_NAMESPACE = "default"
MAX_NAME_LENGTH = 253

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


class KubernetesDocumentError(ValueError):
    """A single manifest document is unusable."""


def split_documents(text: str) -> List[str]:
    """
    Splits a multi-document stream on lines that are exactly `---`.
    Blank documents are dropped; the last document needs no separator.
    """
    documents: List[str] = []
    current: List[str] = []
    for line in text.splitlines():
        if line.strip() == "---":
            if "".join(current).strip():
                documents.append("\n".join(current))
            current = []
            continue
        current.append(line)
    if "".join(current).strip():
        documents.append("\n".join(current))
    return documents


def is_valid_k8s_name(name: str) -> bool:
    """RFC 1123 subdomain: lowercase alphanumerics, '-' and '.', alphanumeric at both ends."""
    if not name or len(name) > MAX_NAME_LENGTH:
        return False
    return bool(_NAME_RE.match(name))


def is_cluster_scoped(kind: str) -> bool:
    return kind in CLUSTER_SCOPED_KINDS


def resource_address(kind: str, name: str, namespace: Optional[str]) -> str:
    if namespace:
        return f"{kind}/{namespace}/{name}"
    return f"{kind}/{name}"


def parse_document(manifest: Dict[str, Any], source_name: Optional[str] = None) -> CanonicalResource:
    """
    Builds a CanonicalResource from one decoded manifest.

    Raises:
        KubernetesDocumentError: apiVersion, kind or metadata.name is missing.
    """
    if not isinstance(manifest, dict):
        raise KubernetesDocumentError("document is not a mapping")
    api_version = manifest.get("apiVersion")
    if not api_version:
        raise KubernetesDocumentError("apiVersion is required")
    kind = manifest.get("kind")
    if not kind or not isinstance(kind, str):
        raise KubernetesDocumentError("kind is required")
    metadata = manifest.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    name = metadata.get("name")
    if name is None or name == "":
        raise KubernetesDocumentError("metadata.name is required")
    name = str(name)

    namespace: Optional[str] = None
    if not is_cluster_scoped(kind):
        namespace = metadata.get("namespace") or DEFAULT_NAMESPACE

    resource_metadata: Dict[str, Any] = {"api_version": str(api_version)}
    if namespace:
        resource_metadata["namespace"] = namespace
    if metadata.get("labels"):
        resource_metadata["labels"] = metadata["labels"]
    if metadata.get("annotations"):
        resource_metadata["annotations"] = metadata["annotations"]

    resource_type, provider = normalize_type(SourceFormat.KUBERNETES, kind)
    return CanonicalResource(
        source_format=SourceFormat.KUBERNETES,
        address=resource_address(kind, name, namespace),
        resource_type=resource_type,
        raw_type=kind,
        name=name,
        provider=provider,
        configuration={k: v for k, v in manifest.items() if k not in NON_CONFIGURATION_FIELDS},
        metadata=resource_metadata,
        severity_hint=severity_hint_for(resource_type),
        source_name=source_name,
    )


def parse_kubernetes_content(content: Union[bytes, str], source_name: str) -> ParseResult:
    """
    Parses a (possibly multi-document) manifest stream.

    Each bad document becomes a ParseError ("document N in <source>") and the
    remaining documents are still parsed.
    """
    text = decode_content(content, source_name)
    resources: List[CanonicalResource] = []
    errors: List[ParseError] = []

    for index, document in enumerate(split_documents(text), 1):
        context = f"document {index} in {source_name}"
        try:
            manifest = yaml.safe_load(document)
        except yaml.YAMLError as e:
            errors.append(ParseError(source_name=source_name, context=context, cause=f"failed to parse YAML: {e}", index=index))
            logger.warning("%s", errors[-1])
            continue
        if manifest is None:
            # Comment-only document
            continue
        try:
            resource = parse_document(plain_yaml_value(manifest), source_name)
        except KubernetesDocumentError as e:
            identifier = None
            if isinstance(manifest, dict) and manifest.get("kind"):
                identifier = str(manifest["kind"])
            errors.append(
                ParseError(source_name=source_name, context=context, cause=str(e), index=index, identifier=identifier)
            )
            logger.warning("%s", errors[-1])
            continue

        if not is_valid_k8s_name(resource.name):
            errors.append(
                ParseError(
                    source_name=source_name,
                    context=context,
                    cause=f"invalid resource name: {resource.name}",
                    index=index,
                    identifier=resource.address,
                )
            )
            logger.warning("%s", errors[-1])
        resources.append(resource)

    return ParseResult(
        source_format=SourceFormat.KUBERNETES,
        source_name=source_name,
        resources=resources,
        errors=errors,
    )


def parse_kubernetes_file(path: Union[str, Path]) -> ParseResult:
    return parse_kubernetes_content(read_file(path), str(path))


def parse_kubernetes_directory(directory: Union[str, Path], max_workers: Optional[int] = None) -> ParseResult:
    return parse_directory(
        directory,
        SourceFormat.KUBERNETES,
        KUBERNETES_SUFFIXES,
        parse_kubernetes_file,
        max_workers=max_workers,
    )


# --- Helpers over parsed resources ---


def validate_resource(resource: CanonicalResource) -> List[str]:
    """Returns human-readable problems with a parsed manifest (empty when valid)."""
    problems: List[str] = []
    kind = resource.raw_type
    if not resource.metadata.get("api_version"):
        problems.append("apiVersion is required")
    if not kind:
        problems.append("kind is required")
    if not resource.name:
        problems.append("metadata.name is required")
    elif not is_valid_k8s_name(resource.name):
        problems.append(f"invalid resource name: {resource.name}")
    namespace = resource.metadata.get("namespace")
    if namespace and not is_valid_k8s_name(namespace):
        problems.append(f"invalid namespace: {namespace}")

    if kind in WORKLOAD_KINDS or kind == "Service":
        if not resource.configuration.get("spec"):
            problems.append(f"{kind} must have a spec")
    elif kind in ("ConfigMap", "Secret"):
        if not resource.configuration.get("data") and not resource.configuration.get("stringData"):
            problems.append(f"{kind} must have data")
    return problems


def _pod_spec(resource: CanonicalResource) -> Optional[Dict[str, Any]]:
    spec = resource.configuration.get("spec")
    if not isinstance(spec, dict):
        return None
    if resource.raw_type == "Pod":
        return spec
    if resource.raw_type in WORKLOAD_KINDS:
        template = spec.get("template")
        if isinstance(template, dict) and isinstance(template.get("spec"), dict):
            return template["spec"]
    return None


def _containers(pod_spec: Dict[str, Any]) -> List[Dict[str, Any]]:
    containers = pod_spec.get("containers")
    if not isinstance(containers, list):
        return []
    return [c for c in containers if isinstance(c, dict)]


def extract_container_images(resource: CanonicalResource) -> List[str]:
    pod_spec = _pod_spec(resource)
    if pod_spec is None:
        return []
    return [str(c["image"]) for c in _containers(pod_spec) if c.get("image")]


def extract_security_context(resource: CanonicalResource) -> Dict[str, Any]:
    """
    Pod-level and per-container security contexts of a workload, as
    {"podSecurityContext": {...}, "containerSecurityContexts": {name: {...}}}.
    """
    pod_spec = _pod_spec(resource)
    if pod_spec is None:
        return {}
    result: Dict[str, Any] = {}
    if pod_spec.get("securityContext"):
        result["podSecurityContext"] = pod_spec["securityContext"]
    per_container = {
        str(c.get("name", i)): c["securityContext"]
        for i, c in enumerate(_containers(pod_spec))
        if c.get("securityContext")
    }
    if per_container:
        result["containerSecurityContexts"] = per_container
    return result


def get_resources_by_kind(resources: List[CanonicalResource], kind: str) -> List[CanonicalResource]:
    return [r for r in resources if r.raw_type == kind]


def get_resources_by_namespace(resources: List[CanonicalResource], namespace: str) -> List[CanonicalResource]:
    return [r for r in resources if r.metadata.get("namespace") == namespace]


def find_resource(resources: List[CanonicalResource], kind: str, name: str) -> Optional[CanonicalResource]:
    for resource in resources:
        if resource.raw_type == kind and resource.name == name:
            return resource
    return None
