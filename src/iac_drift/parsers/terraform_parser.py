"""
Terraform HCL parser.

`hcl2.loads` does the heavy lifting. Its output loses how many labels each
block had (`resource "aws_instance" {}` and `resource "aws_instance" "web" {}`
nest the same way), so top-level block headers are also scanned directly from
the source text and paired with the hcl2 entries in declaration order.
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Union

import hcl2

from ..models import (
    CanonicalResource,
    Lifecycle,
    ParseError,
    ParseResult,
    SourceFormat,
    TerraformDeclarations,
    TerraformModuleCall,
    TerraformOutput,
    TerraformProviderConfig,
    TerraformProviderRequirement,
    TerraformSettings,
    TerraformVariable,
    UnresolvedRef,
)
from ..normalizer import normalize_provider_name, normalize_type, severity_hint_for
from .common import IaCParseFailure, decode_content, parse_directory, read_file

logger = logging.getLogger(__name__)

TERRAFORM_SUFFIXES = (".tf",)

# Provisioning blocks are not cloud configuration; kept in metadata.
METADATA_BLOCKS = ("provisioner", "connection")

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_HEREDOC_RE = re.compile(r"<<-?([A-Za-z_][A-Za-z0-9_-]*)[ \t]*\r?\n")


class BlockHeader(NamedTuple):
    kind: str
    labels: List[str]
    line: int


# --- Header scanning ---


def _skip_string(text: str, i: int) -> int:
    """`text[i]` is an opening quote; returns the index after the closing one."""
    n = len(text)
    i += 1
    while i < n:
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c == '"':
            return i + 1
        if c == "\n":
            return i
        if text.startswith("$${", i) or text.startswith("%%{", i):
            i += 3
            continue
        if text.startswith("${", i) or text.startswith("%{", i):
            i = _skip_template_expression(text, i + 2)
            continue
        i += 1
    return n


def _skip_template_expression(text: str, i: int) -> int:
    n = len(text)
    depth = 1
    while i < n and depth:
        c = text[i]
        if c == '"':
            i = _skip_string(text, i)
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        i += 1
    return i


def scan_block_headers(text: str) -> List[BlockHeader]:
    """Returns the top-level block headers of an HCL document, in order."""
    headers: List[BlockHeader] = []
    tokens: List[str] = []
    token_line = 1
    depth = 0
    line = 1
    i = 0
    n = len(text)

    while i < n:
        c = text[i]
        if c == "\n":
            line += 1
            if depth == 0:
                tokens = []
            i += 1
            continue
        if c in " \t\r":
            i += 1
            continue
        if c == "#" or text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            line += text.count("\n", i, end)
            i = end
            continue
        if c == '"':
            end = _skip_string(text, i)
            if depth == 0:
                if not tokens:
                    token_line = line
                tokens.append(text[i + 1 : end - 1])
            i = end
            continue
        heredoc = _HEREDOC_RE.match(text, i)
        if heredoc:
            marker = heredoc.group(1)
            terminator = re.compile(r"^[ \t]*" + re.escape(marker) + r"[ \t]*\r?$", re.MULTILINE)
            body_start = heredoc.end()
            found = terminator.search(text, body_start)
            end = n if found is None else found.end()
            line += text.count("\n", i, end)
            i = end
            continue
        if c == "{":
            if depth == 0 and tokens and "=" not in tokens and _IDENTIFIER_RE.fullmatch(tokens[0]):
                headers.append(BlockHeader(tokens[0], tokens[1:], token_line))
            tokens = []
            depth += 1
            i += 1
            continue
        if c == "}":
            depth = max(depth - 1, 0)
            i += 1
            continue
        if depth == 0:
            ident = _IDENTIFIER_RE.match(text, i)
            if not tokens:
                token_line = line
            if ident:
                tokens.append(ident.group(0))
                i = ident.end()
                continue
            tokens.append(c)
        i += 1
    return headers


# --- Value conversion ---


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def _single_interpolation(value: str) -> Optional[str]:
    """Returns the inner expression when the whole string is one `${...}`."""
    if not value.startswith("${") or not value.endswith("}"):
        return None
    if _skip_template_expression(value, 2) != len(value):
        return None
    return value[2:-1].strip()


def convert_value(value: Any) -> Any:
    if isinstance(value, str):
        value = _unquote(value)
        expression = _single_interpolation(value)
        if expression is not None:
            return UnresolvedRef(kind="_expr", target=expression)
        if "${" in value.replace("$${", "") or "%{" in value.replace("%%{", ""):
            return UnresolvedRef(kind="_template", target=value)
        return value
    if isinstance(value, list):
        return [convert_value(v) for v in value]
    if isinstance(value, dict):
        return convert_body(value)
    return value


def convert_body(body: Dict[str, Any]) -> Dict[str, Any]:
    converted: Dict[str, Any] = {}
    for key, value in body.items():
        key = _unquote(str(key))
        if key.startswith("__"):
            continue
        converted[key] = convert_value(value)
    return converted


def _reference_text(value: Any) -> str:
    if isinstance(value, UnresolvedRef):
        return str(value.target)
    return str(value)


def _as_block(value: Any) -> Dict[str, Any]:
    """Single nested blocks come back from hcl2 as a one-element list."""
    if isinstance(value, list):
        value = value[0] if value else {}
    return value if isinstance(value, dict) else {}


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, UnresolvedRef):
        return str(value.target)
    return str(value)


def _lookup_label(node: Any, label: str) -> Any:
    if not isinstance(node, dict):
        return None
    for key in (label, f'"{label}"'):
        if key in node:
            return node[key]
    if len(node) == 1:
        return next(iter(node.values()))
    return None


def _fallback_labels(entry: Any, depth: int) -> List[str]:
    """Labels recovered from the hcl2 nesting when no header was scanned."""
    labels: List[str] = []
    node = entry
    while len(labels) < depth and isinstance(node, dict) and len(node) == 1:
        key, node = next(iter(node.items()))
        labels.append(_unquote(str(key)))
    return labels


def _block_body(entry: Any, labels: List[str]) -> Dict[str, Any]:
    node = entry
    for label in labels:
        node = _lookup_label(node, label)
    return _as_block(node)


# --- Block handlers ---


class _FileParser:
    def __init__(self, text: str, source_name: str):
        self.text = text
        self.source_name = source_name
        self.resources: List[CanonicalResource] = []
        self.errors: List[ParseError] = []
        self.declarations = TerraformDeclarations()

    def parse(self) -> ParseResult:
        try:
            document = hcl2.loads(self.text)
        except Exception as e:
            raise IaCParseFailure(f"{self.source_name}: invalid HCL: {e}") from e
        if not isinstance(document, dict):
            raise IaCParseFailure(f"{self.source_name}: unexpected HCL document structure")

        headers_by_kind: Dict[str, List[BlockHeader]] = {}
        for header in scan_block_headers(self.text):
            headers_by_kind.setdefault(header.kind, []).append(header)

        handlers = {
            "resource": (2, self._handle_resource),
            "data": (2, self._handle_data),
            "module": (1, self._handle_module),
            "variable": (1, self._handle_variable),
            "output": (1, self._handle_output),
            "provider": (1, self._handle_provider),
            "terraform": (0, self._handle_terraform),
        }

        for kind, entries in document.items():
            if kind not in handlers:
                continue
            expected_labels, handler = handlers[kind]
            if isinstance(entries, dict):
                entries = [entries]
            headers = headers_by_kind.get(kind, [])
            if len(headers) != len(entries):
                logger.debug(
                    "%s: scanned %d '%s' header(s) but hcl2 returned %d block(s)",
                    self.source_name,
                    len(headers),
                    kind,
                    len(entries),
                )
                headers = [
                    BlockHeader(kind, _fallback_labels(e, expected_labels), 0) for e in entries
                ]
            for header, entry in zip(headers, entries):
                if len(header.labels) != expected_labels:
                    self._label_error(header, expected_labels)
                    continue
                handler(header, _block_body(entry, header.labels))

        return ParseResult(
            source_format=SourceFormat.TERRAFORM,
            source_name=self.source_name,
            resources=self.resources,
            errors=self.errors,
            terraform=self.declarations,
        )

    def _context(self, header: BlockHeader) -> str:
        if header.line:
            return f"{header.kind} block at {self.source_name}:{header.line}"
        return f"{header.kind} block in {self.source_name}"

    def _label_error(self, header: BlockHeader, expected: int) -> None:
        if header.kind in ("resource", "data"):
            cause = f"{header.kind} block requires 2 labels (type and name)"
        elif expected == 0:
            cause = f"{header.kind} block takes no labels"
        else:
            cause = f"{header.kind} block requires 1 label (name)"
        error = ParseError(
            source_name=self.source_name,
            context=self._context(header),
            cause=f"{cause}, got {len(header.labels)}",
            index=header.line or None,
            identifier=".".join(header.labels) or None,
        )
        logger.warning("%s", error)
        self.errors.append(error)

    def _build_resource(self, header: BlockHeader, body: Dict[str, Any], mode: str) -> CanonicalResource:
        raw_type, name = header.labels
        resource_type, provider = normalize_type(SourceFormat.TERRAFORM, raw_type)
        configuration = convert_body(body)
        metadata: Dict[str, Any] = {"mode": mode}
        if header.line:
            metadata["line"] = header.line

        count = configuration.pop("count", None)
        for_each = configuration.pop("for_each", None)

        depends_on: List[str] = []
        raw_depends_on = configuration.pop("depends_on", None)
        if raw_depends_on is not None:
            if not isinstance(raw_depends_on, list):
                raw_depends_on = [raw_depends_on]
            depends_on = [_reference_text(ref) for ref in raw_depends_on]

        lifecycle = None
        if "lifecycle" in configuration:
            lifecycle = self._lifecycle(_as_block(configuration.pop("lifecycle")))

        if "provider" in configuration:
            metadata["provider_ref"] = _as_text(configuration.pop("provider"))
        for block in METADATA_BLOCKS:
            if block in configuration:
                metadata[block] = configuration.pop(block)

        address = f"{raw_type}.{name}"
        if mode == "data":
            address = f"data.{address}"

        return CanonicalResource(
            source_format=SourceFormat.TERRAFORM,
            address=address,
            resource_type=resource_type,
            raw_type=raw_type,
            name=name,
            provider=provider,
            configuration=configuration,
            depends_on=depends_on,
            metadata=metadata,
            count=count,
            for_each=for_each,
            lifecycle=lifecycle,
            severity_hint=severity_hint_for(resource_type),
            source_name=self.source_name,
        )

    @staticmethod
    def _lifecycle(block: Dict[str, Any]) -> Lifecycle:
        ignore_changes = block.get("ignore_changes", [])
        if not isinstance(ignore_changes, list):
            ignore_changes = [ignore_changes]
        return Lifecycle(
            create_before_destroy=block.get("create_before_destroy") is True,
            prevent_destroy=block.get("prevent_destroy") is True,
            ignore_changes=[_reference_text(field) for field in ignore_changes],
        )

    def _handle_resource(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        self.resources.append(self._build_resource(header, body, "managed"))

    def _handle_data(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        self.declarations.data_sources.append(self._build_resource(header, body, "data"))

    def _handle_module(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        configuration = convert_body(body)
        self.declarations.modules.append(
            TerraformModuleCall(
                name=header.labels[0],
                source=_as_text(configuration.pop("source", None)),
                version=_as_text(configuration.pop("version", None)),
                configuration=configuration,
                source_name=self.source_name,
            )
        )

    def _handle_variable(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        configuration = convert_body(body)
        validations = configuration.get("validation", [])
        if isinstance(validations, dict):
            validations = [validations]
        self.declarations.variables.append(
            TerraformVariable(
                name=header.labels[0],
                type=_as_text(configuration.get("type")),
                description=_as_text(configuration.get("description")),
                default=configuration.get("default"),
                sensitive=configuration.get("sensitive") is True,
                validations=validations,
            )
        )

    def _handle_output(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        configuration = convert_body(body)
        self.declarations.outputs.append(
            TerraformOutput(
                name=header.labels[0],
                value=configuration.get("value"),
                description=_as_text(configuration.get("description")),
                sensitive=configuration.get("sensitive") is True,
            )
        )

    def _handle_provider(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        configuration = convert_body(body)
        name = header.labels[0]
        self.declarations.providers.append(
            TerraformProviderConfig(
                name=name,
                provider=normalize_provider_name(name),
                alias=_as_text(configuration.pop("alias", None)),
                configuration=configuration,
            )
        )

    def _handle_terraform(self, header: BlockHeader, body: Dict[str, Any]) -> None:
        if self.declarations.settings is not None:
            return
        configuration = convert_body(body)
        settings = TerraformSettings(required_version=_as_text(configuration.get("required_version")))

        for provider_name, requirement in _as_block(configuration.get("required_providers")).items():
            if isinstance(requirement, dict):
                settings.required_providers[provider_name] = TerraformProviderRequirement(
                    source=_as_text(requirement.get("source")),
                    version=_as_text(requirement.get("version")),
                )
            else:
                # Legacy form: aws = "~> 4.0"
                settings.required_providers[provider_name] = TerraformProviderRequirement(
                    version=_as_text(requirement)
                )

        backend = _as_block(configuration.get("backend"))
        if backend:
            settings.backend, backend_body = next(iter(backend.items()))
            settings.backend_configuration = _as_block(backend_body)

        self.declarations.settings = settings


def parse_terraform_content(content: Union[bytes, str], source_name: str) -> ParseResult:
    """
    Parses one HCL document into canonical resources plus the non-resource
    declarations (modules, variables, outputs, providers, data sources,
    terraform settings).

    Raises:
        IaCParseFailure: the content is empty, undecodable or not valid HCL.
    """
    text = decode_content(content, source_name)
    return _FileParser(text, source_name).parse()


def parse_terraform_file(path: Union[str, Path]) -> ParseResult:
    return parse_terraform_content(read_file(path), str(path))


def parse_terraform_directory(directory: Union[str, Path], max_workers: Optional[int] = None) -> ParseResult:
    """Parses every `.tf` file below `directory` (recursively) and merges the results."""
    return parse_directory(
        directory,
        SourceFormat.TERRAFORM,
        TERRAFORM_SUFFIXES,
        parse_terraform_file,
        max_workers=max_workers,
    )

