from pathlib import Path
from typing import Optional, Union

from ..models import ParseResult, SourceFormat
from .cloudformation_parser import parse_cloudformation_content, parse_cloudformation_file
from .common import IaCParseFailure
from .kubernetes_parser import (
    parse_kubernetes_content,
    parse_kubernetes_directory,
    parse_kubernetes_file,
)
from .terraform_parser import (
    parse_terraform_content,
    parse_terraform_directory,
    parse_terraform_file,
)

_CONTENT_PARSERS = {
    SourceFormat.TERRAFORM: parse_terraform_content,
    SourceFormat.CLOUDFORMATION: parse_cloudformation_content,
    SourceFormat.KUBERNETES: parse_kubernetes_content,
}

_FILE_PARSERS = {
    SourceFormat.TERRAFORM: parse_terraform_file,
    SourceFormat.CLOUDFORMATION: parse_cloudformation_file,
    SourceFormat.KUBERNETES: parse_kubernetes_file,
}

_DIRECTORY_PARSERS = {
    SourceFormat.TERRAFORM: parse_terraform_directory,
    SourceFormat.KUBERNETES: parse_kubernetes_directory,
}


def parse_content(
    source_format: Union[SourceFormat, str], content: Union[bytes, str], source_name: str
) -> ParseResult:
    return _CONTENT_PARSERS[SourceFormat(source_format)](content, source_name)


def parse_path(
    source_format: Union[SourceFormat, str], path: Union[str, Path], max_workers: Optional[int] = None
) -> ParseResult:
    """Parses a single file, or every matching file below a directory."""
    source_format = SourceFormat(source_format)
    path = Path(path)
    if path.is_dir():
        if source_format not in _DIRECTORY_PARSERS:
            raise IaCParseFailure(f"{source_format.value} templates must be parsed one file at a time: {path}")
        return _DIRECTORY_PARSERS[source_format](path, max_workers=max_workers)
    if not path.exists():
        raise IaCParseFailure(f"Path not found: {path}")
    return _FILE_PARSERS[source_format](path)
