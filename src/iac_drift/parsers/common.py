import datetime
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from ..models import (
    CloudFormationDeclarations,
    ParseError,
    ParseResult,
    SourceFormat,
    TerraformDeclarations,
)

logger = logging.getLogger(__name__)

SKIPPED_DIRECTORIES = {".terraform", ".git"}


class IaCParseFailure(ValueError):
    """The input as a whole could not be parsed; no ParseResult is produced."""


def decode_content(content: Union[bytes, str], source_name: str) -> str:
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise IaCParseFailure(f"{source_name}: content is not valid UTF-8: {e}") from e
    if not content.strip():
        raise IaCParseFailure(f"{source_name}: content is empty")
    return content


def read_file(path: Union[str, Path]) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise IaCParseFailure(f"Error reading file {path}: {e}") from e


def plain_yaml_value(value: Any) -> Any:
    """YAML loads timestamps as date objects; keep them as the strings they were."""
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k) if not isinstance(k, str) else k: plain_yaml_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain_yaml_value(v) for v in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def find_files(directory: Union[str, Path], suffixes: Iterable[str]) -> List[Path]:
    suffixes = {s.lower() for s in suffixes}
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRECTORIES)
        for filename in sorted(filenames):
            if Path(filename).suffix.lower() in suffixes:
                found.append(Path(dirpath) / filename)
    return found


def merge_parse_results(
    source_format: SourceFormat, source_name: str, results: Iterable[ParseResult]
) -> ParseResult:
    resources = []
    errors: List[ParseError] = []
    terraform: Optional[TerraformDeclarations] = None
    cloudformation: Optional[CloudFormationDeclarations] = None

    for result in results:
        resources.extend(result.resources)
        errors.extend(result.errors)
        if result.terraform is not None:
            if terraform is None:
                terraform = TerraformDeclarations()
            terraform.modules.extend(result.terraform.modules)
            terraform.variables.extend(result.terraform.variables)
            terraform.outputs.extend(result.terraform.outputs)
            terraform.providers.extend(result.terraform.providers)
            terraform.data_sources.extend(result.terraform.data_sources)
            if terraform.settings is None:
                terraform.settings = result.terraform.settings
        if result.cloudformation is not None and cloudformation is None:
            cloudformation = result.cloudformation

    return ParseResult(
        source_format=source_format,
        source_name=source_name,
        resources=resources,
        errors=errors,
        terraform=terraform,
        cloudformation=cloudformation,
    )


def parse_directory(
    directory: Union[str, Path],
    source_format: SourceFormat,
    suffixes: Iterable[str],
    parse_file: Callable[[Path], ParseResult],
    max_workers: Optional[int] = None,
) -> ParseResult:
    """
    Parses every matching file under `directory` on a bounded thread pool.

    A file that fails as a whole becomes a ParseError naming that file; the
    other files still contribute. Results are merged in file order.
    """
    root = Path(directory)
    if not root.is_dir():
        raise IaCParseFailure(f"Provided path is not a directory: {directory}")

    files = find_files(root, suffixes)
    if not files:
        logger.info("No %s files found under %s", source_format.value, root)
        return ParseResult(source_format=source_format, source_name=str(root))

    workers = max_workers or min(len(files), os.cpu_count() or 1)

    def parse_one(path: Path) -> Tuple[Optional[ParseResult], Optional[ParseError]]:
        try:
            return parse_file(path), None
        except IaCParseFailure as e:
            logger.warning("Skipping %s: %s", path, e)
            return None, ParseError(source_name=str(path), context=str(path), cause=str(e))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(parse_one, files))

    results = [r for r, _ in outcomes if r is not None]
    failures = [e for _, e in outcomes if e is not None]
    merged = merge_parse_results(source_format, str(root), results)
    if failures:
        merged = merged.model_copy(update={"errors": merged.errors + failures})
    logger.debug(
        "Parsed %d file(s) under %s: %d resource(s), %d error(s)",
        len(files),
        root,
        len(merged.resources),
        len(merged.errors),
    )
    return merged
