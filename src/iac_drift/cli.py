import argparse
import json
import sys
from typing import List, Optional

from .config import load_drift_config
from .connectors.inventory_file import FileInventoryConnector, InventoryError
from .connectors.tfstate_connector import TerraformStateConnector
from .core_logic.drift_engine import detect_drift
from .core_logic.remediation import suggest_remediation
from .core_logic.resource_mapper import map_to_resources
from .models import DriftCategory, DriftRecord, LiveResource, ParseResult, SourceFormat, to_plain
from .parsers.common import IaCParseFailure
from .parsers.dispatch import parse_path
from .utils import setup_logging

EXIT_NO_DRIFT = 0
EXIT_DRIFT_FOUND = 1
EXIT_IAC_ERROR = 2
EXIT_LIVE_STATE_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iac-drift",
        description="Parse Terraform, CloudFormation or Kubernetes definitions and detect drift against deployed resources.",
    )
    parser.add_argument(
        "--iac-type",
        type=str,
        default=SourceFormat.TERRAFORM.value,
        choices=[f.value for f in SourceFormat],
        help="Format of the IaC definition (default: terraform).",
    )
    parser.add_argument(
        "--iac-path",
        type=str,
        required=True,
        help="IaC file, or a directory of .tf / .yaml files (parsed recursively).",
    )
    parser.add_argument(
        "--parse-only",
        action="store_true",
        help="Only parse the definition and report the declared resources.",
    )

    actual_state_group = parser.add_argument_group("Deployed State Source Options")
    actual_state_group.add_argument(
        "--actual-state-source",
        type=str,
        default="file",
        choices=["file", "tfstate"],
        help="Where the deployed inventory comes from (default: file).",
    )
    actual_state_group.add_argument(
        "--inventory-file",
        type=str,
        help="JSON or YAML inventory of deployed resources (for --actual-state-source file).",
    )
    actual_state_group.add_argument(
        "--tf-state-file",
        type=str,
        help="Terraform state file to use as the deployed inventory (for --actual-state-source tfstate).",
    )

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument("--output", choices=["text", "json"], default="text", help="Report format (default: text).")
    output_group.add_argument("--config", type=str, help="Path to the detector config file (default: search for .iac-drift.yml).")
    output_group.add_argument("--log-level", type=str, help="Logging level (overrides the config file).")
    output_group.add_argument("--definition-id", type=str, help="Definition ID to tag declared resources with.")
    output_group.add_argument("--user-id", type=str, help="User ID to tag declared resources with.")
    return parser


def _report_parse_problems(result: ParseResult) -> None:
    if not result.errors:
        return
    print(f"Warning: {result.summary()}", file=sys.stderr)
    for message in result.error_messages():
        print(f"  - {message}", file=sys.stderr)


def _load_live_resources(args) -> List[LiveResource]:
    if args.actual_state_source == "file":
        if not args.inventory_file:
            raise InventoryError("--inventory-file is required when --actual-state-source is 'file'")
        return FileInventoryConnector(args.inventory_file).fetch_live_resources()
    if not args.tf_state_file:
        raise InventoryError("--tf-state-file is required when --actual-state-source is 'tfstate'")
    return TerraformStateConnector(args.tf_state_file).fetch_live_resources()


def _print_record(position: int, total: int, record: DriftRecord, iac_tool: str) -> None:
    print(f"\nDrift {position}/{total}: {record.category.value.upper()} [{record.severity.value}]")
    print(f"  Resource Type: {record.resource_type}")
    print(f"  Resource:      {record.resource_label}")
    if record.actual_resource is not None and record.actual_resource.resource_id:
        print(f"  Resource ID:   {record.actual_resource.resource_id}")
    print(f"  Details: {record.details.message}")

    if record.category == DriftCategory.MODIFIED and record.field_changes:
        print("  Field Differences:")
        for change in record.field_changes:
            declared = to_plain(change.declared_value)
            actual = to_plain(change.actual_value)
            print(f"    - '{change.field}' ({change.change_kind.value}): IaC = {declared!r}, Actual = {actual!r}")

    suggestions = suggest_remediation(record, iac_tool=iac_tool)
    if suggestions:
        print("  Suggested Remediation:")
        for suggestion_line in suggestions:
            print(f"    {suggestion_line}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_drift_config(args.config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_IAC_ERROR
    setup_logging(args.log_level or config.log_level)

    if args.output == "text":
        print("--- IaC Drift Detector Initializing ---")
        print(f"Parsing {args.iac_type} definition: {args.iac_path}")

    # 1. Declared state
    try:
        result = parse_path(args.iac_type, args.iac_path, max_workers=config.max_workers)
    except IaCParseFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_IAC_ERROR

    if result.nothing_parseable:
        print(f"Error: {result.summary()}", file=sys.stderr)
        for message in result.error_messages():
            print(f"  - {message}", file=sys.stderr)
        return EXIT_IAC_ERROR
    _report_parse_problems(result)

    declared = map_to_resources(
        result,
        definition_id=args.definition_id,
        user_id=args.user_id,
        include_data_sources=config.include_data_sources,
    )

    if args.parse_only:
        if args.output == "json":
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            print(f"\n--- {len(declared)} declared resource(s) ---")
            for resource in declared:
                print(f"  {resource.address} ({resource.resource_type}, provider: {resource.provider})")
        return EXIT_NO_DRIFT

    # 2. Deployed state
    if args.output == "text":
        print(f"Loading deployed state from: {args.inventory_file if args.actual_state_source == 'file' else args.tf_state_file}")
    try:
        live = _load_live_resources(args)
    except InventoryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_LIVE_STATE_ERROR

    # 3. Compare
    records = detect_drift(
        declared,
        live,
        computed_fields=config.build_computed_field_policy(),
        ignore_unresolved=config.ignore_unresolved_references,
    )

    # 4. Report
    if args.output == "json":
        print(
            json.dumps(
                {
                    "drift_count": len(records),
                    "parse_errors": result.error_messages(),
                    "records": [record.model_dump(mode="json") for record in records],
                },
                indent=2,
            )
        )
    elif not records:
        print("\n--- Result: NO DRIFT DETECTED ---")
    else:
        print(f"\n--- Result: {len(records)} DRIFT(S) DETECTED ---")
        for position, record in enumerate(records, 1):
            _print_record(position, len(records), record, args.iac_type)

    return EXIT_DRIFT_FOUND if records else EXIT_NO_DRIFT


if __name__ == "__main__":
    sys.exit(main())
