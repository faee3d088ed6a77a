from typing import List, Optional

from ..models import (
    CanonicalResource,
    DriftCategory,
    DriftRecord,
    LiveResource,
    SourceFormat,
    to_plain,
)

# One-line hints stored on each DriftRecord.
REMEDIATION_HINTS = {
    DriftCategory.MISSING: "Deploy this resource or remove it from IaC definition",
    DriftCategory.SHADOW: "Add this resource to IaC definition or investigate if it should be removed",
    DriftCategory.MODIFIED: "Update IaC definition to match actual state or apply IaC to fix drift",
}

_APPLY_COMMANDS = {
    SourceFormat.TERRAFORM: "terraform apply",
    SourceFormat.CLOUDFORMATION: "aws cloudformation deploy",
    SourceFormat.KUBERNETES: "kubectl apply -f",
}


def drift_message(category: DriftCategory, label: str) -> str:
    if category == DriftCategory.MISSING:
        return f"Resource {label} defined in IaC but not found in deployed resources"
    if category == DriftCategory.SHADOW:
        return f"Resource {label} is deployed but not defined in IaC"
    return f"Configuration drift detected for resource {label}"


def remediation_hint(category: DriftCategory) -> str:
    return REMEDIATION_HINTS[category]


def _value_text(value) -> str:
    if value is None:
        return "not set (None)"
    return f"'{to_plain(value)}'"


def _tool_for(record: DriftRecord, iac_tool: Optional[str] = None) -> str:
    if iac_tool:
        return iac_tool
    if record.iac_resource is not None:
        return record.iac_resource.source_format.value
    return SourceFormat.TERRAFORM.value


def _missing_suggestions(resource: CanonicalResource, tool: str) -> List[str]:
    suggestions = [f"Resource {resource.address} is defined in IaC but MISSING in the deployed inventory."]
    if tool == SourceFormat.TERRAFORM.value:
        suggestions.append("  - Suggestion: Run 'terraform apply' to create the resource.")
        if resource.source_name:
            suggestions.append(f"    (Declared in: {resource.source_name})")
    elif tool == SourceFormat.CLOUDFORMATION.value:
        suggestions.append(
            f"  - Suggestion: Update the stack ('aws cloudformation deploy') so logical resource {resource.address} is created."
        )
    elif tool == SourceFormat.KUBERNETES.value:
        suggestions.append(f"  - Suggestion: Run 'kubectl apply -f {resource.source_name or '<manifest>'}' to create it.")
    else:
        suggestions.append(
            "  - Suggestion: Use your IaC tool to apply the configuration and create the resource."
        )
    return suggestions


def _shadow_suggestions(resource: LiveResource, tool: str) -> List[str]:
    label = f"{resource.type}.{resource.name}"
    if resource.resource_id:
        label += f" (ID: {resource.resource_id})"
    suggestions = [
        f"Resource {label} exists in the deployed inventory but is NOT DEFINED in IaC.",
        "  - This resource may have been created manually or outside of the current IaC configuration.",
    ]
    if tool == SourceFormat.TERRAFORM.value:
        import_id = resource.resource_id or "<resource id>"
        suggestions.append(
            f"  - Suggestion 1: Import the resource with 'terraform import {resource.type}.{resource.name} {import_id}' (adjust logical name as needed) and then define it in your Terraform code."
        )
        suggestions.append(
            "  - Suggestion 2: If the resource is not needed, consider removing it from the cloud environment (with caution)."
        )
        suggestions.append(
            "  - Suggestion 3: If it should be ignored by drift detection, exclude it from the inventory."
        )
    elif tool == SourceFormat.CLOUDFORMATION.value:
        suggestions.append(
            "  - Suggestion: Bring it under management with a CloudFormation resource import, or remove it if not needed."
        )
    elif tool == SourceFormat.KUBERNETES.value:
        suggestions.append(
            "  - Suggestion: Export it ('kubectl get -o yaml') into your manifests, or delete it if not needed."
        )
    else:
        suggestions.append(
            "  - Suggestion: Consider importing it into your IaC, defining it in code, or removing it manually if not needed."
        )
    return suggestions


def _modified_suggestions(record: DriftRecord, tool: str) -> List[str]:
    suggestions = [
        f"Resource {record.resource_label} is MODIFIED. Differences found between IaC and deployed state:"
    ]
    for change in record.field_changes:
        suggestions.append(f"  - Field '{change.field}' ({change.change_kind.value}):")
        suggestions.append(f"    - IaC expects: {_value_text(change.declared_value)}")
        suggestions.append(f"    - Actual is:   {_value_text(change.actual_value)}")

    try:
        apply_command = _APPLY_COMMANDS[SourceFormat(tool)]
    except ValueError:
        apply_command = None
    if apply_command:
        suggestions.append(
            f"  - Suggestion: Review the differences. If IaC is the source of truth, run '{apply_command}' to align the deployed state."
        )
        suggestions.append(
            "    If the deployed changes are intentional, update the IaC definition to match."
        )
    else:
        suggestions.append(
            "  - Suggestion: Review differences. Align deployed state by applying IaC, or update IaC to match if changes are desired."
        )
    return suggestions


def suggest_remediation(record: DriftRecord, iac_tool: Optional[str] = None) -> List[str]:
    """
    Generates human-readable remediation suggestions for a drift record.

    Args:
        record: The drift to explain.
        iac_tool: "terraform", "cloudformation" or "kubernetes". Defaults to the
                  format the declared resource came from (terraform for shadows).

    Returns:
        A list of strings, one suggestion or comment per line.
    """
    tool = _tool_for(record, iac_tool)
    if record.category == DriftCategory.MISSING and record.iac_resource is not None:
        return _missing_suggestions(record.iac_resource, tool)
    if record.category == DriftCategory.SHADOW and record.actual_resource is not None:
        return _shadow_suggestions(record.actual_resource, tool)
    if record.category == DriftCategory.MODIFIED:
        return _modified_suggestions(record, tool)
    return [f"Unknown drift category '{record.category.value}' for resource {record.resource_label}."]
