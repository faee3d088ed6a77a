from src.iac_drift.core_logic.remediation import drift_message, remediation_hint, suggest_remediation
from src.iac_drift.models import (
    CanonicalResource,
    ChangeKind,
    DriftCategory,
    DriftDetails,
    DriftRecord,
    FieldChange,
    LiveResource,
    Severity,
    SourceFormat,
)

DECLARED = CanonicalResource(
    source_format=SourceFormat.TERRAFORM,
    address="aws_instance.web",
    resource_type="ec2_instance",
    raw_type="aws_instance",
    name="web",
    provider="aws",
    configuration={"instance_type": "t3.micro"},
    source_name="main.tf",
)

LIVE = LiveResource(provider="aws", type="aws_instance", name="web", resource_id="i-123")


def make_record(category, iac_resource=None, actual_resource=None, field_changes=None):
    return DriftRecord(
        category=category,
        iac_resource=iac_resource,
        actual_resource=actual_resource,
        severity=Severity.MEDIUM,
        field_changes=field_changes or [],
        details=DriftDetails(message=drift_message(category, "x"), remediation=remediation_hint(category)),
    )


def test_drift_messages():
    assert drift_message(DriftCategory.MISSING, "a.b") == "Resource a.b defined in IaC but not found in deployed resources"
    assert drift_message(DriftCategory.SHADOW, "a.b") == "Resource a.b is deployed but not defined in IaC"
    assert drift_message(DriftCategory.MODIFIED, "a.b") == "Configuration drift detected for resource a.b"


def test_remediation_hints():
    assert remediation_hint(DriftCategory.SHADOW) == "Add this resource to IaC definition or investigate if it should be removed"


def test_suggest_remediation_missing_terraform():
    suggestions = suggest_remediation(make_record(DriftCategory.MISSING, iac_resource=DECLARED))
    assert "aws_instance.web" in suggestions[0]
    assert "MISSING" in suggestions[0]
    assert any("terraform apply" in s for s in suggestions)
    assert any("main.tf" in s for s in suggestions)


def test_suggest_remediation_missing_kubernetes():
    resource = DECLARED.model_copy(update={"source_format": SourceFormat.KUBERNETES, "source_name": "app.yaml"})
    suggestions = suggest_remediation(make_record(DriftCategory.MISSING, iac_resource=resource))
    assert any("kubectl apply -f app.yaml" in s for s in suggestions)


def test_suggest_remediation_shadow_terraform_import():
    suggestions = suggest_remediation(make_record(DriftCategory.SHADOW, actual_resource=LIVE))
    assert "NOT DEFINED" in suggestions[0]
    assert "(ID: i-123)" in suggestions[0]
    assert any("terraform import aws_instance.web i-123" in s for s in suggestions)


def test_suggest_remediation_shadow_with_explicit_tool():
    suggestions = suggest_remediation(make_record(DriftCategory.SHADOW, actual_resource=LIVE), iac_tool="cloudformation")
    assert any("CloudFormation resource import" in s for s in suggestions)
    assert not any("terraform import" in s for s in suggestions)


def test_suggest_remediation_modified_lists_field_changes():
    changes = [
        FieldChange(field="instance_type", declared_value="t3.micro", actual_value="t3.large", change_kind=ChangeKind.MODIFIED),
        FieldChange(field="ebs_optimized", declared_value=None, actual_value=True, change_kind=ChangeKind.ADDED_IN_ACTUAL),
    ]
    record = make_record(DriftCategory.MODIFIED, iac_resource=DECLARED, actual_resource=LIVE, field_changes=changes)
    suggestions = suggest_remediation(record)
    assert "MODIFIED" in suggestions[0]
    assert "  - Field 'instance_type' (modified):" in suggestions
    assert "    - IaC expects: 't3.micro'" in suggestions
    assert "    - Actual is:   't3.large'" in suggestions
    assert "    - IaC expects: not set (None)" in suggestions
    assert any("terraform apply" in s for s in suggestions)


def test_suggest_remediation_modified_unknown_tool():
    record = make_record(DriftCategory.MODIFIED, iac_resource=DECLARED, actual_resource=LIVE)
    suggestions = suggest_remediation(record, iac_tool="pulumi")
    assert "applying IaC" in suggestions[-1]
