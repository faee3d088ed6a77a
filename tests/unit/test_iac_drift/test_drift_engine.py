import json
from typing import Any, Dict, Optional

import pytest

from src.iac_drift.core_logic.drift_engine import (
    ComputedFieldPolicy,
    base_instance_name,
    build_instance_index,
    build_live_index,
    compare_configurations,
    decode_live_configuration,
    default_computed_field_policy,
    detect_drift,
    match_live_instances,
    match_live_resource,
    values_equal,
)
from src.iac_drift.models import (
    CanonicalResource,
    ChangeKind,
    DriftCategory,
    Lifecycle,
    LiveResource,
    Severity,
    SourceFormat,
    UnresolvedRef,
)


def make_declared(
    name: str = "web",
    resource_type: str = "ec2_instance",
    raw_type: str = "aws_instance",
    provider: str = "aws",
    configuration: Optional[Dict[str, Any]] = None,
    source_format: SourceFormat = SourceFormat.TERRAFORM,
    address: Optional[str] = None,
    **kwargs,
) -> CanonicalResource:
    return CanonicalResource(
        source_format=source_format,
        address=address or f"{raw_type}.{name}",
        resource_type=resource_type,
        raw_type=raw_type,
        name=name,
        provider=provider,
        configuration=configuration or {},
        **kwargs,
    )


def make_live(name: str = "web", type: str = "aws_instance", provider: str = "aws", configuration: Any = "", **kwargs) -> LiveResource:
    return LiveResource(name=name, type=type, provider=provider, configuration=configuration, **kwargs)


# --- compare_configurations ---

@pytest.mark.parametrize("declared, actual, computed, expected", [
    # No drift
    ({"size": "medium"}, {"size": "medium"}, (), []),
    # Simple modification
    ({"size": "medium"}, {"size": "large"}, (), [("size", "medium", "large", ChangeKind.MODIFIED)]),
    # Field added in actual
    ({"size": "medium"}, {"size": "medium", "new_attr": "val"}, (), [("new_attr", None, "val", ChangeKind.ADDED_IN_ACTUAL)]),
    # Field missing in actual
    ({"size": "medium", "old_attr": "val"}, {"size": "medium"}, (), [("old_attr", "val", None, ChangeKind.MISSING_IN_ACTUAL)]),
    # Computed field differs on both sides
    ({"size": "medium", "id": "i-1"}, {"size": "medium", "id": "i-2"}, ("id",), []),
    # Computed field only on the live side
    ({"size": "medium"}, {"size": "medium", "arn": "arn:aws:..."}, ("arn",), []),
    # Nested mapping reported with a dotted path
    ({"tags": {"env": "prod"}}, {"tags": {"env": "dev"}}, (), [("tags.env", "prod", "dev", ChangeKind.MODIFIED)]),
    ({"tags": {"env": "prod"}}, {"tags": {"env": "prod", "extra": "B"}}, (), [("tags.extra", None, "B", ChangeKind.ADDED_IN_ACTUAL)]),
    # Key order does not matter, list order does
    ({"m": {"a": 1, "b": 2}}, {"m": {"b": 2, "a": 1}}, (), []),
    ({"ports": [80, 443]}, {"ports": [443, 80]}, (), [("ports", [80, 443], [443, 80], ChangeKind.MODIFIED)]),
    # Integral floats equal ints
    ({"count": 3}, {"count": 3.0}, (), []),
    # Type differences are drift
    ({"port": "80"}, {"port": 80}, (), [("port", "80", 80, ChangeKind.MODIFIED)]),
])
def test_compare_configurations(declared, actual, computed, expected):
    changes = compare_configurations(declared, actual, computed_fields=computed)
    assert [(c.field, c.declared_value, c.actual_value, c.change_kind) for c in changes] == expected


def test_compare_configurations_ingress_cidr():
    changes = compare_configurations({"ingress_cidr": "10.0.0.0/8"}, {"ingress_cidr": "0.0.0.0/0"})
    assert len(changes) == 1
    assert changes[0].field == "ingress_cidr"
    assert changes[0].change_kind == ChangeKind.MODIFIED


def test_nested_computed_fields_only_when_requested():
    declared = {"spec": {"type": "ClusterIP"}}
    actual = {"spec": {"type": "ClusterIP", "clusterIP": "10.0.0.1"}}
    assert compare_configurations(declared, actual, computed_fields=("clusterIP",), nested_computed=True) == []
    changes = compare_configurations(declared, actual, computed_fields=("clusterIP",), nested_computed=False)
    assert [c.field for c in changes] == ["spec.clusterIP"]


def test_ignored_fields_and_unresolved_references():
    declared = {"tags": {"a": "b"}, "ami": UnresolvedRef(kind="_expr", target="var.ami")}
    actual = {"tags": {"a": "c"}, "ami": "ami-123"}
    changes = compare_configurations(declared, actual, ignored_fields=["tags"])
    assert [c.field for c in changes] == ["ami"]
    assert compare_configurations(declared, actual, ignored_fields=["tags"], ignore_unresolved=True) == []


def test_values_equal_with_markers():
    marker = UnresolvedRef(kind="_ref", target="X")
    assert values_equal(marker, UnresolvedRef(kind="_ref", target="X"))
    assert not values_equal(marker, "X")


# --- live configuration decoding ---

@pytest.mark.parametrize("configuration, expected", [
    ("", None),
    ("   ", None),
    ("{not json", None),
    ("[1, 2]", None),
    ('{"a": 1}', {"a": 1}),
    ({"a": 1}, {"a": 1}),  # Mappings are encoded on construction
])
def test_decode_live_configuration(configuration, expected):
    assert decode_live_configuration(make_live(configuration=configuration)) == expected


# --- matching ---

def test_index_uses_raw_and_normalized_types_and_resource_id():
    live = [make_live(name="web-live", type="aws_instance", resource_id="i-123")]
    index = build_live_index(live)
    assert index["aws:aws_instance:web-live"] == 0
    assert index["aws:ec2_instance:web-live"] == 0
    assert index["aws:ec2_instance:i-123"] == 0


def test_first_live_entry_wins_a_key():
    live = [make_live(configuration={"n": 1}), make_live(configuration={"n": 2})]
    assert build_live_index(live)["aws:ec2_instance:web"] == 0


def test_match_by_last_address_segment():
    declared = make_declared(name="Web Server", address="module.app.web")
    index = build_live_index([make_live(name="web")])
    assert match_live_resource(declared, index) == 0


def test_match_by_resource_id():
    declared = make_declared(name="i-0abc")
    index = build_live_index([make_live(name="something-else", resource_id="i-0abc")])
    assert match_live_resource(declared, index) == 0


def test_live_provider_aliases_are_normalized():
    declared = make_declared(name="vm", resource_type="gce_instance", raw_type="google_compute_instance", provider="gcp")
    index = build_live_index([make_live(name="vm", type="google_compute_instance", provider="google")])
    assert match_live_resource(declared, index) == 0


# --- detect_drift ---

def test_missing_resource():
    records = detect_drift([make_declared()], [])
    assert len(records) == 1
    assert records[0].category == DriftCategory.MISSING
    assert records[0].severity == Severity.MEDIUM
    assert records[0].actual_resource is None
    assert records[0].details.message == "Resource aws_instance.web defined in IaC but not found in deployed resources"
    assert records[0].details.remediation == "Deploy this resource or remove it from IaC definition"


def test_shadow_resource():
    records = detect_drift([], [make_live(name="orphan", type="aws_ebs_volume")])
    assert len(records) == 1
    assert records[0].category == DriftCategory.SHADOW
    assert records[0].severity == Severity.LOW
    assert records[0].iac_resource is None
    assert records[0].details.message == "Resource aws_ebs_volume.orphan is deployed but not defined in IaC"


def test_pair_differing_only_in_computed_id_has_no_drift():
    declared = make_declared(configuration={"instance_type": "t3.micro", "id": "i-declared"})
    live = make_live(configuration={"instance_type": "t3.micro", "id": "i-live"})
    assert detect_drift([declared], [live]) == []


def test_modified_resource():
    declared = make_declared(
        name="web", resource_type="security_group", raw_type="aws_security_group",
        configuration={"ingress_cidr": "10.0.0.0/8", "name": "web-sg"},
        severity_hint=Severity.HIGH,
    )
    live = make_live(name="web", type="aws_security_group", configuration={"ingress_cidr": "0.0.0.0/0", "name": "web-sg"})
    records = detect_drift([declared], [live])
    assert len(records) == 1
    record = records[0]
    assert record.category == DriftCategory.MODIFIED
    assert record.severity == Severity.HIGH
    assert record.actual_resource == live
    assert [(c.field, c.change_kind) for c in record.field_changes] == [("ingress_cidr", ChangeKind.MODIFIED)]
    assert record.details.remediation == "Update IaC definition to match actual state or apply IaC to fix drift"


@pytest.mark.parametrize("hint, expected", [
    (None, Severity.MEDIUM),
    (Severity.LOW, Severity.MEDIUM),
    (Severity.HIGH, Severity.HIGH),
    (Severity.CRITICAL, Severity.CRITICAL),
])
def test_severity_hint_only_escalates(hint, expected):
    records = detect_drift([make_declared(severity_hint=hint)], [])
    assert records[0].severity == expected


@pytest.mark.parametrize("configuration", ["", "not json", "[]"])
def test_unusable_live_configuration_skips_diff_but_still_matches(configuration):
    declared = make_declared(configuration={"instance_type": "t3.micro"})
    assert detect_drift([declared], [make_live(configuration=configuration)]) == []


def test_lifecycle_ignore_changes():
    live = make_live(configuration={"instance_type": "t3.large", "tags": {"x": "y"}})
    declared = make_declared(
        configuration={"instance_type": "t3.micro", "tags": {}},
        lifecycle=Lifecycle(ignore_changes=["tags"]),
    )
    records = detect_drift([declared], [live])
    assert [c.field for c in records[0].field_changes] == ["instance_type"]

    ignore_all = declared.model_copy(update={"lifecycle": Lifecycle(ignore_changes=["all"])})
    assert detect_drift([ignore_all], [live]) == []


def test_kubernetes_service_computed_fields_are_ignored_at_depth():
    declared = make_declared(
        name="web", resource_type="k8s_service", raw_type="Service", provider="kubernetes",
        source_format=SourceFormat.KUBERNETES, address="Service/default/web",
        configuration={"spec": {"ports": [{"port": 80}], "selector": {"app": "web"}}},
    )
    live = make_live(
        name="web", type="Service", provider="kubernetes",
        configuration={
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web", "uid": "abc", "resourceVersion": "42"},
            "spec": {"ports": [{"port": 80}], "selector": {"app": "web"}, "clusterIP": "10.96.0.10", "sessionAffinity": "None"},
            "status": {"loadBalancer": {}},
        },
    )
    assert detect_drift([declared], [live]) == []


def test_custom_policy_is_injected():
    policy = ComputedFieldPolicy(by_type={"ec2_instance": frozenset({"instance_type"})})
    declared = make_declared(configuration={"instance_type": "t3.micro"})
    live = make_live(configuration={"instance_type": "t3.large"})
    assert detect_drift([declared], [live], computed_fields=policy) == []
    assert len(detect_drift([declared], [live])) == 1


def test_default_policy_contents():
    policy = default_computed_field_policy()
    declared = make_declared()
    fields = policy.fields_for(declared)
    assert {"id", "arn", "public_ip"} <= fields


def test_output_order_and_each_live_resource_used_once():
    declared = [
        make_declared(name="a", configuration={"v": 1}),
        make_declared(name="b"),
        make_declared(name="c", configuration={"v": 3}),
    ]
    live = [
        make_live(name="z", type="aws_s3_bucket"),
        make_live(name="c", configuration={"v": 30}),
        make_live(name="a", configuration={"v": 1}),
        make_live(name="y", type="aws_s3_bucket"),
    ]
    records = detect_drift(declared, live)
    assert [(r.category, r.resource_label) for r in records] == [
        (DriftCategory.MISSING, "aws_instance.b"),
        (DriftCategory.MODIFIED, "aws_instance.c"),
        (DriftCategory.SHADOW, "aws_s3_bucket.z"),
        (DriftCategory.SHADOW, "aws_s3_bucket.y"),
    ]


def test_cross_format_match_cloudformation_against_native_type():
    declared = make_declared(
        name="Assets", resource_type="s3_bucket", raw_type="AWS::S3::Bucket",
        source_format=SourceFormat.CLOUDFORMATION, address="Assets",
        configuration={"BucketName": "assets"},
    )
    live = make_live(name="Assets", type="AWS::S3::Bucket", configuration=json.dumps({"BucketName": "assets", "Arn": "arn:aws:s3:::assets"}))
    assert detect_drift([declared], [live]) == []


K8S_ENVELOPE = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "web", "namespace": "default", "uid": "abc", "generation": 3},
    "status": {"replicas": 2, "readyReplicas": 2},
}


def test_kubernetes_pod_template_labels_are_compared():
    declared = make_declared(
        name="web", resource_type="k8s_deployment", raw_type="Deployment", provider="kubernetes",
        source_format=SourceFormat.KUBERNETES, address="Deployment/default/web",
        configuration={"spec": {"replicas": 2, "template": {"metadata": {"labels": {"app": "web"}}}}},
    )
    live = make_live(
        name="web", type="Deployment", provider="kubernetes",
        configuration={
            **K8S_ENVELOPE,
            "spec": {"replicas": 2, "template": {"metadata": {"labels": {"app": "HACKED"}, "creationTimestamp": None}}},
        },
    )
    records = detect_drift([declared], [live])
    assert len(records) == 1
    assert records[0].category == DriftCategory.MODIFIED
    assert [(c.field, c.declared_value, c.actual_value) for c in records[0].field_changes] == [
        ("spec.template.metadata.labels.app", "web", "HACKED"),
    ]


def test_kubernetes_role_ref_kind_is_compared():
    declared = make_declared(
        name="readers", resource_type="k8s_role_binding", raw_type="RoleBinding", provider="kubernetes",
        source_format=SourceFormat.KUBERNETES, address="RoleBinding/default/readers",
        configuration={"roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "Role", "name": "reader"}},
    )
    live = make_live(
        name="readers", type="RoleBinding", provider="kubernetes",
        configuration={
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": {"name": "readers", "namespace": "default"},
            "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "reader"},
        },
    )
    records = detect_drift([declared], [live])
    assert len(records) == 1
    assert [(c.field, c.change_kind) for c in records[0].field_changes] == [("roleRef.kind", ChangeKind.MODIFIED)]


def test_envelope_keys_are_only_skipped_at_the_top_level():
    declared = {"spec": {"kind": "A", "metadata": {"x": 1}}}
    actual = {"kind": "Other", "spec": {"kind": "B", "metadata": {"x": 2}}}
    changes = compare_configurations(declared, actual, top_level_fields=("kind", "metadata"))
    assert [c.field for c in changes] == ["spec.kind", "spec.metadata.x"]


# --- count / for_each and module instances ---

@pytest.mark.parametrize("name, expected", [
    ("web", "web"),
    ("web[0]", "web"),
    ('web["blue"]', "web"),
    ("module.net.web", "web"),
    ("module.a[0].module.b.web[1]", "web"),
])
def test_base_instance_name(name, expected):
    assert base_instance_name(name) == expected


def test_instance_index_only_holds_indexed_or_nested_names():
    live = [make_live(name="web[0]"), make_live(name="db"), make_live(name="web[1]")]
    index = build_instance_index(live)
    assert index["aws:ec2_instance:web"] == [0, 2]
    assert index["aws:aws_instance:web"] == [0, 2]
    assert "aws:ec2_instance:db" not in index
    assert match_live_instances(make_declared(), index) == [0, 2]


def test_counted_instances_match_declared_resource():
    declared = make_declared(configuration={"instance_type": "t3.micro"})
    live = [
        make_live(name="web[0]", configuration={"instance_type": "t3.micro"}),
        make_live(name="web[1]", configuration={"instance_type": "t3.micro"}),
    ]
    assert detect_drift([declared], live) == []


def test_each_drifted_instance_gets_a_record():
    declared = make_declared(configuration={"instance_type": "t3.micro"})
    live = [
        make_live(name="web[0]", configuration={"instance_type": "t3.micro"}),
        make_live(name="web[1]", configuration={"instance_type": "t3.large"}),
    ]
    records = detect_drift([declared], live)
    assert len(records) == 1
    assert records[0].category == DriftCategory.MODIFIED
    assert records[0].actual_resource.name == "web[1]"
    assert [c.field for c in records[0].field_changes] == ["instance_type"]


def test_module_nested_state_entry_matches_declared_name():
    declared = make_declared(
        name="vpc", resource_type="gce_network", raw_type="google_compute_network", provider="gcp",
        configuration={"auto_create_subnetworks": False},
    )
    live = make_live(
        name="module.network.vpc", type="google_compute_network", provider="google",
        configuration={"auto_create_subnetworks": False},
    )
    assert detect_drift([declared], [live]) == []


def test_exact_name_match_takes_precedence_over_instances():
    declared = make_declared(configuration={"instance_type": "t3.micro"})
    live = [make_live(name="web[0]"), make_live(name="web", configuration={"instance_type": "t3.micro"})]
    records = detect_drift([declared], live)
    assert [(r.category, r.actual_resource.name) for r in records] == [(DriftCategory.SHADOW, "web[0]")]


def test_markers_survive_a_json_round_trip():
    declared = make_declared(
        configuration={"ami": UnresolvedRef(kind="_expr", target="var.ami"), "tags": [UnresolvedRef(kind="_ref", target={"a": 1})]},
        count=UnresolvedRef(kind="_expr", target="var.n"),
    )
    dumped = json.loads(declared.model_dump_json())
    assert dumped["configuration"]["ami"] == {"$unresolved": "_expr", "target": "var.ami"}
    revived = CanonicalResource.model_validate(dumped)
    assert revived.configuration == declared.configuration
    assert revived.count == declared.count
    live = make_live(configuration={"ami": "ami-123", "tags": []})
    assert [c.field for c in detect_drift([revived], [live])[0].field_changes] == ["ami", "tags"]
    assert detect_drift([revived], [live], ignore_unresolved=True)[0].field_changes[0].field == "tags"
