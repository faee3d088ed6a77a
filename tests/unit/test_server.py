from fastapi.testclient import TestClient
from src.iac_drift_server.main import app  # Import the FastAPI app

# Create a TestClient instance for making requests to the app
client = TestClient(app)

DECLARED_INSTANCE = {
    "source_format": "terraform",
    "address": "aws_instance.web",
    "resource_type": "ec2_instance",
    "raw_type": "aws_instance",
    "name": "web",
    "provider": "aws",
    "configuration": {"instance_type": "t3.micro"},
}


def test_health_check():
    """
    Test the /health endpoint.
    It should return a 200 OK status and a JSON response with {"status": "ok"}.
    """
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_parse_terraform():
    content = 'resource "aws_instance" "web" {\n  instance_type = "t3.micro"\n  ami = var.ami\n}\n'
    response = client.post(
        "/v1/iac/parse",
        json={"format": "terraform", "content": content, "source_name": "main.tf", "definition_id": "def-1"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["summary"] == "parsed main.tf: 1 resource(s)"
    assert body["resources"][0]["address"] == "aws_instance.web"
    assert body["resources"][0]["definition_id"] == "def-1"
    assert body["resources"][0]["configuration"]["ami"] == {"$unresolved": "_expr", "target": "var.ami"}


def test_parse_kubernetes_partial():
    content = "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: ok\ndata: {a: b}\n---\nkind: Pod\n"
    response = client.post("/v1/iac/parse", json={"format": "kubernetes", "content": content})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "partial"
    assert len(body["result"]["errors"]) == 1
    assert body["result"]["errors"][0]["context"] == "document 2 in inline"


def test_parse_unparseable_document_is_422():
    response = client.post("/v1/iac/parse", json={"format": "cloudformation", "content": "{not json", "source_name": "t.json"})
    assert response.status_code == 422
    assert "t.json" in response.json()["detail"]


def test_parse_unknown_format_is_rejected():
    response = client.post("/v1/iac/parse", json={"format": "pulumi", "content": "x"})
    assert response.status_code == 422


def test_detect_drift():
    live = [
        {"provider": "aws", "type": "aws_instance", "name": "web", "configuration": {"instance_type": "t3.large"}},
        {"provider": "aws", "type": "aws_s3_bucket", "name": "orphan"},
    ]
    response = client.post("/v1/drift/detect", json={"declared": [DECLARED_INSTANCE], "live": live})
    assert response.status_code == 200
    body = response.json()
    assert body["drift_count"] == 2
    assert body["summary"] == {"missing": 0, "shadow": 1, "modified": 1}
    modified = body["records"][0]
    assert modified["category"] == "modified"
    assert modified["field_changes"] == [{
        "field": "instance_type",
        "declared_value": "t3.micro",
        "actual_value": "t3.large",
        "change_kind": "modified",
    }]
    assert body["records"][1]["category"] == "shadow"


def test_detect_drift_everything_missing():
    response = client.post("/v1/drift/detect", json={"declared": [DECLARED_INSTANCE]})
    assert response.status_code == 200
    assert response.json()["summary"]["missing"] == 1


def test_parsed_resources_round_trip_into_detect():
    content = 'resource "aws_instance" "web" {\n  instance_type = "t3.micro"\n  ami = var.ami\n}\n'
    parsed = client.post("/v1/iac/parse", json={"format": "terraform", "content": content}).json()
    live = [{"provider": "aws", "type": "aws_instance", "name": "web",
             "configuration": {"instance_type": "t3.micro", "ami": "ami-123"}}]

    ignoring = client.post(
        "/v1/drift/detect", json={"declared": parsed["resources"], "live": live, "ignore_unresolved": True}
    )
    assert ignoring.status_code == 200
    assert ignoring.json()["drift_count"] == 0

    reporting = client.post("/v1/drift/detect", json={"declared": parsed["resources"], "live": live}).json()
    assert reporting["summary"]["modified"] == 1
    change = reporting["records"][0]["field_changes"][0]
    assert change["field"] == "ami"
    assert change["declared_value"] == {"$unresolved": "_expr", "target": "var.ami"}
    assert change["actual_value"] == "ami-123"
