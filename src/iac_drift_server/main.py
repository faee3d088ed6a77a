from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from src.iac_drift.core_logic.drift_engine import detect_drift
from src.iac_drift.core_logic.resource_mapper import map_to_resources
from src.iac_drift.models import (
    CanonicalResource,
    DriftCategory,
    DriftRecord,
    LiveResource,
    ParseResult,
    SourceFormat,
)
from src.iac_drift.parsers.common import IaCParseFailure
from src.iac_drift.parsers.dispatch import parse_content

app = FastAPI(
    title="IaC Drift Core",
    description="Stateless parsing of IaC definitions and drift detection against a supplied inventory.",
    version="0.1.0",
)


class ParseRequest(BaseModel):
    format: SourceFormat
    content: str
    source_name: str = "inline"
    definition_id: Optional[str] = None
    user_id: Optional[str] = None


class ParseResponse(BaseModel):
    status: str
    summary: str
    result: ParseResult
    resources: List[CanonicalResource]


class DetectRequest(BaseModel):
    declared: List[CanonicalResource]
    live: List[LiveResource] = Field(default_factory=list)
    ignore_unresolved: bool = False


class DetectResponse(BaseModel):
    drift_count: int
    summary: Dict[str, int]
    records: List[DriftRecord]


@app.get("/health", status_code=200)
async def health_check():
    """
    Simple health check endpoint.
    """
    return {"status": "ok"}


@app.post("/v1/iac/parse", response_model=ParseResponse)
async def parse_iac(request: ParseRequest):
    """
    Parses one IaC document. A document that cannot be parsed at all is a 422;
    per-resource problems come back in `result.errors`.
    """
    try:
        result = parse_content(request.format, request.content, request.source_name)
    except IaCParseFailure as e:
        raise HTTPException(status_code=422, detail=str(e))
    resources = map_to_resources(result, definition_id=request.definition_id, user_id=request.user_id)
    return ParseResponse(status=result.status, summary=result.summary(), result=result, resources=resources)


@app.post("/v1/drift/detect", response_model=DetectResponse)
async def detect(request: DetectRequest):
    records = detect_drift(request.declared, request.live, ignore_unresolved=request.ignore_unresolved)
    summary: Dict[str, Any] = {category.value: 0 for category in DriftCategory}
    for record in records:
        summary[record.category.value] += 1
    return DetectResponse(drift_count=len(records), summary=summary, records=records)


if __name__ == "__main__":
    import uvicorn

    # Typically run from the command line: `uvicorn src.iac_drift_server.main:app --reload`
    uvicorn.run(app, host="0.0.0.0", port=8000)
