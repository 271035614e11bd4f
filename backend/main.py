"""FastAPI application exposing the decision framework."""
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from decision_framework.errors import ErrorType, FrameworkError
from decision_framework.explain import AudienceType, DetailLevel, ExplanationFormat
from decision_framework.framework import DecisionFramework
from decision_framework.schemas import DecisionRequest, DecisionResult, DecisionTrace, Explanation, OutcomeReport

app = FastAPI(title="Decision Framework")

logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR_TYPE = {
    ErrorType.NOT_FOUND_ERROR: 404,
    ErrorType.VALIDATION_ERROR: 422,
    ErrorType.PARSING_ERROR: 422,
    ErrorType.PERMISSION_ERROR: 403,
    ErrorType.RATE_LIMIT_ERROR: 429,
    ErrorType.AI_SERVICE_ERROR: 502,
    ErrorType.DATABASE_ERROR: 503,
}

_framework: Optional[DecisionFramework] = None


async def get_framework() -> DecisionFramework:
    """Lazily build the process-wide framework from configuration."""
    global _framework
    if _framework is None:
        framework = DecisionFramework.create()
        await framework.initialize()
        _framework = framework
    return _framework


@app.exception_handler(FrameworkError)
async def framework_error_handler(request: Request, exc: FrameworkError) -> JSONResponse:
    status = _STATUS_BY_ERROR_TYPE.get(exc.error_type, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.to_public_dict()})


class DecisionRequestBody(DecisionRequest):
    actions: list[Any] = Field(min_length=1)
    explainable: bool = True
    audience: AudienceType = AudienceType.BUSINESS
    include_counterfactuals: bool = False


class OutcomeRequest(BaseModel):
    outcome: dict[str, Any]


@app.post("/decisions", response_model=DecisionResult)
async def create_decision(
    req: DecisionRequestBody,
    framework: DecisionFramework = Depends(get_framework),
) -> DecisionResult:
    return await framework.generate_decision(
        req.decision_type,
        req.context,
        req.actions,
        constraints=req.constraints,
        explainable=req.explainable,
        audience=req.audience,
        include_counterfactuals=req.include_counterfactuals,
        agent_types=req.agent_types,
        mode=req.collaboration_mode,
    )


@app.post("/decisions/{decision_id}/outcome", response_model=OutcomeReport)
async def report_outcome(
    decision_id: str,
    req: OutcomeRequest,
    framework: DecisionFramework = Depends(get_framework),
) -> OutcomeReport:
    return await framework.update_policy_from_outcome(decision_id, req.outcome)


@app.get("/decisions/{decision_id}/explanation", response_model=Explanation)
async def get_explanation(
    decision_id: str,
    audience: AudienceType = AudienceType.BUSINESS,
    detail_level: int = Query(DetailLevel.STANDARD.value, ge=1, le=5),
    include_counterfactuals: bool = False,
    format: ExplanationFormat = ExplanationFormat.TEXT,
    framework: DecisionFramework = Depends(get_framework),
) -> Explanation:
    return await framework.explainer.explain(
        decision_id,
        audience=audience,
        detail_level=detail_level,
        include_counterfactuals=include_counterfactuals,
        format=format,
    )


@app.get("/decisions/{decision_id}/trace", response_model=DecisionTrace)
async def get_trace(
    decision_id: str,
    include_intermediate_steps: bool = True,
    detail_level: int = Query(DetailLevel.STANDARD.value, ge=1, le=5),
    framework: DecisionFramework = Depends(get_framework),
) -> DecisionTrace:
    return await framework.trace(decision_id, include_intermediate_steps, detail_level)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
