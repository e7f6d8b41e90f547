"""FastAPI gateway for the designer matching engine."""
from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from matching_engine.api.dependencies import get_orchestrator
from matching_engine.api.schemas import ErrorResponse, MatchRead, MatchResponse
from matching_engine.match.service import MatchOrchestrator
from matching_engine.shared.errors import (
    AlreadyMatched,
    BriefNotFound,
    MatchingError,
    MatchTimeout,
    NoEligibleDesigners,
    RetrievalUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Designer Matching Engine API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first: BriefNotFound is also a ValidationError.
_STATUS_BY_ERROR: list[tuple[type[MatchingError], int]] = [
    (BriefNotFound, 404),
    (ValidationError, 422),
    (AlreadyMatched, 409),
    (NoEligibleDesigners, 404),
    (RetrievalUnavailable, 503),
    (MatchTimeout, 504),
]


def status_for(exc: MatchingError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(MatchingError)
def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    status = status_for(exc)
    body = ErrorResponse(code=exc.kind, detail=str(exc), stage=exc.stage)
    if isinstance(exc, AlreadyMatched):
        body.match_id = exc.match.id
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} failed with {status}: {exc.kind} ({exc})")
    return JSONResponse(status_code=status, content=body.model_dump())


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/briefs/{brief_id}/match", response_model=MatchResponse)
def find_match(brief_id: str, orchestrator: MatchOrchestrator = Depends(get_orchestrator)) -> MatchResponse:
    """Pick the single best designer for a brief and persist the match."""
    outcome = orchestrator.find_match(brief_id)
    return MatchResponse.from_outcome(outcome)


@app.get("/briefs/{brief_id}/match", response_model=MatchRead)
def get_match(brief_id: str, orchestrator: MatchOrchestrator = Depends(get_orchestrator)) -> MatchRead:
    match = orchestrator.get_match_for_brief(brief_id)
    if match is None:
        raise HTTPException(status_code=404, detail="No live match for this brief")
    return MatchRead.from_match(match)


@app.post("/matches/{match_id}/unlock", response_model=MatchRead)
def unlock_match(match_id: str, orchestrator: MatchOrchestrator = Depends(get_orchestrator)) -> MatchRead:
    try:
        match = orchestrator.unlock_match(match_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Match not found") from None
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return MatchRead.from_match(match)


@app.get("/", include_in_schema=False)
def root() -> dict:
    return {
        "service": "Designer Matching Engine API",
        "docs_url": "/docs",
        "health_url": "/health",
    }
