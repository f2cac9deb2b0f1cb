"""
HTTP API for the RevAI application.

This module defines the FastAPI application used by the web frontend
and by the scheduler.  It wraps the database, parser, evaluation and
orchestration modules; no screening logic lives here.

Core endpoints:

* **POST /upload** – Multipart form with ``sessionId``, ``file`` and an
  optional ``criteria`` JSON list.  Parses the articles, stores a file
  record and its articles and returns ``fileId`` and ``articleCount``.
  If the articles cannot be stored the file record is deleted again.

* **POST /evaluate** – Flags the given articles of a session for AI
  evaluation and marks the session as running.

* **POST /evaluate/single** – Evaluates one article immediately and
  stores the result.

* **GET /evaluates/{id}** – Returns the screening projection of one
  article.

* **GET /evaluate/batch** – Called by the scheduler; processes one
  batch of flagged articles.

Session, file, article decision, statistics, export and settings
endpoints support the review dashboard.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from . import database as db
from .config import DEFAULT_BATCH_SIZE, ConfigurationError
from .data_validator import ArticleValidator
from .evaluator import EvaluationClient
from .models import Decision
from .orchestrator import resolve_settings, run_evaluation_batch
from .parsers import parse_articles
from .prompts import format_criteria
from .review_stats import export_articles_csv, summarize_session

logger = logging.getLogger(__name__)


app = FastAPI(title="RevAI Screening API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===== Request models =====

class CriterionIn(BaseModel):
    id: Optional[str] = None
    text: str


class SessionCreateRequest(BaseModel):
    title: str = ""
    criteria: List[CriterionIn] = Field(default_factory=list)


class SessionUpdateRequest(BaseModel):
    title: Optional[str] = None
    criteria: Optional[List[CriterionIn]] = None


class EvaluateRequest(BaseModel):
    sessionId: str = ""
    articleIds: List[str] = Field(default_factory=list)


class SingleEvaluateRequest(BaseModel):
    articleId: str = ""
    title: str = ""
    abstract: str = ""
    criteria: Any = None


class ArticleEvaluateRequest(BaseModel):
    title: str = ""
    abstract: str = ""
    criteria: Any = None


class UserDecisionRequest(BaseModel):
    decision: Decision


class AISettingsRequest(BaseModel):
    instructions: str
    temperature: float = Field(0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(500, gt=0)
    seed: Optional[int] = 12345
    model: str = "gpt-4o-mini"
    batch_size: Optional[int] = Field(DEFAULT_BATCH_SIZE, gt=0)


# ===== Dependencies =====

def get_evaluator() -> EvaluationClient:
    """Build the evaluation client, failing fast without an API key."""
    try:
        return EvaluationClient()
    except ConfigurationError as e:
        logger.error(f"Evaluation client unavailable: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def _criteria_dicts(criteria: Optional[List[CriterionIn]]) -> Optional[List[Dict[str, Any]]]:
    if criteria is None:
        return None
    return [c.model_dump() for c in criteria]


def _parse_criteria_json(raw: str) -> List[Dict[str, Any]]:
    """Parse the upload form's criteria field into a non-empty list."""
    try:
        criteria = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid criteria format")
    if not isinstance(criteria, list) or not criteria:
        raise HTTPException(status_code=400, detail="Invalid criteria format")
    parsed: List[Dict[str, Any]] = []
    for item in criteria:
        if isinstance(item, str):
            parsed.append({'text': item})
        elif isinstance(item, dict) and isinstance(item.get('text'), str):
            parsed.append(item)
        else:
            raise HTTPException(status_code=400, detail="Invalid criteria format")
    return parsed


@app.on_event("startup")
async def startup_event() -> None:
    """Ensure the database schema exists before requests are served."""
    db.init_db()
    logger.info("RevAI server startup complete")


@app.get("/health", response_model=Dict[str, Any])
async def health_check() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "server": "RevAI",
    }


# ===== Sessions =====

@app.post("/sessions", response_model=Dict[str, Any])
async def create_session(request: SessionCreateRequest) -> Dict[str, Any]:
    try:
        return db.create_session(request.title, _criteria_dicts(request.criteria))
    except db.StoreError as e:
        logger.error(f"Error creating session: {e}")
        raise HTTPException(status_code=500, detail="Failed to create review session")


@app.get("/sessions", response_model=List[Dict[str, Any]])
async def list_sessions() -> List[Dict[str, Any]]:
    try:
        return db.list_sessions()
    except db.StoreError as e:
        logger.error(f"Error listing sessions: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch review sessions")


@app.get("/sessions/{session_id}", response_model=Dict[str, Any])
async def get_session(session_id: str) -> Dict[str, Any]:
    try:
        return db.get_session(session_id)
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error fetching session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch review session")


@app.patch("/sessions/{session_id}", response_model=Dict[str, Any])
async def update_session(session_id: str, request: SessionUpdateRequest) -> Dict[str, Any]:
    try:
        return db.update_session(session_id, title=request.title, criteria=_criteria_dicts(request.criteria))
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error updating session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update review session")


@app.delete("/sessions/{session_id}", response_model=Dict[str, Any])
async def delete_session(session_id: str) -> Dict[str, Any]:
    try:
        db.delete_session(session_id)
        return {"message": "Review session deleted", "sessionId": session_id}
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error deleting session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete review session")


@app.get("/sessions/{session_id}/files", response_model=List[Dict[str, Any]])
async def list_files(session_id: str) -> List[Dict[str, Any]]:
    try:
        return db.get_files(session_id)
    except db.StoreError as e:
        logger.error(f"Error fetching files of session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch files")


@app.get("/sessions/{session_id}/articles", response_model=List[Dict[str, Any]])
async def list_articles(session_id: str) -> List[Dict[str, Any]]:
    try:
        return db.list_session_articles(session_id)
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error fetching articles of session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch articles")


@app.get("/sessions/{session_id}/stats", response_model=Dict[str, Any])
async def session_stats(session_id: str) -> Dict[str, Any]:
    try:
        return summarize_session(db.list_session_articles(session_id))
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error computing stats for session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to compute session statistics")


@app.get("/sessions/{session_id}/export")
async def export_session(session_id: str) -> Response:
    try:
        csv_data = export_articles_csv(db.list_session_articles(session_id))
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Review session not found")
    except db.StoreError as e:
        logger.error(f"Error exporting session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to export session")
    return Response(
        content=csv_data,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="screening_{session_id}.csv"'},
    )


@app.delete("/files/{file_id}", response_model=Dict[str, Any])
async def delete_file(file_id: str) -> Dict[str, Any]:
    try:
        db.delete_file(file_id)
        return {"message": "File deleted", "fileId": file_id}
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except db.StoreError as e:
        logger.error(f"Error deleting file {file_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete file")


# ===== Upload =====

@app.post("/upload", response_model=Dict[str, Any])
async def upload(
    sessionId: str = Form(""),
    file: Optional[UploadFile] = File(None),
    criteria: Optional[str] = Form(None),
    filename: Optional[str] = Form(None),
) -> Dict[str, Any]:
    """Parse an uploaded article file and store its articles.

    When ``criteria`` is supplied it replaces the session's criteria once
    the articles are stored.  If storing fails the file record is deleted
    again and the session is left unchanged.
    """
    if not sessionId or file is None:
        raise HTTPException(status_code=400, detail="Session ID and file are required.")
    name = filename or file.filename or "upload.txt"
    try:
        text = (await file.read()).decode('utf-8-sig')
    except UnicodeDecodeError as e:
        logger.warning(f"Rejected upload {name}: not valid UTF-8 ({e})")
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded text.")
    if not text.strip():
        raise HTTPException(status_code=400, detail="File is empty.")
    parsed_criteria = _parse_criteria_json(criteria) if criteria is not None else None

    articles = parse_articles(text)
    if not articles:
        raise HTTPException(status_code=400, detail="No articles found in file.")
    quality_report = ArticleValidator().validate_articles(articles)

    try:
        file_id = db.insert_file(sessionId, name, len(articles))
    except db.NotFoundError:
        raise HTTPException(status_code=400, detail="Invalid session ID")
    except db.StoreError as e:
        logger.error(f"Error creating file entry: {e}")
        raise HTTPException(status_code=500, detail="Failed to create file entry")

    try:
        inserted = db.insert_articles(file_id, articles)
        if parsed_criteria is not None:
            db.update_session(sessionId, criteria=parsed_criteria)
    except Exception as e:
        logger.error(f"Error inserting articles for file {file_id}: {e}")
        try:
            db.delete_file(file_id)
        except db.StoreError as cleanup_error:
            logger.error(f"Failed to delete file {file_id} after insert failure: {cleanup_error}")
        raise HTTPException(status_code=500, detail="Failed to insert articles.")

    logger.info(f"Uploaded {name}: {inserted} articles into session {sessionId}")
    return {
        "sessionId": sessionId,
        "fileId": file_id,
        "filename": name,
        "message": "File uploaded successfully",
        "articleCount": inserted,
        "qualityReport": quality_report,
    }


# ===== Evaluation =====

@app.post("/evaluate", response_model=Dict[str, Any])
async def evaluate(request: EvaluateRequest) -> Dict[str, Any]:
    """Queue articles of a session for AI evaluation."""
    if not request.sessionId or not request.articleIds:
        raise HTTPException(status_code=400, detail="Session ID and article IDs are required")
    try:
        session = db.get_session(request.sessionId)
        if not session['criteria']:
            raise HTTPException(status_code=400, detail="No criteria found for this session")
        count = db.mark_articles_for_evaluation(request.articleIds, session_id=request.sessionId)
        if count:
            db.mark_session_evaluation_running(request.sessionId)
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Failed to retrieve session criteria")
    except db.StoreError as e:
        logger.error(f"Error queueing evaluation for session {request.sessionId}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process evaluation request")
    return {
        "message": "Article evaluation started",
        "count": count,
    }


def _evaluate_and_store(
    evaluator: EvaluationClient,
    article_id: str,
    title: str,
    abstract: str,
    criteria: Any,
) -> Dict[str, Any]:
    try:
        settings = resolve_settings()
        result = evaluator.evaluate(title, abstract, format_criteria(criteria), settings)
        db.update_article_evaluation(article_id, result.decision, result.explanation, settings_id=settings.id)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Article not found")
    except db.StoreError as e:
        logger.error(f"Error updating article {article_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update article in database")
    return {
        "articleId": article_id,
        "decision": result.decision.value,
        "explanation": result.explanation,
    }


@app.post("/evaluate/single", response_model=Dict[str, Any])
def evaluate_single(
    request: SingleEvaluateRequest,
    evaluator: EvaluationClient = Depends(get_evaluator),
) -> Dict[str, Any]:
    if not request.articleId or not request.title or not request.criteria:
        raise HTTPException(status_code=400, detail="Article ID, title, and criteria are required")
    return _evaluate_and_store(evaluator, request.articleId, request.title, request.abstract, request.criteria)


@app.get("/evaluate/batch", response_model=Dict[str, Any])
def evaluate_batch(evaluator: EvaluationClient = Depends(get_evaluator)) -> Dict[str, Any]:
    """Process one batch of articles flagged for evaluation."""
    try:
        report = run_evaluation_batch(evaluator)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except db.StoreError as e:
        logger.error(f"Batch evaluation error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process batch.")
    message = "Batch processed successfully." if report.selected else "No articles to process."
    return {"message": message, **report.to_dict()}


@app.get("/evaluates/{article_id}", response_model=Dict[str, Any])
async def get_article(article_id: str) -> Dict[str, Any]:
    try:
        article = db.get_article_by_id(article_id)
    except db.StoreError as e:
        logger.error(f"Error fetching article {article_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch article")
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@app.post("/evaluates/{article_id}", response_model=Dict[str, Any])
def evaluate_article(
    article_id: str,
    request: ArticleEvaluateRequest,
    evaluator: EvaluationClient = Depends(get_evaluator),
) -> Dict[str, Any]:
    if not request.title or not request.criteria:
        raise HTTPException(status_code=400, detail="Title and criteria are required")
    return _evaluate_and_store(evaluator, article_id, request.title, request.abstract, request.criteria)


@app.patch("/articles/{article_id}/decision", response_model=Dict[str, Any])
async def set_user_decision(article_id: str, request: UserDecisionRequest) -> Dict[str, Any]:
    try:
        return db.update_article_user_decision(article_id, request.decision)
    except db.NotFoundError:
        raise HTTPException(status_code=404, detail="Article not found")
    except db.StoreError as e:
        logger.error(f"Error updating decision of article {article_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update article decision")


# ===== AI settings =====

@app.get("/settings", response_model=Dict[str, Any])
async def get_settings() -> Dict[str, Any]:
    try:
        settings = db.get_ai_settings()
    except db.StoreError as e:
        logger.error(f"Error fetching AI settings: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch AI settings")
    if settings is None:
        raise HTTPException(status_code=404, detail="No AI settings found")
    return settings.to_dict()


@app.post("/settings", response_model=Dict[str, Any])
async def save_settings(request: AISettingsRequest) -> Dict[str, Any]:
    """Store a new settings version; earlier versions are kept."""
    try:
        return db.create_ai_settings(**request.model_dump()).to_dict()
    except db.StoreError as e:
        logger.error(f"Error saving AI settings: {e}")
        raise HTTPException(status_code=500, detail="Failed to save AI settings")


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the API server using uvicorn."""
    import uvicorn  # type: ignore

    logger.info(f"Starting RevAI server on {host}:{port}")
    uvicorn.run(
        "revai.backend.server:app",
        host=host,
        port=port,
        log_level="info",
        reload=False,
    )
