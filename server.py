"""
FastAPI Server for the Document Intelligence Review API

Provides endpoints for:
- Matching filenames and resolving folder placement
- Running a file through the intake pipeline
- Consolidating knowledge items (duplicates, conflicts, reclassification)
- Capturing filing corrections and reviewing learned keywords
"""

import os
import logging
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Dict, Any, List, Optional
from dotenv import load_dotenv

load_dotenv()

from document_store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from main import build_graph, run_intake
from nodes.patterns import PatternRegistry
from nodes.matcher import match_filename
from nodes.placement import (
    resolve_folder,
    resolve_folder_for_category,
    get_types_for_category,
)
from nodes.consolidation import consolidate, parse_items
from nodes.classifier import ClassifierConfig
from nodes.learning import (
    FilingCorrection,
    LearningConfig,
    LearningEventNotFoundError,
    LearningLoop,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Engine State (shared registry, store and learning loop)
# ============================================================================

def create_store() -> DocumentStore:
    """JSON-file store when ENGINE_STORAGE_PATH is set, in-memory otherwise."""
    storage_path = os.getenv("ENGINE_STORAGE_PATH")
    if storage_path:
        return JsonFileDocumentStore(storage_path)
    return InMemoryDocumentStore()


registry = PatternRegistry()
document_store: DocumentStore = create_store()
learning_loop = LearningLoop(registry, document_store, config=LearningConfig.from_env())
classifier_config = ClassifierConfig.from_env()

learning_loop.restore_registry()

# Compiled once; nodes read the shared registry, so learned keywords apply immediately
intake_graph = build_graph(registry=registry, classifier_config=classifier_config)


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Doc Intel Normalization API",
    description="Filename matching, folder placement, knowledge consolidation and keyword learning",
    version="0.1.0",
)

# CORS for React frontend (dev server typically on 5173)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Pydantic Models for API
# ============================================================================

class MatchRequest(BaseModel):
    """Filename to classify."""
    file_name: str


class PlacementRequest(BaseModel):
    """File type and optional category to place."""
    file_type: Optional[str] = None
    category: Optional[str] = None


class IntakeRequest(BaseModel):
    """One uploaded file for the intake pipeline."""
    file_name: str
    content_text: Optional[str] = None
    document_id: Optional[str] = None


class ConsolidateRequest(BaseModel):
    """Knowledge items for one client or project."""
    items: List[Dict[str, Any]]
    target_type: Optional[str] = None  # "client" or "project"; both field sets when omitted


class CorrectionRequest(BaseModel):
    """A reviewer's correction of a predicted file type."""
    document_id: str
    file_name: str
    predicted_file_type: str
    corrected_file_type: str
    document_keywords: Optional[List[str]] = None
    predicted_category: Optional[str] = None
    corrected_category: Optional[str] = None
    corrected_fields: Optional[List[str]] = None
    corrected_by: Optional[str] = None


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "doc-intel-normalization-api"}


@app.post("/api/match")
def match(request: MatchRequest):
    """Match a filename against the live pattern rules."""
    result = match_filename(request.file_name, registry.rules())
    return {
        "file_name": request.file_name,
        "match": result.to_dict() if result else None,
    }


@app.post("/api/placement")
def placement(request: PlacementRequest):
    """Resolve the folder and level for a file type (and optional category)."""
    return resolve_folder(request.file_type, request.category).to_dict()


@app.get("/api/placement/categories/{category}")
def category_placement(category: str):
    """Default placement and known file types for a category."""
    return {
        "category": category,
        "placement": resolve_folder_for_category(category).to_dict(),
        "file_types": [m.to_dict() for m in get_types_for_category(category)],
    }


@app.post("/api/intake")
def intake(request: IntakeRequest):
    """Run one file through the intake pipeline (match → classify → place)."""
    extra = {"document_id": request.document_id} if request.document_id else {}
    result = run_intake(request.file_name, request.content_text, graph=intake_graph, **extra)
    return {
        "file_name": request.file_name,
        "file_type": result.get("file_type"),
        "category": result.get("category"),
        "confidence": result.get("confidence", 0.0),
        "classification_method": result.get("classification_method"),
        "matched_keyword": result.get("matched_keyword"),
        "reasoning": result.get("reasoning"),
        "folder": result.get("folder"),
        "level": result.get("level"),
    }


@app.post("/api/knowledge/consolidate")
def consolidate_knowledge(request: ConsolidateRequest):
    """Find duplicates, conflicts and reclassification candidates. Nothing is modified."""
    try:
        items = parse_items(request.items)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        result = consolidate(items, target_type=request.target_type)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()


@app.post("/api/corrections")
def submit_correction(request: CorrectionRequest):
    """Capture a filing correction and report any keywords it caused to be learned."""
    try:
        correction = FilingCorrection.from_dict(request.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    events = learning_loop.record_correction(correction)
    return {
        "message": "Correction recorded",
        "learned": [e.to_dict() for e in events],
    }


@app.get("/api/learning/events")
def list_learning_events(limit: int = 20, include_dismissed: bool = False):
    """Recent learning events, newest first."""
    events = learning_loop.recent_events(limit=limit, include_dismissed=include_dismissed)
    return [e.to_dict() for e in events]


@app.get("/api/learning/candidates")
def list_learning_candidates(min_count: int = 1):
    """Keyword counters that have not been promoted yet."""
    return [c.to_dict() for c in learning_loop.pending_candidates(min_count=min_count)]


@app.post("/api/learning/events/{event_id}/undo")
def undo_learning_event(event_id: str):
    """Remove a learned keyword from the live patterns."""
    try:
        event = learning_loop.undo(event_id)
    except LearningEventNotFoundError:
        raise HTTPException(status_code=404, detail="Learning event not found")
    return {"message": "Learned keyword removed", "event": event.to_dict()}


@app.post("/api/learning/events/{event_id}/dismiss")
def dismiss_learning_event(event_id: str):
    """Hide a learning event; the keyword stays learned."""
    try:
        event = learning_loop.dismiss(event_id)
    except LearningEventNotFoundError:
        raise HTTPException(status_code=404, detail="Learning event not found")
    return {"message": "Learning event dismissed", "event": event.to_dict()}


@app.post("/api/learning/dismiss-all")
def dismiss_all_learning_events():
    """Dismiss every active learning event."""
    return {"dismissed": learning_loop.dismiss_all()}


@app.get("/api/learning/stats")
def learning_stats():
    """Keyword learning and correction statistics."""
    return {
        **learning_loop.stats().to_dict(),
        "corrections": learning_loop.correction_stats(),
    }


# ============================================================================
# Run with: uvicorn server:app --reload
# ============================================================================
