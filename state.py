from typing import TypedDict, List, Dict, Optional, Any

# ============================================================================
# Wire Shapes (serialized records passed between the engine and collaborators)
# ============================================================================

class KnowledgeItemRecord(TypedDict, total=False):
    """
    One extracted fact as stored by the knowledge bank.
    Parsed into nodes.consolidation.KnowledgeItem before consolidation.
    """
    id: str
    field_path: str  # e.g. "financials.gdv" or "custom.contact.borrower_name"
    is_canonical: bool
    category: str
    label: str
    value: Any  # str | int | float | bool | None | list | dict
    value_type: str  # 'string', 'currency', 'date', ...
    source_type: str  # 'document' | 'ai_extraction' | 'data_library' | 'manual' | 'checklist' | 'unknown'
    source_document_id: Optional[str]
    source_document_name: Optional[str]
    status: str
    added_at: str  # ISO timestamp


class CorrectionRecord(TypedDict, total=False):
    """
    A human override of a predicted file type, as persisted in 'filingCorrections'.
    """
    document_id: str
    file_name: str
    file_name_normalized: str
    predicted_file_type: str
    corrected_file_type: str
    predicted_category: Optional[str]
    corrected_category: Optional[str]
    document_keywords: List[str]
    corrected_fields: List[str]
    corrected_by: Optional[str]
    created_at: str


class LearningEventRecord(TypedDict, total=False):
    """
    A promoted keyword, as returned by the review API.
    The stored copy in 'learningEvents' carries the id as '_id'.
    """
    id: str
    keyword: str
    target_file_type: str
    correction_count: int
    created_at: str
    state: str  # 'active' | 'dismissed' | 'undone'
    source_document_ids: List[str]


# ============================================================================
# Intake Pipeline State
# ============================================================================

class IntakeState(TypedDict, total=False):
    """
    The state of one uploaded file moving through the intake graph.
    Each node returns a partial update that LangGraph merges in.
    """
    # Input
    document_id: str
    file_name: str
    content_text: Optional[str]  # Text supplied by upstream extraction (may be empty)

    # Classification
    file_type: Optional[str]
    category: Optional[str]
    confidence: float
    classification_method: str  # 'filename' | 'llm' | 'mock' | 'none'
    matched_keyword: Optional[str]
    reasoning: Optional[str]

    # Placement
    folder: str
    level: str  # 'client' | 'project'

    # Review
    corrected_file_type: Optional[str]  # Reviewer override, if any
    learned_keywords: List[str]

    # Diagnostics
    errors: List[str]
    metrics: Dict[str, Any]
