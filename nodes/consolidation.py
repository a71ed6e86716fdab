"""
Knowledge Consolidation - Duplicate, Conflict and Reclassification Detection

Extracted knowledge facts accumulate from several sources (parsed documents,
AI extraction, the data library, manual entry, checklists). Consolidation
looks at one client's or project's facts and reports:

- Duplicates: several facts at the same field path. The one to keep is
  chosen by source priority, then by recency.
- Conflicts: several facts at the same field path whose values differ.
  Conflicts are never resolved here; they go to a human.
- Reclassification candidates: custom.* facts whose label matches a
  canonical field alias.

Everything in this module is a read-only query over a batch of items; the
caller decides whether to apply a recommendation
(see apply_duplicate_recommendation).
"""

import math
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Sequence, Union, Mapping, Tuple
from dataclasses import dataclass, field

from rapidfuzz.distance import Levenshtein

from state import KnowledgeItemRecord

logger = logging.getLogger(__name__)


# ============================================================================
# Source Types
# ============================================================================

class SourceType(Enum):
    """Where a knowledge fact came from."""
    DOCUMENT = "document"
    AI_EXTRACTION = "ai_extraction"
    DATA_LIBRARY = "data_library"
    MANUAL = "manual"
    CHECKLIST = "checklist"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Union[str, "SourceType"]) -> "SourceType":
        """
        Convert a source string to SourceType.

        Raises:
            ValueError: If the string is not a known source type
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Source type must be a string, got {type(value).__name__}")
        normalized = value.strip().lower()
        for source in cls:
            if source.value == normalized:
                return source
        raise ValueError(f"Unknown source type '{value}'")


# Lower value wins when choosing which duplicate to keep
SOURCE_PRIORITY: Dict[SourceType, int] = {
    SourceType.DOCUMENT: 0,
    SourceType.AI_EXTRACTION: 1,
    SourceType.DATA_LIBRARY: 2,
    SourceType.MANUAL: 3,
    SourceType.CHECKLIST: 4,
    SourceType.UNKNOWN: 5,
}

_missing_priorities = set(SourceType) - set(SOURCE_PRIORITY)
if _missing_priorities:
    raise RuntimeError(f"SOURCE_PRIORITY missing entries for {_missing_priorities}")


# ============================================================================
# Knowledge Values
# ============================================================================

KnowledgeValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


def freeze_value(value: KnowledgeValue) -> Tuple:
    """
    Canonical, hashable form of a knowledge value.

    Tagged so that True and 1 stay distinct; objects compare regardless of key
    order, arrays element by element in order.

    Raises:
        TypeError: For values outside null/bool/number/string/array/object
    """
    if value is None:
        return ("null",)
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise TypeError(f"Non-finite number {value!r} is not a knowledge value")
        return ("number", value)
    if isinstance(value, str):
        return ("string", value)
    if isinstance(value, (list, tuple)):
        return ("array", tuple(freeze_value(v) for v in value))
    if isinstance(value, dict):
        frozen = []
        for key, inner in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
            frozen.append((key, freeze_value(inner)))
        return ("object", frozenset(frozen))
    raise TypeError(f"Unsupported knowledge value type: {type(value).__name__}")


def values_equal(a: KnowledgeValue, b: KnowledgeValue) -> bool:
    """Structural equality over knowledge values."""
    return freeze_value(a) == freeze_value(b)


# ============================================================================
# Knowledge Items
# ============================================================================

def _parse_timestamp(raw: Union[str, int, float, datetime]) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Epoch milliseconds
        parsed = datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    elif isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp: {raw!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class KnowledgeItem:
    """One extracted fact about a client or project."""

    id: str
    field_path: str
    is_canonical: bool
    category: str
    label: str
    value: KnowledgeValue
    value_type: str
    source_type: SourceType
    status: str
    added_at: datetime
    source_document_id: Optional[str] = None
    source_document_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KnowledgeItem":
        """
        Parse a stored or wire-format item (snake_case or camelCase keys).

        Raises:
            ValueError: Missing required fields, unknown source type, bad timestamp
            TypeError: Value outside the supported value types
        """
        item_id = _pick(data, "id", "_id")
        field_path = _pick(data, "field_path", "fieldPath")
        source = _pick(data, "source_type", "sourceType")
        added_at = _pick(data, "added_at", "addedAt")

        missing = [
            name for name, present in (
                ("id", item_id), ("field_path", field_path),
                ("source_type", source), ("added_at", added_at),
            ) if present in (None, "")
        ]
        if missing:
            raise ValueError(f"Knowledge item missing required fields: {', '.join(missing)}")
        if "value" not in data:
            raise ValueError(f"Knowledge item {item_id} has no value")

        value = data["value"]
        freeze_value(value)

        return cls(
            id=str(item_id),
            field_path=field_path,
            is_canonical=bool(_pick(data, "is_canonical", "isCanonical", default=False)),
            category=_pick(data, "category", default="") or "",
            label=_pick(data, "label", default="") or "",
            value=value,
            value_type=_pick(data, "value_type", "valueType", default="string") or "string",
            source_type=SourceType.parse(source),
            status=_pick(data, "status", default="active") or "active",
            added_at=_parse_timestamp(added_at),
            source_document_id=_pick(data, "source_document_id", "sourceDocumentId"),
            source_document_name=_pick(data, "source_document_name", "sourceDocumentName"),
        )

    def to_dict(self) -> KnowledgeItemRecord:
        return {
            "id": self.id,
            "field_path": self.field_path,
            "is_canonical": self.is_canonical,
            "category": self.category,
            "label": self.label,
            "value": self.value,
            "value_type": self.value_type,
            "source_type": self.source_type.value,
            "source_document_id": self.source_document_id,
            "source_document_name": self.source_document_name,
            "status": self.status,
            "added_at": self.added_at.isoformat(),
        }


# ============================================================================
# Results
# ============================================================================

@dataclass
class DuplicateRecommendation:
    """Which item to keep at a field path, and which to remove."""
    field_path: str
    keep_id: str
    remove_ids: List[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_path": self.field_path,
            "keep_id": self.keep_id,
            "remove_ids": list(self.remove_ids),
            "reason": self.reason,
        }


@dataclass
class ConflictDetection:
    """Items at one field path that disagree on the value."""
    field_path: str
    item_ids: List[str]
    values: List[KnowledgeValue]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_path": self.field_path,
            "item_ids": list(self.item_ids),
            "values": list(self.values),
            "description": self.description,
        }


@dataclass
class ReclassificationSuggestion:
    """A custom item that looks like a canonical field."""
    item_id: str
    current_path: str
    suggested_path: str
    reason: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "current_path": self.current_path,
            "suggested_path": self.suggested_path,
            "reason": self.reason,
            "confidence": self.confidence,
        }


@dataclass
class ConsolidationReport:
    """Full consolidation pass over one batch of items."""
    duplicates: List[DuplicateRecommendation] = field(default_factory=list)
    conflicts: List[ConflictDetection] = field(default_factory=list)
    reclassify: List[ReclassificationSuggestion] = field(default_factory=list)
    total_items: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_items": self.total_items,
            "duplicates_found": len(self.duplicates),
            "conflicts_found": len(self.conflicts),
            "reclassify_suggestions": len(self.reclassify),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duplicates": [d.to_dict() for d in self.duplicates],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "reclassify": [r.to_dict() for r in self.reclassify],
            "summary": self.summary,
        }


# ============================================================================
# Queries
# ============================================================================

def _group_by_path(items: Sequence[KnowledgeItem]) -> "OrderedDict[str, List[KnowledgeItem]]":
    groups: "OrderedDict[str, List[KnowledgeItem]]" = OrderedDict()
    for item in items:
        groups.setdefault(item.field_path, []).append(item)
    return groups


def _keep_order(item: KnowledgeItem) -> Tuple[int, float]:
    # Higher-priority source first, then most recent first
    return (SOURCE_PRIORITY[item.source_type], -item.added_at.timestamp())


def detect_duplicates(items: Sequence[KnowledgeItem]) -> List[DuplicateRecommendation]:
    """
    One recommendation per field path that holds two or more items.

    Values are not compared; a shared path is enough.
    """
    recommendations = []
    for path, group in _group_by_path(items).items():
        if len(group) < 2:
            continue

        ranked = sorted(group, key=_keep_order)
        kept = ranked[0]
        removed = ranked[1:]
        recommendations.append(DuplicateRecommendation(
            field_path=path,
            keep_id=kept.id,
            remove_ids=[i.id for i in removed],
            reason=(
                f"Keeping {kept.source_type.value} source "
                f"({kept.source_document_name or 'manual entry'}) as it has higher priority. "
                f"Removing {len(removed)} duplicate(s)."
            ),
        ))

    logger.debug(f"Found {len(recommendations)} duplicate groups in {len(items)} items")
    return recommendations


def detect_conflicts(items: Sequence[KnowledgeItem]) -> List[ConflictDetection]:
    """
    One conflict per field path whose items hold more than one distinct value.

    A missing value (None) next to a present one counts as a conflict.
    """
    conflicts = []
    for path, group in _group_by_path(items).items():
        if len(group) < 2:
            continue

        distinct = {freeze_value(i.value) for i in group}
        if len(distinct) < 2:
            continue

        conflicts.append(ConflictDetection(
            field_path=path,
            item_ids=[i.id for i in group],
            values=[i.value for i in group],
            description=(
                f'Field "{path}" has {len(distinct)} different values from different sources.'
            ),
        ))

    return conflicts


def get_custom_items_for_reclassification(items: Sequence[KnowledgeItem]) -> List[KnowledgeItem]:
    """Non-canonical items filed under the custom.* namespace."""
    return [i for i in items if not i.is_canonical and i.field_path.startswith("custom.")]


# ============================================================================
# Reclassification (custom → canonical)
# ============================================================================

# Canonical field path → (label, aliases)
CLIENT_CANONICAL_FIELDS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    # Contact
    "contact.primaryName": ("Primary Contact Name", (
        "contact name", "primary name", "main contact", "key contact", "full name",
        "client name", "borrower name", "principal name")),
    "contact.email": ("Email Address", (
        "email", "email address", "contact email", "primary email", "e-mail")),
    "contact.phone": ("Phone Number", (
        "phone", "telephone", "mobile", "contact number", "phone number",
        "mobile number", "cell phone")),
    "contact.role": ("Role/Title", (
        "job title", "position", "role", "occupation", "profession")),
    "contact.personalAddress": ("Personal Address", (
        "home address", "residential address", "personal address")),
    "contact.nationality": ("Nationality", ("citizenship", "country of origin", "nationality")),

    # Company
    "company.name": ("Company Name", (
        "business name", "entity name", "legal name", "registered name", "company name",
        "corporate name", "firm name")),
    "company.registrationNumber": ("Company Registration Number", (
        "company number", "reg number", "registration no", "companies house number", "crn",
        "company reg", "registration number", "registered number")),
    "company.registeredAddress": ("Registered Office Address", (
        "registered address", "office address", "company address", "business address",
        "registered office", "head office")),
    "company.incorporationDate": ("Date of Incorporation", (
        "incorporation date", "date incorporated", "date of formation", "formation date")),
    "company.vatNumber": ("VAT Number", ("vat registration", "vat no", "vat number")),
    "company.directors": ("Directors", ("director names", "board members", "company directors")),

    # Financial
    "financial.netWorth": ("Net Worth", ("net worth", "total worth", "net assets")),
    "financial.liquidAssets": ("Liquid Assets", (
        "liquid assets", "cash available", "available funds", "liquid funds", "cash reserves")),
    "financial.annualIncome": ("Annual Income", (
        "yearly income", "annual earnings", "annual income", "yearly earnings")),
}

PROJECT_CANONICAL_FIELDS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    # Project overview
    "overview.projectName": ("Project Name", (
        "development name", "scheme name", "site name", "project name")),
    "overview.unitCount": ("Number of Units", (
        "unit count", "number of homes", "number of units", "no of units", "total units")),
    "overview.totalSqft": ("Total Square Footage", (
        "square feet", "floor area", "square footage", "sq ft", "total area")),

    # Location
    "location.siteAddress": ("Site Address", (
        "property address", "development address", "site address")),
    "location.postcode": ("Postcode", ("post code", "postal code", "postcode", "zip code")),
    "location.titleNumber": ("Title Number", (
        "land registry title", "title no", "land registry number", "title number")),

    # Financials
    "financials.purchasePrice": ("Purchase Price", (
        "acquisition price", "land price", "purchase cost", "purchase price",
        "acquisition cost", "land cost")),
    "financials.currentValue": ("Current Market Value", (
        "market value", "current value", "current market value", "open market value")),
    "financials.totalDevelopmentCost": ("Total Development Cost", (
        "total cost", "development cost", "total development cost", "total project cost")),
    "financials.constructionCost": ("Construction Cost", (
        "build cost", "construction budget", "construction cost", "building cost", "build costs")),
    "financials.gdv": ("Gross Development Value", (
        "gdv", "end value", "completed value", "gross development value", "exit value")),
    "financials.loanAmount": ("Loan Amount Requested", (
        "loan required", "funding required", "facility size", "loan amount", "loan request")),
    "financials.ltv": ("Loan to Value", ("ltv", "loan to value")),
    "financials.ltc": ("Loan to Cost", ("ltc", "loan to cost", "loan to gdv")),
    "financials.profitMargin": ("Expected Profit Margin", (
        "profit on cost", "developer profit", "profit margin", "developer margin")),
}

CANONICAL_FIELDS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    **CLIENT_CANONICAL_FIELDS,
    **PROJECT_CANONICAL_FIELDS,
}

TARGET_CLIENT = "client"
TARGET_PROJECT = "project"

RECLASSIFY_MIN_CONFIDENCE = 0.7

# Containment matches shorter than this are too noisy to suggest
_MIN_CONTAINMENT_LENGTH = 3

# Edit distance allowed against a canonical label / an alias
_MAX_LABEL_DISTANCE = 3
_MAX_ALIAS_DISTANCE = 2


def canonical_fields_for(target_type: Optional[str] = None) -> Dict[str, Tuple[str, Tuple[str, ...]]]:
    """
    Canonical fields for client or project intelligence.

    Raises:
        ValueError: If target_type is not 'client', 'project' or None
    """
    if target_type is None:
        return CANONICAL_FIELDS
    normalized = target_type.strip().lower()
    if normalized == TARGET_CLIENT:
        return CLIENT_CANONICAL_FIELDS
    if normalized == TARGET_PROJECT:
        return PROJECT_CANONICAL_FIELDS
    raise ValueError(f"Unknown target type '{target_type}' (expected 'client' or 'project')")


def _normalize_label(text: str) -> str:
    return " ".join(text.lower().replace("_", " ").replace(".", " ").split())


def _labels_for(item: KnowledgeItem) -> List[str]:
    labels = []
    if item.label:
        labels.append(_normalize_label(item.label))
    # custom.contact.borrower_name → "borrower name"
    tail = item.field_path.rsplit(".", 1)[-1]
    tail_label = _normalize_label(tail)
    if tail_label and tail_label not in labels:
        labels.append(tail_label)
    return [label for label in labels if label]


def _match_path(
    item: KnowledgeItem,
    canonical_fields: Mapping[str, Tuple[str, Sequence[str]]],
) -> Optional[Tuple[str, str, float]]:
    """Label or custom path that already spells a canonical path."""
    candidates = {item.field_path[len("custom."):].lower()}
    if item.label:
        candidates.add(item.label.strip().lower())
    for path in canonical_fields:
        if path.lower() in candidates:
            return path, path, 1.0
    return None


def _match_canonical(
    label: str,
    canonical_fields: Mapping[str, Tuple[str, Sequence[str]]],
) -> Optional[Tuple[str, str, float]]:
    """
    Best (path, matched text, confidence) for a label, or None.

    Tiers, first hit wins:
        0.95     - label equals an alias
        0.7-0.9  - label and an alias contain one another (longer overlap scores higher)
        0.75     - label and a canonical label contain one another
        0.6-0.9  - edit distance <= 3 to a canonical label or <= 2 to an alias
    """
    for path, (_, aliases) in canonical_fields.items():
        for alias in aliases:
            if label == alias.lower():
                return path, alias, 0.95

    for path, (_, aliases) in canonical_fields.items():
        for alias in aliases:
            alias_lower = alias.lower()
            if alias_lower in label or label in alias_lower:
                match_length = min(len(label), len(alias_lower))
                if match_length < _MIN_CONTAINMENT_LENGTH:
                    continue
                confidence = min(0.9, 0.7 + match_length / 30)
                return path, alias, round(confidence, 4)

    if len(label) >= _MIN_CONTAINMENT_LENGTH:
        for path, (field_label, _) in canonical_fields.items():
            field_lower = field_label.lower()
            if field_lower in label or label in field_lower:
                return path, field_label, 0.75

    best: Optional[Tuple[str, str, int]] = None
    for path, (field_label, aliases) in canonical_fields.items():
        distance = Levenshtein.distance(label, field_label.lower())
        if distance <= _MAX_LABEL_DISTANCE and (best is None or distance < best[2]):
            best = (path, field_label, distance)
        for alias in aliases:
            distance = Levenshtein.distance(label, alias.lower())
            if distance <= _MAX_ALIAS_DISTANCE and (best is None or distance < best[2]):
                best = (path, alias, distance)

    if best is not None:
        path, matched, distance = best
        return path, matched, round(max(0.6, 0.9 - distance * 0.1), 4)

    return None


def suggest_reclassifications(
    items: Sequence[KnowledgeItem],
    canonical_fields: Optional[Mapping[str, Tuple[str, Sequence[str]]]] = None,
    target_type: Optional[str] = None,
) -> List[ReclassificationSuggestion]:
    """
    Suggest canonical paths for custom items by matching their labels.

    A label (or custom path) that is already a canonical path scores 1.0;
    otherwise the best of the label tiers in _match_canonical is used.
    target_type ('client' or 'project') limits suggestions to that side's
    canonical fields; an explicit canonical_fields mapping takes precedence.
    Suggestions below 0.7 are dropped, and a canonical path that already
    holds an item in the batch is still suggested (the resulting duplicate
    is consolidation's next job).
    """
    if canonical_fields is None:
        canonical_fields = canonical_fields_for(target_type)
    suggestions = []

    for item in get_custom_items_for_reclassification(items):
        best = _match_path(item, canonical_fields)
        if best is None:
            for label in _labels_for(item):
                match = _match_canonical(label, canonical_fields)
                if match and (best is None or match[2] > best[2]):
                    best = match

        if best is None or best[2] < RECLASSIFY_MIN_CONFIDENCE:
            continue

        path, matched, confidence = best
        suggestions.append(ReclassificationSuggestion(
            item_id=item.id,
            current_path=item.field_path,
            suggested_path=path,
            reason=f"Label '{item.label or item.field_path}' matches '{matched}' "
                   f"of {canonical_fields[path][0]}",
            confidence=confidence,
        ))

    return suggestions


def consolidate(
    items: Sequence[KnowledgeItem],
    canonical_fields: Optional[Mapping[str, Tuple[str, Sequence[str]]]] = None,
    target_type: Optional[str] = None,
) -> ConsolidationReport:
    """Run every consolidation query over one batch."""
    report = ConsolidationReport(
        duplicates=detect_duplicates(items),
        conflicts=detect_conflicts(items),
        reclassify=suggest_reclassifications(items, canonical_fields, target_type),
        total_items=len(items),
    )
    logger.info(
        f"Consolidated {report.total_items} items: "
        f"{len(report.duplicates)} duplicates, {len(report.conflicts)} conflicts, "
        f"{len(report.reclassify)} reclassifications"
    )
    return report


def parse_items(records: Sequence[Mapping[str, Any]]) -> List[KnowledgeItem]:
    """Parse a batch of records, rejecting the whole batch on the first bad one."""
    return [KnowledgeItem.from_dict(r) for r in records]


# ============================================================================
# Applying Recommendations
# ============================================================================

KNOWLEDGE_COLLECTION = "knowledgeItems"


def apply_duplicate_recommendation(store, recommendation: DuplicateRecommendation) -> int:
    """
    Delete the items a duplicate recommendation marks for removal.

    Runs inside one store transaction so a concurrent edit cannot remove the
    kept item halfway through.

    Returns:
        Number of items deleted

    Raises:
        KeyError: If the kept item no longer exists
    """
    with store.transaction():
        if store.get(recommendation.keep_id) is None:
            raise KeyError(
                f"Kept item {recommendation.keep_id} for {recommendation.field_path} no longer exists"
            )
        removed = 0
        for item_id in recommendation.remove_ids:
            if item_id == recommendation.keep_id:
                continue
            if store.delete(item_id):
                removed += 1

    logger.info(f"Removed {removed} duplicate(s) at {recommendation.field_path}")
    return removed
