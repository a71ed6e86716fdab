"""
Filename Matcher Node - Keyword Pattern Matching on File Names

Classifies an uploaded file from its name alone, before any content is read.

Matching rules:
- The filename is lowercased and '_', '-', '.' become spaces
  ("HSBC_Business_Statement_Dec2024.pdf" → "hsbc business statement dec2024 pdf")
- Rules are evaluated in declaration order, keywords in list order
- A keyword hits when it appears anywhere in the normalized name (plain
  substring, so "passport" also hits "passportphoto")
- If the rule has exclusion terms and any of them appears in the name, that
  keyword is skipped and matching continues with the next keyword
- The first hit wins; confidence is a fixed 0.85

Also provides checklist scoring: how well a filename satisfies each open
requirement on a client/project checklist.
"""

import re
import logging
from typing import List, Dict, Any, Optional, Sequence
from dataclasses import dataclass, field

from state import IntakeState
from nodes.patterns import (
    CHECKLIST_PATTERN_ALIASES,
    FILENAME_PATTERNS,
    PatternRule,
)

logger = logging.getLogger(__name__)


MATCH_CONFIDENCE = 0.85

_SEPARATORS = re.compile(r"[_\-.]")


def normalize_file_name(file_name: str) -> str:
    """Lowercase and turn '_', '-', '.' into spaces. No other decoding."""
    return _SEPARATORS.sub(" ", (file_name or "").lower())


# ============================================================================
# Filename → File Type
# ============================================================================

@dataclass
class FilenameMatch:
    """Result of a successful filename match."""

    file_type: str
    category: str
    folder: str
    level: str
    confidence: float
    matched_keyword: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_type": self.file_type,
            "category": self.category,
            "folder": self.folder,
            "level": self.level,
            "confidence": self.confidence,
            "matched_keyword": self.matched_keyword,
            "reason": self.reason,
        }


def match_filename(
    file_name: str,
    rules: Optional[Sequence[PatternRule]] = None,
) -> Optional[FilenameMatch]:
    """
    Match a filename against the ordered pattern rules.

    Args:
        file_name: Original upload name, extension included
        rules: Ordered rules to evaluate (defaults to the built-in table;
            pass registry.rules() to include learned keywords)

    Returns:
        FilenameMatch for the first rule with a non-excluded keyword hit,
        or None when nothing matches
    """
    rules = FILENAME_PATTERNS if rules is None else rules
    name = normalize_file_name(file_name)
    if not name.strip():
        return None

    for rule in rules:
        excluded = bool(rule.exclude_if) and any(term in name for term in rule.exclude_if)
        for keyword in rule.keywords:
            if keyword not in name:
                continue
            if excluded:
                # Exclusion only disqualifies this rule's keywords
                continue
            return FilenameMatch(
                file_type=rule.file_type,
                category=rule.category,
                folder=rule.folder,
                level=rule.level,
                confidence=MATCH_CONFIDENCE,
                matched_keyword=keyword,
                reason=f'Filename contains "{keyword}"',
            )

    return None


# ============================================================================
# Filename → Checklist Requirements
# ============================================================================

@dataclass
class ChecklistItem:
    """An open requirement on a client or project checklist."""

    id: str
    name: str
    category: str = ""
    matching_document_types: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChecklistItem":
        return cls(
            id=str(data.get("id") or data.get("_id") or ""),
            name=data.get("name", ""),
            category=data.get("category", ""),
            matching_document_types=list(
                data.get("matching_document_types")
                or data.get("matchingDocumentTypes")
                or []
            ),
        )


@dataclass
class ChecklistMatch:
    """How well a filename satisfies one checklist item."""

    item_id: str
    score: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"item_id": self.item_id, "score": self.score, "reason": self.reason}


def _alias_group_applies(pattern_key: str, item: ChecklistItem) -> bool:
    lead = pattern_key.split(" ")[0]
    for doc_type in item.matching_document_types:
        doc_lower = doc_type.lower()
        if lead in doc_lower or doc_lower.split(" ")[0] in pattern_key:
            return True
    return lead in item.name.lower()


def _word_overlap(item_name: str, parts: List[str]) -> List[str]:
    item_words = [w for w in item_name.split() if len(w) > 3]
    meaningful = [p for p in parts if len(p) >= 4]

    matching = []
    for word in item_words:
        for part in meaningful:
            if (
                part == word
                or word in part
                or (part in word and len(part) >= max(4, len(word) * 0.6))
            ):
                matching.append(word)
                break

    if len(matching) >= 2 or (matching and len(item_words) <= 2):
        return matching
    return []


def check_checklist_patterns(
    file_name: str,
    checklist_items: Sequence[ChecklistItem],
) -> List[ChecklistMatch]:
    """
    Score a filename against each checklist item.

    Scores:
        0.9  - filename contains the requirement name
        0.85 - filename contains one of the item's matching document types
        0.8  - filename contains an alias from a related alias group
        0.6  - meaningful words of the requirement name appear in the filename

    Returns:
        Matches with a non-zero score, best first
    """
    name = normalize_file_name(file_name)
    parts = name.split()
    matches: List[ChecklistMatch] = []

    for item in checklist_items:
        item_name = item.name.lower()
        best_score = 0.0
        best_reason = ""

        requirement = " ".join(item_name.split()).replace("(", "").replace(")", "")
        if requirement and requirement in name:
            best_score = 0.9
            best_reason = "Filename contains requirement name"

        if best_score < 0.9:
            for doc_type in item.matching_document_types:
                if " ".join(doc_type.lower().split()) in name and best_score < 0.85:
                    best_score = 0.85
                    best_reason = f"Filename matches document type: {doc_type}"

        for pattern_key, aliases in CHECKLIST_PATTERN_ALIASES.items():
            if not _alias_group_applies(pattern_key, item):
                continue
            for alias in aliases:
                if (alias in name or alias in parts) and best_score < 0.8:
                    best_score = 0.8
                    best_reason = f'Filename pattern "{alias}" matches requirement'

        if best_score < 0.6:
            matching_words = _word_overlap(item_name, parts)
            if matching_words:
                best_score = 0.6
                best_reason = f"Filename contains keywords: {', '.join(matching_words)}"

        if best_score > 0:
            matches.append(ChecklistMatch(item_id=item.id, score=best_score, reason=best_reason))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches


# ============================================================================
# Main Node Function
# ============================================================================

def filename_matcher_node(
    state: IntakeState,
    rules: Optional[Sequence[PatternRule]] = None,
) -> dict:
    """
    Node: Filename Matcher

    Tries to classify the file from its name. On a miss the graph routes to
    the content classifier.
    """
    print("--- NODE: Filename Matcher ---")

    file_name = state.get("file_name", "")
    match = match_filename(file_name, rules)

    if match is None:
        print(f"   No filename pattern for '{file_name}'")
        return {
            "file_type": None,
            "category": None,
            "confidence": 0.0,
            "classification_method": "none",
            "matched_keyword": None,
            "reasoning": None,
        }

    print(f"   {file_name} → {match.file_type} ({match.reason})")
    logger.debug(f"Filename match: {match.to_dict()}")

    return {
        "file_type": match.file_type,
        "category": match.category,
        "confidence": match.confidence,
        "classification_method": "filename",
        "matched_keyword": match.matched_keyword,
        "reasoning": match.reason,
    }
