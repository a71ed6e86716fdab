"""
Keyword Learning Loop - Learn Filename Keywords From Human Corrections

When a reviewer corrects a predicted file type, the correction is stored and
its candidate keywords are counted against the corrected type:

1. Reviewer corrects: matcher said "Appraisal" → reviewer says "RedBook Valuation"
2. Candidate keywords come from the document's key terms when supplied,
   otherwise from meaningful filename tokens
3. Each (keyword, corrected type) pair counts distinct documents
4. At LEARNING_THRESHOLD (3) corrections the keyword is added to the live
   pattern registry and a LearningEvent is created for the review UI
5. Reviewers can dismiss an event (keyword stays) or undo it (keyword removed)

Collections used in the document store:
- filingCorrections: every correction, as captured
- keywordCandidates: one counter per (keyword, corrected type), keyed by pair_key
- learningEvents: promoted keywords and their review state
"""

import os
import re
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Sequence
from dataclasses import dataclass, field

from nodes.patterns import PatternRegistry, normalize_keyword
from state import CorrectionRecord, LearningEventRecord

logger = logging.getLogger(__name__)


CORRECTIONS_COLLECTION = "filingCorrections"
CANDIDATES_COLLECTION = "keywordCandidates"
EVENTS_COLLECTION = "learningEvents"

DEFAULT_LEARNING_THRESHOLD = 3

# Filename tokens that say nothing about the document type
FILENAME_STOPWORDS = frozenset({
    "final", "copy", "scan", "scanned", "document", "documents", "file", "files",
    "draft", "signed", "version", "updated", "latest", "page", "pages", "image",
    "with", "from", "pdf", "docx", "xlsx", "jpeg", "png", "tiff",
})

MIN_FILENAME_TOKEN_LENGTH = 4


class LearningEventNotFoundError(KeyError):
    """Raised when a learning event does not exist or has already been undone."""


class LearningEventState(Enum):
    ACTIVE = "active"
    DISMISSED = "dismissed"
    UNDONE = "undone"


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class LearningConfig:
    """Configuration for keyword learning."""

    threshold: int = DEFAULT_LEARNING_THRESHOLD
    recent_events_limit: int = 20

    @classmethod
    def from_env(cls) -> "LearningConfig":
        threshold = int(os.getenv("LEARNING_THRESHOLD", str(DEFAULT_LEARNING_THRESHOLD)))
        if threshold < 1:
            raise ValueError(f"LEARNING_THRESHOLD must be at least 1, got {threshold}")
        return cls(threshold=threshold)


# ============================================================================
# Records
# ============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text = str(raw)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_filename(file_name: str) -> str:
    """
    Normalize a filename for pattern comparison.

    Lowercases, drops the extension, turns separators into spaces and
    replaces digit runs with '#': "Valuation_Report_2024.pdf" → "valuation report #"
    """
    name = file_name.lower()
    name = re.sub(r"\.[^.]+$", "", name)
    name = re.sub(r"[_\-.]", " ", name)
    name = re.sub(r"\d+", "#", name)
    return " ".join(name.split())


def extract_candidate_keywords(
    file_name: str,
    document_keywords: Optional[Sequence[str]] = None,
) -> List[str]:
    """
    Keywords a correction can teach.

    Supplied document keywords win; otherwise meaningful filename tokens
    (at least 4 characters, no digits, not a stopword) are used.
    """
    if document_keywords:
        raw = [normalize_keyword(k) for k in document_keywords]
    else:
        raw = [
            token for token in normalize_filename(file_name).split()
            if len(token) >= MIN_FILENAME_TOKEN_LENGTH
            and "#" not in token
            and token not in FILENAME_STOPWORDS
        ]

    keywords: List[str] = []
    for keyword in raw:
        if keyword and keyword not in keywords:
            keywords.append(keyword)
    return keywords


@dataclass
class FilingCorrection:
    """A reviewer's override of a predicted file type."""

    document_id: str
    file_name: str
    predicted_file_type: str
    corrected_file_type: str
    document_keywords: Optional[List[str]] = None
    predicted_category: Optional[str] = None
    corrected_category: Optional[str] = None
    corrected_fields: List[str] = field(default_factory=lambda: ["file_type"])
    corrected_by: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @property
    def is_type_change(self) -> bool:
        return (self.predicted_file_type or "").strip().lower() != \
            (self.corrected_file_type or "").strip().lower()

    def to_record(self) -> CorrectionRecord:
        return {
            "document_id": self.document_id,
            "file_name": self.file_name,
            "file_name_normalized": normalize_filename(self.file_name),
            "predicted_file_type": self.predicted_file_type,
            "corrected_file_type": self.corrected_file_type,
            "predicted_category": self.predicted_category,
            "corrected_category": self.corrected_category,
            "document_keywords": list(self.document_keywords or []),
            "corrected_fields": list(self.corrected_fields),
            "corrected_by": self.corrected_by,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FilingCorrection":
        for required in ("document_id", "file_name", "predicted_file_type", "corrected_file_type"):
            if not data.get(required):
                raise ValueError(f"Correction missing required field '{required}'")
        created_at = data.get("created_at")
        return cls(
            document_id=str(data["document_id"]),
            file_name=data["file_name"],
            predicted_file_type=data["predicted_file_type"],
            corrected_file_type=data["corrected_file_type"],
            document_keywords=data.get("document_keywords"),
            predicted_category=data.get("predicted_category"),
            corrected_category=data.get("corrected_category"),
            corrected_fields=list(data.get("corrected_fields") or ["file_type"]),
            corrected_by=data.get("corrected_by"),
            created_at=_parse_time(created_at) if created_at else _now(),
        )


@dataclass
class LearningEvent:
    """A keyword promoted into the live pattern set."""

    id: str
    keyword: str
    target_file_type: str
    correction_count: int
    created_at: datetime
    state: LearningEventState = LearningEventState.ACTIVE
    source_document_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LearningEvent":
        return cls(
            id=record["_id"],
            keyword=record["keyword"],
            target_file_type=record["target_file_type"],
            correction_count=record["correction_count"],
            created_at=_parse_time(record["created_at"]),
            state=LearningEventState(record.get("state", "active")),
            source_document_ids=list(record.get("source_document_ids", [])),
        )

    def to_dict(self) -> LearningEventRecord:
        return {
            "id": self.id,
            "keyword": self.keyword,
            "target_file_type": self.target_file_type,
            "correction_count": self.correction_count,
            "created_at": self.created_at.isoformat(),
            "state": self.state.value,
            "source_document_ids": list(self.source_document_ids),
        }


@dataclass
class KeywordCandidate:
    """Correction counter for one (keyword, corrected type) pair."""

    pair_key: str
    keyword: str
    target_file_type: str
    correction_count: int
    document_ids: List[str]
    promoted: bool
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "KeywordCandidate":
        return cls(
            pair_key=record["pair_key"],
            keyword=record["keyword"],
            target_file_type=record["target_file_type"],
            correction_count=record["correction_count"],
            document_ids=list(record.get("document_ids", [])),
            promoted=bool(record.get("promoted", False)),
            updated_at=_parse_time(record["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_key": self.pair_key,
            "keyword": self.keyword,
            "target_file_type": self.target_file_type,
            "correction_count": self.correction_count,
            "document_ids": list(self.document_ids),
            "promoted": self.promoted,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class LearningStats:
    total_learned: int = 0
    this_week: int = 0
    this_month: int = 0
    file_types_with_learning: int = 0
    total_corrections_contributed: int = 0
    active_learned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_learned": self.total_learned,
            "this_week": self.this_week,
            "this_month": self.this_month,
            "file_types_with_learning": self.file_types_with_learning,
            "total_corrections_contributed": self.total_corrections_contributed,
            "active_learned": self.active_learned,
        }


def pair_key_for(keyword: str, target_file_type: str) -> str:
    return f"{normalize_keyword(keyword)}::{target_file_type.strip().lower()}"


# ============================================================================
# Learning Loop
# ============================================================================

class LearningLoop:
    """
    Observes corrections and promotes keywords into a PatternRegistry.

    The registry and store are injected; the loop keeps no learned state of
    its own beyond per-pair locks.
    """

    def __init__(
        self,
        registry: PatternRegistry,
        store,
        threshold: Optional[int] = None,
        config: Optional[LearningConfig] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or LearningConfig()
        self.threshold = threshold if threshold is not None else self.config.threshold
        if self.threshold < 1:
            raise ValueError(f"Learning threshold must be at least 1, got {self.threshold}")

        self._pair_locks: Dict[str, threading.Lock] = {}
        self._pair_locks_guard = threading.Lock()

    def _lock_for(self, pair_key: str) -> threading.Lock:
        with self._pair_locks_guard:
            lock = self._pair_locks.get(pair_key)
            if lock is None:
                lock = threading.Lock()
                self._pair_locks[pair_key] = lock
            return lock

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def record_correction(self, correction: FilingCorrection) -> List[LearningEvent]:
        """
        Record a correction and promote any keyword that reaches the threshold.

        Returns:
            LearningEvents created by this correction (usually empty)
        """
        if not correction.is_type_change:
            logger.debug(
                f"Ignoring correction for {correction.document_id}: "
                f"type unchanged ({correction.corrected_file_type})"
            )
            return []

        self.store.insert(CORRECTIONS_COLLECTION, correction.to_record())

        mapping = self.registry.get_mapping(correction.corrected_file_type)
        if mapping is None:
            logger.warning(
                f"Correction to unknown file type '{correction.corrected_file_type}'; "
                f"keywords will not be learned"
            )
            return []

        target = mapping.file_type
        keywords = extract_candidate_keywords(correction.file_name, correction.document_keywords)

        events = []
        for keyword in keywords:
            if self.registry.has_keyword(target, keyword):
                continue
            event = self._count(keyword, target, correction.document_id)
            if event is not None:
                events.append(event)

        return events

    def _count(self, keyword: str, target: str, document_id: str) -> Optional[LearningEvent]:
        pair_key = pair_key_for(keyword, target)
        now = _now()

        with self._lock_for(pair_key):
            existing = self.store.query_by_field(CANDIDATES_COLLECTION, "pair_key", pair_key)
            if existing:
                record = existing[0]
            else:
                record_id = self.store.insert(CANDIDATES_COLLECTION, {
                    "pair_key": pair_key,
                    "keyword": keyword,
                    "target_file_type": target,
                    "correction_count": 0,
                    "document_ids": [],
                    "promoted": False,
                    "event_id": None,
                    "updated_at": now.isoformat(),
                })
                record = self.store.get(record_id)

            if record.get("promoted"):
                return None

            document_ids = list(record.get("document_ids", []))
            if document_id in document_ids:
                # Re-correcting the same document does not count twice
                return None

            document_ids.append(document_id)
            count = len(document_ids)
            self.store.patch(record["_id"], {
                "document_ids": document_ids,
                "correction_count": count,
                "updated_at": now.isoformat(),
            })

            if count < self.threshold:
                return None

            self.registry.add_keyword(target, keyword)
            event_id = self.store.insert(EVENTS_COLLECTION, {
                "keyword": keyword,
                "target_file_type": target,
                "correction_count": count,
                "created_at": now.isoformat(),
                "state": LearningEventState.ACTIVE.value,
                "source_document_ids": document_ids,
            })
            self.store.patch(record["_id"], {"promoted": True, "event_id": event_id})

        logger.info(f"Promoted keyword '{keyword}' → {target} after {count} corrections")
        return LearningEvent.from_record(self.store.get(event_id))

    # ------------------------------------------------------------------
    # Event lifecycle
    # ------------------------------------------------------------------

    def _get_event(self, event_id: str) -> LearningEvent:
        record = self.store.get(event_id)
        if record is None or record.get("_collection") != EVENTS_COLLECTION:
            raise LearningEventNotFoundError(f"Learning event {event_id} not found")
        return LearningEvent.from_record(record)

    def undo(self, event_id: str) -> LearningEvent:
        """
        Undo a learned keyword: remove it from the registry and reset its counter.

        Raises:
            LearningEventNotFoundError: If the event is missing or already undone
        """
        event = self._get_event(event_id)
        if event.state == LearningEventState.UNDONE:
            raise LearningEventNotFoundError(f"Learning event {event_id} was already undone")

        pair_key = pair_key_for(event.keyword, event.target_file_type)
        with self._lock_for(pair_key):
            if self._get_event(event_id).state == LearningEventState.UNDONE:
                raise LearningEventNotFoundError(f"Learning event {event_id} was already undone")
            self.registry.remove_keyword(event.target_file_type, event.keyword)
            self.store.patch(event_id, {
                "state": LearningEventState.UNDONE.value,
                "undone_at": _now().isoformat(),
            })
            for candidate in self.store.query_by_field(CANDIDATES_COLLECTION, "pair_key", pair_key):
                self.store.patch(candidate["_id"], {
                    "correction_count": 0,
                    "document_ids": [],
                    "promoted": False,
                    "event_id": None,
                    "updated_at": _now().isoformat(),
                })

        logger.info(f"Undid learned keyword '{event.keyword}' for {event.target_file_type}")
        return self._get_event(event_id)

    def dismiss(self, event_id: str) -> LearningEvent:
        """
        Hide an event from notifications. The keyword stays in effect.

        Raises:
            LearningEventNotFoundError: If the event is missing
        """
        event = self._get_event(event_id)
        if event.state == LearningEventState.ACTIVE:
            self.store.patch(event_id, {"state": LearningEventState.DISMISSED.value})
            event.state = LearningEventState.DISMISSED
        return event

    def dismiss_all(self) -> int:
        """Dismiss every active event. Returns how many were dismissed."""
        dismissed = 0
        with self.store.transaction():
            for record in self.store.query_by_field(
                EVENTS_COLLECTION, "state", LearningEventState.ACTIVE.value
            ):
                self.store.patch(record["_id"], {"state": LearningEventState.DISMISSED.value})
                dismissed += 1
        return dismissed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _events(self) -> List[LearningEvent]:
        return [LearningEvent.from_record(r) for r in self.store.list(EVENTS_COLLECTION)]

    def recent_events(self, limit: Optional[int] = None, include_dismissed: bool = False) -> List[LearningEvent]:
        """Newest events first; dismissed and undone events only on request."""
        limit = self.config.recent_events_limit if limit is None else limit
        events = self._events()
        if not include_dismissed:
            events = [e for e in events if e.state == LearningEventState.ACTIVE]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    def pending_candidates(self, min_count: int = 1) -> List[KeywordCandidate]:
        """Counters that have not reached promotion yet, most corrections first."""
        candidates = [
            KeywordCandidate.from_record(r) for r in self.store.list(CANDIDATES_COLLECTION)
        ]
        pending = [c for c in candidates if not c.promoted and c.correction_count >= min_count]
        pending.sort(key=lambda c: (c.correction_count, c.updated_at), reverse=True)
        return pending

    def stats(self, now: Optional[datetime] = None) -> LearningStats:
        """
        Learning statistics over the full event history.

        Undone events still count toward the totals; active_learned counts
        only keywords that are still in effect.
        """
        now = now or _now()
        one_week_ago = now - timedelta(days=7)
        one_month_ago = now - timedelta(days=30)

        events = self._events()
        return LearningStats(
            total_learned=len(events),
            this_week=sum(1 for e in events if e.created_at >= one_week_ago),
            this_month=sum(1 for e in events if e.created_at >= one_month_ago),
            file_types_with_learning=len({e.target_file_type.lower() for e in events}),
            total_corrections_contributed=sum(e.correction_count for e in events),
            active_learned=sum(1 for e in events if e.state != LearningEventState.UNDONE),
        )

    def correction_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals of stored corrections by corrected field, predicted type and category."""
        corrections = self.store.list(CORRECTIONS_COLLECTION)
        if since is not None:
            corrections = [c for c in corrections if _parse_time(c["created_at"]) >= since]

        stats: Dict[str, Any] = {
            "total_corrections": len(corrections),
            "by_field": {},
            "by_file_type": {},
            "by_category": {},
        }
        for c in corrections:
            for corrected_field in c.get("corrected_fields", []):
                stats["by_field"][corrected_field] = stats["by_field"].get(corrected_field, 0) + 1
            predicted = c.get("predicted_file_type") or "Unknown"
            stats["by_file_type"][predicted] = stats["by_file_type"].get(predicted, 0) + 1
            category = c.get("predicted_category")
            if category:
                stats["by_category"][category] = stats["by_category"].get(category, 0) + 1
        return stats

    def restore_registry(self) -> int:
        """
        Re-apply keywords of events that were not undone (after a restart).

        Returns:
            Number of keywords added to the registry
        """
        restored = 0
        for event in sorted(self._events(), key=lambda e: e.created_at):
            if event.state == LearningEventState.UNDONE:
                continue
            try:
                if self.registry.add_keyword(event.target_file_type, event.keyword):
                    restored += 1
            except KeyError:
                logger.warning(
                    f"Skipping learned keyword '{event.keyword}': "
                    f"file type '{event.target_file_type}' no longer exists"
                )
        if restored:
            logger.info(f"Restored {restored} learned keywords")
        return restored
