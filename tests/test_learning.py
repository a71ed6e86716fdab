"""
Tests for the keyword learning loop.

A keyword is promoted into the live patterns once three distinct documents
have been corrected to the same file type with that keyword.
"""

import os
import threading
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from document_store import InMemoryDocumentStore
from nodes.matcher import match_filename
from nodes.patterns import PatternRegistry
from nodes.learning import (
    CANDIDATES_COLLECTION,
    CORRECTIONS_COLLECTION,
    EVENTS_COLLECTION,
    FilingCorrection,
    LearningConfig,
    LearningEventNotFoundError,
    LearningEventState,
    LearningLoop,
    extract_candidate_keywords,
    normalize_filename,
    pair_key_for,
)
from state import CorrectionRecord, LearningEventRecord


@pytest.fixture
def registry():
    return PatternRegistry()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def loop(registry, store):
    return LearningLoop(registry, store)


def correction(document_id, keywords=("zephyr",), corrected="RedBook Valuation",
               predicted="Appraisal", file_name=None):
    return FilingCorrection(
        document_id=document_id,
        file_name=file_name or f"{document_id}.pdf",
        predicted_file_type=predicted,
        corrected_file_type=corrected,
        document_keywords=list(keywords) if keywords is not None else None,
        predicted_category="Appraisals",
    )


def learn(loop, keyword="zephyr", corrected="RedBook Valuation"):
    """Record enough corrections to promote one keyword."""
    events = []
    for i in range(loop.threshold):
        events.extend(loop.record_correction(
            correction(f"doc-{keyword}-{i}", keywords=(keyword,), corrected=corrected)
        ))
    return events


# ============================================================================
# Keyword Extraction
# ============================================================================

class TestCandidateKeywords:
    """Tests for candidate keyword extraction."""

    def test_normalize_filename(self):
        assert normalize_filename("Valuation_Report_2024.pdf") == "valuation report #"

    def test_filename_tokens(self):
        keywords = extract_candidate_keywords("Zephyr_Final_Pack_2024_v2.pdf")
        assert keywords == ["zephyr", "pack"]

    def test_document_keywords_win(self):
        keywords = extract_candidate_keywords("whatever.pdf", ["Market Value", "market_value", "RICS"])
        assert keywords == ["market value", "rics"]

    def test_short_and_numeric_tokens_dropped(self):
        assert extract_candidate_keywords("ab_123_x9y.pdf") == []


# ============================================================================
# Corrections
# ============================================================================

class TestFilingCorrection:
    """Tests for the correction record."""

    def test_type_change(self):
        assert correction("d1").is_type_change
        assert not correction("d1", predicted="redbook valuation").is_type_change

    def test_from_dict_requires_fields(self):
        with pytest.raises(ValueError):
            FilingCorrection.from_dict({"document_id": "d1", "file_name": "x.pdf"})

    def test_from_dict(self):
        parsed = FilingCorrection.from_dict({
            "document_id": 42,
            "file_name": "x.pdf",
            "predicted_file_type": "Appraisal",
            "corrected_file_type": "RedBook Valuation",
            "created_at": "2024-05-01T12:00:00Z",
        })
        assert parsed.document_id == "42"
        assert parsed.corrected_fields == ["file_type"]
        assert parsed.created_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_record_shape(self):
        record = correction("d1").to_record()
        assert set(record) == set(CorrectionRecord.__annotations__)
        assert record["file_name_normalized"] == normalize_filename(record["file_name"])

    def test_event_shape(self, loop):
        event = learn(loop)[0]
        assert set(event.to_dict()) == set(LearningEventRecord.__annotations__)


# ============================================================================
# Threshold Promotion
# ============================================================================

class TestPromotion:
    """Tests for counting and promotion."""

    def test_below_threshold_nothing_learned(self, loop, registry):
        assert loop.record_correction(correction("d1")) == []
        assert loop.record_correction(correction("d2")) == []
        assert registry.learned_keywords("RedBook Valuation") == []

    def test_promoted_at_threshold(self, loop, registry, store):
        loop.record_correction(correction("d1"))
        loop.record_correction(correction("d2"))
        events = loop.record_correction(correction("d3"))

        assert len(events) == 1
        event = events[0]
        assert event.keyword == "zephyr"
        assert event.target_file_type == "RedBook Valuation"
        assert event.correction_count == 3
        assert event.state == LearningEventState.ACTIVE
        assert event.source_document_ids == ["d1", "d2", "d3"]
        assert registry.learned_keywords("RedBook Valuation") == ["zephyr"]
        assert len(store.list(EVENTS_COLLECTION)) == 1

    def test_learned_keyword_used_by_matcher(self, loop, registry):
        learn(loop)
        result = match_filename("Zephyr_pack.pdf", registry.rules())
        assert result.file_type == "RedBook Valuation"

    def test_same_document_counted_once(self, loop, registry):
        for _ in range(5):
            loop.record_correction(correction("same-doc"))
        assert registry.learned_keywords("RedBook Valuation") == []
        candidate = loop.pending_candidates()[0]
        assert candidate.correction_count == 1

    def test_promoted_only_once(self, loop, store):
        learn(loop)
        assert loop.record_correction(correction("d-extra")) == []
        assert len(store.list(EVENTS_COLLECTION)) == 1

    def test_pairs_count_independently(self, loop, registry):
        loop.record_correction(correction("d1", corrected="RedBook Valuation"))
        loop.record_correction(correction("d2", corrected="Appraisal", predicted="Cashflow"))
        loop.record_correction(correction("d3", corrected="RedBook Valuation"))
        assert registry.learned_keywords("RedBook Valuation") == []
        assert registry.learned_keywords("Appraisal") == []

    def test_existing_keyword_not_counted(self, loop, store):
        loop.record_correction(correction("d1", keywords=("valuation",)))
        assert store.list(CANDIDATES_COLLECTION) == []

    def test_unchanged_type_ignored(self, loop, store):
        assert loop.record_correction(correction("d1", predicted="RedBook Valuation")) == []
        assert store.list(CORRECTIONS_COLLECTION) == []

    def test_unknown_corrected_type_stored_not_learned(self, loop, store):
        for i in range(3):
            assert loop.record_correction(correction(f"d{i}", corrected="Not A Type")) == []
        assert len(store.list(CORRECTIONS_COLLECTION)) == 3
        assert store.list(CANDIDATES_COLLECTION) == []

    def test_configured_threshold(self, registry, store):
        loop = LearningLoop(registry, store, threshold=1)
        events = loop.record_correction(correction("d1"))
        assert [e.keyword for e in events] == ["zephyr"]

    def test_invalid_threshold(self, registry, store):
        with pytest.raises(ValueError):
            LearningLoop(registry, store, threshold=0)

    def test_concurrent_corrections_promote_exactly_once(self, loop, registry, store):
        """Many threads correcting distinct documents promote the pair once."""
        barrier = threading.Barrier(12)

        def submit(i):
            barrier.wait()
            loop.record_correction(correction(f"thread-doc-{i}"))

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.learned_keywords("RedBook Valuation") == ["zephyr"]
        assert len(store.list(EVENTS_COLLECTION)) == 1


class TestLearningConfig:
    """Tests for learning configuration."""

    def test_defaults(self):
        assert LearningConfig().threshold == 3

    @patch.dict(os.environ, {"LEARNING_THRESHOLD": "5"})
    def test_from_env(self):
        assert LearningConfig.from_env().threshold == 5

    @patch.dict(os.environ, {"LEARNING_THRESHOLD": "0"})
    def test_from_env_rejects_zero(self):
        with pytest.raises(ValueError):
            LearningConfig.from_env()


# ============================================================================
# Event Lifecycle
# ============================================================================

class TestEventLifecycle:
    """Tests for undo, dismiss and dismiss_all."""

    def test_undo_removes_keyword(self, loop, registry):
        event = learn(loop)[0]
        undone = loop.undo(event.id)

        assert undone.state == LearningEventState.UNDONE
        assert registry.learned_keywords("RedBook Valuation") == []
        assert match_filename("Zephyr_pack.pdf", registry.rules()) is None

    def test_undo_resets_counter(self, loop, registry):
        event = learn(loop)[0]
        loop.undo(event.id)

        # Previously seen documents count again from zero
        loop.record_correction(correction("doc-zephyr-0"))
        loop.record_correction(correction("doc-zephyr-1"))
        assert registry.learned_keywords("RedBook Valuation") == []
        events = loop.record_correction(correction("doc-zephyr-2"))
        assert [e.keyword for e in events] == ["zephyr"]

    def test_undo_twice_rejected(self, loop):
        event = learn(loop)[0]
        loop.undo(event.id)
        with pytest.raises(LearningEventNotFoundError):
            loop.undo(event.id)

    def test_undo_rechecks_state_under_lock(self, loop, registry, store):
        """An undo that lands between the state check and the lock is honoured."""
        event = learn(loop)[0]
        pair_lock = loop._lock_for(pair_key_for(event.keyword, event.target_file_type))

        class UndoneWhileWaiting:
            def __enter__(self):
                pair_lock.acquire()
                store.patch(event.id, {"state": LearningEventState.UNDONE.value})

            def __exit__(self, *exc):
                pair_lock.release()

        with patch.object(loop, "_lock_for", return_value=UndoneWhileWaiting()):
            with pytest.raises(LearningEventNotFoundError):
                loop.undo(event.id)

        # The losing undo left the registry alone
        assert registry.learned_keywords("RedBook Valuation") == ["zephyr"]

    def test_concurrent_undo_succeeds_once(self, loop):
        event = learn(loop)[0]
        barrier = threading.Barrier(4)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                loop.undo(event.id)
                outcomes.append("undone")
            except LearningEventNotFoundError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["rejected", "rejected", "rejected", "undone"]

    def test_undo_missing(self, loop):
        with pytest.raises(LearningEventNotFoundError):
            loop.undo("nope")

    def test_not_found_is_a_key_error(self):
        assert issubclass(LearningEventNotFoundError, KeyError)

    def test_dismiss_keeps_keyword(self, loop, registry):
        event = learn(loop)[0]
        dismissed = loop.dismiss(event.id)

        assert dismissed.state == LearningEventState.DISMISSED
        assert registry.learned_keywords("RedBook Valuation") == ["zephyr"]
        assert loop.recent_events() == []
        assert len(loop.recent_events(include_dismissed=True)) == 1

    def test_dismiss_is_idempotent(self, loop):
        event = learn(loop)[0]
        loop.dismiss(event.id)
        assert loop.dismiss(event.id).state == LearningEventState.DISMISSED

    def test_dismiss_undone_event_stays_undone(self, loop):
        event = learn(loop)[0]
        loop.undo(event.id)
        assert loop.dismiss(event.id).state == LearningEventState.UNDONE

    def test_dismiss_missing(self, loop):
        with pytest.raises(LearningEventNotFoundError):
            loop.dismiss("nope")

    def test_dismiss_all(self, loop):
        learn(loop, "zephyr")
        learn(loop, "boreas")
        assert loop.dismiss_all() == 2
        assert loop.recent_events() == []
        assert loop.dismiss_all() == 0


# ============================================================================
# Queries
# ============================================================================

class TestQueries:
    """Tests for event, candidate and statistics queries."""

    def test_recent_events_newest_first(self, loop, store):
        first = learn(loop, "zephyr")[0]
        second = learn(loop, "boreas")[0]
        store.patch(first.id, {"created_at": "2024-01-01T00:00:00+00:00"})
        store.patch(second.id, {"created_at": "2024-02-01T00:00:00+00:00"})

        assert [e.keyword for e in loop.recent_events()] == ["boreas", "zephyr"]
        assert [e.keyword for e in loop.recent_events(limit=1)] == ["boreas"]

    def test_pending_candidates(self, loop):
        loop.record_correction(correction("d1", keywords=("alpha", "beta")))
        loop.record_correction(correction("d2", keywords=("alpha",)))

        pending = loop.pending_candidates()
        assert [(c.keyword, c.correction_count) for c in pending] == [("alpha", 2), ("beta", 1)]
        assert [c.keyword for c in loop.pending_candidates(min_count=2)] == ["alpha"]

    def test_stats(self, loop, store):
        now = datetime(2024, 6, 30, tzinfo=timezone.utc)
        recent = learn(loop, "zephyr")[0]
        older = learn(loop, "boreas", corrected="Appraisal")[0]
        undone = learn(loop, "notus")[0]
        store.patch(recent.id, {"created_at": (now - timedelta(days=2)).isoformat()})
        store.patch(older.id, {"created_at": (now - timedelta(days=20)).isoformat()})
        store.patch(undone.id, {"created_at": (now - timedelta(days=1)).isoformat()})
        loop.undo(undone.id)

        # Undone events stay in the history totals
        stats = loop.stats(now=now)
        assert stats.total_learned == 3
        assert stats.this_week == 2
        assert stats.this_month == 3
        assert stats.file_types_with_learning == 2
        assert stats.total_corrections_contributed == 9
        assert stats.active_learned == 2

    def test_stats_keep_undone_events(self, loop):
        event = learn(loop)[0]
        loop.undo(event.id)

        stats = loop.stats()
        assert stats.total_learned == 1
        assert stats.total_corrections_contributed == 3
        assert stats.active_learned == 0
        assert stats.to_dict()["active_learned"] == 0

    def test_correction_stats(self, loop):
        loop.record_correction(correction("d1"))
        loop.record_correction(correction("d2", predicted="Cashflow"))
        stats = loop.correction_stats()

        assert stats["total_corrections"] == 2
        assert stats["by_field"] == {"file_type": 2}
        assert stats["by_file_type"] == {"Appraisal": 1, "Cashflow": 1}
        assert stats["by_category"] == {"Appraisals": 2}

    def test_correction_stats_since(self, loop):
        loop.record_correction(correction("d1"))
        future = datetime.now(timezone.utc) + timedelta(days=1)
        assert loop.correction_stats(since=future)["total_corrections"] == 0


# ============================================================================
# Restore
# ============================================================================

class TestRestoreRegistry:
    """Tests for re-applying learned keywords to a fresh registry."""

    def test_restore_after_restart(self, loop, store):
        learn(loop, "zephyr")
        undone = learn(loop, "boreas")[0]
        loop.undo(undone.id)

        fresh = PatternRegistry()
        restored = LearningLoop(fresh, store).restore_registry()

        assert restored == 1
        assert fresh.learned_keywords("RedBook Valuation") == ["zephyr"]

    def test_restore_skips_unknown_types(self, store):
        store.insert(EVENTS_COLLECTION, {
            "keyword": "zephyr",
            "target_file_type": "Retired Type",
            "correction_count": 3,
            "created_at": "2024-01-01T00:00:00+00:00",
            "state": "active",
            "source_document_ids": [],
        })
        assert LearningLoop(PatternRegistry(), store).restore_registry() == 0

    def test_pair_key(self):
        assert pair_key_for("Market_Value", " RedBook Valuation ") == "market value::redbook valuation"
