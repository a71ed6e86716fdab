"""
Tests for the content classifier node.

The content classifier runs only when the filename matcher finds nothing.
It supplies a (file_type, category) pair; placement stays with the resolver.
Failures fall through to "no classification".
"""

import os
import json
import pytest
from unittest.mock import patch, MagicMock

from nodes.classifier import (
    CLASSIFICATION_SYSTEM_PROMPT,
    FALLBACK_CATEGORY,
    FALLBACK_FILE_TYPE,
    ClassifierConfig,
    ContentClassification,
    _extract_json,
    classify_content,
    classify_with_llm,
    content_classifier_node,
)


def llm_response(payload, fenced=True):
    """Fake LangChain chat model whose invoke() returns the given JSON payload."""
    body = json.dumps(payload)
    content = f"```json\n{body}\n```" if fenced else body
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content=content)
    return llm


@pytest.fixture
def llm_config():
    return ClassifierConfig(use_llm=True, llm_provider="openai", use_mock=False)


# ============================================================================
# Configuration Tests
# ============================================================================

class TestClassifierConfig:
    """Tests for ClassifierConfig."""

    def test_defaults(self):
        config = ClassifierConfig()
        assert config.llm_provider == "openai"
        assert config.llm_temperature == 0.0
        assert config.min_confidence_threshold == 0.5
        assert config.use_mock is False

    def test_from_env(self):
        with patch.dict(os.environ, {
            "CLASSIFIER_LLM_PROVIDER": "anthropic",
            "CLASSIFIER_LLM_MODEL": "claude-3-haiku-20240307",
            "USE_MOCK_CLASSIFIER": "false",
        }):
            config = ClassifierConfig.from_env()
        assert config.llm_provider == "anthropic"
        assert config.llm_model == "claude-3-haiku-20240307"
        assert config.use_mock is False

    def test_from_env_defaults_to_mock(self):
        with patch.dict(os.environ, {}, clear=True):
            assert ClassifierConfig.from_env().use_mock is True

    def test_system_prompt_lists_types(self):
        assert "RedBook Valuation" in CLASSIFICATION_SYSTEM_PROMPT
        assert "Other Document" in CLASSIFICATION_SYSTEM_PROMPT


# ============================================================================
# Mock Classification Tests
# ============================================================================

class TestMockClassification:
    """Tests for deterministic mock mode."""

    def test_type_named_in_text(self):
        config = ClassifierConfig(use_mock=True)
        result = classify_content(
            "TERM SHEET\nLoan amount: 2,500,000 for the Riverside scheme", "Scan_001.pdf", config
        )
        assert result.file_type == "Term Sheet"
        assert result.category == "Loan Terms"
        assert result.confidence == 0.7
        assert result.method == "mock"

    def test_multi_word_keyword(self):
        config = ClassifierConfig(use_mock=True)
        result = classify_content("Prepared on a red book basis by chartered surveyors.", None, config)
        assert result.file_type == "RedBook Valuation"
        assert result.confidence == 0.6

    def test_no_keywords(self):
        config = ClassifierConfig(use_mock=True)
        result = classify_content("Lorem ipsum dolor sit amet", None, config)
        assert result.file_type == FALLBACK_FILE_TYPE
        assert result.category == FALLBACK_CATEGORY
        assert result.confidence == 0.0

    @pytest.mark.parametrize("text", [None, "", "   \n  "])
    def test_no_text(self, text):
        assert classify_content(text, "Scan_001.pdf", ClassifierConfig(use_mock=True)) is None

    def test_to_dict(self):
        result = ContentClassification("Invoice", "Financial Documents", 0.7, "mock")
        assert result.to_dict()["method"] == "mock"


# ============================================================================
# LLM Classification Tests
# ============================================================================

class TestLLMClassification:
    """Tests for classify_with_llm with the chat model patched out."""

    def test_extract_json_from_code_block(self):
        assert _extract_json('```json\n{"a": 1}\n```') == {"a": 1}
        assert _extract_json('```\n{"a": 2}\n```') == {"a": 2}
        assert _extract_json('{"a": 3}') == {"a": 3}

    def test_canonicalizes_type_and_category(self, llm_config):
        llm = llm_response({"file_type": "redbook valuation", "category": "Whatever",
                            "confidence": 0.9, "reasoning": "RICS report"})
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            result = classify_with_llm("Market value of the site...", "Scan_001.pdf", llm_config)

        assert result.file_type == "RedBook Valuation"
        assert result.category == "Appraisals"
        assert result.confidence == 0.9
        assert result.method == "llm"

    def test_prompt_includes_file_name_and_truncated_text(self):
        config = ClassifierConfig(use_mock=False, max_chars_for_classification=10)
        llm = llm_response({"file_type": "Invoice", "confidence": 0.8}, fenced=False)
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            classify_with_llm("0123456789ABCDEF", "inv.pdf", config)

        messages = llm.invoke.call_args[0][0]
        assert "FILE NAME: inv.pdf" in messages[1].content
        assert "0123456789" in messages[1].content
        assert "ABCDEF" not in messages[1].content

    def test_missing_api_key(self, llm_config):
        with patch.dict(os.environ, {}, clear=True), \
                patch("nodes.classifier.ChatOpenAI") as chat:
            assert classify_with_llm("some text", None, llm_config) is None
        chat.assert_not_called()

    def test_invalid_json(self, llm_config):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content="not json at all")
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            assert classify_with_llm("some text", None, llm_config) is None

    @pytest.mark.parametrize("payload", [
        {"file_type": "Lease", "confidence": "high"},
        {"file_type": "Lease", "confidence": None},
        [{"file_type": "Lease", "confidence": 0.9}],
        "Lease",
    ])
    def test_malformed_payload(self, llm_config, payload):
        """Well-formed JSON with the wrong shape is treated as no classification."""
        llm = llm_response(payload)
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            assert classify_with_llm("Lease between A and B", "lease.pdf", llm_config) is None
            assert classify_content("Lease between A and B", "lease.pdf", llm_config) is None

    def test_numeric_string_confidence(self, llm_config):
        llm = llm_response({"file_type": "Lease", "confidence": "0.85"})
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            result = classify_with_llm("Lease between A and B", None, llm_config)
        assert result.confidence == 0.85

    def test_provider_error(self, llm_config):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("rate limited")
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            assert classify_with_llm("some text", None, llm_config) is None

    def test_unknown_provider(self):
        config = ClassifierConfig(llm_provider="mystery", use_mock=False)
        assert classify_with_llm("some text", None, config) is None

    def test_llm_disabled(self):
        assert classify_with_llm("some text", None, ClassifierConfig(use_llm=False)) is None

    def test_anthropic_provider(self):
        config = ClassifierConfig(llm_provider="anthropic", llm_model="claude-3-haiku-20240307",
                                  use_mock=False)
        llm = llm_response({"file_type": "Invoice", "confidence": 0.8})
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatAnthropic", return_value=llm):
            result = classify_with_llm("Invoice number 42", None, config)
        assert result.file_type == "Invoice"

    def test_low_confidence_discarded(self, llm_config):
        llm = llm_response({"file_type": "Invoice", "confidence": 0.3})
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            assert classify_content("maybe an invoice", None, llm_config) is None

    def test_confident_result_kept(self, llm_config):
        llm = llm_response({"file_type": "Invoice", "confidence": 0.8})
        with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}), \
                patch("nodes.classifier.ChatOpenAI", return_value=llm):
            assert classify_content("Invoice number 42", None, llm_config).file_type == "Invoice"


# ============================================================================
# Node Tests
# ============================================================================

class TestContentClassifierNode:
    """Tests for the graph node wrapper."""

    def test_classifies_from_text(self):
        update = content_classifier_node(
            {"file_name": "Scan_001.pdf", "content_text": "Facility Letter between lender and borrower"},
            ClassifierConfig(use_mock=True),
        )
        assert update["file_type"] == "Facility Letter"
        assert update["classification_method"] == "mock"

    def test_no_text_falls_through(self):
        update = content_classifier_node(
            {"file_name": "Scan_001.pdf", "content_text": None},
            ClassifierConfig(use_mock=True),
        )
        assert update["file_type"] is None
        assert update["category"] is None
        assert update["classification_method"] == "none"
