"""
Content Classifier Node - File Type From Document Text

Runs only when the filename matcher finds nothing. Reads the text that
upstream extraction produced for the file and asks an LLM (OpenAI or
Anthropic through LangChain) which of the known file types it is.

The classifier only supplies a (file_type, category) pair; folder placement
is always done by the placement resolver. Any failure here (no text, no API
key, bad JSON, provider error) is logged and treated as "no classification",
so the file falls through to the miscellaneous folder.

Mock mode (USE_MOCK_CLASSIFIER=true) gives deterministic results for tests
and local runs without API keys.
"""

import os
import json
import time
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass

from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from state import IntakeState
from nodes.placement import DOCUMENT_TYPE_MAPPINGS, get_type_mapping

logger = logging.getLogger(__name__)


FALLBACK_FILE_TYPE = "Other Document"
FALLBACK_CATEGORY = "General"


# ============================================================================
# Classifier Configuration
# ============================================================================

@dataclass
class ClassifierConfig:
    """Configuration for content classification."""

    # LLM settings
    use_llm: bool = True
    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"  # or "claude-3-haiku-20240307"
    llm_temperature: float = 0.0  # Deterministic for classification
    llm_max_tokens: int = 500

    # Text sampling
    max_chars_for_classification: int = 4000  # First N chars to analyze

    # Below this, the answer is discarded
    min_confidence_threshold: float = 0.50

    # Mock mode for testing
    use_mock: bool = False

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        return cls(
            use_llm=os.getenv("CLASSIFIER_USE_LLM", "true").lower() == "true",
            llm_provider=os.getenv("CLASSIFIER_LLM_PROVIDER", "openai"),
            llm_model=os.getenv("CLASSIFIER_LLM_MODEL", "gpt-4o-mini"),
            use_mock=os.getenv("USE_MOCK_CLASSIFIER", "true").lower() == "true",
        )


@dataclass
class ContentClassification:
    """Result of classifying a document from its text."""

    file_type: str
    category: str
    confidence: float
    method: str  # 'llm' | 'mock'
    reasoning: str = ""
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_type": self.file_type,
            "category": self.category,
            "confidence": self.confidence,
            "method": self.method,
            "reasoning": self.reasoning,
            "processing_time_ms": self.processing_time_ms,
        }


# ============================================================================
# LLM-Based Classification
# ============================================================================

def _build_system_prompt() -> str:
    lines = []
    current_category = None
    for mapping in DOCUMENT_TYPE_MAPPINGS:
        if mapping.category != current_category:
            current_category = mapping.category
            lines.append(f"\n{current_category.upper()}:")
        lines.append(f"- {mapping.file_type}: {mapping.description}")

    return (
        "You are a document classifier for a property development lender. "
        "Your job is to identify the type of a document based on its content.\n\n"
        "Classify the document into ONE of these file types:\n"
        + "\n".join(lines)
        + "\n\nIf none fits, answer \"Other Document\".\n\n"
        "Respond in JSON format:\n"
        "{\n"
        '    "file_type": "<type name exactly as listed above>",\n'
        '    "category": "<category the type is listed under>",\n'
        '    "confidence": <0.0-1.0>,\n'
        '    "reasoning": "<brief explanation>"\n'
        "}"
    )


CLASSIFICATION_SYSTEM_PROMPT = _build_system_prompt()


def _create_llm(config: ClassifierConfig):
    if config.llm_provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            logger.warning("OPENAI_API_KEY not set")
            return None
        return ChatOpenAI(
            model=config.llm_model,
            temperature=config.llm_temperature,
            max_completion_tokens=config.llm_max_tokens,
        )
    if config.llm_provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            logger.warning("ANTHROPIC_API_KEY not set")
            return None
        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=config.llm_model,
            temperature=config.llm_temperature,
        )
    logger.warning(f"Unknown LLM provider: {config.llm_provider}")
    return None


def _extract_json(response_text: str) -> Any:
    # Handle potential markdown code blocks
    if "```json" in response_text:
        response_text = response_text.split("```json")[1].split("```")[0]
    elif "```" in response_text:
        response_text = response_text.split("```")[1].split("```")[0]
    return json.loads(response_text.strip())


def classify_with_llm(
    text: str,
    file_name: Optional[str] = None,
    config: Optional[ClassifierConfig] = None,
) -> Optional[ContentClassification]:
    """
    Classify document text using an LLM.

    Args:
        text: Document text content
        file_name: Original filename, given to the model as a hint
        config: Classifier configuration

    Returns:
        ContentClassification or None if the LLM is unavailable or fails
    """
    config = config or ClassifierConfig()
    if not config.use_llm:
        return None

    start_time = time.time()

    user_prompt = "Classify this document:\n\n"
    if file_name:
        user_prompt += f"FILE NAME: {file_name}\n\n"
    user_prompt += f"DOCUMENT CONTENT:\n{text[:config.max_chars_for_classification]}"

    try:
        llm = _create_llm(config)
        if llm is None:
            return None

        response = llm.invoke([
            SystemMessage(content=CLASSIFICATION_SYSTEM_PROMPT),
            HumanMessage(content=user_prompt),
        ])
        result_json = _extract_json(str(response.content))

    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM response as JSON: {e}")
        return None
    except Exception as e:
        logger.error(f"LLM classification failed: {e}")
        return None

    if not isinstance(result_json, dict):
        logger.error(f"LLM response is not a JSON object: {type(result_json).__name__}")
        return None

    try:
        confidence = float(result_json.get("confidence", 0.5))
    except (TypeError, ValueError):
        logger.error(f"LLM returned a non-numeric confidence: {result_json.get('confidence')!r}")
        return None

    file_type = str(result_json.get("file_type") or FALLBACK_FILE_TYPE)
    category = result_json.get("category")
    mapping = get_type_mapping(file_type)
    if mapping is not None:
        # Use canonical spelling and the mapped category
        file_type = mapping.file_type
        category = mapping.category

    return ContentClassification(
        file_type=file_type,
        category=str(category or FALLBACK_CATEGORY),
        confidence=confidence,
        method="llm",
        reasoning=str(result_json.get("reasoning") or ""),
        processing_time_ms=(time.time() - start_time) * 1000,
    )


def _get_mock_classification(text: str, file_name: Optional[str] = None) -> ContentClassification:
    """
    Return mock classification for testing.

    A file type named in the text wins; otherwise the first mapping whose
    multi-word keyword appears in the text.
    """
    text_lower = (text or "").lower()

    for mapping in DOCUMENT_TYPE_MAPPINGS:
        if mapping.file_type == FALLBACK_FILE_TYPE:
            continue
        if mapping.file_type.lower() in text_lower:
            return ContentClassification(
                file_type=mapping.file_type,
                category=mapping.category,
                confidence=0.7,
                method="mock",
                reasoning=f"Mock: Text names '{mapping.file_type}'",
            )

    for mapping in DOCUMENT_TYPE_MAPPINGS:
        for keyword in mapping.keywords:
            if " " in keyword and keyword in text_lower:
                return ContentClassification(
                    file_type=mapping.file_type,
                    category=mapping.category,
                    confidence=0.6,
                    method="mock",
                    reasoning=f"Mock: Detected '{keyword}'",
                )

    return ContentClassification(
        file_type=FALLBACK_FILE_TYPE,
        category=FALLBACK_CATEGORY,
        confidence=0.0,
        method="mock",
        reasoning="Mock: No matching keywords found",
    )


# ============================================================================
# Main Classification Function
# ============================================================================

def classify_content(
    text: Optional[str],
    file_name: Optional[str] = None,
    config: Optional[ClassifierConfig] = None,
) -> Optional[ContentClassification]:
    """
    Classify a document from its text using the configured method.

    Returns:
        ContentClassification, or None when there is nothing usable
    """
    config = config or ClassifierConfig()

    if not text or not text.strip():
        logger.info(f"No text to classify for {file_name or 'document'}")
        return None

    if config.use_mock:
        return _get_mock_classification(text, file_name)

    result = classify_with_llm(text, file_name, config)
    if result is None:
        return None
    if result.confidence < config.min_confidence_threshold:
        logger.info(
            f"Discarding LLM classification {result.file_type} "
            f"({result.confidence:.1%} < {config.min_confidence_threshold:.0%})"
        )
        return None

    logger.info(f"LLM classified as {result.file_type} ({result.confidence:.1%} confidence)")
    return result


# ============================================================================
# Main Node Function
# ============================================================================

def content_classifier_node(state: IntakeState, config: Optional[ClassifierConfig] = None) -> dict:
    """
    Node: Content Classifier

    Classifies files the filename matcher could not place.
    """
    print("--- NODE: Content Classifier ---")

    config = config or ClassifierConfig.from_env()
    result = classify_content(state.get("content_text"), state.get("file_name"), config)

    if result is None:
        print("   No content classification; falling back")
        return {
            "file_type": None,
            "category": None,
            "confidence": 0.0,
            "classification_method": "none",
            "reasoning": "No filename match and no usable content classification",
        }

    print(f"   Classified as {result.file_type} ({result.confidence:.0%}, {result.method})")
    return {
        "file_type": result.file_type,
        "category": result.category,
        "confidence": result.confidence,
        "classification_method": result.method,
        "reasoning": result.reasoning,
    }
