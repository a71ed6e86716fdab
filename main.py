import sys
import logging
from typing import Optional

from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Load Env (placement reads its folder keys at import)
load_dotenv()

# Import State
from state import IntakeState

# Import Nodes
from nodes.patterns import PatternRegistry
from nodes.matcher import filename_matcher_node
from nodes.classifier import ClassifierConfig, content_classifier_node
from nodes.placement import folder_placement_node
from nodes.learning import LearningLoop
from nodes.feedback import correction_feedback_node

logger = logging.getLogger(__name__)


def human_review_node(state: IntakeState):
    """
    Node: Human In The Loop
    Placeholder breakpoint. A reviewer override arrives as 'corrected_file_type'
    in the input state; the script run accepts the placement as-is.
    """
    print("--- NODE: Human Review (Breakpoint) ---")
    corrected = state.get("corrected_file_type")
    if corrected:
        print(f"   Reviewer filed as {corrected}")
    return {"corrected_file_type": corrected}


def build_graph(
    registry: Optional[PatternRegistry] = None,
    classifier_config: Optional[ClassifierConfig] = None,
    learning_loop: Optional[LearningLoop] = None,
):
    """
    Constructs the LangGraph intake pipeline.

    matcher ─hit──────────────────────┐
        └─miss─→ content_classifier ──┴→ placement → human_review ─→ END
                                                         └─correction→ feedback → END

    The registry is shared with the learning loop so learned keywords apply
    to the next file without rebuilding the graph.
    """
    registry = registry or (learning_loop.registry if learning_loop else PatternRegistry())
    classifier_config = classifier_config or ClassifierConfig.from_env()

    builder = StateGraph(IntakeState)

    # 1. Add Nodes
    builder.add_node("matcher", lambda state: filename_matcher_node(state, registry.rules()))
    builder.add_node("content_classifier",
                     lambda state: content_classifier_node(state, classifier_config))
    builder.add_node("placement", folder_placement_node)
    builder.add_node("human_review", human_review_node)
    if learning_loop is not None:
        builder.add_node("feedback", lambda state: correction_feedback_node(state, learning_loop))

    # 2. Add Edges (The Flow)
    builder.add_edge(START, "matcher")

    # Conditional logic: Did the filename match?
    def check_match(state):
        if state.get("file_type"):
            return "placement"
        return "content_classifier"

    builder.add_conditional_edges("matcher", check_match)
    builder.add_edge("content_classifier", "placement")
    builder.add_edge("placement", "human_review")

    # Conditional logic: Did the reviewer correct the type?
    def check_correction(state):
        if learning_loop is not None and state.get("corrected_file_type"):
            return "feedback"
        return END

    builder.add_conditional_edges("human_review", check_correction)
    if learning_loop is not None:
        builder.add_edge("feedback", END)

    # 3. Compile
    return builder.compile()


def run_intake(
    file_name: str,
    content_text: Optional[str] = None,
    graph=None,
    **extra,
) -> IntakeState:
    """Run one file through the intake graph and return the final state."""
    app = graph or build_graph()
    initial_state: IntakeState = {
        "file_name": file_name,
        "content_text": content_text,
        "file_type": None,
        "category": None,
        "confidence": 0.0,
        "classification_method": "none",
        "matched_keyword": None,
        "reasoning": None,
        "errors": [],
        "metrics": {},
    }
    initial_state.update(extra)
    return app.invoke(initial_state)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app = build_graph()

    # Simulate runs over a few upload names
    print("Starting Document Intake...")
    file_names = sys.argv[1:] or [
        "HSBC_Business_Statement_Dec2024.pdf",
        "Initial Monitoring Report - Riverside.pdf",
        "Scan_001.pdf",
    ]
    for name in file_names:
        result = run_intake(name, graph=app)
        print(f"{name}: {result.get('file_type') or 'Unclassified'} → "
              f"{result['folder']} ({result['level']})")
