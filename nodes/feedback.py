from state import IntakeState
from nodes.learning import FilingCorrection, LearningLoop


def correction_feedback_node(state: IntakeState, loop: LearningLoop) -> dict:
    """
    Node: Correction Feedback
    Sends the reviewer's file type override to the learning loop.
    """
    print("--- NODE: Correction Feedback ---")

    corrected = state.get("corrected_file_type")
    if not corrected:
        print("   No correction to record")
        return {"learned_keywords": []}

    correction = FilingCorrection(
        document_id=state.get("document_id") or state.get("file_name", ""),
        file_name=state.get("file_name", ""),
        predicted_file_type=state.get("file_type") or "Unknown",
        corrected_file_type=corrected,
        predicted_category=state.get("category"),
    )
    events = loop.record_correction(correction)
    for event in events:
        print(f"   Learned '{event.keyword}' → {event.target_file_type}")

    return {"learned_keywords": [e.keyword for e in events]}
