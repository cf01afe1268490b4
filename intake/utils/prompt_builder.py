"""
Prompt Builder - Instruction text for the question oracle

Responsibilities:
- Phase question prompts (5 yes/no questions, JSON reply)
- Final recommendation prompt (text + syndrome label, JSON reply)
- Readable rendering of the answer history

Design principles:
- Pure functions of their inputs (no model access, no state)
- Whole answer history is always included
- The reply shape asked for here is exactly what question_oracle parses
"""

import json
from typing import Optional, Sequence

from intake.config import QUESTIONS_PER_PHASE, TOTAL_QUESTIONS
from intake.contracts import Answer
from intake.utils.helpers import expected_question_id, phase_description

NO_SYMPTOMS_TEXT = "No specific symptoms reported"

PHASE_FOCUS = {
    1: (
        "Focus on the baseline energetic picture:\n"
        "- State of Qi (vital energy)\n"
        "- Balance of Yin and Yang\n"
        "- General constitution\n"
        "- Basic organ function and overall wellbeing"
    ),
    2: (
        "Using the phase 1 answers, focus on:\n"
        "- The specific organ systems that need attention\n"
        "- Detailed Qi and Blood patterns\n"
        "- Specific pathological signs\n"
        "- External factors affecting health"
    ),
    3: (
        "Using all answers so far, focus on:\n"
        "- Settling on a single TCM syndrome\n"
        "- Differentiating between similar patterns\n"
        "- The signs that confirm the diagnosis\n"
        "- The symptoms that decide the dietary approach"
    ),
}


def format_answer_history(answers: Sequence[Answer]) -> str:
    """
    Render answers as a bullet list

    Examples:
        - Do you often feel cold?: Yes
        - Do you sleep well?: No
    """
    return "\n".join(
        f"- {answer.question_text}: {'Yes' if answer.value else 'No'}"
        for answer in answers
    )


def build_phase_prompt(phase: int, initial_text: Optional[str], prior_answers: Sequence[Answer]) -> str:
    """
    Prompt asking for exactly five yes/no questions for one phase

    Args:
        phase: 1, 2 or 3
        initial_text: Free-text symptoms from session start (may be empty)
        prior_answers: Every answer recorded so far, in order

    Returns:
        str: Prompt text
    """
    symptoms = initial_text if initial_text else NO_SYMPTOMS_TEXT

    history = ""
    if prior_answers:
        history = f"Answers from previous phases:\n{format_answer_history(prior_answers)}\n"

    example = {
        "phase": phase,
        "questions": [
            {"id": expected_question_id(phase, i), "text": f"Question {i}?"}
            for i in range(1, QUESTIONS_PER_PHASE + 1)
        ],
    }

    return (
        "You are an expert in Traditional Chinese Medicine (TCM). Your goal is a differential "
        "diagnosis of the person's TCM syndrome so that dietary recommendations can be prepared. "
        "The person has never heard of Chinese medicine; phrase questions in plain language.\n\n"
        f"Generate exactly {QUESTIONS_PER_PHASE} yes/no questions for phase {phase} "
        f"({phase_description(phase)}).\n\n"
        f"Initial symptoms: {symptoms}\n\n"
        f"{history}\n"
        f"{PHASE_FOCUS[phase]}\n\n"
        "IMPORTANT: Reply with ONLY valid JSON, no commentary, in this shape:\n"
        f"{json.dumps(example, indent=2)}"
    )


def build_recommendation_prompt(initial_text: Optional[str], answers: Sequence[Answer]) -> str:
    """Prompt asking for the final recommendation document and syndrome label"""
    symptoms = initial_text if initial_text else NO_SYMPTOMS_TEXT

    example = {
        "recommendation_text": "Full recommendation document",
        "syndrome": "Name of the identified TCM syndrome",
    }

    return (
        "You are an expert in Traditional Chinese Medicine (TCM). Based on the completed "
        "interview below, write detailed dietary recommendations.\n\n"
        f"Initial symptoms: {symptoms}\n\n"
        f"Complete interview answers ({TOTAL_QUESTIONS} questions):\n"
        f"{format_answer_history(answers)}\n\n"
        "Based on this interview:\n"
        "1. Identify the main TCM syndrome\n"
        "2. Write detailed dietary recommendations\n"
        "3. Propose a weekly meal plan (7 days)\n"
        "4. List foods to avoid\n"
        "5. Add lifestyle advice consistent with TCM\n\n"
        "IMPORTANT: Reply with ONLY valid JSON, no commentary, in this shape:\n"
        f"{json.dumps(example, indent=2)}"
    )
