"""
Console Harness for the Diagnostic Session Engine

Drives one interview against the real model from the terminal, before
going through the Flask API.
"""

import logging
import sys

from intake.config import load_config
from intake.core.diagnostic_engine import DiagnosticSessionEngine
from intake.core.question_oracle import QuestionOracle
from intake.errors import OracleError
from intake.session_store import InMemorySessionStore
from intake.utils.helpers import phase_description, phase_for_question_number
from intake.utils.hf_client import HuggingFaceClient

logger = logging.getLogger(__name__)

YES_ANSWERS = ('y', 'yes', 't', 'tak')
NO_ANSWERS = ('n', 'no', 'nie')
QUIT_COMMANDS = ('quit', 'exit', 'stop')


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def ask_yes_no(prompt):
    """
    Read one yes/no answer

    Returns:
        True / False, or None if the user asked to quit
    """
    while True:
        reply = input(prompt).strip().lower()
        if reply in QUIT_COMMANDS:
            return None
        if reply in YES_ANSWERS:
            return True
        if reply in NO_ANSWERS:
            return False
        print("Please answer 'y' or 'n'.")


def main():
    """Run one console interview"""
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print_separator()
    print("DIAGNOSTIC INTERVIEW - CONSOLE TEST")
    print_separator()
    print("\nInitializing modules (this may take 30 seconds)...")

    try:
        hf_client = HuggingFaceClient(
            model_name=config.model_name,
            load_in_4bit=config.load_in_4bit,
            device=config.device
        )
        oracle = QuestionOracle(hf_client, timeout_seconds=config.oracle_timeout_seconds)
        engine = DiagnosticSessionEngine(oracle, InMemorySessionStore())
        print("\nModules initialized successfully!")
    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    print_separator()
    print("STARTING INTERVIEW")
    print_separator()
    print("Answer each question with 'y' or 'n'. Type 'quit' to end early.\n")

    try:
        symptoms = input("Describe your symptoms (optional, Enter to skip): ").strip()
        session = engine.start_session(symptoms or None)
    except KeyboardInterrupt:
        print("\n\nInterview interrupted by user (Ctrl+C)")
        return 0
    except Exception as e:
        print(f"\nERROR: {e}")
        return 1

    session_id = session.session_id
    question = session.current_question()
    number = 1
    phase = 0

    while True:
        try:
            status_phase = phase_for_question_number(number)
            if status_phase != phase:
                phase = status_phase
                print_separator("-")
                print(f"PHASE {phase}: {phase_description(phase)}")
                print_separator("-")

            value = ask_yes_no(f"[{number}/15] {question.text} (y/n) > ")
            if value is None:
                print("\nInterview ended early by user")
                break

            try:
                outcome = engine.submit_answer(session_id, question.id, value)
            except OracleError as e:
                print(f"\nGeneration failed: {e}")
                retry = input("Retry this answer? (y/n): ").strip().lower()
                if retry in YES_ANSWERS:
                    continue
                break

            if not outcome.has_more_questions:
                print_separator()
                print("INTERVIEW COMPLETE")
                print_separator()
                print(f"\nSyndrome: {outcome.recommendation.syndrome}\n")
                print(outcome.recommendation.recommendation_text)
                break

            question = outcome.next_question
            number = outcome.current_question

        except KeyboardInterrupt:
            print("\n\nInterview interrupted by user (Ctrl+C)")
            break

        except Exception as e:
            print(f"\nERROR: {e}")
            import traceback
            traceback.print_exc()
            break

    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
