"""
Console Test Harness for IntakeSession

Simple console loop that runs one intake end to end against the loaded
models: answers are recorded immediately, reflections arrive when ready.
"""

import asyncio
import logging
import sys

from intake_engine.config import EngineConfig
from intake_engine.contracts import QuestionKind, SelectionValue, TextValue
from intake_engine.core.completion_generator import CompletionGenerator
from intake_engine.core.definition_catalog import DefinitionCatalog
from intake_engine.core.intake_session import IntakeSession, SessionStatus
from intake_engine.core.reflection_strategy import ReflectionStrategySelector
from intake_engine.core.step_processor import StepProcessor
from intake_engine.errors import GenerationFailure, IntakeError
from intake_engine.utils.generation import HuggingFaceGeneration
from intake_engine.utils.prompt_builder import PromptBuilder
from intake_engine.utils.reflection_templates import REFLECTION_PENDING_TEXT

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"quit", "exit", "stop"}
DEFAULT_INTAKE = "therapy_readiness"


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_question(question, number, total):
    print(f"\n[{number}/{total}] {question.prompt}")
    for i, option in enumerate(question.options, 1):
        print(f"  {i}. {option.text}")
    if question.examples:
        print(f"  (e.g. {question.examples[0]})")


def parse_console_answer(question, raw):
    """
    Turn console input into an answer value.

    Selection questions take comma-separated option numbers; text after a
    colon is used as "other" text (e.g. "1,7: my commute").
    """
    if question.kind == QuestionKind.TEXT:
        return TextValue(raw)

    other_text = None
    if ":" in raw:
        raw, other_text = raw.split(":", 1)
        other_text = other_text.strip() or None

    values = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or not 1 <= int(part) <= len(question.options):
            raise ValueError(f"'{part}' is not an option number")
        values.append(question.options[int(part) - 1].value)

    return SelectionValue(values=tuple(values), other_text=other_text)


def print_outputs(outputs):
    print_separator()
    print("YOUR PERSONALIZED BRIEF")
    print_separator()
    print(outputs.personalized_brief)
    print("\n" + "-" * 60)
    print("MAKING THE MOST OF YOUR FIRST SESSION")
    print("-" * 60)
    print(outputs.first_session_guide)
    print("\n" + "-" * 60)
    print("OPTIONAL EXPERIMENTS")
    print("-" * 60)
    for i, experiment in enumerate(outputs.experiments, 1):
        print(f"{i}. {experiment}")


async def run_intake(session):
    """Drive the session from the console"""
    total = session.intake.total_steps
    reported = set()

    while session.current_question() is not None:
        # Show any reflections that arrived while the user was typing
        for message in session.messages():
            if message['role'] == 'reflection' and message['id'] not in reported:
                if message['content'] != REFLECTION_PENDING_TEXT:
                    print(f"  > {message['content']}")
                    reported.add(message['id'])

        question = session.current_question()
        print_question(question, session.state.answered_count + 1, total)

        raw = (await asyncio.to_thread(input, "> ")).strip()
        if raw.lower() in EXIT_COMMANDS:
            print("\nIntake ended early by user")
            return False

        try:
            session.submit(question.id, parse_console_answer(question, raw))
        except (ValueError, IntakeError) as e:
            print(f"  ! {e}")

    print("\nGenerating your results...")
    await session.wait_idle()

    while session.status == SessionStatus.COMPLETION_FAILED:
        print(f"\nCould not generate results: {session.last_error}")
        raw = (await asyncio.to_thread(input, "Retry? [y/n] > ")).strip().lower()
        if raw != "y":
            return False
        try:
            await session.retry_completion()
        except GenerationFailure:
            continue

    print_outputs(session.completion_outputs)
    return True


def main():
    """Run console intake"""
    print_separator()
    print("INTAKE ENGINE - CONSOLE TEST")
    print_separator()
    print("\nInitializing modules (this may take 30 seconds)...")

    intake_type = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_INTAKE

    try:
        config = EngineConfig.from_env()
        generation = HuggingFaceGeneration.from_config(config)
        catalog = DefinitionCatalog(config.definitions_dir)
        prompt_builder = PromptBuilder(config.prompts_dir, default_version=config.prompt_version)
        completion_generator = CompletionGenerator(catalog, generation, prompt_builder)
        step_processor = StepProcessor(
            catalog,
            ReflectionStrategySelector(generation, prompt_builder),
            completion_generator
        )
        print("\nModules initialized successfully!")

    except Exception as e:
        print(f"\nFailed to initialize: {e}")
        import traceback
        traceback.print_exc()
        return 1

    async def run():
        session = IntakeSession(catalog, step_processor, completion_generator, intake_type)
        print_separator()
        print(session.intake.name.upper())
        print_separator()
        print(session.intake.description)
        print("Type 'quit', 'exit', or 'stop' to end early")
        return await run_intake(session)

    try:
        finished = asyncio.run(run())
    except IntakeError as e:
        print(f"\nError: {e}")
        return 1

    return 0 if finished else 1


if __name__ == "__main__":
    sys.exit(main())
