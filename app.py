"""
Flask Web Application for the Intake Engine

HTTP surface over the stateless step processor and completion generator.
Session state lives with the client; every request carries what it needs.

Routes:
- GET  /api/intake/start?type=<intake_type>
- POST /api/intake/step
- POST /api/intake/completion
"""

from flask import Flask, request, jsonify
import logging

from intake_engine.config import EngineConfig
from intake_engine.contracts import Answer, StepRequest
from intake_engine.core.completion_generator import CompletionGenerator
from intake_engine.core.definition_catalog import DefinitionCatalog
from intake_engine.core.reflection_strategy import ReflectionStrategySelector
from intake_engine.core.step_processor import StepProcessor
from intake_engine.errors import GenerationFailure, InvalidAnswer, InvalidStep, UnknownIntake
from intake_engine.utils.generation import HuggingFaceGeneration
from intake_engine.utils.prompt_builder import PromptBuildError, PromptBuilder

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Engine modules (stateless, built once at startup)
engine = {
    'catalog': None,
    'step_processor': None,
    'completion_generator': None,
}


def initialize_models(config=None, generation=None):
    """
    Build the engine (called once at startup)

    Args:
        config: EngineConfig (defaults to EngineConfig.from_env())
        generation: Generation capability; HuggingFace models are loaded
            when omitted (this takes ~30 seconds)
    """
    config = config or EngineConfig.from_env()

    if generation is None:
        logger.info("Initializing HuggingFace models (this takes ~30 seconds)...")
        generation = HuggingFaceGeneration.from_config(config)
        logger.info("Models loaded successfully")

    catalog = DefinitionCatalog(config.definitions_dir)
    prompt_builder = PromptBuilder(config.prompts_dir, default_version=config.prompt_version)
    completion_generator = CompletionGenerator(catalog, generation, prompt_builder)

    engine['catalog'] = catalog
    engine['completion_generator'] = completion_generator
    engine['step_processor'] = StepProcessor(
        catalog,
        ReflectionStrategySelector(generation, prompt_builder),
        completion_generator
    )


def error_response(message, status, **extra):
    body = {'success': False, 'error': message}
    body.update(extra)
    return jsonify(body), status


def engine_ready():
    return engine['step_processor'] is not None


@app.route('/api/intake/start', methods=['GET'])
def start_intake():
    """Intake metadata, first question and all client-safe questions"""
    if not engine_ready():
        return error_response('Engine not initialized', 503)

    intake_type = request.args.get('type', '').strip()
    if not intake_type:
        return error_response("Missing 'type' query parameter", 400)

    catalog = engine['catalog']
    try:
        metadata = catalog.metadata(intake_type)
        first_question = catalog.first_question(intake_type)
        questions = catalog.client_questions(intake_type)
    except UnknownIntake as e:
        return error_response(str(e), 404)

    return jsonify({
        'success': True,
        'intake': metadata,
        'first_question': first_question.to_json(),
        'questions': [q.to_json() for q in questions],
    })


@app.route('/api/intake/step', methods=['POST'])
async def process_step():
    """Process one answer: reflection, then next question or completion"""
    if not engine_ready():
        return error_response('Engine not initialized', 503)

    data = request.get_json(silent=True)
    try:
        step_request = StepRequest.from_json(data)
    except ValueError as e:
        return error_response(f"Malformed request: {e}", 400)

    try:
        response = await engine['step_processor'].process(step_request)
    except UnknownIntake as e:
        return error_response(str(e), 404)
    except (InvalidStep, InvalidAnswer, PromptBuildError) as e:
        return error_response(str(e), 400)
    except GenerationFailure as e:
        logger.error(f"Step {step_request.step_index} generation failed: {e}")
        return error_response(str(e), 502, retryable=e.retryable)

    body = response.to_json()
    body['success'] = True
    return jsonify(body)


@app.route('/api/intake/completion', methods=['POST'])
async def generate_completion():
    """Completion outputs for an answer set (early start and retries)"""
    if not engine_ready():
        return error_response('Engine not initialized', 503)

    data = request.get_json(silent=True)
    if not isinstance(data, dict) or 'intake_type' not in data:
        return error_response("Malformed request: 'intake_type' is required", 400)

    raw_answers = data.get('answers')
    if not isinstance(raw_answers, list) or not raw_answers:
        return error_response("Malformed request: 'answers' must be a non-empty list", 400)

    try:
        answers = [Answer.from_json(a) for a in raw_answers]
    except ValueError as e:
        return error_response(f"Malformed request: {e}", 400)

    try:
        outputs = await engine['completion_generator'].generate(
            str(data['intake_type']), answers, prompt_version=data.get('prompt_version')
        )
    except UnknownIntake as e:
        return error_response(str(e), 404)
    except (ValueError, PromptBuildError) as e:
        return error_response(str(e), 400)
    except GenerationFailure as e:
        logger.error(f"Completion generation failed: {e}")
        return error_response(str(e), 502, retryable=e.retryable)

    return jsonify({
        'success': True,
        'completion_outputs': outputs.to_json(),
    })


if __name__ == '__main__':
    # Initialize models before starting server
    initialize_models()

    print("\n" + "="*60)
    print("INTAKE ENGINE - WEB API")
    print("="*60)
    print("\nServer starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
