"""
Flask Web Application for the Symptom Intake Diagnostic Interview

JSON API over the session accessor. Identity, when present, comes from the
X-User-Email header set by the upstream auth provider; requests without it
are anonymous.
"""

import logging
import threading

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from intake.config import load_config
from intake.core.diagnostic_engine import DiagnosticSessionEngine
from intake.core.question_oracle import QuestionOracle
from intake.core.recommendation_store import RecommendationStore, SortOrder
from intake.core.session_accessor import SessionAccessor
from intake.errors import (
    IntakeError,
    InvariantViolation,
    OracleError,
    SessionNotFound,
    Unauthorized,
    ValidationError,
)
from intake.session_store import FileSessionStore, InMemorySessionStore

logger = logging.getLogger(__name__)

IDENTITY_HEADER = 'X-User-Email'

ERROR_STATUS = {
    ValidationError: 400,
    Unauthorized: 403,
    SessionNotFound: 404,
    InvariantViolation: 409,
    OracleError: 502,
}


def build_services(config):
    """
    Load the model and wire engine, accessor and recommendation store

    Expensive: loads the model (~30 seconds on GPU).
    """
    from intake.utils.hf_client import HuggingFaceClient

    logger.info("Initializing HuggingFace model (this takes ~30 seconds)...")
    hf_client = HuggingFaceClient(
        model_name=config.model_name,
        load_in_4bit=config.load_in_4bit,
        device=config.device,
        default_max_time=config.oracle_timeout_seconds
    )
    logger.info("Model loaded successfully")

    oracle = QuestionOracle(
        hf_client,
        timeout_seconds=config.oracle_timeout_seconds,
        question_max_tokens=config.oracle_max_tokens,
        recommendation_max_tokens=config.oracle_max_tokens * 2
    )

    if config.session_backend == "file":
        store = FileSessionStore(str(config.session_dir))
    else:
        store = InMemorySessionStore()

    recommendations = RecommendationStore(str(config.recommendations_dir))
    engine = DiagnosticSessionEngine(oracle, store, recommendation_store=recommendations)
    return SessionAccessor(engine), recommendations


def create_app(accessor=None, recommendation_store=None, config=None):
    """
    Application factory

    With no arguments (flask CLI, __main__) everything is built from the
    environment; tests pass their own accessor and store.
    """
    if config is None:
        config = load_config()
    if accessor is None:
        accessor, recommendation_store = build_services(config)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.secret_key
    app.config['SWEEP_INTERVAL_SECONDS'] = config.sweep_interval_seconds
    app.extensions['intake'] = {
        'accessor': accessor,
        'recommendations': recommendation_store,
    }

    register_error_handlers(app)
    register_routes(app)
    register_commands(app)
    return app


def _accessor():
    return current_app.extensions['intake']['accessor']


def _recommendations():
    store = current_app.extensions['intake']['recommendations']
    if store is None:
        raise IntakeError("Recommendation storage is not configured")
    return store


def _identity():
    value = request.headers.get(IDENTITY_HEADER, '').strip()
    return value or None


def _require_identity():
    identity = _identity()
    if identity is None:
        raise Unauthorized("Sign in to use this endpoint")
    return identity


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"'{name}' must be an integer") from None


def register_error_handlers(app):

    @app.errorhandler(IntakeError)
    def handle_intake_error(e):
        status = 500
        for error_type, error_status in ERROR_STATUS.items():
            if isinstance(e, error_type):
                status = error_status
                break
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e}")
        return jsonify({'success': False, 'error': str(e), 'code': e.code}), status

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({'success': False, 'error': e.description, 'code': e.name.lower().replace(' ', '_')}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception(f"Unexpected error on {request.method} {request.path}: {e}")
        return jsonify({'success': False, 'error': 'Internal server error', 'code': 'internal_error'}), 500


def register_routes(app):

    @app.route('/api/sessions', methods=['POST'])
    def start_session():
        """Start an interview (signed-in callers get their live one back)"""
        data = _json_body()
        status = _accessor().start(initial_text=data.get('initial_text'), identity=_identity())
        return jsonify({'success': True, 'session': status.to_json()}), 201

    @app.route('/api/sessions/<session_id>/answers', methods=['POST'])
    def submit_answer(session_id):
        data = _json_body()
        outcome = _accessor().submit_answer(
            session_id=session_id,
            question_id=data.get('question_id'),
            value=data.get('answer'),
            identity=_identity()
        )
        return jsonify({'success': True, **outcome.to_json()})

    @app.route('/api/sessions/<session_id>', methods=['GET'])
    def session_status(session_id):
        """Progress and time remaining; 404 once the session is gone"""
        status = _accessor().get_status(session_id, identity=_identity())
        return jsonify({'success': True, 'session': status.to_json()})

    @app.route('/api/me/session', methods=['GET'])
    def my_session():
        status = _accessor().get_status_for(_require_identity())
        return jsonify({'success': True, 'session': status.to_json()})

    @app.route('/api/me/questions/<int:number>', methods=['GET'])
    def my_question(number):
        question = _accessor().get_question(_require_identity(), number)
        return jsonify({'success': True, 'number': number, 'question': question.to_json()})

    @app.route('/api/me/questions/<int:number>/answer', methods=['POST'])
    def answer_my_question(number):
        data = _json_body()
        outcome = _accessor().answer_question(_require_identity(), number, data.get('answer'))
        return jsonify({'success': True, **outcome.to_json()})

    @app.route('/api/recommendations', methods=['GET'])
    def list_recommendations():
        identity = _require_identity()
        try:
            sort = SortOrder(request.args.get('sort', SortOrder.DATE_DESC.value))
        except ValueError:
            raise ValidationError(
                f"'sort' must be one of {[s.value for s in SortOrder]}"
            ) from None

        result = _recommendations().list_for_user(
            identity,
            page=_int_arg('page', 1),
            limit=_int_arg('limit', 10),
            sort=sort
        )
        return jsonify({'success': True, **result.to_json()})

    @app.route('/api/recommendations/<recommendation_id>', methods=['GET'])
    def get_recommendation(recommendation_id):
        record = _recommendations().get(recommendation_id, _require_identity())
        if record is None:
            return jsonify({'success': False, 'error': 'Recommendation not found', 'code': 'not_found'}), 404
        return jsonify({'success': True, 'recommendation': record.to_json()})

    @app.route('/api/recommendations/<recommendation_id>', methods=['DELETE'])
    def delete_recommendation(recommendation_id):
        if not _recommendations().delete(recommendation_id, _require_identity()):
            return jsonify({'success': False, 'error': 'Recommendation not found', 'code': 'not_found'}), 404
        return jsonify({'success': True})


def register_commands(app):

    @app.cli.command('sweep-sessions')
    def sweep_sessions():
        """Remove expired sessions and receipts, then prune the identity index."""
        removed = _accessor().clear_expired_sessions()
        print(f"Removed {removed} expired entries")


def start_sweeper(sweepable, interval_seconds, stop_event=None):
    """
    Run sweepable.clear_expired_sessions() every interval_seconds in a daemon thread

    sweepable is normally the SessionAccessor, so the identity index is
    pruned along with the store. A bare engine also works.

    Returns:
        (thread, stop_event): set stop_event to end the loop
    """
    stop_event = stop_event or threading.Event()

    def run():
        logger.info(f"Session sweeper started (every {interval_seconds}s)")
        while not stop_event.wait(interval_seconds):
            sweepable.clear_expired_sessions()
        logger.info("Session sweeper stopped")

    thread = threading.Thread(target=run, name="session-sweeper", daemon=True)
    thread.start()
    return thread, stop_event


if __name__ == '__main__':
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app(config=config)
    start_sweeper(app.extensions['intake']['accessor'], config.sweep_interval_seconds)

    print("\n" + "="*60)
    print("SYMPTOM INTAKE DIAGNOSTIC INTERVIEW - API SERVER")
    print("="*60)
    print("\nServer starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000, threaded=True)
