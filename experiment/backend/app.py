"""
Flask backend for the chromatrial colour discrimination experiment.

This module provides:
- Session start, trial and response endpoints over the TrialEngine
- Questionnaire submission
- PNG rendering of colour stimuli
- Static file serving

The session token travels in the signed Flask session cookie; API clients
may send it as an ``X-Session-Token`` header or a ``token`` body field
instead. No trial logic lives here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    jsonify,
    request,
    send_from_directory,
    session,
)
from flask_cors import CORS

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from config.settings import AppConfig, get_config
from chromatrial.data.models import ColorStimulus
from chromatrial.errors import ExperimentError, InvalidResponse, SessionNotFound
from chromatrial.experiment.engine import TrialEngine
from experiment.backend.janitor import SessionJanitor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SESSION_COOKIE_KEY = "chromatrial_token"
TOKEN_HEADER = "X-Session-Token"
MAX_IMAGE_SIZE_PX = 1024

trials = Blueprint("trials", __name__)


# ============================================================================
# Helper Functions
# ============================================================================

def get_engine() -> TrialEngine:
    return current_app.extensions["chromatrial"]


def request_data() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def current_token(data: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the session token.

    An explicit ``X-Session-Token`` header or body ``token`` takes precedence
    over the session cookie.
    """
    token = (
        request.headers.get(TOKEN_HEADER)
        or (data or {}).get("token")
        or session.get(SESSION_COOKIE_KEY)
    )
    if not token or not isinstance(token, str):
        raise SessionNotFound("No session token supplied")
    return token


def parse_color_component(name: str) -> int:
    raw = request.args.get(name)
    if raw is None:
        raise InvalidResponse(f"Missing parameter: {name}")
    try:
        value = int(raw)
    except ValueError:
        raise InvalidResponse(f"Parameter {name} must be an integer")
    if not 0 <= value <= 255:
        raise InvalidResponse(f"Parameter {name} must be in 0..255")
    return value


# ============================================================================
# Experiment Routes
# ============================================================================

@trials.route("/")
def index():
    """Landing page."""
    return send_from_directory(current_app.static_folder, "index.html")


@trials.route("/api/health")
def health():
    return jsonify({"status": "ok"})


@trials.route("/api/start-session", methods=["POST"])
def start_session():
    """
    Start a new experiment session.

    Sets the session cookie and returns the first trial.
    """
    engine = get_engine()
    exp_session = engine.start_session()

    session[SESSION_COOKIE_KEY] = exp_session.token
    session.permanent = True

    trial = engine.next_trial(exp_session.token)

    return jsonify({
        "success": True,
        "token": exp_session.token,
        "trial_count": engine.trial_count,
        "trial": trial.to_dict() if trial else None,
    })


@trials.route("/api/trial", methods=["GET"])
def next_trial():
    """Current trial for the session; stable across reloads."""
    engine = get_engine()
    trial = engine.next_trial(current_token())

    if trial is None:
        return jsonify({"success": True, "status": "completed"})

    return jsonify({
        "success": True,
        "status": "next",
        "trial_count": engine.trial_count,
        "trial": trial.to_dict(),
    })


@trials.route("/api/response", methods=["POST"])
def submit_response():
    """
    Record the visitor's choice for a trial.

    Expects ``trial_index``, ``chosen`` ("left" or "right") and
    ``latency_ms`` in the JSON body.
    """
    data = request_data()
    token = current_token(data)

    accepted = get_engine().submit_response(
        token,
        trial_index=data.get("trial_index"),
        chosen=data.get("chosen"),
        latency_ms=data.get("latency_ms"),
    )

    return jsonify({"success": True, **accepted.to_dict()})


@trials.route("/api/questionnaire", methods=["POST"])
def submit_questionnaire():
    """Record post-experiment questionnaire answers."""
    data = request_data()
    token = current_token(data)

    record = get_engine().submit_questionnaire(token, data.get("answers"))

    return jsonify({
        "success": True,
        "trials_completed": record.trials_completed,
    })


@trials.route("/image.png", methods=["GET"])
def image():
    """Solid-colour PNG for ``r``, ``g``, ``b`` and optional ``size``."""
    rgb = tuple(parse_color_component(c) for c in ("r", "g", "b"))

    size = request.args.get("size", "1")
    try:
        size_px = int(size)
    except ValueError:
        raise InvalidResponse("Parameter size must be an integer")
    if not 1 <= size_px <= MAX_IMAGE_SIZE_PX:
        raise InvalidResponse(f"Parameter size must be in 1..{MAX_IMAGE_SIZE_PX}")

    png = ColorStimulus(rgb=rgb, size_px=size_px).to_png()
    response = Response(png, mimetype="image/png")
    response.headers["Cache-Control"] = "public, max-age=86400"
    return response


# ============================================================================
# Error Handlers
# ============================================================================

def handle_experiment_error(error: ExperimentError):
    if error.status_code >= 500:
        logger.error(f"Request failed: {error.message}")
    return jsonify({"success": False, **error.to_dict()}), error.status_code


def not_found(error):
    return jsonify({"success": False, "error": "not_found"}), 404


def method_not_allowed(error):
    return jsonify({"success": False, "error": "method_not_allowed"}), 405


def internal_error(error):
    logger.error(f"Internal error: {error}")
    return jsonify({"success": False, "error": "internal_error"}), 500


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    app_config: Optional[AppConfig] = None,
    engine: Optional[TrialEngine] = None,
    start_janitor: bool = False,
) -> Flask:
    """
    Build the Flask application.

    Parameters
    ----------
    app_config : Optional[AppConfig]
        Configuration; defaults to the global instance
    engine : Optional[TrialEngine]
        Pre-built engine; built from ``app_config`` when omitted
    start_janitor : bool
        Start the background session eviction thread
    """
    app_config = app_config or get_config()
    engine = engine or TrialEngine.from_config(app_config)

    app = Flask(
        __name__,
        static_folder=str(app_config.static_dir),
        static_url_path="/static",
    )
    app.config["SECRET_KEY"] = app_config.secret_key
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = app_config.env == "production"
    app.config["PERMANENT_SESSION_LIFETIME"] = engine.session_timeout

    # CORS: restrict to configured origins in production, allow all in development
    if app_config.env == "production":
        if app_config.allowed_origins:
            CORS(app, origins=app_config.allowed_origins, supports_credentials=True)
    else:
        CORS(app)

    app.extensions["chromatrial"] = engine
    app.register_blueprint(trials)

    app.register_error_handler(ExperimentError, handle_experiment_error)
    app.register_error_handler(404, not_found)
    app.register_error_handler(405, method_not_allowed)
    app.register_error_handler(500, internal_error)

    if start_janitor:
        janitor = SessionJanitor(
            engine,
            interval=app_config.session.eviction_interval_seconds,
        )
        janitor.start()
        app.extensions["chromatrial_janitor"] = janitor

    logger.info(
        f"Experiment app ready: {engine.trial_count} trials per session, "
        f"results log at {engine.result_log.path}"
    )
    return app


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    config = get_config()
    create_app(config, start_janitor=True).run(
        host=config.host,
        port=config.port,
        debug=config.debug,
        threaded=True,
    )
