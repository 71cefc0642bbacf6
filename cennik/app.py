"""Flask app for the furniture price lists.

Serves the public price-list pages, the back office and the JSON API.
Run locally with ``python -m cennik.app`` or ``flask --app cennik.app:create_app run``.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask

from . import config
from .api import api
from .auth import require_basic_auth
from .error_logging import init_error_logging_db
from .logging_config import setup_logging
from .mail import Mailer
from .overrides import init_db
from .pages import pages

__all__ = ["create_app"]

logger = logging.getLogger(__name__)

_CONFIG_KEYS = (
    "DATA_DIR",
    "PUBLIC_DIR",
    "DB_PATH",
    "LOG_DIR",
    "SECRET_KEY",
    "SITE_USER",
    "SITE_PASS",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_SECURE",
    "SMTP_USER",
    "SMTP_PASS",
    "SMTP_FROM",
    "NOTIFICATION_EMAIL",
    "REPORT_EMAIL",
    "OCR_MODEL",
    "OCR_MIN_TEXT_LENGTH",
    "SEARCH_CACHE_TTL",
    "SCHEDULED_CACHE_TTL",
    "SEARCH_RESULT_LIMIT",
)


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    """Build the app; ``overrides`` replace config values (tests use temp dirs)."""
    app = Flask(__name__)
    app.config.update({key: getattr(config, key) for key in _CONFIG_KEYS})
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_SIZE
    app.json.sort_keys = False
    app.json.ensure_ascii = False
    app.config.update(overrides or {})

    for key in ("DATA_DIR", "PUBLIC_DIR", "DB_PATH", "LOG_DIR"):
        app.config[key] = Path(app.config[key])

    if not app.config.get("TESTING"):
        setup_logging(level=logging.DEBUG if config.FLASK_DEBUG else logging.INFO, log_dir=app.config["LOG_DIR"])

    app.config["DATA_DIR"].mkdir(parents=True, exist_ok=True)
    app.config["DB_PATH"].parent.mkdir(parents=True, exist_ok=True)
    init_db(app.config["DB_PATH"])
    init_error_logging_db(app.config["DB_PATH"])

    app.extensions["mailer"] = Mailer.from_config(app.config)
    # None means ingest creates an OpenAI client on first use
    app.extensions.setdefault("openai_client", None)

    app.before_request(require_basic_auth)
    app.register_blueprint(api)
    app.register_blueprint(pages)

    logger.info(f"Cennik app ready (data: {app.config['DATA_DIR']})")
    return app


if __name__ == "__main__":
    create_app().run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=config.FLASK_DEBUG)
