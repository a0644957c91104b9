from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask

from .config import Config
from .db_utils import ensure_database_schema
from .extensions import db, migrate
from .services.streaming import GenerationSessions


BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

SESSIONS_EXTENSION = "storyforge.sessions"


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("storyforge").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    register_extensions(app)
    register_blueprints(app)

    with app.app_context():
        ensure_database_schema()

    return app


def register_extensions(app: Flask) -> None:
    db.init_app(app)
    migrate.init_app(app, db)
    app.extensions[SESSIONS_EXTENSION] = GenerationSessions()


def register_blueprints(app: Flask) -> None:
    from .ai import bp as ai_bp
    from .lorebook import bp as lorebook_bp

    app.register_blueprint(ai_bp)
    app.register_blueprint(lorebook_bp)


__all__ = ["create_app", "db"]
