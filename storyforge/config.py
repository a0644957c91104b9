import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'storyforge.db'}"


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # AI providers. Keys stored through the settings endpoint take precedence.
    LOCAL_API_URL = os.environ.get("LOCAL_API_URL", "http://localhost:1234/v1")
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENROUTER_API_KEY = os.environ.get("OPENROUTER_API_KEY")
    OPENROUTER_BASE_URL = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
    OPENROUTER_REFERER = os.environ.get("OPENROUTER_REFERER", "http://localhost:5000")
    OPENROUTER_TITLE = os.environ.get("OPENROUTER_TITLE", "Story Forge")
    AI_REQUEST_TIMEOUT = float(os.environ.get("AI_REQUEST_TIMEOUT", "120"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOCAL_API_URL = "http://local-llm.test/v1"
    OPENAI_API_KEY = None
    OPENROUTER_API_KEY = None
