"""Utility script to configure development environment variables and initialize the database."""
from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path
from typing import Dict

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from storyforge import create_app, db
DEFAULT_ENV_PATH = REPO_ROOT / ".env"
BACKUP_SUFFIX = ".bak"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Create or update a .env file with the settings Story Forge reads at start-up "
            "and initialize the SQLite database."
        )
    )
    parser.add_argument("--flask-app", default="storyforge:create_app", help="Entry point used by Flask.")
    parser.add_argument("--secret-key", help="Secret key for Flask sessions (keeps the current value if omitted).")
    parser.add_argument("--local-api-url", help="Base URL of an OpenAI-compatible local model server.")
    parser.add_argument("--openai-api-key", help="Default OpenAI API key.")
    parser.add_argument("--openrouter-api-key", help="Default OpenRouter API key.")
    parser.add_argument("--database-url", help="Override DATABASE_URL.")
    parser.add_argument("--log-level", help="LOG_LEVEL for the application loggers.")
    parser.add_argument(
        "--env-path",
        type=Path,
        default=DEFAULT_ENV_PATH,
        help="Path to the .env file that should be created/updated.",
    )
    parser.add_argument(
        "--skip-db",
        action="store_true",
        help="Only update the .env file without touching the database.",
    )
    return parser.parse_args()


def read_env(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    data: Dict[str, str] = {}
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        data[key.strip()] = value.strip()
    return data


def write_env(path: Path, values: Dict[str, str]) -> None:
    if path.exists():
        backup_path = path.with_suffix(path.suffix + BACKUP_SUFFIX)
        shutil.copy(path, backup_path)
        print(f"Existing {path.name} backed up to {backup_path.name}.")
    lines = [f"{key}={value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n")
    print(f"Updated environment variables written to {path}.")


def update_env_file(args: argparse.Namespace) -> Dict[str, str]:
    env_data = read_env(args.env_path)
    env_updates = {"FLASK_APP": args.flask_app}
    optional = {
        "SECRET_KEY": args.secret_key,
        "LOCAL_API_URL": args.local_api_url,
        "OPENAI_API_KEY": args.openai_api_key,
        "OPENROUTER_API_KEY": args.openrouter_api_key,
        "DATABASE_URL": args.database_url,
        "LOG_LEVEL": args.log_level,
    }
    env_updates.update({key: value for key, value in optional.items() if value})

    env_data.update(env_updates)
    write_env(args.env_path, env_data)
    return env_data


def _masked(key: str, value: str) -> str:
    if key.endswith("_API_KEY") or key == "SECRET_KEY":
        return value[:3] + "..." if value else value
    return value


def initialize_database() -> None:
    app = create_app()
    with app.app_context():
        db.create_all()
        uri = app.config["SQLALCHEMY_DATABASE_URI"]
    print(f"Database initialized ({uri}).")


def main() -> None:
    args = parse_args()
    env_values = update_env_file(args)

    if not args.skip_db:
        initialize_database()
    else:
        print("Database initialization skipped.")

    print("\nSetup complete! Summary:")
    for key in sorted(env_values):
        print(f"  {key}={_masked(key, env_values[key])}")


if __name__ == "__main__":
    main()
