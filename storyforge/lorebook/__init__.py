from flask import Blueprint

bp = Blueprint("lorebook", __name__, url_prefix="/api/lorebook")

from . import routes  # noqa: E402,F401
