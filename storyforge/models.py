from __future__ import annotations

import uuid
from datetime import datetime

from .extensions import db


def _new_id() -> str:
    return str(uuid.uuid4())


class Series(db.Model):
    __tablename__ = "series"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    stories = db.relationship("Story", backref="series", lazy=True)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Series {self.name}>"


class Story(db.Model):
    __tablename__ = "stories"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    title = db.Column(db.String(150), nullable=False)
    author = db.Column(db.String(120), nullable=False, default="")
    language = db.Column(db.String(40), nullable=False, default="English")
    synopsis = db.Column(db.Text, nullable=True)
    series_id = db.Column(db.String(36), db.ForeignKey("series.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    chapters = db.relationship(
        "Chapter",
        backref="story",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Chapter.order",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Story {self.title}>"


class Chapter(db.Model):
    __tablename__ = "chapters"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    story_id = db.Column(db.String(36), db.ForeignKey("stories.id"), nullable=False, index=True)
    title = db.Column(db.String(150), nullable=False)
    summary = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, index=True)
    # Native editor document, serialized as JSON text.
    content = db.Column(db.Text, nullable=False, default="")
    outline = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.JSON, nullable=True)
    word_count = db.Column(db.Integer, nullable=False, default=0)
    pov_character = db.Column(db.String(120), nullable=True)
    pov_type = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Chapter {self.order}: {self.title}>"


class LorebookEntry(db.Model):
    __tablename__ = "lorebook_entries"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    level = db.Column(db.String(10), nullable=False, default="story", index=True)
    scope_id = db.Column(db.String(36), nullable=True, index=True)
    name = db.Column(db.String(150), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    category = db.Column(db.String(40), nullable=False, index=True)
    tags = db.Column(db.JSON, nullable=False, default=list)
    entry_metadata = db.Column("metadata", db.JSON, nullable=True)
    is_disabled = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<LorebookEntry {self.name} ({self.level})>"


class Prompt(db.Model):
    __tablename__ = "prompts"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(150), nullable=False, index=True)
    description = db.Column(db.Text, nullable=True)
    prompt_type = db.Column(db.String(40), nullable=False, index=True)
    messages = db.Column(db.JSON, nullable=False, default=list)
    allowed_models = db.Column(db.JSON, nullable=False, default=list)
    story_id = db.Column(db.String(36), db.ForeignKey("stories.id"), nullable=True, index=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    temperature = db.Column(db.Float, nullable=True)
    max_tokens = db.Column(db.Integer, nullable=True)
    top_p = db.Column(db.Float, nullable=True)
    top_k = db.Column(db.Integer, nullable=True)
    repetition_penalty = db.Column(db.Float, nullable=True)
    min_p = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Prompt {self.name} ({self.prompt_type})>"


class AISettings(db.Model):
    __tablename__ = "ai_settings"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    openai_key = db.Column(db.String(255), nullable=True)
    openrouter_key = db.Column(db.String(255), nullable=True)
    local_api_url = db.Column(db.String(255), nullable=True)
    available_models = db.Column(db.JSON, nullable=False, default=list)
    last_models_fetch = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<AISettings {self.id}>"
