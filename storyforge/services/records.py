"""Plain records shared by the prompt pipeline and the generation services.

The ORM models live in :mod:`storyforge.models`; the store layer converts rows
into these frozen dataclasses so the pipeline never touches a database session
directly and can be exercised with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

POV_FIRST_PERSON = "First Person"
POV_THIRD_LIMITED = "Third Person Limited"
POV_THIRD_OMNISCIENT = "Third Person Omniscient"
POV_TYPES = (POV_FIRST_PERSON, POV_THIRD_LIMITED, POV_THIRD_OMNISCIENT)
DEFAULT_POV_TYPE = POV_THIRD_OMNISCIENT

LOREBOOK_LEVELS = ("global", "series", "story")
LOREBOOK_CATEGORIES = (
    "character",
    "location",
    "item",
    "event",
    "note",
    "synopsis",
    "starting scenario",
    "timeline",
)
IMPORTANCE_RANK = {"major": 0, "minor": 1, "background": 2}

MESSAGE_ROLES = ("system", "user", "assistant")
PROMPT_TYPES = (
    "scene_beat",
    "gen_summary",
    "selection_specific",
    "continue_writing",
    "other",
    "brainstorm",
)


@dataclass(frozen=True)
class ChapterOutline:
    content: str


@dataclass(frozen=True)
class ChapterRecord:
    id: str
    story_id: str
    title: str
    order: int
    summary: str = ""
    content: str = ""
    outline: Optional[ChapterOutline] = None
    word_count: int = 0
    pov_type: Optional[str] = None
    pov_character: Optional[str] = None


@dataclass(frozen=True)
class LorebookScope:
    """Where a lorebook entry lives: everywhere, in one series, or in one story."""

    level: str
    scope_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.level not in LOREBOOK_LEVELS:
            raise ValueError(f"Unknown lorebook level: {self.level!r}")
        if self.level == "global" and self.scope_id:
            raise ValueError("Global lorebook entries cannot have a scope id.")
        if self.level != "global" and not self.scope_id:
            raise ValueError(f"{self.level.capitalize()} lorebook entries require a scope id.")


@dataclass(frozen=True)
class LorebookEntryRecord:
    id: str
    name: str
    category: str
    description: str = ""
    tags: Tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    level: str = "story"
    scope_id: Optional[str] = None
    is_disabled: bool = False

    @property
    def importance(self) -> str:
        return (self.metadata or {}).get("importance") or "background"


@dataclass(frozen=True)
class PromptMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class AllowedModel:
    id: str
    provider: str
    name: str


@dataclass(frozen=True)
class PromptRecord:
    id: str
    name: str
    prompt_type: str
    messages: Tuple[PromptMessage, ...]
    allowed_models: Tuple[AllowedModel, ...] = ()
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repetition_penalty: Optional[float] = None
    min_p: Optional[float] = None


@dataclass(frozen=True)
class AIModel:
    id: str
    name: str
    provider: str
    context_length: int = 16384
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "context_length": self.context_length,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AIModel":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            provider=str(data["provider"]),
            context_length=int(data.get("context_length") or 16384),
            enabled=bool(data.get("enabled", True)),
        )
