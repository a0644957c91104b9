"""Resolvers that render lorebook entries into prompt text."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..prompt_context import PromptContext
from ..records import IMPORTANCE_RANK, LOREBOOK_CATEGORIES, LorebookEntryRecord
from . import ResolutionError

NO_ENTRIES_MESSAGE = "No lorebook entries are available for this prompt."


def enabled_entries(entries: Iterable[LorebookEntryRecord]) -> List[LorebookEntryRecord]:
    return [entry for entry in entries if not entry.is_disabled]


def by_importance(entries: Iterable[LorebookEntryRecord]) -> List[LorebookEntryRecord]:
    """Major entries first, then minor, then background; stable otherwise."""

    return sorted(entries, key=lambda entry: IMPORTANCE_RANK.get(entry.importance, len(IMPORTANCE_RANK)))


class LorebookFormatter:
    """Render lorebook entries as plain-text blocks separated by blank lines."""

    def format_entries(
        self,
        entries: Sequence[LorebookEntryRecord],
        known_entries: Iterable[LorebookEntryRecord] = (),
    ) -> str:
        names = {entry.id: entry.name for entry in known_entries}
        names.update({entry.id: entry.name for entry in entries})
        return "\n\n".join(self.format_entry(entry, names) for entry in entries)

    def format_entry(self, entry: LorebookEntryRecord, names: Optional[Mapping[str, str]] = None) -> str:
        lines = [f"{entry.name} ({entry.category.title()})"]
        if entry.description and entry.description.strip():
            lines.append(entry.description.strip())
        if entry.tags:
            lines.append("Tags: " + ", ".join(entry.tags))

        metadata = entry.metadata or {}
        for key in ("type", "importance", "status"):
            if metadata.get(key):
                lines.append(f"{key.capitalize()}: {metadata[key]}")

        relationships = [
            self._relationship(rel, names or {}) for rel in metadata.get("relationships") or () if rel
        ]
        if relationships:
            lines.append("Relationships: " + "; ".join(relationships))

        for key, value in (metadata.get("custom_fields") or metadata.get("customFields") or {}).items():
            if value not in (None, ""):
                lines.append(f"{key}: {value}")
        return "\n".join(lines)

    @staticmethod
    def _relationship(relationship: Mapping[str, str], names: Mapping[str, str]) -> str:
        target_id = relationship.get("targetId") or relationship.get("target_id") or ""
        target = names.get(target_id, target_id)
        text = f"{relationship.get('type') or 'related to'} {target}".strip()
        if relationship.get("description"):
            text += f" ({relationship['description']})"
        return text


class MatchedEntriesResolver:
    """Entries the tag matcher found in the chapter or in the scene beat."""

    def __init__(self, formatter: LorebookFormatter, *, source: str):
        if source not in ("chapter", "scenebeat"):
            raise ValueError(f"Unknown match source: {source}")
        self.formatter = formatter
        self.source = source

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        matched = context.chapter_matched_entries if self.source == "chapter" else context.scene_beat_matched_entries
        entries = by_importance(enabled_entries((matched or {}).values()))
        if not entries:
            return ""
        return self.formatter.format_entries(entries, context.lorebook_entries)


class AllEntriesResolver:
    """Every enabled entry, optionally restricted to the category given as argument."""

    def __init__(self, formatter: LorebookFormatter):
        self.formatter = formatter

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        entries = enabled_entries(context.lorebook_entries)
        if arg:
            category = arg.strip().lower()
            if category not in LOREBOOK_CATEGORIES:
                raise ResolutionError(f"Unknown lorebook category '{arg}'.")
            entries = [entry for entry in entries if entry.category == category]
        return self.formatter.format_entries(entries, context.lorebook_entries)


class CategoryResolver:
    def __init__(self, formatter: LorebookFormatter, category: str):
        self.formatter = formatter
        self.category = category

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        entries = [entry for entry in enabled_entries(context.lorebook_entries) if entry.category == self.category]
        return self.formatter.format_entries(entries, context.lorebook_entries)


class CharacterResolver:
    """A single character entry, looked up by name: ``{{character:Eris}}``."""

    def __init__(self, formatter: LorebookFormatter):
        self.formatter = formatter

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        name = (arg or "").strip().lower()
        if not name:
            raise ResolutionError("character needs a name, e.g. {{character:Eris}}.")
        for entry in enabled_entries(context.lorebook_entries):
            if entry.category == "character" and entry.name.lower() == name:
                return self.formatter.format_entries([entry], context.lorebook_entries)
        return ""


class SceneBeatContextResolver:
    """Lorebook context for a scene beat, built from the sources it selected."""

    def __init__(self, formatter: LorebookFormatter):
        self.formatter = formatter

    async def resolve(self, context: PromptContext, arg: Optional[str] = None) -> str:
        unique: Dict[str, LorebookEntryRecord] = {}
        selection = context.scene_beat_context

        if selection is not None:
            if selection.use_matched_chapter:
                unique.update(context.chapter_matched_entries or {})
            if selection.use_matched_scene_beat:
                unique.update(context.scene_beat_matched_entries or {})
            if selection.use_custom_context and selection.custom_context_items:
                wanted = set(selection.custom_context_items)
                unique.update({entry.id: entry for entry in context.lorebook_entries if entry.id in wanted})
        else:
            unique.update(context.matched_entries or {})

        entries = by_importance(enabled_entries(unique.values()))
        if not entries:
            return NO_ENTRIES_MESSAGE
        return self.formatter.format_entries(entries, context.lorebook_entries)
