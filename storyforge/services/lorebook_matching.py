"""Find the lorebook entries a piece of chapter text refers to."""

from __future__ import annotations

import re
from typing import Dict, Iterable, Mapping, Optional

from .records import LorebookEntryRecord

_WHITESPACE = re.compile(r"\s+")


def normalize_tag(value: Optional[str]) -> str:
    """Lowercase ``value`` and collapse runs of whitespace to single spaces."""

    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip().lower()


def build_tag_map(entries: Iterable[LorebookEntryRecord]) -> Dict[str, LorebookEntryRecord]:
    """Map every normalized name and tag of the enabled entries to its entry.

    Single words of a multi-word tag are only added when that word is itself
    one of the entry's tags. Later entries win when two entries share a tag.
    """

    tag_map: Dict[str, LorebookEntryRecord] = {}
    for entry in entries or ():
        if entry is None or entry.is_disabled:
            continue

        name = normalize_tag(entry.name)
        if name:
            tag_map[name] = entry

        normalized_tags = {normalize_tag(tag) for tag in entry.tags or ()}
        normalized_tags.discard("")
        for tag in normalized_tags:
            tag_map[tag] = entry
            if " " not in tag:
                continue
            for word in tag.split(" "):
                if word in normalized_tags:
                    tag_map[word] = entry
    return tag_map


def match_entries(
    text: Optional[str],
    entries: Iterable[LorebookEntryRecord] = (),
    *,
    tag_map: Optional[Mapping[str, LorebookEntryRecord]] = None,
) -> Dict[str, LorebookEntryRecord]:
    """Return ``{entry_id: entry}`` for every entry whose name or tag appears in ``text``.

    Matching is a case-insensitive substring test on whitespace-normalized
    text, so an entry matched through several tags appears once.
    """

    haystack = normalize_tag(text)
    if not haystack:
        return {}
    if tag_map is None:
        tag_map = build_tag_map(entries)

    matched: Dict[str, LorebookEntryRecord] = {}
    for tag, entry in tag_map.items():
        if entry.id in matched:
            continue
        if tag in haystack:
            matched[entry.id] = entry
    return matched
