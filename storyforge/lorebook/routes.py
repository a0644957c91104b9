from __future__ import annotations

from flask import abort, current_app, jsonify, request

from ..extensions import db
from ..models import Chapter, LorebookEntry, Series, Story
from ..services.documents import extract_plain_text
from ..services.lorebook_matching import match_entries
from ..services.records import LorebookEntryRecord
from ..stores import SqlLorebookStore, entry_to_record
from . import bp
from .forms import LorebookEntryForm


def _entry_payload(entry: LorebookEntryRecord) -> dict:
    return {
        "id": entry.id,
        "name": entry.name,
        "category": entry.category,
        "description": entry.description,
        "tags": list(entry.tags),
        "metadata": dict(entry.metadata),
        "level": entry.level,
        "scope_id": entry.scope_id,
        "is_disabled": entry.is_disabled,
    }


def _clean_tags(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ValueError("Tags must be a list of strings.")
    tags = []
    for tag in raw:
        text = str(tag).strip()
        if text and text not in tags:
            tags.append(text)
    return tags


@bp.route("/entries", methods=["POST"])
def create_entry():
    form = LorebookEntryForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid lorebook entry.", "fields": form.errors}), 400

    payload = request.get_json(silent=True) or {}
    try:
        tags = _clean_tags(payload.get("tags"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        return jsonify({"error": "Metadata must be an object."}), 400

    level = form.level.data
    scope_id = form.scope_id.data or None
    if level == "story" and db.session.get(Story, scope_id) is None:
        return jsonify({"error": "We couldn't find that story."}), 404
    if level == "series" and db.session.get(Series, scope_id) is None:
        return jsonify({"error": "We couldn't find that series."}), 404

    entry = LorebookEntry(
        name=form.name.data.strip(),
        description=(form.description.data or "").strip(),
        category=form.category.data,
        level=level,
        scope_id=scope_id,
        tags=tags,
        entry_metadata=metadata,
        is_disabled=bool(form.is_disabled.data),
    )
    db.session.add(entry)
    db.session.commit()
    current_app.logger.info("Created %s lorebook entry %s", level, entry.name)

    return jsonify(_entry_payload(entry_to_record(entry))), 201


@bp.route("/stories/<story_id>/entries", methods=["GET"])
async def story_entries(story_id: str):
    if db.session.get(Story, story_id) is None:
        abort(404)

    entries = await SqlLorebookStore().get_entries_for_story(story_id)
    if request.args.get("include_disabled", "").lower() not in ("1", "true", "yes"):
        entries = [entry for entry in entries if not entry.is_disabled]
    return jsonify({"entries": [_entry_payload(entry) for entry in entries]})


@bp.route("/chapters/<chapter_id>/matches", methods=["POST"])
async def chapter_matches(chapter_id: str):
    chapter = db.session.get(Chapter, chapter_id)
    if chapter is None:
        return jsonify({"error": "We couldn't find that chapter."}), 404

    payload = request.get_json(silent=True) or {}
    text = payload.get("text")
    if text is not None and not isinstance(text, str):
        return jsonify({"error": "Text must be a string."}), 400
    if text is None:
        text = extract_plain_text(chapter.content)

    entries = await SqlLorebookStore().get_entries_for_story(chapter.story_id)
    matches = match_entries(text, entries)
    ordered = sorted(matches.values(), key=lambda entry: entry.name.lower())
    return jsonify({"matches": [_entry_payload(entry) for entry in ordered]})
