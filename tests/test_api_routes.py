import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import ScriptedProvider, document, sse_chunks
from storyforge import create_app
from storyforge.ai import routes as ai_routes
from storyforge.config import TestConfig
from storyforge.extensions import db
from storyforge.models import AISettings, Chapter, LorebookEntry, Prompt, Story
from storyforge.services import ai_settings
from storyforge.services.generation import GenerationDispatcher
from storyforge.services.providers import ProviderError
from storyforge.services.records import AIModel


@pytest.fixture
def app_instance():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture
def story(app_instance):
    story = Story(title="The Lighthouse", author="A. Writer")
    db.session.add(story)
    db.session.flush()
    db.session.add_all(
        [
            Chapter(story_id=story.id, title="Arrival", order=1, summary="Eris reaches the island.",
                    content=document("Eris stepped onto the pier.")),
            Chapter(story_id=story.id, title="Storm", order=2, summary="The storm hits.",
                    content=document("Eris watched the Lantern swing.")),
        ]
    )
    db.session.add_all(
        [
            LorebookEntry(level="story", scope_id=story.id, name="Eris", category="character",
                          tags=["eris", "keeper"], entry_metadata={"importance": "major"}),
            LorebookEntry(level="story", scope_id=story.id, name="Lantern", category="item", tags=[]),
            LorebookEntry(level="global", name="Sea Folk", category="note", tags=["selkie"], is_disabled=True),
        ]
    )
    db.session.commit()
    return story


@pytest.fixture
def scene_prompt(app_instance):
    record = Prompt(
        name="Scene beat",
        prompt_type="scene_beat",
        temperature=0.6,
        max_tokens=300,
        messages=[
            {"role": "system", "content": "You write {{pov}} prose."},
            {"role": "user", "content": "Summary:\n{{summaries}}\n\nLore:\n{{matched_entries_chapter}}\n\n{{scenebeat}}"},
        ],
    )
    db.session.add(record)
    db.session.commit()
    return record


def chapter_id(story, order):
    return next(chapter.id for chapter in story.chapters if chapter.order == order)


def use_provider(monkeypatch, provider):
    monkeypatch.setattr(ai_routes, "build_dispatcher", lambda settings: GenerationDispatcher({"local": provider}))


def parse_sse(body):
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def test_preview_returns_resolved_messages(client, story, scene_prompt):
    response = client.post(
        f"/api/ai/prompts/{scene_prompt.id}/preview",
        json={"story_id": story.id, "chapter_id": chapter_id(story, 2), "scenebeat": "The lamp fails."},
    )

    assert response.status_code == 200
    messages = response.get_json()["messages"]
    assert messages[0] == {"role": "system", "content": "You write Third Person Omniscient prose."}
    assert "Eris reaches the island." in messages[1]["content"]
    assert "The storm hits." not in messages[1]["content"]
    assert "Eris (Character)" in messages[1]["content"]
    assert "Lantern (Item)" in messages[1]["content"]
    assert messages[1]["content"].endswith("The lamp fails.")


def test_preview_reports_prompt_errors(client, story):
    broken = Prompt(name="Broken", prompt_type="other", messages=[{"role": "user", "content": "{{mystery}}"}])
    db.session.add(broken)
    db.session.commit()

    response = client.post(f"/api/ai/prompts/{broken.id}/preview", json={"story_id": story.id})

    assert response.status_code == 400
    assert response.get_json()["error"] == "prompt error"
    assert "mystery" in response.get_json()["detail"]


def test_generate_streams_tokens_then_completion(client, monkeypatch, story, scene_prompt):
    provider = ScriptedProvider("local", sse_chunks("Hello", " ", "world"))
    use_provider(monkeypatch, provider)

    response = client.post(
        "/api/ai/generate",
        json={
            "story_id": story.id,
            "prompt_id": scene_prompt.id,
            "chapter_id": chapter_id(story, 2),
            "provider": "local",
            "model_id": "local/qwen",
            "scenebeat": "Continue.",
            "parameters": {"top_k": 40},
        },
    )

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert parse_sse(response.get_data(as_text=True)) == [
        ("token", {"text": "Hello"}),
        ("token", {"text": " "}),
        ("token", {"text": "world"}),
        ("complete", {}),
    ]
    call = provider.calls[0]
    assert call["model_id"] == "local/qwen"
    assert call["params"] == {"temperature": 0.6, "max_tokens": 300, "top_k": 40}
    assert provider.closed


def test_generate_with_prompt_error_returns_400(client, monkeypatch, story):
    use_provider(monkeypatch, ScriptedProvider("local"))
    broken = Prompt(name="Broken", prompt_type="other", messages=[{"role": "user", "content": "{{mystery}}"}])
    db.session.add(broken)
    db.session.commit()

    response = client.post(
        "/api/ai/generate",
        json={"story_id": story.id, "prompt_id": broken.id, "provider": "local", "model_id": "local/qwen"},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "prompt error"


def test_generate_provider_failure_returns_502(client, monkeypatch, story, scene_prompt):
    use_provider(monkeypatch, ScriptedProvider("local", error=ProviderError("connection refused", provider="local")))

    response = client.post(
        "/api/ai/generate",
        json={"story_id": story.id, "prompt_id": scene_prompt.id, "provider": "local", "model_id": "local/qwen"},
    )

    assert response.status_code == 502
    assert response.get_json()["error"] == "generation failed"


def test_generate_rejects_unknown_provider(client, story, scene_prompt):
    response = client.post(
        "/api/ai/generate",
        json={"story_id": story.id, "prompt_id": scene_prompt.id, "provider": "anthropic", "model_id": "x"},
    )

    assert response.status_code == 400


def test_abort_without_active_generation_is_a_no_op(client):
    response = client.post("/api/ai/generate/chapter-1/abort")

    assert response.status_code == 204


def test_models_refresh_falls_back_to_local_model(client, monkeypatch):
    failing = ScriptedProvider("local", error=ProviderError("offline", provider="local"))
    monkeypatch.setattr(ai_settings, "build_dispatcher", lambda settings: GenerationDispatcher({"local": failing}))

    response = client.get("/api/ai/models?provider=local&refresh=1")

    assert response.status_code == 200
    assert response.get_json()["models"] == [
        {"id": "local", "name": "Local Model", "provider": "local", "context_length": 16384, "enabled": True}
    ]


def test_refresh_keeps_models_of_other_providers(client, monkeypatch):
    settings = ai_settings.get_or_create_settings()
    settings.available_models = [AIModel(id="gpt-4o", name="gpt-4o", provider="openai").to_dict()]
    db.session.commit()
    local = ScriptedProvider("local", models=[AIModel(id="local/qwen", name="qwen", provider="local")])
    monkeypatch.setattr(ai_settings, "build_dispatcher", lambda settings: GenerationDispatcher({"local": local}))

    client.get("/api/ai/models?provider=local&refresh=true")
    response = client.get("/api/ai/models")

    ids = [model["id"] for model in response.get_json()["models"]]
    assert ids == ["gpt-4o", "local/qwen"]


def test_settings_redact_keys_and_validate_local_url(client, monkeypatch):
    monkeypatch.setattr(
        ai_settings, "build_dispatcher", lambda settings: GenerationDispatcher({"local": ScriptedProvider("local")})
    )
    settings = ai_settings.get_or_create_settings()
    settings.openai_key = "sk-test-1234567890"
    db.session.commit()

    response = client.get("/api/ai/settings")
    assert response.get_json()["openai_key"] == "sk-...7890"

    bad = client.put("/api/ai/settings", json={"local_api_url": "not a url"})
    assert bad.status_code == 400

    good = client.put("/api/ai/settings", json={"local_api_url": "http://127.0.0.1:8080/v1/"})
    assert good.status_code == 200
    assert good.get_json()["local_api_url"] == "http://127.0.0.1:8080/v1"
    assert AISettings.query.count() == 1


def test_create_lorebook_entry_enforces_scope(client, story):
    missing_scope = client.post("/api/lorebook/entries", json={"name": "Kade", "category": "character", "level": "story"})
    global_with_scope = client.post(
        "/api/lorebook/entries",
        json={"name": "Kade", "category": "character", "level": "global", "scope_id": story.id},
    )
    created = client.post(
        "/api/lorebook/entries",
        json={"name": "Kade", "category": "character", "level": "story", "scope_id": story.id, "tags": ["kade", "kade"]},
    )

    assert missing_scope.status_code == 400
    assert global_with_scope.status_code == 400
    assert created.status_code == 201
    assert created.get_json()["tags"] == ["kade"]


def test_story_entries_include_global_scope_and_hide_disabled(client, story):
    visible = client.get(f"/api/lorebook/stories/{story.id}/entries").get_json()["entries"]
    everything = client.get(f"/api/lorebook/stories/{story.id}/entries?include_disabled=1").get_json()["entries"]

    assert {item["name"] for item in visible} == {"Eris", "Lantern"}
    assert {item["name"] for item in everything} == {"Eris", "Lantern", "Sea Folk"}


def test_chapter_matches_use_chapter_text_or_explicit_text(client, story):
    from_chapter = client.post(f"/api/lorebook/chapters/{chapter_id(story, 1)}/matches", json={})
    from_text = client.post(
        f"/api/lorebook/chapters/{chapter_id(story, 1)}/matches", json={"text": "The LANTERN flickers."}
    )

    assert [item["name"] for item in from_chapter.get_json()["matches"]] == ["Eris"]
    assert [item["name"] for item in from_text.get_json()["matches"]] == ["Lantern"]


def test_sql_lorebook_store_reads_one_scope_at_a_time(story):
    import asyncio

    from storyforge.services.records import LorebookScope
    from storyforge.stores import SqlLorebookStore

    store = SqlLorebookStore()

    global_entries = asyncio.run(store.get_entries(LorebookScope("global")))
    story_entries = asyncio.run(store.get_entries(LorebookScope("story", story.id)))

    assert [item.name for item in global_entries] == ["Sea Folk"]
    assert global_entries[0].is_disabled
    assert [item.name for item in story_entries] == ["Eris", "Lantern"]


def test_sql_chapter_store_finds_the_previous_chapter(story):
    import asyncio

    from storyforge.stores import SqlChapterStore

    store = SqlChapterStore()

    previous = asyncio.run(store.get_previous_chapter(chapter_id(story, 2)))
    first = asyncio.run(store.get_previous_chapter(chapter_id(story, 1)))

    assert previous.title == "Arrival"
    assert first is None


def test_sql_chapter_store_counts_words_when_the_row_has_none(story):
    import asyncio

    from storyforge.stores import SqlChapterStore

    stored = db.session.get(Chapter, chapter_id(story, 2))
    stored.word_count = 42
    db.session.commit()

    first = asyncio.run(SqlChapterStore().get_chapter_by_id(chapter_id(story, 1)))
    second = asyncio.run(SqlChapterStore().get_chapter_by_id(chapter_id(story, 2)))

    assert first.word_count == 5
    assert second.word_count == 42


def test_chapter_matches_tolerate_a_malformed_chapter_document(client, story):
    stored = db.session.get(Chapter, chapter_id(story, 1))
    stored.content = '{"root": "oops"}'
    db.session.commit()

    response = client.post(f"/api/lorebook/chapters/{stored.id}/matches", json={})

    assert response.status_code == 200
    assert response.get_json()["matches"] == []


def test_schema_check_recreates_a_missing_table(app_instance):
    from sqlalchemy import inspect

    from storyforge.db_utils import ensure_database_schema

    LorebookEntry.__table__.drop(bind=db.engine)
    assert "lorebook_entries" not in inspect(db.engine).get_table_names()

    ensure_database_schema()

    assert "lorebook_entries" in inspect(db.engine).get_table_names()
