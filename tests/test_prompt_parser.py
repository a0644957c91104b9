import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import FakeChapterStore, FakeLorebookStore, FakePromptCatalog, chapter, document, entry, prompt
from storyforge.services.prompt_context import (
    ALL_CHAPTERS,
    AdditionalContext,
    ContextBuildError,
    ContextBuilder,
    PromptParserConfig,
)
from storyforge.services.prompt_parser import PromptParser
from storyforge.services.records import POV_FIRST_PERSON, POV_THIRD_LIMITED, POV_THIRD_OMNISCIENT
from storyforge.services.resolvers import default_registry


def build_parser(chapters=(), entries=(), prompts=(), chapter_store=None):
    chapter_store = chapter_store or FakeChapterStore(chapters)
    return PromptParser(
        ContextBuilder(chapter_store, FakeLorebookStore(entries)),
        FakePromptCatalog(prompts),
        default_registry(chapter_store),
    )


def test_parse_substitutes_placeholders_and_keeps_literal_text():
    chapters = [chapter("c1", 1, summary="Eris leaves home."), chapter("c2", 2, summary="Storm.")]
    template = prompt(
        "p1",
        ("system", "You are a novelist."),
        ("user", "Story so far:\n{{summaries}}\n\nNow write: {{ scenebeat }}!"),
    )
    parser = build_parser(chapters=chapters, prompts=[template])
    config = PromptParserConfig(story_id="story-1", prompt_id="p1", chapter_id="c2", scenebeat="Eris returns")

    parsed = asyncio.run(parser.parse(config))

    assert parsed.ok
    assert parsed.error is None
    assert [message.role for message in parsed.messages] == ["system", "user"]
    assert parsed.messages[0].content == "You are a novelist."
    assert parsed.messages[1].content == "Story so far:\nEris leaves home.\n\nNow write: Eris returns!"


def test_parse_with_unknown_variable_returns_structured_error():
    template = prompt("p1", ("user", "Before {{no_such_thing}} after"))
    parser = build_parser(prompts=[template])

    parsed = asyncio.run(parser.parse(PromptParserConfig(story_id="story-1", prompt_id="p1")))

    assert parsed.messages == []
    assert "no_such_thing" in parsed.error


def test_parse_resolves_each_occurrence_with_its_own_argument():
    template = prompt("p1", ("user", "[{{previous_words:1}}] [{{previous_words:3}}]"))
    parser = build_parser(prompts=[template])
    config = PromptParserConfig(story_id="story-1", prompt_id="p1", previous_words="one two three four")

    parsed = asyncio.run(parser.parse(config))

    assert parsed.messages[0].content == "[four] [two three four]"


def test_parse_reports_missing_prompt_and_bad_argument():
    template = prompt("p1", ("user", "{{previous_words:lots}}"))
    parser = build_parser(prompts=[template])

    missing = asyncio.run(parser.parse(PromptParserConfig(story_id="story-1", prompt_id="nope")))
    bad_arg = asyncio.run(parser.parse(PromptParserConfig(story_id="story-1", prompt_id="p1")))

    assert not missing.ok and "nope" in missing.error
    assert not bad_arg.ok and bad_arg.messages == []


def test_context_build_failure_propagates():
    store = FakeChapterStore(fail_with=OSError("disk gone"))
    template = prompt("p1", ("user", "{{summaries}}"))
    parser = build_parser(prompts=[template], chapter_store=store)

    with pytest.raises(ContextBuildError):
        asyncio.run(parser.parse(PromptParserConfig(story_id="story-1", prompt_id="p1")))


def test_context_pov_falls_back_from_override_to_chapter_to_default():
    limited = chapter("c1", 1, pov_type=POV_THIRD_LIMITED, pov_character="Eris")
    store = FakeChapterStore([limited])
    builder = ContextBuilder(store, FakeLorebookStore())

    from_chapter = asyncio.run(builder.build_context(PromptParserConfig(story_id="story-1", chapter_id="c1")))
    overridden = asyncio.run(
        builder.build_context(
            PromptParserConfig(story_id="story-1", chapter_id="c1", pov_type=POV_FIRST_PERSON, pov_character="Kade")
        )
    )
    default = asyncio.run(builder.build_context(PromptParserConfig(story_id="story-1")))

    assert (from_chapter.pov_type, from_chapter.pov_character) == (POV_THIRD_LIMITED, "Eris")
    assert (overridden.pov_type, overridden.pov_character) == (POV_FIRST_PERSON, "Kade")
    assert default.pov_type == POV_THIRD_OMNISCIENT
    assert default.current_chapter is None


def test_brainstorm_full_context_lists_summaries_before_world_information():
    chapters = [chapter("c1", 1, summary="A"), chapter("c2", 2, summary="B")]
    template = prompt("brainstorm", ("user", "{{brainstorm_context}}"), prompt_type="brainstorm")
    parser = build_parser(chapters=chapters, entries=[entry("e1", "Eris")], prompts=[template])
    config = PromptParserConfig(
        story_id="story-1",
        prompt_id="brainstorm",
        chapter_id="c2",
        additional_context=AdditionalContext(include_full_context=True),
    )

    text = asyncio.run(parser.parse(config)).messages[0].content

    summaries_at = text.index("Story Chapter Summaries:")
    world_at = text.index("Story World Information:")
    assert summaries_at < text.index("A") < text.index("B") < world_at < text.index("Eris")


def test_brainstorm_selection_reads_chapter_content_and_selected_entries():
    chapters = [
        chapter("c1", 1, summary="A", content=document("Rain on the harbor.")),
        chapter("c2", 2, summary="B", content=document("The lighthouse burns.")),
    ]
    entries = [entry("e1", "Eris"), entry("e2", "Kade", is_disabled=True), entry("e3", "Harbor", "location")]
    template = prompt("brainstorm", ("user", "{{brainstorm_context}}"))
    parser = build_parser(chapters=chapters, entries=entries, prompts=[template])
    config = PromptParserConfig(
        story_id="story-1",
        prompt_id="brainstorm",
        additional_context=AdditionalContext.from_mapping(
            {
                "selectedSummaries": ["c2"],
                "selectedChapterContent": ["c1", "missing"],
                "selectedItems": ["e1", "e2"],
            }
        ),
    )

    text = asyncio.run(parser.parse(config)).messages[0].content

    assert "Story Chapter Summaries:\nB" in text
    assert "Chapter 1 Content:\nRain on the harbor." in text
    assert "Eris" in text
    assert "Kade" not in text
    assert "lighthouse" not in text


def test_brainstorm_skips_chapters_that_fail_to_load_and_keeps_selection_order():
    chapters = [
        chapter("c1", 1, content=document("Rain.")),
        chapter("c2", 2, content=document("Fire.")),
    ]
    store = FakeChapterStore(chapters, failing_ids=["boom"])
    template = prompt("brainstorm", ("user", "{{brainstorm_context}}"))
    parser = build_parser(prompts=[template], chapter_store=store)
    config = PromptParserConfig(
        story_id="story-1",
        prompt_id="brainstorm",
        additional_context=AdditionalContext.from_mapping({"selectedChapterContent": ["c2", "boom", "c1"]}),
    )

    parsed = asyncio.run(parser.parse(config))

    assert parsed.ok
    assert parsed.messages[0].content == (
        "Full Chapter Content:\nChapter 2 Content:\nFire.\n\nChapter 1 Content:\nRain."
    )
    assert store.fetched_ids == ["c2", "boom", "c1"]


def test_brainstorm_without_selection_explains_missing_context():
    template = prompt("brainstorm", ("user", "{{brainstorm_context}}"))
    parser = build_parser(prompts=[template])

    text = asyncio.run(parser.parse(PromptParserConfig(story_id="story-1", prompt_id="brainstorm")))

    assert text.messages[0].content.startswith("No story context is available")


def test_all_in_selected_summaries_selects_every_chapter():
    context = AdditionalContext.from_mapping({"selectedSummaries": ["c1", "all"]})

    assert context.selected_summaries is ALL_CHAPTERS


def test_additional_context_rejects_unknown_keys():
    with pytest.raises(ValueError):
        AdditionalContext.from_mapping({"surprise": True})

    extended = AdditionalContext.from_mapping({"extensions": {"surprise": True}})
    assert extended.extensions == {"surprise": True}
