import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fakes import document, entry
from storyforge.services.documents import count_words, extract_plain_text
from storyforge.services.lorebook_matching import build_tag_map, match_entries, normalize_tag


def test_normalize_tag_collapses_whitespace_and_case():
    assert normalize_tag("  The   Old\tLighthouse ") == "the old lighthouse"
    assert normalize_tag(None) == ""


def test_name_match_is_case_insensitive_and_keyed_by_id():
    eris = entry("e1", "Eris", tags=("eris", "the cartographer"))

    matches = match_entries("ERIS unfolded the map. The Cartographer smiled.", [eris])

    assert list(matches) == ["e1"]
    assert matches["e1"] is eris


def test_disabled_entries_never_match():
    ghost = entry("e1", "Ghost", is_disabled=True)

    assert match_entries("A ghost walked by.", [ghost]) == {}


def test_single_words_of_multi_word_tags_need_their_own_tag():
    loose = entry("e1", "Captain Vey", tags=("captain vey",))
    explicit = entry("e2", "Marta Oru", tags=("marta oru", "marta"))

    tag_map = build_tag_map([loose, explicit])

    assert "captain" not in tag_map and "vey" not in tag_map
    assert tag_map["marta"] is explicit
    assert match_entries("Marta waved.", tag_map=tag_map) == {"e2": explicit}


def test_extract_plain_text_joins_blocks_and_skips_scene_beats():
    content = json.dumps(
        {
            "root": {
                "children": [
                    {"type": "paragraph", "children": [{"type": "text", "text": "First line"},
                                                       {"type": "linebreak"},
                                                       {"type": "text", "text": "second line"}]},
                    {"type": "scene-beat", "command": "Make it rain"},
                    {"type": "heading", "children": [{"type": "text", "text": "Part Two"}]},
                ]
            }
        }
    )

    assert extract_plain_text(content) == "First line\nsecond line\n\nPart Two"


def test_extract_plain_text_accepts_plain_strings_and_empty_values():
    assert extract_plain_text("Just prose.") == "Just prose."
    assert extract_plain_text("") == ""
    assert extract_plain_text(None) == ""
    assert count_words(extract_plain_text(document("One two", "three"))) == 3


@pytest.mark.parametrize(
    "content",
    [
        '{"root": "oops"}',
        '{"root": {"children": [{"type": "paragraph", "children": 5}]}}',
        '{"root": {"children": {"type": "paragraph"}}}',
        "[1, 2, 3]",
    ],
)
def test_extract_plain_text_returns_nothing_for_malformed_documents(content):
    assert extract_plain_text(content) == ""
