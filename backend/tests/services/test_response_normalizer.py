"""
Tests for app.services.response_normalizer
"""

import pytest

from app.errors import MalformedResponseError
from app.services.response_normalizer import (
    MAX_IDEA_TOPIC_CHARS,
    normalize_caption_text,
    normalize_hashtags,
    normalize_ideas,
    normalize_prompt,
    normalize_script_text,
    normalize_shot_list,
)


class TestNormalizeIdeas:
    """Idea candidates from loosely shaped provider output."""

    def test_aliases_are_resolved(self):
        data = {
            "ideas": [
                {"topic": "a", "hook": "h1", "format": "reel"},
                {"topic": "b", "hook": "h2"},
                {"title": "c", "description": "h3", "type": "short"},
            ]
        }
        ideas = normalize_ideas(data, "reel")
        assert ideas == [
            {"topic": "a", "hook": "h1", "format": "reel"},
            {"topic": "b", "hook": "h2", "format": "reel"},
            {"topic": "c", "hook": "h3", "format": "short"},
        ]

    def test_top_level_list_and_alternative_keys(self):
        assert len(normalize_ideas([{"topic": "a", "hook": "b"}], "reel")) == 1
        assert len(normalize_ideas({"results": [{"topic": "a", "hook": "b"}]}, "reel")) == 1
        assert len(normalize_ideas({"items": [{"topic": "a", "hook": "b"}]}, "reel")) == 1

    def test_unknown_format_falls_back_to_default(self):
        ideas = normalize_ideas({"ideas": [{"topic": "a", "hook": "b", "format": "Carousel"}]}, "tiktok")
        assert ideas[0]["format"] == "tiktok"

    def test_format_is_case_insensitive(self):
        ideas = normalize_ideas({"ideas": [{"topic": "a", "hook": "b", "format": " SHORT "}]}, "reel")
        assert ideas[0]["format"] == "short"

    def test_incomplete_items_are_dropped(self):
        data = {"ideas": [{"topic": "a"}, {"hook": "b"}, "text", {"topic": "  ", "hook": "x"}]}
        assert normalize_ideas(data, "reel") == []

    def test_topic_is_truncated(self):
        ideas = normalize_ideas({"ideas": [{"topic": "t" * 500, "hook": "h"}]}, "reel")
        assert len(ideas[0]["topic"]) == MAX_IDEA_TOPIC_CHARS

    def test_non_collection_returns_empty(self):
        assert normalize_ideas("nothing", "reel") == []
        assert normalize_ideas({"ideas": "nope"}, "reel") == []


class TestNormalizeScriptText:
    """Script text extractors in priority order."""

    def test_reel_structure_is_synthesized(self):
        data = {"reel": {"reel_title": "X", "structure": [{"time": "0-3s", "visuals": "intro", "audio": "music"}]}}
        text = normalize_script_text(data)
        assert "Title: X" in text
        assert "1. [0-3s] | intro | Audio: music" in text

    def test_top_level_text_wins(self):
        data = {"text": "direct", "script": {"text": "nested"}, "reel": {"text": "reel"}}
        assert normalize_script_text(data) == "direct"

    def test_nested_script_object(self):
        assert normalize_script_text({"script": {"content": "nested body"}}) == "nested body"

    def test_storyboard_text_keys(self):
        assert normalize_script_text({"storyboard": {"concept": "a concept"}}) == "a concept"

    def test_top_level_structure(self):
        text = normalize_script_text({"theme": "Coffee", "structure": ["Pour", "Sip"]})
        assert text.splitlines() == ["Theme: Coffee", "Structure:", "1. Pour", "2. Sip"]

    def test_plain_string_script(self):
        assert normalize_script_text({"script": "  just a string  "}) == "just a string"

    def test_truncated_to_max_chars(self):
        assert normalize_script_text({"text": "x" * 100}, max_chars=10) == "x" * 10

    def test_empty_raises_malformed(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            normalize_script_text({"unrelated": 1})
        assert exc_info.value.code == "invalid_json_payload"
        assert "Response preview" in exc_info.value.message


class TestNormalizeShotList:
    """Shot list extraction."""

    def test_string_items(self):
        assert normalize_shot_list({"shotList": [" a ", "", "b"]}) == ["a", "b"]

    def test_object_items(self):
        data = {"scenes": [{"description": "wide"}, {"visuals": "close"}, {"other": 1}]}
        assert normalize_shot_list(data) == ["wide", "close"]

    def test_reel_nested_list(self):
        assert normalize_shot_list({"reel": {"shots": ["one"]}}) == ["one"]

    def test_script_nested_list(self):
        assert normalize_shot_list({"script": {"scenes": ["s1", "s2"]}}) == ["s1", "s2"]

    def test_newline_text_with_bullets(self):
        data = {"script": {"shotList": "- first\n2) second\n\n• third"}}
        assert normalize_shot_list(data) == ["first", "second", "third"]

    def test_limit(self):
        assert normalize_shot_list({"shots": [str(i) for i in range(50)]}, max_shots=3) == ["0", "1", "2"]

    def test_missing_is_empty(self):
        assert normalize_shot_list({"text": "no shots"}) == []


class TestCaptionAndPrompts:
    """Caption, hashtags and media prompt normalizers."""

    def test_caption_text(self):
        assert normalize_caption_text({"text": "  hi  "}) == "hi"

    def test_caption_requires_text(self):
        with pytest.raises(MalformedResponseError):
            normalize_caption_text({"text": ""})

    def test_hashtags_are_cleaned(self):
        assert normalize_hashtags({"hashtags": ["#a", " ", 3, " #b "]}) == ["#a", "#b"]
        assert normalize_hashtags({"hashtags": "#a #b"}) == []

    def test_prompt(self):
        assert normalize_prompt({"prompt": " sunrise "}, 100, "image") == "sunrise"
        assert normalize_prompt({"prompt": "abcdef"}, 3, "video") == "abc"

    def test_prompt_requires_value(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            normalize_prompt({}, 100, "video")
        assert exc_info.value.message == "LLM returned empty video prompt"
