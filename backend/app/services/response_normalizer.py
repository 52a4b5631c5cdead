"""
Normalization of loosely-shaped LLM JSON into internal artifacts.

Models answer the same contract in many shapes (synonym keys, nesting under
"script"/"reel"/"storyboard", free-form "structure" lists). Each normalizer
walks an ordered list of extractors; the first non-empty result wins. The
order encodes which observed variant is preferred, so keep it stable.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable

from app.errors import MalformedResponseError
from app.models import IdeaFormat

MAX_IDEA_TOPIC_CHARS = 280
MAX_IDEA_HOOK_CHARS = 2000
DEFAULT_MAX_SCRIPT_CHARS = 4000
DEFAULT_MAX_SHOTS = 20
DEFAULT_MAX_HASHTAGS = 20
MAX_CAPTION_CHARS = 3000
DEFAULT_IMAGE_MAX_PROMPT_CHARS = 1200
DEFAULT_VIDEO_MAX_PROMPT_CHARS = 1200

IDEA_FORMATS = {item.value for item in IdeaFormat}
IDEA_ARRAY_KEYS = ("ideas", "results", "items", "data")
TEXT_KEYS = ("text", "content", "output", "result", "message")
REEL_TEXT_KEYS = ("text", "script", "content", "output", "result", "message", "concept", "description", "hook")
REEL_KEYS = ("reel", "storyboard")
SHOT_LIST_KEYS = ("shotList", "shots", "scenes", "steps", "structure")
REEL_SHOT_LIST_KEYS = ("shotList", "shots", "scenes", "steps")
SCRIPT_SHOT_LIST_KEYS = ("shotList", "shots", "scenes")
SHOT_ITEM_KEYS = ("description", "text", "title", "visuals", "text_overlay", "audio", "shot", "scene", "action")

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def preview_unknown(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def first_string(values: Iterable[Any]) -> str | None:
    """First non-blank string, stripped."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def first_list(values: Iterable[Any]) -> list | None:
    for value in values:
        if isinstance(value, list):
            return value
    return None


def _fields(obj: Any, keys: Iterable[str]) -> list[Any]:
    if not isinstance(obj, dict):
        return []
    return [obj.get(key) for key in keys]


def first_match(extractors: Iterable[Callable[[], Any]]) -> Any:
    for extract in extractors:
        value = extract()
        if value:
            return value
    return None


def _reel_like(data: Any) -> dict | None:
    if not isinstance(data, dict):
        return None
    for key in REEL_KEYS:
        if isinstance(data.get(key), dict):
            return data[key]
    return None


# Ideas


def _idea_candidates(data: Any) -> list:
    if isinstance(data, list):
        return data
    return first_list(_fields(data, IDEA_ARRAY_KEYS)) or []


def normalize_ideas(data: Any, default_format: str) -> list[dict[str, str]]:
    ideas = []
    for item in _idea_candidates(data):
        if not isinstance(item, dict):
            continue
        topic = first_string([item.get("topic")]) if isinstance(item.get("topic"), str) else first_string([item.get("title")])
        hook = first_string([item.get("hook")]) if isinstance(item.get("hook"), str) else first_string([item.get("description")])
        if not topic or not hook:
            continue

        raw_format = item.get("format") if isinstance(item.get("format"), str) else item.get("type")
        idea_format = raw_format.strip().lower() if isinstance(raw_format, str) else default_format
        if idea_format not in IDEA_FORMATS:
            idea_format = default_format

        ideas.append({
            "topic": topic[:MAX_IDEA_TOPIC_CHARS],
            "hook": hook[:MAX_IDEA_HOOK_CHARS],
            "format": idea_format,
        })
    return ideas


# Script text


def _structure_line(index: int, item: Any) -> str:
    if isinstance(item, str):
        return f"{index}. {item.strip()}" if item.strip() else ""
    if not isinstance(item, dict):
        return ""
    time_label = first_string([item.get("time")])
    visuals = first_string(_fields(item, ("visuals", "description", "text")))
    audio = first_string([item.get("audio")])
    overlay = first_string(_fields(item, ("text_overlay", "overlay")))
    parts = [
        f"[{time_label}]" if time_label else None,
        visuals,
        f"Audio: {audio}" if audio else None,
        f"Text: {overlay}" if overlay else None,
    ]
    parts = [part for part in parts if part]
    return f"{index}. {' | '.join(parts)}" if parts else ""


def structured_script_text(obj: Any) -> str | None:
    """Readable script synthesized from reel_title/duration/theme/structure[]."""
    if not isinstance(obj, dict):
        return None
    lines = []
    for label, key in (("Title", "reel_title"), ("Duration", "duration"), ("Theme", "theme")):
        value = first_string([obj.get(key)])
        if value:
            lines.append(f"{label}: {value}")

    structure = obj.get("structure") if isinstance(obj.get("structure"), list) else []
    structure_lines = [line for line in (_structure_line(i, item) for i, item in enumerate(structure, 1)) if line]
    if structure_lines:
        lines.append("Structure:")
        lines.extend(structure_lines)
    return "\n".join(lines) or None


def normalize_script_text(data: Any, max_chars: int = DEFAULT_MAX_SCRIPT_CHARS) -> str:
    script = data.get("script") if isinstance(data, dict) else None
    reel = _reel_like(data)
    extractors = [
        lambda: first_string(_fields(data, TEXT_KEYS)),
        lambda: first_string(_fields(script, TEXT_KEYS)),
        lambda: first_string(_fields(reel, REEL_TEXT_KEYS)),
        lambda: structured_script_text(data),
        lambda: structured_script_text(reel),
        lambda: script.strip() if isinstance(script, str) else None,
    ]
    value = first_match(extractors)
    if not value:
        raise MalformedResponseError(
            f"LLM returned empty script text. Response preview: {preview_unknown(data)}",
            preview_unknown(data),
        )
    return value[:max_chars]


# Shot list


def _shot_item(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return first_string(_fields(value, SHOT_ITEM_KEYS)) or ""


def _lines(value: str | None) -> list[str]:
    if not value:
        return []
    return [line for line in (_BULLET.sub("", raw).strip() for raw in value.split("\n")) if line]


def normalize_shot_list(data: Any, max_shots: int = DEFAULT_MAX_SHOTS) -> list[str]:
    script = data.get("script") if isinstance(data, dict) else None
    reel = _reel_like(data)
    raw_list = first_list([
        *_fields(data, SHOT_LIST_KEYS),
        first_list(_fields(reel, REEL_SHOT_LIST_KEYS)),
        *_fields(script, SCRIPT_SHOT_LIST_KEYS),
    ])
    if raw_list is None:
        raw_list = _lines(first_string([
            script.get("shotList") if isinstance(script, dict) else None,
            data.get("shotList") if isinstance(data, dict) else None,
        ]))
    shots = [shot for shot in (_shot_item(item) for item in raw_list) if shot]
    return shots[:max_shots]


# Caption


def normalize_caption_text(data: Any) -> str:
    text = data.get("text") if isinstance(data, dict) else None
    if not isinstance(text, str) or not text.strip():
        raise MalformedResponseError("LLM returned empty caption text", preview_unknown(data))
    return text.strip()[:MAX_CAPTION_CHARS]


def normalize_hashtags(data: Any, max_hashtags: int = DEFAULT_MAX_HASHTAGS) -> list[str]:
    hashtags = data.get("hashtags") if isinstance(data, dict) else None
    if not isinstance(hashtags, list):
        return []
    cleaned = [item.strip() for item in hashtags if isinstance(item, str)]
    return [item for item in cleaned if item][:max_hashtags]


# Image / video prompts


def normalize_prompt(data: Any, max_chars: int, kind: str) -> str:
    prompt = data.get("prompt") if isinstance(data, dict) else None
    if not isinstance(prompt, str) or not prompt.strip():
        raise MalformedResponseError(f"LLM returned empty {kind} prompt", preview_unknown(data))
    return prompt.strip()[:max_chars]
