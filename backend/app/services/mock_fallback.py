"""
Deterministic artifacts used in AI test mode when no provider is configured.

Lets the whole pipeline (ideas -> script -> caption -> prompts -> assets)
run end to end without live credentials.
"""
from __future__ import annotations

from app.models import IdeaFormat

_MOCK_IDEA_ANGLES = (
    ("Morning routine that actually sticks", "Three tiny habits, one minute each, zero willpower."),
    ("The 5-second edit trick", "Cut on the beat and watch retention jump."),
    ("What nobody tells you about starting out", "The first 30 posts are practice. Here is why that is good."),
    ("Behind the scenes of one shot", "One frame, six takes, and the mistake we kept."),
    ("Myth vs. fact", "The advice everyone repeats and what the numbers say."),
)


def build_mock_ideas(count: int, idea_format: str = IdeaFormat.reel.value) -> list[dict[str, str]]:
    ideas = []
    for index in range(count):
        topic, hook = _MOCK_IDEA_ANGLES[index % len(_MOCK_IDEA_ANGLES)]
        ideas.append({
            "topic": f"[mock] {topic} #{index + 1}",
            "hook": hook,
            "format": idea_format,
        })
    return ideas


def build_mock_script(topic: str, hook: str) -> dict:
    shots = [
        f"Hook on screen: {hook}",
        f"Close-up introducing {topic}",
        "Quick demo with on-screen captions",
        "Call to action: follow for part two",
    ]
    text = "\n".join([
        f"Title: {topic}",
        "Duration: 30s",
        "Structure:",
        *(f"{index}. {shot}" for index, shot in enumerate(shots, 1)),
    ])
    return {"text": text, "shot_list": shots}


def build_mock_caption(topic: str) -> dict:
    return {
        "text": f"[mock] {topic}. Save this for later and tell us what you would try first.",
        "hashtags": ["#mock", "#creatorflow", "#reels"],
    }


def build_mock_image_prompt() -> str:
    return "[mock] Vertical 9:16 photo, soft daylight, creator at a desk, shallow depth of field, clean background."


def build_mock_video_prompt() -> str:
    return "[mock] 5-second vertical clip, slow push-in on a creator at a desk, warm light, subtle handheld motion."
