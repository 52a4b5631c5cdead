"""
Keyword and policy moderation checks for post drafts.

All four checks scan one lowercased corpus built from the idea, the caption
and the selected assets' source prompts.
"""
from __future__ import annotations

from typing import Iterable

from app.models import Asset, Caption, Idea, PolicyRule

NSFW_KEYWORDS = ("porn", "sex", "nude", "naked", "эрот", "обнажен", "18+")
TOXICITY_KEYWORDS = ("kill", "hate", "idiot", "stupid", "ненавиж", "убей", "тупой")
FORBIDDEN_TOPIC_KEYWORDS = ("drugs", "weapon", "terror", "violence", "наркот", "оруж", "террор", "насилие")


def build_corpus(idea: Idea, caption: Caption | None, assets: Iterable[Asset]) -> str:
    parts = [
        idea.topic or "",
        idea.hook or "",
        (caption.text or "") if caption else "",
        *((caption.hashtags or []) if caption else []),
        *((asset.source_prompt or "") for asset in assets),
    ]
    return "\n".join(parts).lower()


def _check(hits: list[str], total: int) -> dict:
    return {"passed": not hits, "score": round(len(hits) / max(total, 1), 4), "hits": hits}


def evaluate_keywords(corpus: str, keywords: Iterable[str]) -> dict:
    keywords = [keyword.lower() for keyword in keywords]
    hits = list(dict.fromkeys(keyword for keyword in keywords if keyword in corpus))
    return _check(hits, len(keywords))


def evaluate_policy_rules(corpus: str, rules: Iterable[PolicyRule]) -> dict:
    rules = list(rules)
    texts = [rule.text.strip() for rule in rules if rule.text and rule.text.strip()]
    hits = list(dict.fromkeys(text for text in texts if text.lower() in corpus))
    return _check(hits, len(rules))


def run_checks(corpus: str, hard_dont_rules: Iterable[PolicyRule]) -> dict:
    return {
        "nsfw": evaluate_keywords(corpus, NSFW_KEYWORDS),
        "toxicity": evaluate_keywords(corpus, TOXICITY_KEYWORDS),
        "forbiddenTopics": evaluate_keywords(corpus, FORBIDDEN_TOPIC_KEYWORDS),
        "policy": evaluate_policy_rules(corpus, hard_dont_rules),
    }


def summarize(checks: dict) -> tuple[bool, str]:
    failed = [name for name, item in checks.items() if not item["passed"]]
    if not failed:
        return True, "All moderation checks passed"
    return False, f"Failed checks: {', '.join(failed)}"
