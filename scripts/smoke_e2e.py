#!/usr/bin/env python3
"""
Smoke E2E test: walks one idea through the whole AI pipeline on a live stack.

Run the API and worker with AI_TEST_MODE=1 and no provider keys; every LLM
step then falls back to deterministic mock artifacts.

Env vars:
  BASE_URL       (default http://localhost:8000)
  TIMEOUT_SEC    (default 120)
  POLL_INTERVAL  (default 2)
"""
from __future__ import annotations

import json
import os
import sys
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
TIMEOUT_SEC = int(os.environ.get("TIMEOUT_SEC", "120"))
POLL_INTERVAL = int(os.environ.get("POLL_INTERVAL", "2"))

SMOKE_TAG = f"smoke_{int(time.time())}"

TEMPLATES = {
    "ideas": "Suggest {{count}} {{format}} ideas about {{topic}}.",
    "script": "Write a short {{format}} script for: {{topic}}. Hook: {{hook}}.",
    "caption": "Write a caption for: {{topic}}.",
    "image_prompt": "Describe a cover image for: {{topic}}.",
    "video_prompt": "Describe a short clip for: {{topic}}.",
}

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _req(method: str, path: str, body: dict | None = None) -> dict | list:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = Request(url, data=data, headers={"Content-Type": "application/json"}, method=method)
    try:
        with urlopen(req, timeout=30) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raw = e.read().decode()[:500]
        raise SmokeError(f"{method} {path} → {e.code}: {raw}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str):
    return _req("GET", path)


def POST(path: str, body: dict | None = None):
    return _req("POST", path, body if body is not None else {})


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


def wait_for(label: str, fetch) -> dict:
    deadline = time.monotonic() + TIMEOUT_SEC
    while time.monotonic() < deadline:
        row = fetch()
        status = row.get("status") if row else None
        if status == "succeeded":
            return row
        if status == "failed":
            fail(f"{label} failed: {row.get('error')}")
        time.sleep(POLL_INTERVAL)
    fail(f"{label} did not finish within {TIMEOUT_SEC}s")


def latest(idea_id: str, collection: str, entity_id: str) -> dict | None:
    idea = GET(f"/api/ideas/{idea_id}")
    return next((row for row in idea[collection] if row["id"] == entity_id), None)


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health check")
    if GET("/ping").get("status") != "ok":
        fail("/ping did not answer ok")
    ok("API is up")


def step2_seed() -> tuple[str, str]:
    step("2. Seed project, persona and templates")
    project = POST("/api/projects", {"name": f"SMOKE {SMOKE_TAG}"})
    persona = POST("/api/personas", {"projectId": project["id"], "name": "Smoke Persona", "archetypeTone": "calm"})
    for key, template in TEMPLATES.items():
        POST("/api/prompt-templates", {"key": key, "template": template})
    POST("/api/policy-rules", {"personaId": persona["id"], "type": "DONT", "text": "casino", "severity": "hard"})
    ok(f"Project {project['id']}, persona {persona['id']}")
    return project["id"], persona["id"]


def step3_ideas(project_id: str, persona_id: str) -> str:
    step("3. Generate ideas")
    job = POST("/api/ideas/generate", {
        "projectId": project_id,
        "personaId": persona_id,
        "topic": "morning routine",
        "count": 3,
    })
    ok(f"Job {job['jobId']} queued")

    deadline = time.monotonic() + TIMEOUT_SEC
    while time.monotonic() < deadline:
        page = GET(f"/api/ideas?projectId={project_id}")
        if len(page["items"]) >= 3:
            ok(f"{len(page['items'])} ideas stored")
            return page["items"][0]["id"]
        time.sleep(POLL_INTERVAL)
    fail("ideas were not generated in time")


def step4_artifacts(idea_id: str):
    step("4. Script, caption, prompts, assets")
    script = POST(f"/api/ideas/{idea_id}/script/generate")
    wait_for("script", lambda: latest(idea_id, "scripts", script["scriptId"]))
    ok("Script ready")

    caption = POST(f"/api/ideas/{idea_id}/caption/generate")
    wait_for("caption", lambda: latest(idea_id, "captions", caption["captionId"]))
    ok("Caption ready")

    POST(f"/api/ideas/{idea_id}/image-prompt/generate")
    POST(f"/api/ideas/{idea_id}/video-prompt/generate")
    ok("Image and video prompts stored")

    image = POST(f"/api/ideas/{idea_id}/image/generate")
    image_row = wait_for("image", lambda: latest(idea_id, "assets", image["assetId"]))
    video = POST(f"/api/ideas/{idea_id}/video/generate")
    wait_for("video", lambda: latest(idea_id, "assets", video["assetId"]))
    ok(f"Assets ready, image at {image_row['url']}")


def step5_post_draft(idea_id: str):
    step("5. Post draft moderation and publication")
    draft = POST(f"/api/post-drafts/from-idea/{idea_id}")
    if len(draft["selectedAssets"]) != 2:
        fail(f"expected video + image selected, got {draft['selectedAssets']}")
    draft = POST(f"/api/post-drafts/{draft['id']}/moderate")
    moderation = draft["latestModeration"]
    ok(f"Moderation {moderation['status']}: {moderation['notes']}")

    body = {} if moderation["status"] == "passed" else {"overrideReason": "smoke run"}
    draft = POST(f"/api/post-drafts/{draft['id']}/approve", body)
    draft = POST(f"/api/post-drafts/{draft['id']}/mark-published")
    if draft["status"] != "published":
        fail(f"draft ended in {draft['status']}")
    ok("Draft published")


def step6_logs(project_id: str):
    step("6. Run logs")
    logs = GET(f"/api/ideas/logs?projectId={project_id}&limit=100")
    operations = sorted({log["operation"] for log in logs})
    ok(f"{len(logs)} run logs, operations: {', '.join(operations)}")


def main() -> int:
    print(f"Smoke E2E against {BASE_URL} ({SMOKE_TAG})")
    try:
        step1_health()
        project_id, persona_id = step2_seed()
        idea_id = step3_ideas(project_id, persona_id)
        step4_artifacts(idea_id)
        step5_post_draft(idea_id)
        step6_logs(project_id)
    except SmokeError as e:
        print(f"\nSMOKE FAILED: {e}")
        return 1
    print("\nSMOKE PASSED")
    return 0


if __name__ == "__main__":
    sys.exit(main())
