"""Prompt templates and answer parsing for the planner.

The model answers with a short reply followed by a JSON block of plan cards
between fixed markers; extract_cards() pulls that block back out.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

JSON_START = "@@LSD_JSON_START@@"
JSON_END = "@@LSD_JSON_END@@"

MAX_CARDS = 5
MAX_TASKS = 8
ENERGY_LEVELS = ("light", "focus", "hard")

PLAN_PROMPT = f"""
You are an AI day planner.
First answer the user with a short text (2-5 sentences) in the user's language.
Then ALWAYS return JSON between the markers:

{JSON_START}
{{
  "cards": [
    {{
      "title": "Plan title",
      "tasks": [
        {{ "t": "Short task", "min": 10, "energy": "light" }}
      ]
    }}
  ]
}}
{JSON_END}

Rules:
- cards: 1 to {MAX_CARDS}
- tasks: 1 to {MAX_TASKS} per card
- energy: only light | focus | hard
- tasks are short: verb + object
""".strip()

ATTACH_PROMPT = (
    "You are an AI day planner. The user attached a file. Answer briefly in the "
    "user's language and suggest how it fits into their plans."
)


def _profile_block(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    return "\n".join([
        "User profile:",
        f"- nickname: {profile.get('nick') or ''}",
        f"- age: {profile.get('age') or ''}",
        f"- about: {profile.get('bio') or ''}",
    ])


def _history_block(history: Iterable[Any]) -> str:
    lines = [f"{m.role}: {m.content}" for m in history]
    if not lines:
        return ""
    return "Conversation so far:\n" + "\n".join(lines)


def build_plan_prompt(text: Optional[str], profile: Optional[Dict[str, Any]], history: Iterable[Any] = ()) -> str:
    request = (text or "").strip() or "Plan my day."
    sections = [PLAN_PROMPT, _profile_block(profile), _history_block(history), f"Request:\n{request}"]
    return "\n\n".join(s for s in sections if s)


def build_attach_prompt(text: Optional[str], filename: Optional[str]) -> str:
    note = (text or "").strip()
    sections = [ATTACH_PROMPT, f"File: {filename or 'attachment'}"]
    if note:
        sections.append(f"Message:\n{note}")
    return "\n\n".join(sections)


def _clean_task(task: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(task, dict):
        return None
    title = str(task.get("t") or "").strip()
    if not title:
        return None
    try:
        minutes = max(0, int(task.get("min") or 0))
    except (TypeError, ValueError):
        minutes = 0
    energy = task.get("energy") if task.get("energy") in ENERGY_LEVELS else "light"
    return {"t": title, "min": minutes, "energy": energy}


def _clean_cards(cards: Any) -> List[Dict[str, Any]]:
    if not isinstance(cards, list):
        return []
    cleaned = []
    for card in cards[:MAX_CARDS]:
        if not isinstance(card, dict):
            continue
        tasks = [t for t in (_clean_task(t) for t in (card.get("tasks") or [])) if t][:MAX_TASKS]
        if not tasks:
            continue
        cleaned.append({"title": str(card.get("title") or "Plan").strip(), "tasks": tasks})
    return cleaned


def extract_cards(full_text: str) -> List[Dict[str, Any]]:
    """Cards from the marked JSON block; [] when absent or malformed."""
    a = full_text.find(JSON_START)
    b = full_text.find(JSON_END)
    if a == -1 or b == -1 or b <= a:
        return []
    try:
        parsed = json.loads(full_text[a + len(JSON_START):b].strip())
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, dict):
        return []
    return _clean_cards(parsed.get("cards"))


def strip_json_block(full_text: str) -> str:
    a = full_text.find(JSON_START)
    if a == -1:
        return full_text.strip()
    b = full_text.find(JSON_END, a)
    tail = full_text[b + len(JSON_END):] if b != -1 else ""
    return (full_text[:a] + tail).strip()
