from __future__ import annotations

import json
from typing import Iterable

from .json_loader import PromptOverrides

_DEFAULTS = {
    "judge_schema_hint_object": {
        "memories": [
            {
                "type": "PROFILE|PEOPLE|PROJECT",
                "content": "short factual statement about the user or their world",
                "confidence": 0.0,
                "subtype": {
                    "entityType": "person|place|org|project",
                    "factType": "fact|preference|relationship|friction|habit",
                },
                "entityRefs": ["person:first_name"],
                "entityLabel": "Display name",
                "importance": 1,
            }
        ],
        "loops": [
            {
                "kind": "COMMITMENT|HABIT|THREAD|FRICTION",
                "content": "what the user intends, repeats, keeps returning to or struggles with",
                "dedupe_key": "short_snake_case_signature",
                "confidence": 0.0,
            }
        ],
    },
    "judge_system_prompt": (
        "You read a short window of a user's recent messages to a companion and extract durable memory. "
        "memories: stable facts worth remembering next week. PROFILE is about the user themself, "
        "PEOPLE is about a named person in their life (only when the relationship is stated), "
        "PROJECT is about something they are building, studying or working toward. "
        "loops: COMMITMENT is a concrete thing the user said they will do, HABIT is a recurring behaviour, "
        "THREAD is an open topic worth following up, FRICTION is an obstacle or recurring struggle. "
        "Use entityRefs like person:first_name, place:city, org:company, project:name. "
        "importance is 0-3 (3 = core identity). "
        "Ignore small talk, questions to the assistant, and anything about this conversation or the assistant itself. "
        "If nothing durable is present, return empty arrays."
    ),
    "judge_user_prompt_template": (
        "Assistant persona name: {persona_name}\n"
        "Recent user messages (oldest -> newest):\n{window}\n\n"
        "Return JSON."
    ),
    "json_only_system_prompt_template": (
        "Return only valid JSON object with no markdown and no additional commentary. "
        "Schema hint: {schema_hint}"
    ),
    "rolling_summary_system_prompt_template": (
        "Update a rolling summary of the current conversation between a user and their companion. "
        "Keep what the user is dealing with right now, decisions made, and anything left open. "
        "Drop greetings and filler. Output plain text, max {max_chars} chars."
    ),
    "rolling_summary_user_prompt_template": (
        "Previous summary:\n{previous_summary}\n\nRecent dialogue:\n{dialogue_lines}\n\nReturn updated summary."
    ),
    "session_summary_schema_hint_object": {
        "one_liner": "one sentence, max 200 chars",
        "what_mattered": ["string"],
        "open_loops": ["string"],
        "commitments": ["string"],
        "people": ["string"],
        "tone": "one or two words",
    },
    "session_summary_system_prompt": (
        "Summarize one finished conversation session between a user and their companion. "
        "what_mattered: the few things that mattered to the user. open_loops: unresolved topics. "
        "commitments: things the user said they would do. people: people who came up, with their relation. "
        "tone: the overall emotional tone. Keep every list item short. Use empty lists when nothing applies."
    ),
    "session_summary_user_prompt_template": (
        "Previous summary of this session (may be empty):\n{previous_summary}\n\n"
        "Session transcript (oldest -> newest):\n{transcript}\n\nReturn JSON."
    ),
    "summary_spine_sections": [
        "WHO THEY ARE",
        "WHAT THEY'RE WORKING ON",
        "PEOPLE IN THEIR LIFE",
        "OPEN THREADS",
    ],
    "summary_spine_ban_list": [
        "emotions or mood commentary",
        "meta talk about this conversation, the assistant or memory",
        "system, prompt or technical details",
        "greetings and small talk",
    ],
    "summary_spine_system_prompt_template": (
        "Maintain a long-form summary of what is known about one user across all conversations. "
        "Write exactly these sections, each as a heading line followed by short bullet lines:\n{sections}\n"
        "Never include: {ban_list}. "
        "Keep facts from the previous summary unless the new exchange contradicts them. "
        "Leave a section with a single '-' line when nothing is known."
    ),
    "summary_spine_user_prompt_template": (
        "Previous summary:\n{previous_summary}\n\n"
        "Recent exchange:\nUser: {user_text}\nAssistant: {assistant_text}\n\n"
        "Return the updated summary."
    ),
}


PROMPTS = PromptOverrides(_DEFAULTS)


def _json_hint(key: str) -> str:
    return json.dumps(PROMPTS.get(key), ensure_ascii=False, separators=(",", ":"))


# Spine sections also drive output validation, so they are fixed for the process lifetime.
SUMMARY_SPINE_SECTIONS = tuple(PROMPTS.get("summary_spine_sections"))
SUMMARY_SPINE_BAN_LIST = tuple(PROMPTS.get("summary_spine_ban_list"))


def judge_system_prompt() -> str:
    return PROMPTS.text("judge_system_prompt")


def judge_schema_hint() -> str:
    return _json_hint("judge_schema_hint_object")


def session_summary_system_prompt() -> str:
    return PROMPTS.text("session_summary_system_prompt")


def session_summary_schema_hint() -> str:
    return _json_hint("session_summary_schema_hint_object")


def _format_lines(lines: Iterable[str] | None, empty: str = "(no extra context)") -> str:
    if not lines:
        return empty
    joined = "\n".join(str(line) for line in lines if str(line))
    return joined or empty


def build_json_only_system_prompt(schema_hint: str) -> str:
    return PROMPTS.text("json_only_system_prompt_template").format(schema_hint=schema_hint)


def build_judge_user_prompt(window_lines: Iterable[str], persona_name: str = "") -> str:
    return PROMPTS.text("judge_user_prompt_template").format(
        persona_name=persona_name or "(unnamed)",
        window=_format_lines(window_lines, empty="(no messages)"),
    )


def build_rolling_summary_system_prompt(max_chars: int) -> str:
    return PROMPTS.text("rolling_summary_system_prompt_template").format(max_chars=max_chars)


def build_rolling_summary_user_prompt(previous_summary: str, dialogue_lines: Iterable[str]) -> str:
    return PROMPTS.text("rolling_summary_user_prompt_template").format(
        previous_summary=previous_summary or "(none)",
        dialogue_lines=_format_lines(dialogue_lines, empty="(no messages)"),
    )


def build_session_summary_user_prompt(transcript_lines: Iterable[str], previous_summary: str = "") -> str:
    return PROMPTS.text("session_summary_user_prompt_template").format(
        previous_summary=previous_summary or "(none)",
        transcript=_format_lines(transcript_lines, empty="(no messages)"),
    )


def build_summary_spine_system_prompt() -> str:
    return PROMPTS.text("summary_spine_system_prompt_template").format(
        sections="\n".join(SUMMARY_SPINE_SECTIONS),
        ban_list="; ".join(SUMMARY_SPINE_BAN_LIST),
    )


def build_summary_spine_user_prompt(previous_summary: str, user_text: str, assistant_text: str) -> str:
    return PROMPTS.text("summary_spine_user_prompt_template").format(
        previous_summary=previous_summary or "None",
        user_text=user_text,
        assistant_text=assistant_text or "(no reply)",
    )
