"""
Assistant prompts and canned texts.

Supports scenario-based configuration:
- Different system prompts per scenario (knowledge-grounded and general)
- Welcome, help, pause/resume, goodbye and fallback texts per scenario
- Scenario selection via argument or ASSISTANT_SCENARIO env var

Implementation note:
- Scenarios are stored as YAML (preferred) or JSON.
- We use PyYAML's safe_load, which can parse both YAML and pure JSON.
- Keys missing from a scenario fall back to the built-in defaults.
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml

from knowledge.models import ScoredChunk


RAG_PROMPT = """
You are a voice assistant embedded in a web application.
Answer the user's question using the knowledge base information provided.
Keep answers short enough to be spoken aloud (two or three sentences).
If the information does not answer the question, say so honestly.
""".strip()

GENERAL_PROMPT = """
You are a voice assistant embedded in a web application.
No knowledge base information matched this request. Help with what you know
about the current screen and never invent company-specific facts.
""".strip()


@dataclass(frozen=True)
class AssistantTexts:
    """Resolved texts of one scenario."""
    name: str = "default"
    rag_prompt: str = RAG_PROMPT
    general_prompt: str = GENERAL_PROMPT
    welcome_text: str = "Voice assistant ready. How can I help you?"
    multi_speaker_welcome_text: str = (
        "Voice assistant ready for a group conversation. Please say your name before you speak."
    )
    help_text: str = (
        "I can help you navigate the application, answer questions about procedures, "
        "fill out forms, and control the interface with voice commands. "
        "Just tell me what you'd like to do."
    )
    paused_text: str = "Voice assistant paused. Say 'resume' to continue."
    resumed_text: str = "Voice assistant resumed. How can I help?"
    goodbye_text: str = "Goodbye! Session ended."
    nothing_to_repeat_text: str = "I haven't said anything yet."
    fallback_text: str = (
        "I couldn't find specific information about that. Could you try asking in a different way?"
    )

    @classmethod
    def from_scenario(cls, scenario: Dict[str, Any]) -> "AssistantTexts":
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in scenario.items():
            if key in known and isinstance(value, str) and value.strip():
                values[key] = value.strip()
        return cls(**values)


def _get_scenarios_dir() -> Path:
    """Get the scenarios directory path."""
    return Path(__file__).parent / "scenarios"


def _load_file(path: Path) -> Dict[str, Any]:
    """Load a scenario file using YAML safe_load (handles JSON too)."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Scenario file {path} must contain a mapping at top-level")
        return data


def load_scenario(scenario_name: str, scenarios_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load scenario configuration from YAML or JSON file.

    Resolution order:
    1) <name>.yaml
    2) <name>.yml
    3) <name>.json
    4) default.yaml / default.yml / default.json
    5) hardcoded default fallback
    """
    scenarios_dir = scenarios_dir or _get_scenarios_dir()

    for name in (scenario_name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = scenarios_dir / f"{name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    return {"name": "default"}


def get_scenario(scenario: Optional[str] = None) -> Dict[str, Any]:
    """
    Scenario configuration by name.

    Priority:
    1. scenario argument
    2. ASSISTANT_SCENARIO environment variable
    3. "default"
    """
    scenario_name = scenario or os.getenv("ASSISTANT_SCENARIO", "default")
    return load_scenario(scenario_name)


def get_texts(scenario: Optional[str] = None) -> AssistantTexts:
    return AssistantTexts.from_scenario(get_scenario(scenario))


def _format_ui_context(ui_context: Any) -> str:
    if ui_context is None or ui_context == "":
        return "unknown"
    if isinstance(ui_context, str):
        return ui_context
    return json.dumps(ui_context, ensure_ascii=False, sort_keys=True, default=str)


def build_rag_context(
    client_id: str,
    ui_context: Any,
    chunks: Sequence[ScoredChunk],
    transcript: str,
) -> str:
    """User-side message for a knowledge-grounded completion."""
    lines = [
        f"Client ID: {client_id}",
        f"Current UI Context: {_format_ui_context(ui_context)}",
        "Relevant Knowledge Base Information:",
    ]
    for i, hit in enumerate(chunks, start=1):
        lines.append(f"[Document {i} - {hit.source}]: {hit.chunk.content}")
    return "Context:\n" + "\n".join(lines) + f"\n\nUser Query: {transcript}"


def build_general_context(ui_context: Any, transcript: str) -> str:
    """User-side message for a completion without knowledge."""
    return f"Current UI Context: {_format_ui_context(ui_context)}\n\nUser Query: {transcript}"


def extractive_answer(chunks: Sequence[ScoredChunk], max_chars: int = 400) -> str:
    """Answer built from the best chunk when no completion is available."""
    text = " ".join(chunks[0].chunk.content.split())
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    sentence_end = max(cut.rfind(". "), cut.rfind("? "), cut.rfind("! "))
    if sentence_end > max_chars // 2:
        return cut[:sentence_end + 1]
    return cut.rsplit(" ", 1)[0] + "..."
