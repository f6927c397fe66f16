"""
UI action grammar.

Recognized phrases (case-insensitive, anywhere in the text):

    navigate to <target> | go to <target> | open <target> page
    click [on] [the] <target> | press [the] <target> [button]
    type "<text>" into|in <target>
    focus [on] [the] <target>
    scroll up|down | scroll to [the] top|bottom
    clear [the] <target>

A target runs until punctuation, "and"/"then", or the end of the text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class UICommand:
    action: str
    target: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "target": self.target,
            "parameters": dict(self.parameters),
        }


_TARGET = r"(?:the\s+)?(?P<target>[\w][\w\s\-/]*?)"
_END = r"(?=\s*(?:[.,;!?]|\band\b|\bthen\b|$))"

_PATTERNS = [
    ("type", re.compile(
        r"\btype\s+[\"'“](?P<text>[^\"'”]+)[\"'”]\s+(?:into|in)\s+" + _TARGET + _END, re.I)),
    ("navigate", re.compile(r"\b(?:navigate\s+to|go\s+to)\s+" + _TARGET + _END, re.I)),
    ("navigate", re.compile(r"\bopen\s+" + _TARGET + r"\s+page" + _END, re.I)),
    ("click", re.compile(r"\bclick(?:\s+on)?\s+" + _TARGET + _END, re.I)),
    ("click", re.compile(r"\bpress\s+" + _TARGET + r"(?:\s+button)?" + _END, re.I)),
    ("focus", re.compile(r"\bfocus(?:\s+on)?\s+" + _TARGET + _END, re.I)),
    ("scroll", re.compile(r"\bscroll\s+(?P<direction>up|down)\b", re.I)),
    ("scroll", re.compile(r"\bscroll\s+to\s+(?:the\s+)?(?P<direction>top|bottom)\b", re.I)),
    ("clear", re.compile(r"\bclear\s+" + _TARGET + _END, re.I)),
]


def _clean_target(target: str) -> str:
    target = re.sub(r"\s+button$", "", target.strip(), flags=re.I)
    return re.sub(r"\s+", " ", target)


def extract_ui_commands(text: Optional[str]) -> List[UICommand]:
    """All UI commands in ``text``, in the order they appear."""
    if not text:
        return []

    found = []
    taken: List[range] = []
    for action, pattern in _PATTERNS:
        for match in pattern.finditer(text):
            span = range(match.start(), match.end())
            if any(span.start < other.stop and other.start < span.stop for other in taken):
                continue
            taken.append(span)
            groups = match.groupdict()
            if action == "scroll":
                command = UICommand("scroll", parameters={"direction": groups["direction"].lower()})
            elif action == "type":
                command = UICommand("type", _clean_target(groups["target"]), {"text": groups["text"]})
            else:
                command = UICommand(action, _clean_target(groups["target"]))
            found.append((match.start(), command))

    found.sort(key=lambda item: item[0])
    return [command for _, command in found]
