"""
Free-text recommendation parser.

Turns the numbered-list answer of the text-generation service into
structured recommendation drafts.  The grammar is a line heuristic:

* ``1. Title`` starts a new draft (the previous one is finalized);
* a line mentioning *priority* sets the draft priority
  (``high`` / ``low``, anything else resets to ``medium``);
* otherwise a line mentioning *saving* sets the potential savings to the
  first amount found on it;
* any other non-blank line extends the description.

Text before the first numbered line is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"

_NUMBERED_RE = re.compile(r"^\d+\.\s*")
_AMOUNT_RE = re.compile(r"\$?\d+(\.\d+)?")


@dataclass
class RecommendationDraft:
    """A recommendation being assembled from consecutive lines."""

    title: str
    description: str = ""
    priority: str = PRIORITY_MEDIUM
    potential_savings: float = 0.0

    def add_description_line(self, line: str) -> None:
        if self.description:
            self.description += "\n" + line
        else:
            self.description = line


def parse_priority(line: str) -> str:
    """Map a priority line to ``high``, ``low`` or ``medium``."""
    lowered = line.lower()
    if PRIORITY_HIGH in lowered:
        return PRIORITY_HIGH
    if PRIORITY_LOW in lowered:
        return PRIORITY_LOW
    return PRIORITY_MEDIUM


def parse_savings(line: str) -> float | None:
    """Return the first amount on *line*, or ``None`` when there is none."""
    match = _AMOUNT_RE.search(line)
    if match is None:
        return None
    return float(match.group(0).lstrip("$"))


def parse_recommendations(text: str) -> list[RecommendationDraft]:
    """Segment *text* into drafts, in order of appearance."""
    drafts: list[RecommendationDraft] = []
    current: RecommendationDraft | None = None

    # Lines are separated by "\n" only, never by form feeds or unicode
    # line separators.
    for raw_line in text.split("\n"):
        line = raw_line.rstrip("\r").strip()

        numbered = _NUMBERED_RE.match(line)
        if numbered:
            if current is not None:
                drafts.append(current)
            current = RecommendationDraft(title=line[numbered.end():].strip())
            continue

        if current is None or not line:
            continue

        lowered = line.lower()
        if "priority" in lowered:
            current.priority = parse_priority(line)
        elif "saving" in lowered:
            amount = parse_savings(line)
            if amount is not None:
                current.potential_savings = amount
        else:
            current.add_description_line(line)

    if current is not None:
        drafts.append(current)

    return drafts
