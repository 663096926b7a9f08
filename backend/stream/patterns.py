"""Pattern sets for prose classification and completion heuristics.

The heuristics are fuzzy by nature, so they live here as data rather than in
the state machines that consume them. Each PatternSet mixes literal phrases
(matched as plain substrings) with compiled regular expressions.
"""

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PatternSet:
    """A named collection of literal phrases and regexes.

    Attributes:
        name: Label used in logs and completion reasons.
        phrases: Case-sensitive substrings.
        regexes: Compiled patterns, searched anywhere in the text.
        min_length: Texts shorter than this never match.
    """

    name: str
    phrases: tuple[str, ...] = ()
    regexes: tuple[re.Pattern[str], ...] = ()
    min_length: int = 0

    def matches(self, text: str) -> bool:
        if not text or len(text) < self.min_length:
            return False
        if any(phrase in text for phrase in self.phrases):
            return True
        return any(pattern.search(text) for pattern in self.regexes)

    def first_match(self, text: str) -> str | None:
        """Return the phrase or pattern source that matched, for diagnostics."""
        if not text or len(text) < self.min_length:
            return None
        for phrase in self.phrases:
            if phrase in text:
                return phrase
        for pattern in self.regexes:
            if pattern.search(text):
                return pattern.pattern
        return None


# Sub-agents asking the lead agent for direction, not questions for the user.
COORDINATION_PATTERNS = PatternSet(
    name="coordination",
    min_length=20,
    regexes=(
        re.compile(r"would you like me to[:\s]", re.IGNORECASE),
        re.compile(r"how can i help you further", re.IGNORECASE),
        re.compile(r"what would be most valuable", re.IGNORECASE),
        re.compile(r"shall i proceed with", re.IGNORECASE),
        re.compile(r"do you want me to", re.IGNORECASE),
        re.compile(r"should i focus on", re.IGNORECASE),
        re.compile(r"let me know if you'd like", re.IGNORECASE),
        re.compile(r"i can also[:\s]", re.IGNORECASE),
        re.compile(r"^[A-E]\)\s", re.MULTILINE),
        re.compile(
            r"^[-•]\s*(search|pull|research|dive|analyze|focus)",
            re.IGNORECASE | re.MULTILINE,
        ),
    ),
)

# Clarification-style text left at the end of a turn: the run is likely waiting.
PENDING_QUESTION_PATTERNS = PatternSet(
    name="pending_question",
    phrases=(
        "What Would You Like Next?",
        "Would you like me to",
        "Should I proceed",
        "Which option would you prefer",
        "What additional information",
    ),
    regexes=(
        re.compile(r"\?\s*$", re.MULTILINE),
        re.compile(r"would you like", re.IGNORECASE),
        re.compile(r"let me know", re.IGNORECASE),
        re.compile(r"how would you", re.IGNORECASE),
        re.compile(r"what (specific|format|aspect)", re.IGNORECASE),
    ),
)

# Progress/checklist reports (write_todos output)
PROGRESS_REPORT_MARKERS: tuple[str, ...] = ("Updated todo list", "'status':", '"status":')
PROGRESS_STATUS_PATTERN = re.compile(r"""['"]status['"]\s*:\s*['"](\w+)['"]""")
PROGRESS_OPEN_STATUSES = frozenset({"pending", "in_progress"})

# "...saved to /reports/q3_demand.md" style references in prose
DOCUMENT_EXTENSIONS: tuple[str, ...] = ("md", "txt", "json", "csv", "pdf", "docx")
FILE_SAVE_PATTERN = re.compile(
    r"(?:saved|written|created|generated)\s+(?:to|at|as)\s+[/\\]?"
    r"([^\s`'\"()]+\.(?:" + "|".join(DOCUMENT_EXTENSIONS) + r"))\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class HeuristicPatterns:
    """Bundle of pattern sets consumed by the aggregator and heuristics.

    Tests and deployments can swap any member without touching control flow.
    """

    coordination: PatternSet = COORDINATION_PATTERNS
    pending_question: PatternSet = PENDING_QUESTION_PATTERNS
    progress_markers: tuple[str, ...] = PROGRESS_REPORT_MARKERS
    progress_status: re.Pattern[str] = PROGRESS_STATUS_PATTERN
    progress_open_statuses: frozenset[str] = field(default=PROGRESS_OPEN_STATUSES)
    file_save: re.Pattern[str] = FILE_SAVE_PATTERN


DEFAULT_PATTERNS = HeuristicPatterns()
