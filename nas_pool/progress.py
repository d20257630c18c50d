"""
Progress extraction from the text output of long-running storage tools.

The parser is a small line grammar: an ordered list of named rules, each a
regular expression plus the status fields a match updates. It knows nothing
about processes, so it can be exercised against recorded output.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Pattern

STATUS_SNIPPET_LENGTH = 50

ESTIMATE_GRACE_SECONDS = 2.0
ESTIMATE_STEP_SECONDS = 0.1
ESTIMATE_CEILING = 89


@dataclass
class ProgressUpdate:
    """Status fields changed by one line of output."""
    progress: Optional[int] = None
    status_text: Optional[str] = None
    completed: bool = False
    rules: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.rules

    def merge(self, other: "ProgressUpdate") -> None:
        if other.progress is not None:
            self.progress = other.progress
        if other.status_text is not None:
            self.status_text = other.status_text
        self.completed = self.completed or other.completed
        self.rules.extend(other.rules)


@dataclass(frozen=True)
class ProgressRule:
    """A named pattern and the update a match produces."""
    name: str
    pattern: Pattern
    action: Callable[["re.Match", str, str], ProgressUpdate]


def _percent(match, line: str, label: str) -> ProgressUpdate:
    return ProgressUpdate(progress=min(100, int(match.group(1))))


def _completed(match, line: str, label: str) -> ProgressUpdate:
    return ProgressUpdate(progress=100, status_text=f"{label} completed", completed=True)


def _items(match, line: str, label: str) -> ProgressUpdate:
    return ProgressUpdate(status_text=f"Processing {match.group(1)} {match.group(2)}...")


def _phase(match, line: str, label: str) -> ProgressUpdate:
    return ProgressUpdate(status_text=line.strip()[:STATUS_SNIPPET_LENGTH])


DEFAULT_RULES = (
    ProgressRule("percent", re.compile(r"(\d{1,3})%"), _percent),
    ProgressRule("completed", re.compile(r"completed|nothing to do", re.IGNORECASE), _completed),
    ProgressRule("items", re.compile(r"(\d+)\s+(files?|blocks?)\b", re.IGNORECASE), _items),
    ProgressRule("phase", re.compile(r"Syncing|Self test|Verifying|Scrubbing|Checking"), _phase),
)

NOTHING_TO_DO_PATTERN = re.compile(r"nothing to do", re.IGNORECASE)


def is_nothing_to_do(output: str) -> bool:
    """True if tool output reports there was no work to do."""
    return bool(NOTHING_TO_DO_PATTERN.search(output))


class ProgressParser:
    """Applies the rule grammar to output lines."""

    def __init__(self, label: str = "Operation", rules: Iterable[ProgressRule] = DEFAULT_RULES):
        self.label = label
        self.rules = tuple(rules)

    def parse_line(self, line: str) -> ProgressUpdate:
        """
        Apply every rule to a line, in order.

        Later rules override the status text of earlier ones, so a phase
        line wins over an item count on the same line.
        """
        update = ProgressUpdate()
        for rule in self.rules:
            match = rule.pattern.search(line)
            if not match:
                continue
            rule_update = rule.action(match, line, self.label)
            rule_update.rules.append(rule.name)
            update.merge(rule_update)
        return update

    def parse_lines(self, lines: Iterable[str]) -> ProgressUpdate:
        total = ProgressUpdate()
        for line in lines:
            total.merge(self.parse_line(line))
        return total


class EffectiveProgress:
    """
    Combines real and synthetic progress into one reported value.

    The synthetic estimate rises 1% per ESTIMATE_STEP_SECONDS after a grace
    period, capped at ESTIMATE_CEILING, so a tool that prints nothing for a
    long time still looks alive. The estimate stops advancing for good as
    soon as the tool reports a real percentage above zero. The value is the
    maximum of both producers, so it never decreases and always stays
    within [0, 100].
    """

    def __init__(self,
                 grace_seconds: float = ESTIMATE_GRACE_SECONDS,
                 step_seconds: float = ESTIMATE_STEP_SECONDS,
                 ceiling: int = ESTIMATE_CEILING,
                 clock: Callable[[], float] = time.monotonic):
        self.grace_seconds = grace_seconds
        self.step_seconds = step_seconds
        self.ceiling = ceiling
        self._clock = clock
        self._started = clock()
        self._real = 0
        self._estimate = 0
        self._real_seen = False

    @property
    def estimating(self) -> bool:
        return not self._real_seen

    @property
    def value(self) -> int:
        return max(self._real, self._estimate)

    def observe(self, percent: int) -> int:
        """Record a real percentage from tool output."""
        percent = max(0, min(100, int(percent)))
        self._real = max(self._real, percent)
        if percent > 0:
            self._real_seen = True
        return self.value

    def tick(self) -> int:
        """Advance the synthetic estimate from the elapsed time."""
        if self._real_seen:
            return self.value
        elapsed = self._clock() - self._started
        if elapsed > self.grace_seconds:
            estimate = int((elapsed - self.grace_seconds) / self.step_seconds)
            self._estimate = max(self._estimate, min(self.ceiling, estimate))
        return self.value

    def complete(self) -> int:
        self._real = 100
        self._real_seen = True
        return 100
