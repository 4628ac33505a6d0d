"""Library of previously solved requests, matched against new prompts.

Matches are advisory: they annotate a plan with estimated time savings
and, for code generation, offer a template to adapt. Scoring sits behind
the ``SimilarityScorer`` protocol so the algorithm can be swapped without
touching the decomposer or code generator.
"""

import difflib
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Protocol

from autopilot.core.errors import AutopilotError
from autopilot.core.models import Pattern
from autopilot.core.tools import ToolExecutionLayer

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")
_HEADING_RE = re.compile(r"^##\s+(?:Pattern:\s*)?(.+?)\s*$", re.MULTILINE)
_SAVINGS_RE = re.compile(
    r"\*\*Time Savings:\*\*\s*(\d+(?:\.\d+)?)\s*(hours?|hrs?|h|minutes?|mins?|m)\b",
    re.IGNORECASE,
)
_TEMPLATE_RE = re.compile(r"```[\w+-]*\n([\s\S]*?)```")
_USED_IN_RE = re.compile(r"\*\*Used (?:Successfully )?In:\*\*\s*(.+)")


class PatternLibraryNotReady(AutopilotError):
    """match() was called before initialize()."""

    pass


@dataclass
class PatternEntry:
    """A reusable solution: name, description and optional template."""

    name: str
    description: str = ""
    template: str = ""
    savings_minutes: float = 0.0
    used_in: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    def terms(self) -> list[str]:
        return self.keywords or tokenize(self.name)


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


class SimilarityScorer(Protocol):
    """Scores how similar a prompt is to a pattern, in [0, 1]."""

    def score(self, prompt: str, pattern: PatternEntry) -> float:
        ...


class KeywordScorer:
    """Fraction of the pattern's keywords present in the prompt."""

    def score(self, prompt: str, pattern: PatternEntry) -> float:
        terms = pattern.terms()
        if not terms:
            return 0.0
        words = set(tokenize(prompt))
        hits = sum(1 for term in terms if term in words)
        return hits / len(terms)


class SequenceScorer:
    """Character-level similarity of prompt and pattern description."""

    def score(self, prompt: str, pattern: PatternEntry) -> float:
        target = f"{pattern.name} {pattern.description}".lower()
        return difflib.SequenceMatcher(None, prompt.lower(), target).ratio()


def _parse_savings(section: str) -> float:
    match = _SAVINGS_RE.search(section)
    if not match:
        return 0.0
    amount, unit = float(match.group(1)), match.group(2).lower()
    return amount * 60 if unit.startswith("h") else amount


def parse_patterns_markdown(content: str) -> list[PatternEntry]:
    """Parse ``## Pattern: name`` sections.

    Each section contributes its first paragraph as the description, an
    optional ``**Time Savings:** 2 hours`` line, an optional
    ``**Used In:**`` line, and the first fenced block as its template.
    """
    headings = list(_HEADING_RE.finditer(content))
    entries = []
    for i, heading in enumerate(headings):
        end = headings[i + 1].start() if i + 1 < len(headings) else len(content)
        body = content[heading.end() : end]
        name = heading.group(1).strip()
        if not name:
            continue

        template_match = _TEMPLATE_RE.search(body)
        prose = _TEMPLATE_RE.sub("", body)
        description = ""
        for paragraph in re.split(r"\n\s*\n", prose):
            text = paragraph.strip()
            if text and not text.startswith("**") and not text.startswith("#"):
                description = " ".join(text.split())[:200]
                break

        used_in = _USED_IN_RE.search(body)
        entries.append(
            PatternEntry(
                name=name,
                description=description,
                template=template_match.group(1) if template_match else "",
                savings_minutes=_parse_savings(body),
                used_in=[s.strip() for s in used_in.group(1).split(",")] if used_in else [],
            )
        )
    return entries


class PatternLibrary:
    """Init-once pattern store with an observable readiness gate.

    ``initialize()`` loads the markdown source (if any) exactly once;
    later calls are no-ops. ``match()`` raises until the library is ready.
    """

    def __init__(
        self,
        tools: ToolExecutionLayer | None = None,
        path: str = "docs/patterns.md",
        scorer: SimilarityScorer | None = None,
        threshold: float = 0.3,
        max_matches: int = 3,
    ):
        self.tools = tools
        self.path = path
        self.scorer: SimilarityScorer = scorer or KeywordScorer()
        self.threshold = threshold
        self.max_matches = max_matches
        self._entries: list[PatternEntry] = []
        self._ready = threading.Event()
        self._init_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def __len__(self) -> int:
        return len(self._entries)

    def initialize(self) -> None:
        with self._init_lock:
            if self._ready.is_set():
                return
            if self.tools is not None:
                self._entries.extend(self._load())
            logger.info(f"Pattern library ready ({len(self._entries)} patterns)")
            self._ready.set()

    def _load(self) -> list[PatternEntry]:
        assert self.tools is not None
        try:
            data = self.tools.read_bytes(self.path, missing_ok=True)
        except AutopilotError as e:
            logger.warning(f"Could not load patterns from {self.path}: {e}")
            return []
        if data is None:
            logger.debug(f"No pattern file at {self.path}")
            return []
        return parse_patterns_markdown(data.decode("utf-8", errors="replace"))

    def register(self, entry: PatternEntry) -> None:
        with self._init_lock:
            self._entries.append(entry)

    def entries(self) -> list[PatternEntry]:
        return list(self._entries)

    def _ranked(self, text: str, threshold: float) -> list[tuple[float, PatternEntry]]:
        if not self.ready:
            raise PatternLibraryNotReady("Pattern library used before initialize()")
        scored = [(self.scorer.score(text, entry), entry) for entry in self._entries]
        ranked = [(s, e) for s, e in scored if s > threshold]
        ranked.sort(key=lambda item: item[0], reverse=True)
        return ranked

    def match(self, prompt: str) -> list[Pattern]:
        """Top patterns scoring above the threshold, best first."""
        return [
            Pattern(
                name=entry.name,
                similarity=round(score, 3),
                estimated_savings_minutes=entry.savings_minutes,
                description=entry.description,
            )
            for score, entry in self._ranked(prompt, self.threshold)[: self.max_matches]
        ]

    def find_template(self, description: str, threshold: float) -> tuple[PatternEntry, float] | None:
        """Best pattern with a template whose score exceeds ``threshold``."""
        for score, entry in self._ranked(description, threshold):
            if entry.template:
                return entry, score
        return None
