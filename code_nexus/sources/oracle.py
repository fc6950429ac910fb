"""
Analysis Oracle - per-file concept and pattern extraction.

The learner only depends on AnalysisOracle.analyze_file(). LexicalOracle is
the bundled implementation: regex definitions per language, naming
conventions derived from the definitions it finds, and a branch-count
complexity estimate. Works WITHOUT any parser dependency.
"""

import bisect
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.languages import UNKNOWN, detect_language_from_path
from ..core.models import ComplexityMetrics
from ..errors import OracleError
from ..patterns.types import NamingPatternData, PatternCategory

logger = logging.getLogger(__name__)


@dataclass
class ConceptCandidate:
    """A named entity the oracle found in a file."""
    name: str
    concept_type: str                        # function, class, interface, struct...
    confidence: float = 0.5
    line_range: Dict[str, int] = field(default_factory=lambda: {"start": 0, "end": 0})
    relationships: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PatternCandidate:
    """A pattern observed in a file; `id` is stable across files and runs."""
    id: str
    pattern_type: str
    content: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.5
    contexts: List[str] = field(default_factory=list)
    examples: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class FileAnalysis:
    """Everything the oracle reports for one file."""
    path: str
    concepts: List[ConceptCandidate] = field(default_factory=list)
    patterns: List[PatternCandidate] = field(default_factory=list)
    complexity: ComplexityMetrics = field(default_factory=ComplexityMetrics)
    file_hash: str = ""
    language: str = UNKNOWN


class AnalysisOracle(ABC):
    """Contract for anything that can analyze a source file."""

    @abstractmethod
    async def analyze_file(self, path: str, content: Optional[str] = None) -> FileAnalysis:
        """
        Analyze one file.

        Args:
            path: Repository-relative path
            content: File text; read from disk when omitted

        Raises:
            OracleError: the file cannot be read or analyzed
        """


# =============================================================================
# Naming conventions
# =============================================================================

_CONVENTIONS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("SCREAMING_SNAKE_CASE", re.compile(r"^[A-Z][A-Z0-9]*(_[A-Z0-9]+)+$")),
    ("PascalCase", re.compile(r"^[A-Z][a-z0-9]+([A-Z][a-z0-9]*)*$")),
    ("snake_case", re.compile(r"^[a-z][a-z0-9]*(_[a-z0-9]+)+$")),
    ("camelCase", re.compile(r"^[a-z][a-z0-9]*([A-Z][a-z0-9]*)+$")),
    ("kebab-case", re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)+$")),
]


def detect_naming_convention(name: str) -> Optional[str]:
    """
    Convention of an identifier, or None when it is ambiguous.

    Single lowercase words ("run") fit several conventions and are not
    counted; leading underscores are ignored.
    """
    stripped = name.lstrip("_")
    for convention, regex in _CONVENTIONS:
        if regex.match(stripped):
            return convention
    return None


# =============================================================================
# Lexical oracle
# =============================================================================

_DEFINITIONS: Dict[str, List[Tuple[str, str]]] = {
    "python": [
        ("function", r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)"),
        ("class", r"^\s*class\s+([A-Za-z_]\w*)"),
    ],
    "typescript": [
        ("function", r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)"),
        ("function", r"^\s*(?:export\s+)?(?:const|let)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*(?:async\s*)?(?:\([^)]*\)|[A-Za-z_$][\w$]*)\s*=>"),
        ("class", r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)"),
        ("interface", r"^\s*(?:export\s+)?interface\s+([A-Za-z_$][\w$]*)"),
        ("type", r"^\s*(?:export\s+)?type\s+([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*="),
    ],
    "go": [
        ("function", r"^func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"),
        ("struct", r"^type\s+([A-Za-z_]\w*)\s+struct\b"),
        ("interface", r"^type\s+([A-Za-z_]\w*)\s+interface\b"),
    ],
    "rust": [
        ("function", r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+([A-Za-z_]\w*)"),
        ("struct", r"^\s*(?:pub(?:\([^)]*\))?\s+)?struct\s+([A-Za-z_]\w*)"),
        ("enum", r"^\s*(?:pub(?:\([^)]*\))?\s+)?enum\s+([A-Za-z_]\w*)"),
        ("trait", r"^\s*(?:pub(?:\([^)]*\))?\s+)?trait\s+([A-Za-z_]\w*)"),
    ],
    "generic": [
        ("class", r"^\s*(?:(?:public|private|protected|internal|abstract|final|static|sealed)\s+)*class\s+([A-Za-z_]\w*)"),
        ("interface", r"^\s*(?:(?:public|private|protected|internal)\s+)*interface\s+([A-Za-z_]\w*)"),
        ("function", r"^\s*(?:(?:public|private|protected|static|async)\s+)*function\s+&?([A-Za-z_]\w*)"),
    ],
}
_DEFINITIONS["javascript"] = [d for d in _DEFINITIONS["typescript"] if d[0] in ("function", "class")]

_BRANCH_RE = re.compile(
    r"\b(?:if|elif|else\s+if|for|foreach|while|case|catch|except)\b|&&|\|\||\?\?|\band\b|\bor\b"
)


class LexicalOracle(AnalysisOracle):
    """
    Regex-based oracle.

    Example:
        oracle = LexicalOracle(root_dir="/work/my-repo")
        analysis = await oracle.analyze_file("src/app.ts")
        print([c.name for c in analysis.concepts])
    """

    def __init__(self, root_dir: str = ".", max_examples: int = 10):
        self.root_dir = Path(root_dir).expanduser()
        self.max_examples = max_examples
        self._compiled: Dict[str, List[Tuple[str, "re.Pattern[str]"]]] = {
            lang: [(ctype, re.compile(rx, re.MULTILINE)) for ctype, rx in defs]
            for lang, defs in _DEFINITIONS.items()
        }

    async def analyze_file(self, path: str, content: Optional[str] = None) -> FileAnalysis:
        if content is None:
            content = self._read(path)

        language = detect_language_from_path(path)
        concepts = self._extract_concepts(content, language)
        analysis = FileAnalysis(
            path=path,
            concepts=concepts,
            patterns=self._naming_patterns(path, language, concepts),
            complexity=self._complexity(content),
            file_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            language=language,
        )
        logger.debug(
            f"Analyzed {path}: {len(analysis.concepts)} concepts, "
            f"{len(analysis.patterns)} patterns"
        )
        return analysis

    def _read(self, path: str) -> str:
        full = Path(path) if Path(path).is_absolute() else self.root_dir / path
        try:
            return full.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise OracleError(f"Cannot read {path}: {e}", path=path) from e

    def _extract_concepts(self, content: str, language: str) -> List[ConceptCandidate]:
        definitions = self._compiled.get(language, self._compiled["generic"])
        line_starts = [0]
        for i, ch in enumerate(content):
            if ch == "\n":
                line_starts.append(i + 1)

        seen = set()
        concepts: List[ConceptCandidate] = []
        for concept_type, regex in definitions:
            for match in regex.finditer(content):
                name = match.group(1)
                if (concept_type, name) in seen:
                    continue
                seen.add((concept_type, name))
                line = _line_of(line_starts, match.start(1))
                concepts.append(ConceptCandidate(
                    name=name,
                    concept_type=concept_type,
                    confidence=0.8 if language != UNKNOWN else 0.5,
                    line_range={"start": line, "end": line},
                ))

        concepts.sort(key=lambda c: c.line_range["start"])
        return concepts

    def _naming_patterns(
        self,
        path: str,
        language: str,
        concepts: List[ConceptCandidate],
    ) -> List[PatternCandidate]:
        """One naming pattern per (concept type, convention) seen in the file."""
        by_type: Dict[str, List[Tuple[str, str]]] = defaultdict(list)
        for concept in concepts:
            convention = detect_naming_convention(concept.name)
            if convention:
                by_type[concept.concept_type].append((concept.name, convention))

        patterns: List[PatternCandidate] = []
        for concept_type, named in by_type.items():
            counts = Counter(convention for _, convention in named)
            for convention, count in counts.items():
                data = NamingPatternData(
                    convention=convention,
                    category=concept_type,
                    language=language if language != UNKNOWN else None,
                )
                examples = [
                    {"name": name, "file": path}
                    for name, conv in named if conv == convention
                ][:self.max_examples]
                patterns.append(PatternCandidate(
                    id=f"naming_{language}_{concept_type}_{convention}",
                    pattern_type=PatternCategory.NAMING.value,
                    content=data.to_dict(),
                    confidence=round(count / len(named), 3),
                    contexts=[concept_type],
                    examples=examples,
                ))
        return patterns

    @staticmethod
    def _complexity(content: str) -> ComplexityMetrics:
        """Cyclomatic: 1 + branch points. Cognitive: branch points weighted by indent depth."""
        cyclomatic = 1
        cognitive = 0
        for line in content.splitlines():
            branches = len(_BRANCH_RE.findall(line))
            if not branches:
                continue
            depth = (len(line) - len(line.lstrip())) // 4
            cyclomatic += branches
            cognitive += branches * (1 + depth)
        return ComplexityMetrics(cyclomatic=cyclomatic, cognitive=cognitive)


def _line_of(line_starts: List[int], offset: int) -> int:
    """1-based line number for a character offset."""
    return bisect.bisect_right(line_starts, offset)
