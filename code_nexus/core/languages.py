"""
Language registry.

Maps file extensions to canonical language keys so the oracle, the learner
and the global store agree on what "typescript" or "python" means.
"""

from collections import Counter
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional

UNKNOWN = "unknown"

EXTENSION_LANGUAGE_MAP: Dict[str, str] = {
    # TypeScript / JavaScript
    "ts": "typescript",
    "tsx": "typescript",
    "cts": "typescript",
    "mts": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "py": "python",
    "rs": "rust",
    "go": "go",
    "java": "java",
    # C family
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hpp": "cpp",
    "hh": "cpp",
    "hxx": "cpp",
    "cs": "csharp",
    "svelte": "svelte",
    "sql": "sql",
    "php": "php",
    "phtml": "php",
    "inc": "php",
}


def detect_language_from_path(file_path: str) -> str:
    """Canonical language for a path, or 'unknown'."""
    suffix = PurePosixPath(file_path.replace("\\", "/")).suffix.lower().lstrip(".")
    return EXTENSION_LANGUAGE_MAP.get(suffix, UNKNOWN)


def detect_language_from_pattern(content: Dict[str, Any]) -> Optional[str]:
    """
    Best-effort language of a learned pattern.

    Uses an explicit "language" key when the pattern carries one, otherwise
    the most common language among the files listed in its examples.
    """
    language = content.get("language")
    if isinstance(language, str) and language:
        return language.lower()

    paths = [
        ex.get("file")
        for ex in content.get("examples", [])
        if isinstance(ex, dict) and isinstance(ex.get("file"), str)
    ]
    return primary_language(paths)


def primary_language(paths: Iterable[str]) -> Optional[str]:
    """Most frequent known language among paths; ties go to first seen."""
    counts = Counter(
        lang for lang in (detect_language_from_path(p) for p in paths) if lang != UNKNOWN
    )
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def languages_in(paths: Iterable[str]) -> List[str]:
    """Known languages among paths, most common first."""
    counts = Counter(
        lang for lang in (detect_language_from_path(p) for p in paths) if lang != UNKNOWN
    )
    return [lang for lang, _ in counts.most_common()]
