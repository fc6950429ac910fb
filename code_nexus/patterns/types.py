"""
Pattern Type Definitions.

Pattern data arrives from oracles and remote projects as loosely shaped
JSON. The known categories get their own dataclass so the rest of the code
works with real fields; anything else is carried as an open map. Every
variant converts back to a plain dict for signature matching and storage.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class PatternCategory(Enum):
    """Categories of patterns the oracle reports."""
    NAMING = "naming"                  # camelCase functions, PascalCase classes
    STRUCTURAL = "structural"          # Layered, modular, MVC
    IMPLEMENTATION = "implementation"  # Singleton, factory, observer
    STYLE = "style"                    # Formatting and layout habits
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PatternCategory":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.OTHER


@dataclass
class NamingPatternData:
    """An identifier convention applied to one kind of entity."""
    convention: str                          # camelCase, PascalCase, snake_case...
    category: Optional[str] = None           # function, class, variable, constant
    language: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    kind = PatternCategory.NAMING

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["convention"] = self.convention
        if self.category is not None:
            data["category"] = self.category
        if self.language is not None:
            data["language"] = self.language
        return data


@dataclass
class StructuralPatternData:
    pattern: str                             # layered, modular, MVC...
    characteristics: List[str] = field(default_factory=list)
    language: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    kind = PatternCategory.STRUCTURAL

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["pattern"] = self.pattern
        if self.characteristics:
            data["characteristics"] = list(self.characteristics)
        if self.language is not None:
            data["language"] = self.language
        return data


@dataclass
class ImplementationPatternData:
    pattern: str                             # singleton, factory, observer...
    code_signatures: List[str] = field(default_factory=list)
    language: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    kind = PatternCategory.IMPLEMENTATION

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["pattern"] = self.pattern
        if self.code_signatures:
            data["code_signatures"] = list(self.code_signatures)
        if self.language is not None:
            data["language"] = self.language
        return data


@dataclass
class OpenPatternData:
    """Fallback for categories without a dedicated shape."""
    fields: Dict[str, Any] = field(default_factory=dict)
    kind: PatternCategory = PatternCategory.OTHER

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.fields)


PatternData = Union[
    NamingPatternData,
    StructuralPatternData,
    ImplementationPatternData,
    OpenPatternData,
]


def _split(data: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


def parse_pattern_data(category: Optional[str], data: Optional[Dict[str, Any]]) -> PatternData:
    """
    Build the typed variant for a category.

    Falls back to OpenPatternData when the category is unknown or the
    required field for its shape is missing.
    """
    data = dict(data or {})
    kind = PatternCategory.parse(category)

    if kind is PatternCategory.NAMING and isinstance(data.get("convention"), str):
        return NamingPatternData(
            convention=data["convention"],
            category=data.get("category"),
            language=data.get("language"),
            extra=_split(data, ("convention", "category", "language")),
        )

    if kind is PatternCategory.STRUCTURAL and isinstance(data.get("pattern"), str):
        return StructuralPatternData(
            pattern=data["pattern"],
            characteristics=list(data.get("characteristics") or []),
            language=data.get("language"),
            extra=_split(data, ("pattern", "characteristics", "language")),
        )

    if kind is PatternCategory.IMPLEMENTATION and isinstance(data.get("pattern"), str):
        return ImplementationPatternData(
            pattern=data["pattern"],
            code_signatures=list(data.get("code_signatures") or []),
            language=data.get("language"),
            extra=_split(data, ("pattern", "code_signatures", "language")),
        )

    return OpenPatternData(fields=data, kind=kind)


def as_open_map(data: Union[PatternData, Dict[str, Any], None]) -> Dict[str, Any]:
    """Plain key/value view used by signature matching and similarity."""
    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    return data.to_dict()
