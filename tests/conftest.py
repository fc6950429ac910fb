from pathlib import Path
from typing import Dict, List, Optional

import pytest

from code_nexus.config import NexusConfig
from code_nexus.core.global_store import GlobalStore
from code_nexus.core.models import ChangeRecord, CommitInfo
from code_nexus.core.store import ProjectStore
from code_nexus.errors import OracleError
from code_nexus.sources.oracle import (
    AnalysisOracle,
    ConceptCandidate,
    FileAnalysis,
    PatternCandidate,
)


def concept(name: str, concept_type: str = "function", line: int = 1) -> ConceptCandidate:
    return ConceptCandidate(
        name=name,
        concept_type=concept_type,
        confidence=0.8,
        line_range={"start": line, "end": line},
    )


def naming_pattern(convention: str = "camelCase", confidence: float = 0.6, file: str = "a.ts") -> PatternCandidate:
    return PatternCandidate(
        id=f"naming_typescript_function_{convention}",
        pattern_type="naming",
        content={"convention": convention, "category": "function", "language": "typescript"},
        confidence=confidence,
        contexts=["function"],
        examples=[{"name": "doThing", "file": file}],
    )


class FakeOracle(AnalysisOracle):
    """Returns canned analyses per path and records every call."""

    def __init__(self):
        self.concepts: Dict[str, List[ConceptCandidate]] = {}
        self.patterns: Dict[str, List[PatternCandidate]] = {}
        self.failing: set = set()
        self.calls: List[str] = []

    def set_file(self, path: str, names: List[str], patterns: Optional[List[PatternCandidate]] = None):
        self.concepts[path] = [concept(name, line=i + 1) for i, name in enumerate(names)]
        self.patterns[path] = list(patterns or [])

    async def analyze_file(self, path: str, content: Optional[str] = None) -> FileAnalysis:
        self.calls.append(path)
        if path in self.failing:
            raise OracleError(f"cannot analyze {path}", path=path)
        return FileAnalysis(
            path=path,
            concepts=list(self.concepts.get(path, [])),
            patterns=list(self.patterns.get(path, [])),
            file_hash=f"hash-{path}",
            language="typescript",
        )


class FakeChangeSource:
    def __init__(self, changes: List[ChangeRecord], commit: Optional[CommitInfo] = None):
        self.changes = changes
        self.commit = commit
        self.since_calls: List[Optional[str]] = []

    async def list_changes(self, since: Optional[str] = None) -> List[ChangeRecord]:
        self.since_calls.append(since)
        return list(self.changes)

    async def get_commit_info(self, ref: str = "HEAD") -> Optional[CommitInfo]:
        return self.commit


@pytest.fixture
def config() -> NexusConfig:
    config = NexusConfig()
    config.learning.queue_timeout_ms = 0
    return config


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def store(project_dir: Path, tmp_path: Path):
    store = ProjectStore(str(project_dir), db_path=str(tmp_path / "project.db"))
    yield store
    store.close()


@pytest.fixture
def global_store(tmp_path: Path):
    store = GlobalStore(str(tmp_path / "global.db"))
    yield store
    store.close()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()
