import shutil
import subprocess
from pathlib import Path

import pytest

from code_nexus.core.languages import (
    detect_language_from_path,
    detect_language_from_pattern,
    primary_language,
)
from code_nexus.core.models import ChangeType, CommitInfo
from code_nexus.errors import ChangeSourceError, OracleError
from code_nexus.patterns.types import (
    NamingPatternData,
    OpenPatternData,
    PatternCategory,
    StructuralPatternData,
    parse_pattern_data,
)
from code_nexus.sources.git import GitChangeSource, changes_for_paths, parse_name_status
from code_nexus.sources.oracle import LexicalOracle, detect_naming_convention

TS_SOURCE = """\
export interface UserProps {
  id: string;
}

export class UserCard {
  render() {
    if (this.visible && this.ready) {
      return null;
    }
  }
}

export function fetchUser(id: string) {
  return fetch(id);
}

export const saveUser = async (user) => {
  return user;
};
"""


# =============================================================================
# Git
# =============================================================================

def test_parse_name_status():
    output = "M\tsrc/app.ts\nA\tsrc/new.ts\nD\tsrc/gone.ts\nR087\tsrc/old.ts\tsrc/renamed.ts\nC100\ta\tb\n\n"

    changes = parse_name_status(output)

    assert [(c.change_type, c.path, c.old_path) for c in changes] == [
        (ChangeType.MODIFIED, "src/app.ts", None),
        (ChangeType.ADDED, "src/new.ts", None),
        (ChangeType.DELETED, "src/gone.ts", None),
        (ChangeType.RENAMED, "src/renamed.ts", "src/old.ts"),
    ]


def test_changes_for_paths_carry_commit():
    commit = CommitInfo(id="abc", message="Refactor")

    [change] = changes_for_paths(["a.py"], commit)

    assert change.change_type is ChangeType.MODIFIED
    assert (change.commit_id, change.commit_message) == ("abc", "Refactor")


def run_git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init")
    run_git(repo, "config", "user.email", "dev@example.com")
    run_git(repo, "config", "user.name", "Nexus Test")
    (repo / "app.py").write_text("def main():\n    pass\n", encoding="utf-8")
    (repo / "old.py").write_text("class Legacy:\n    pass\n", encoding="utf-8")
    run_git(repo, "add", ".")
    run_git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.mark.asyncio
async def test_git_source_reports_changes_since_ref(git_repo):
    base = run_git(git_repo, "rev-parse", "HEAD").strip()
    (git_repo / "app.py").write_text("def main():\n    return 1\n", encoding="utf-8")
    run_git(git_repo, "mv", "old.py", "legacy.py")
    run_git(git_repo, "commit", "-am", "Rename legacy module")

    source = GitChangeSource(str(git_repo))
    changes = await source.list_changes(since=base)
    commit = await source.get_commit_info()

    by_path = {c.path: c for c in changes}
    assert by_path["app.py"].change_type is ChangeType.MODIFIED
    assert by_path["legacy.py"].change_type is ChangeType.RENAMED
    assert by_path["legacy.py"].old_path == "old.py"
    assert commit.message == "Rename legacy module"
    assert commit.author == "Nexus Test"
    assert "app.py" in commit.files_changed


@pytest.mark.asyncio
async def test_git_source_reports_uncommitted_changes(git_repo):
    (git_repo / "app.py").write_text("def main():\n    return 2\n", encoding="utf-8")
    (git_repo / "notes.py").write_text("x = 1\n", encoding="utf-8")

    changes = await GitChangeSource(str(git_repo)).list_changes()

    assert {(c.change_type, c.path) for c in changes} == {
        (ChangeType.MODIFIED, "app.py"),
        (ChangeType.ADDED, "notes.py"),
    }


@pytest.mark.asyncio
async def test_git_source_outside_repository(tmp_path):
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    source = GitChangeSource(str(tmp_path))

    assert await source.is_repository() is False
    with pytest.raises(ChangeSourceError):
        await source.list_changes(since="HEAD~1")


# =============================================================================
# Lexical oracle
# =============================================================================

@pytest.mark.parametrize("name, convention", [
    ("fetchUser", "camelCase"),
    ("UserCard", "PascalCase"),
    ("parse_config", "snake_case"),
    ("MAX_RETRIES", "SCREAMING_SNAKE_CASE"),
    ("my-component", "kebab-case"),
    ("_private_helper", "snake_case"),
    ("run", None),
])
def test_detect_naming_convention(name, convention):
    assert detect_naming_convention(name) == convention


@pytest.mark.asyncio
async def test_lexical_oracle_typescript(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "user.ts").write_text(TS_SOURCE, encoding="utf-8")
    oracle = LexicalOracle(root_dir=str(tmp_path))

    analysis = await oracle.analyze_file("src/user.ts")

    assert analysis.language == "typescript"
    assert [(c.name, c.concept_type) for c in analysis.concepts] == [
        ("UserProps", "interface"),
        ("UserCard", "class"),
        ("fetchUser", "function"),
        ("saveUser", "function"),
    ]
    assert analysis.concepts[2].line_range == {"start": 13, "end": 13}
    assert analysis.complexity.cyclomatic == 3
    assert len(analysis.file_hash) == 64

    by_id = {p.id: p for p in analysis.patterns}
    camel = by_id["naming_typescript_function_camelCase"]
    assert camel.confidence == 1.0
    assert camel.content == {"convention": "camelCase", "category": "function", "language": "typescript"}
    assert {e["name"] for e in camel.examples} == {"fetchUser", "saveUser"}
    assert "naming_typescript_class_PascalCase" in by_id


@pytest.mark.asyncio
async def test_lexical_oracle_accepts_inline_content():
    analysis = await LexicalOracle().analyze_file("tool.py", "class Runner:\n    def run_all(self):\n        pass\n")

    assert [c.name for c in analysis.concepts] == ["Runner", "run_all"]


@pytest.mark.asyncio
async def test_lexical_oracle_missing_file(tmp_path):
    with pytest.raises(OracleError):
        await LexicalOracle(root_dir=str(tmp_path)).analyze_file("nope.ts")


# =============================================================================
# Languages and pattern data
# =============================================================================

def test_language_detection():
    assert detect_language_from_path("src/App.TSX") == "typescript"
    assert detect_language_from_path("Makefile") == "unknown"
    assert primary_language(["a.py", "b.py", "c.ts", "README"]) == "python"
    assert primary_language(["README"]) is None
    assert detect_language_from_pattern({"language": "Go"}) == "go"
    assert detect_language_from_pattern({"examples": [{"file": "x.rs"}]}) == "rust"


def test_parse_pattern_data_variants():
    naming = parse_pattern_data("naming", {"convention": "camelCase", "category": "function", "scope": "module"})
    structural = parse_pattern_data("structural", {"pattern": "layered", "characteristics": ["api", "db"]})
    unknown = parse_pattern_data("mystery", {"anything": 1})
    incomplete = parse_pattern_data("naming", {"category": "function"})

    assert isinstance(naming, NamingPatternData)
    assert naming.extra == {"scope": "module"}
    assert naming.to_dict() == {"scope": "module", "convention": "camelCase", "category": "function"}
    assert isinstance(structural, StructuralPatternData)
    assert structural.characteristics == ["api", "db"]
    assert isinstance(unknown, OpenPatternData) and unknown.kind is PatternCategory.OTHER
    assert isinstance(incomplete, OpenPatternData) and incomplete.kind is PatternCategory.NAMING
