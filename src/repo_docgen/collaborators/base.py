"""Collaborator interfaces for ingestion, code analysis and documentation."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from repo_docgen.pipeline.models import RepoRef

DEFAULT_SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {".js", ".ts", ".jsx", ".tsx", ".py", ".java"},
)


class ChangeKind(str, Enum):
    """How a file changed in a diff."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class DocumentKind(str, Enum):
    """Documentation artifacts the generator can produce."""

    ONBOARDING = "onboarding"
    ARCHITECTURE = "architecture"
    API = "api"
    PR_SUMMARY = "pr-summary"


@dataclass(slots=True)
class Snapshot:
    """Local checkout of a repository."""

    handle: Path
    head_revision: str


@dataclass(slots=True)
class ChangedFile:
    """One file in a pull request or revision range diff."""

    path: str
    change_kind: ChangeKind
    additions: int = 0
    deletions: int = 0
    content: str | None = None


@dataclass(slots=True)
class CommitInfo:
    sha: str
    message: str
    author: str
    date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ChangeSet:
    """Changed files plus the commits that produced them."""

    files: list[ChangedFile]
    commits: list[CommitInfo] = field(default_factory=list)

    @property
    def total_additions(self) -> int:
        return sum(item.additions for item in self.files)

    @property
    def total_deletions(self) -> int:
        return sum(item.deletions for item in self.files)


@dataclass(slots=True)
class FunctionInfo:
    name: str
    line: int
    params: list[str] = field(default_factory=list)
    is_async: bool = False
    is_exported: bool = False


@dataclass(slots=True)
class ClassInfo:
    name: str
    line: int
    methods: list[str] = field(default_factory=list)
    bases: list[str] = field(default_factory=list)
    is_exported: bool = False


@dataclass(slots=True)
class ImportInfo:
    source: str
    names: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FileAnalysis:
    """Structural facts extracted from one source file."""

    path: str
    language: str
    functions: list[FunctionInfo] = field(default_factory=list)
    classes: list[ClassInfo] = field(default_factory=list)
    imports: list[ImportInfo] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    line_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DocumentContext:
    """Context passed to the documentation generator alongside analyzed files."""

    repo_full_name: str
    head_revision: str | None = None
    pr_number: int | None = None
    commits: list[CommitInfo] = field(default_factory=list)
    total_additions: int = 0
    total_deletions: int = 0


@dataclass(slots=True)
class GeneratedDocument:
    """Documentation artifact produced for a job result."""

    kind: DocumentKind
    title: str
    content: str
    model_used: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "content": self.content,
            "model_used": self.model_used,
        }


class IngestionCollaborator(Protocol):
    """Repository access: snapshots, file listing and diffs."""

    def clone_or_fetch_snapshot(self, repo: RepoRef) -> Snapshot: ...

    def list_files(self, snapshot: Snapshot, extensions: frozenset[str]) -> list[str]: ...

    def read_file(self, snapshot: Snapshot, path: str) -> str: ...

    def cleanup(self, snapshot: Snapshot) -> None: ...

    def get_changed_files(
        self,
        repo: RepoRef,
        *,
        pr_number: int | None = None,
        revision_range: tuple[str, str] | None = None,
    ) -> ChangeSet: ...

    def fetch_file(self, repo: RepoRef, path: str, *, revision: str | None = None) -> str: ...


class AnalysisCollaborator(Protocol):
    """Pure source analysis; returns a degraded result instead of raising."""

    def analyze(self, path: str, content: str) -> FileAnalysis: ...


class DocumentationCollaborator(Protocol):
    """Documentation generation with a deterministic offline fallback."""

    def generate(
        self,
        kind: DocumentKind,
        files: list[FileAnalysis],
        context: DocumentContext,
    ) -> GeneratedDocument: ...
