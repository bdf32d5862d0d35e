"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from repo_docgen.collaborators.base import (
    ChangeSet,
    DocumentContext,
    DocumentKind,
    FileAnalysis,
    GeneratedDocument,
    Snapshot,
)
from repo_docgen.pipeline.bus import SqliteMessageBus
from repo_docgen.pipeline.models import RepoRef
from repo_docgen.pipeline.repository import PipelineRepository
from repo_docgen.pipeline.routines import JobRoutines

WEBHOOK_SECRET = "test-secret"


class FakeIngestion:
    """Ingestion collaborator backed by dictionaries."""

    def __init__(
        self,
        *,
        snapshot_files: dict[str, str] | None = None,
        change_sets: dict[Any, ChangeSet] | None = None,
        remote_files: dict[str, str] | None = None,
        head_revision: str = "head-sha",
    ) -> None:
        self.snapshot_files = snapshot_files or {}
        self.change_sets = change_sets or {}
        self.remote_files = remote_files or {}
        self.head_revision = head_revision
        self.cleaned: list[Path] = []
        self.read_paths: list[str] = []
        self.fetch_calls: list[tuple[str, str | None]] = []
        self.fail_clone: Exception | None = None

    def clone_or_fetch_snapshot(self, repo: RepoRef) -> Snapshot:
        if self.fail_clone is not None:
            raise self.fail_clone
        handle = Path(f"/snapshots/{repo.full_name}")
        return Snapshot(handle=handle, head_revision=self.head_revision)

    def list_files(self, snapshot: Snapshot, extensions: frozenset[str]) -> list[str]:
        return [path for path in self.snapshot_files if Path(path).suffix in extensions]

    def read_file(self, snapshot: Snapshot, path: str) -> str:
        self.read_paths.append(path)
        return self.snapshot_files[path]

    def cleanup(self, snapshot: Snapshot) -> None:
        self.cleaned.append(snapshot.handle)

    def get_changed_files(
        self,
        repo: RepoRef,
        *,
        pr_number: int | None = None,
        revision_range: tuple[str, str] | None = None,
    ) -> ChangeSet:
        key = pr_number if pr_number is not None else revision_range
        return self.change_sets[key]

    def fetch_file(self, repo: RepoRef, path: str, *, revision: str | None = None) -> str:
        self.fetch_calls.append((path, revision))
        if path not in self.remote_files:
            raise FileNotFoundError(path)
        return self.remote_files[path]


class FakeAnalysis:
    """Analysis collaborator that fails for selected paths."""

    def __init__(self, *, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.analyzed: list[str] = []

    def analyze(self, path: str, content: str) -> FileAnalysis:
        if path in self.fail_on:
            raise RuntimeError(f"cannot analyze {path}")
        self.analyzed.append(path)
        language = "python" if path.endswith(".py") else "typescript"
        return FileAnalysis(path=path, language=language, line_count=len(content.splitlines()))


class FakeDocumentation:
    """Documentation collaborator that records requested kinds."""

    def __init__(self) -> None:
        self.calls: list[tuple[DocumentKind, list[str], DocumentContext]] = []

    def generate(
        self,
        kind: DocumentKind,
        files: list[FileAnalysis],
        context: DocumentContext,
    ) -> GeneratedDocument:
        self.calls.append((kind, [item.path for item in files], context))
        return GeneratedDocument(
            kind=kind,
            title=f"{kind.value} for {context.repo_full_name}",
            content=f"{len(files)} files",
            model_used="fake",
        )


class FlakyBus:
    """In-memory publisher that raises queued errors before succeeding."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.topics: set[str] = set()
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.attempts = 0

    def ensure_topic(self, topic: str) -> None:
        self.topics.add(topic)

    def publish(self, topic: str, data: dict[str, Any]) -> str:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        self.published.append((topic, data))
        return f"msg-{uuid4().hex[:8]}"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def pr_event(*, action: str = "opened", number: int = 123) -> dict[str, Any]:
    return {
        "action": action,
        "repository": {"id": 42, "full_name": "acme/widgets"},
        "sender": {"login": "octocat"},
        "pull_request": {
            "number": number,
            "state": "open",
            "head": {"ref": "feature-x", "sha": "abc123"},
            "base": {"ref": "main"},
        },
    }


def push_event(
    *,
    ref: str = "refs/heads/main",
    commits: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "ref": ref,
        "before": "0000000",
        "after": "1111111",
        "repository": {"id": 42, "full_name": "acme/widgets"},
        "sender": {"login": "octocat"},
        "commits": commits
        if commits is not None
        else [{"added": ["a.ts", "b.md"], "modified": [], "removed": []}],
    }


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pipeline.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[PipelineRepository]:
    repo = PipelineRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def bus(repository: PipelineRepository) -> Iterator[SqliteMessageBus]:
    message_bus = SqliteMessageBus(
        repository.db_path,
        retry_base_seconds=0,
        retry_max_seconds=0,
        max_delivery_attempts=3,
    )
    try:
        yield message_bus
    finally:
        message_bus.close()


@pytest.fixture()
def fake_ingestion() -> FakeIngestion:
    return FakeIngestion()


@pytest.fixture()
def fake_analysis() -> FakeAnalysis:
    return FakeAnalysis()


@pytest.fixture()
def fake_documentation() -> FakeDocumentation:
    return FakeDocumentation()


@pytest.fixture()
def routines(
    fake_ingestion: FakeIngestion,
    fake_analysis: FakeAnalysis,
    fake_documentation: FakeDocumentation,
) -> JobRoutines:
    return JobRoutines(
        ingestion=fake_ingestion,
        analysis=fake_analysis,
        documentation=fake_documentation,
    )
