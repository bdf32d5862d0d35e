from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import FakeAnalysis, FakeDocumentation, FakeIngestion

from repo_docgen.collaborators.base import (
    ChangedFile,
    ChangeKind,
    ChangeSet,
    CommitInfo,
    DocumentKind,
)
from repo_docgen.pipeline.models import (
    DeltaAnalysisPayload,
    InitialIngestionPayload,
    PrAnalysisPayload,
    PushAnalysisPayload,
    RepoRef,
)
from repo_docgen.pipeline.routines import JobRoutines

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Job Routines"),
]

REPO = RepoRef(repo_id="42", full_name="acme/widgets")


def _pr_change_set() -> ChangeSet:
    return ChangeSet(
        files=[
            ChangedFile(
                path="src/app.ts",
                change_kind=ChangeKind.MODIFIED,
                additions=10,
                deletions=2,
                content="export function run() {}\n",
            ),
            ChangedFile(
                path="src/util.py",
                change_kind=ChangeKind.ADDED,
                additions=5,
                content="def helper():\n    return 1\n",
            ),
            ChangedFile(path="src/legacy.js", change_kind=ChangeKind.DELETED, deletions=30),
        ],
        commits=[CommitInfo(sha="c1", message="Add helper", author="octocat")],
    )


def test_initial_ingestion_caps_analyzed_files(
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
    fake_documentation: FakeDocumentation,
) -> None:
    fake_ingestion.snapshot_files = {f"src/module_{index:02d}.py": "x = 1\n" for index in range(75)}
    fake_ingestion.snapshot_files["README.md"] = "# readme\n"

    analysis = routines.run(InitialIngestionPayload(repo=REPO))

    assert analysis["type"] == "initial-ingestion"
    assert analysis["total_files"] == 75
    assert analysis["analyzed_files"] == 50
    assert len(analysis["files"]) == 50
    assert analysis["failed_files"] == []
    assert analysis["head_sha"] == "head-sha"
    assert fake_ingestion.read_paths == [f"src/module_{index:02d}.py" for index in range(50)]
    assert fake_ingestion.cleaned == [Path("/snapshots/acme/widgets")]
    assert set(analysis["documentation"]) == {"onboarding", "architecture"}
    assert [call[0] for call in fake_documentation.calls] == [
        DocumentKind.ONBOARDING,
        DocumentKind.ARCHITECTURE,
    ]


def test_initial_ingestion_excludes_files_that_fail_analysis(
    fake_ingestion: FakeIngestion,
    fake_documentation: FakeDocumentation,
) -> None:
    fake_ingestion.snapshot_files = {"a.py": "a = 1\n", "b.py": "b = 2\n", "c.py": "c = 3\n"}
    routines = JobRoutines(
        ingestion=fake_ingestion,
        analysis=FakeAnalysis(fail_on={"b.py"}),
        documentation=fake_documentation,
    )

    analysis = routines.initial_ingestion(InitialIngestionPayload(repo=REPO))

    assert analysis["total_files"] == 3
    assert analysis["analyzed_files"] == 2
    assert [item["path"] for item in analysis["files"]] == ["a.py", "c.py"]
    assert analysis["failed_files"] == ["b.py"]


def test_initial_ingestion_cleans_up_when_listing_fails() -> None:
    class BrokenListing(FakeIngestion):
        def list_files(self, snapshot, extensions):
            raise OSError("disk full")

    ingestion = BrokenListing()
    routines = JobRoutines(
        ingestion=ingestion,
        analysis=FakeAnalysis(),
        documentation=FakeDocumentation(),
    )

    with pytest.raises(OSError, match="disk full"):
        routines.run(InitialIngestionPayload(repo=REPO))
    assert ingestion.cleaned == [Path("/snapshots/acme/widgets")]


def test_pr_analysis_reports_files_commits_and_summary(
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
    fake_documentation: FakeDocumentation,
) -> None:
    fake_ingestion.change_sets = {123: _pr_change_set()}

    analysis = routines.run(
        PrAnalysisPayload(repo=REPO, pr_number=123, action="opened", head_sha="abc"),
    )

    assert analysis["type"] == "pr-analysis"
    assert analysis["pr_number"] == 123
    assert analysis["files_changed"] == 3
    assert analysis["total_additions"] == 15
    assert analysis["total_deletions"] == 32
    assert analysis["commits"] == [
        {"sha": "c1", "message": "Add helper", "author": "octocat", "date": None},
    ]
    statuses = {item["path"]: item["status"] for item in analysis["files"]}
    assert statuses == {
        "src/app.ts": "modified",
        "src/util.py": "added",
        "src/legacy.js": "deleted",
    }
    assert list(analysis["documentation"]) == ["pr-summary"]
    kind, paths, context = fake_documentation.calls[0]
    assert kind is DocumentKind.PR_SUMMARY
    assert paths == ["src/app.ts", "src/util.py"]
    assert context.pr_number == 123
    assert context.head_revision == "abc"


def test_push_analysis_fetches_changed_files_at_pushed_revision(
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.remote_files = {"a.ts": "export const a = 1;\n", "b.md": "# b\n"}

    analysis = routines.run(
        PushAnalysisPayload(
            repo=REPO,
            ref="refs/heads/main",
            before_sha="0000000",
            after_sha="1111111",
            changed_files=("a.ts", "b.md", "gone.ts"),
        ),
    )

    assert analysis["type"] == "push-analysis"
    assert analysis["changed_files"] == ["a.ts", "b.md", "gone.ts"]
    assert analysis["files_changed"] == 3
    assert analysis["analyzed_files"] == 2
    assert analysis["failed_files"] == ["gone.ts"]
    assert fake_ingestion.fetch_calls == [
        ("a.ts", "1111111"),
        ("b.md", "1111111"),
        ("gone.ts", "1111111"),
    ]
    assert list(analysis["documentation"]) == ["architecture"]


def test_push_analysis_caps_fetched_files(
    fake_ingestion: FakeIngestion,
    fake_documentation: FakeDocumentation,
) -> None:
    paths = tuple(f"f{index}.ts" for index in range(5))
    fake_ingestion.remote_files = dict.fromkeys(paths, "let x = 1;\n")
    routines = JobRoutines(
        ingestion=fake_ingestion,
        analysis=FakeAnalysis(),
        documentation=fake_documentation,
        max_analyzed_files=2,
    )

    analysis = routines.run(
        PushAnalysisPayload(repo=REPO, ref="refs/heads/main", changed_files=paths),
    )

    assert analysis["files_changed"] == 5
    assert analysis["analyzed_files"] == 2
    assert [call[1] for call in fake_ingestion.fetch_calls] == ["refs/heads/main"] * 2


def test_delta_analysis_uses_revision_range(
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
    fake_documentation: FakeDocumentation,
) -> None:
    fake_ingestion.change_sets = {("base", "head"): _pr_change_set()}

    analysis = routines.run(DeltaAnalysisPayload(repo=REPO, base_sha="base", head_sha="head"))

    assert analysis["type"] == "delta-analysis"
    assert analysis["base_sha"] == "base"
    assert analysis["head_sha"] == "head"
    assert analysis["files_changed"] == 3
    assert list(analysis["documentation"]) == ["architecture"]
    assert fake_documentation.calls[0][2].head_revision == "head"


def test_collaborator_errors_propagate(
    routines: JobRoutines,
    fake_ingestion: FakeIngestion,
) -> None:
    fake_ingestion.fail_clone = RuntimeError("git clone failed with exit code 128")

    with pytest.raises(RuntimeError, match="exit code 128"):
        routines.run(InitialIngestionPayload(repo=REPO))
