"""Per-job-type processing routines built on the collaborator interfaces."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from repo_docgen.collaborators.base import (
    DEFAULT_SOURCE_EXTENSIONS,
    AnalysisCollaborator,
    ChangeKind,
    ChangeSet,
    DocumentationCollaborator,
    DocumentContext,
    DocumentKind,
    FileAnalysis,
    IngestionCollaborator,
)
from repo_docgen.pipeline.errors import ProcessingError
from repo_docgen.pipeline.models import (
    DeltaAnalysisPayload,
    InitialIngestionPayload,
    JobPayload,
    PrAnalysisPayload,
    PushAnalysisPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ANALYZED_FILES = 50


class JobRoutines:
    """Runs the routine matching a job payload and returns the analysis document.

    Per-file failures are logged and the file is left out of ``files``; its
    path is listed under ``failed_files``. Any other collaborator error
    propagates to the dispatcher, which fails the job.
    """

    def __init__(
        self,
        *,
        ingestion: IngestionCollaborator,
        analysis: AnalysisCollaborator,
        documentation: DocumentationCollaborator,
        max_analyzed_files: int = DEFAULT_MAX_ANALYZED_FILES,
        extensions: frozenset[str] = DEFAULT_SOURCE_EXTENSIONS,
    ) -> None:
        self.ingestion = ingestion
        self.analysis = analysis
        self.documentation = documentation
        self.max_analyzed_files = max_analyzed_files
        self.extensions = extensions

    def run(self, payload: JobPayload) -> dict[str, Any]:
        if isinstance(payload, InitialIngestionPayload):
            return self.initial_ingestion(payload)
        if isinstance(payload, PrAnalysisPayload):
            return self.pr_analysis(payload)
        if isinstance(payload, PushAnalysisPayload):
            return self.push_analysis(payload)
        if isinstance(payload, DeltaAnalysisPayload):
            return self.delta_analysis(payload)
        raise ProcessingError(f"Unsupported job payload: {type(payload).__name__}", retryable=False)

    def initial_ingestion(self, payload: InitialIngestionPayload) -> dict[str, Any]:
        """Analyze a capped prefix of the snapshot and write onboarding plus architecture docs."""

        repo = payload.repo
        logger.info("Processing initial ingestion for %s", repo.full_name)
        snapshot = self.ingestion.clone_or_fetch_snapshot(repo)
        try:
            paths = self.ingestion.list_files(snapshot, self.extensions)
            logger.info("Discovered %d source files in %s", len(paths), repo.full_name)
            selected = paths[: self.max_analyzed_files]
            analyses, failed = self._analyze_paths(
                selected,
                lambda path: self.ingestion.read_file(snapshot, path),
            )
        finally:
            self.ingestion.cleanup(snapshot)

        context = DocumentContext(
            repo_full_name=repo.full_name,
            head_revision=snapshot.head_revision,
        )
        return {
            "type": payload.job_type.value,
            "total_files": len(paths),
            "analyzed_files": len(analyses),
            "failed_files": failed,
            "head_sha": snapshot.head_revision,
            "files": [item.to_dict() for item in analyses],
            "documentation": self._documents(
                (DocumentKind.ONBOARDING, DocumentKind.ARCHITECTURE),
                analyses,
                context,
            ),
        }

    def pr_analysis(self, payload: PrAnalysisPayload) -> dict[str, Any]:
        repo = payload.repo
        logger.info("Processing PR analysis for %s#%d", repo.full_name, payload.pr_number)
        changes = self.ingestion.get_changed_files(repo, pr_number=payload.pr_number)
        files, analyses, failed = self._analyze_change_set(changes)
        context = DocumentContext(
            repo_full_name=repo.full_name,
            head_revision=payload.head_sha,
            pr_number=payload.pr_number,
            commits=changes.commits,
            total_additions=changes.total_additions,
            total_deletions=changes.total_deletions,
        )
        return {
            "type": payload.job_type.value,
            "pr_number": payload.pr_number,
            "files_changed": len(changes.files),
            "total_additions": changes.total_additions,
            "total_deletions": changes.total_deletions,
            "commits": [commit.to_dict() for commit in changes.commits],
            "files": files,
            "failed_files": failed,
            "documentation": self._documents((DocumentKind.PR_SUMMARY,), analyses, context),
        }

    def push_analysis(self, payload: PushAnalysisPayload) -> dict[str, Any]:
        repo = payload.repo
        revision = payload.after_sha or payload.ref
        logger.info(
            "Processing push analysis for %s (%d changed files)",
            repo.full_name,
            len(payload.changed_files),
        )
        selected = list(payload.changed_files[: self.max_analyzed_files])
        analyses, failed = self._analyze_paths(
            selected,
            lambda path: self.ingestion.fetch_file(repo, path, revision=revision),
        )
        context = DocumentContext(repo_full_name=repo.full_name, head_revision=payload.after_sha)
        return {
            "type": payload.job_type.value,
            "ref": payload.ref,
            "before_sha": payload.before_sha,
            "after_sha": payload.after_sha,
            "changed_files": list(payload.changed_files),
            "files_changed": len(payload.changed_files),
            "analyzed_files": len(analyses),
            "failed_files": failed,
            "files": [item.to_dict() for item in analyses],
            "documentation": self._documents((DocumentKind.ARCHITECTURE,), analyses, context),
        }

    def delta_analysis(self, payload: DeltaAnalysisPayload) -> dict[str, Any]:
        repo = payload.repo
        logger.info(
            "Processing delta analysis for %s (%s..%s)",
            repo.full_name,
            payload.base_sha,
            payload.head_sha,
        )
        changes = self.ingestion.get_changed_files(
            repo,
            revision_range=(payload.base_sha, payload.head_sha),
        )
        files, analyses, failed = self._analyze_change_set(changes)
        context = DocumentContext(
            repo_full_name=repo.full_name,
            head_revision=payload.head_sha,
            commits=changes.commits,
            total_additions=changes.total_additions,
            total_deletions=changes.total_deletions,
        )
        return {
            "type": payload.job_type.value,
            "base_sha": payload.base_sha,
            "head_sha": payload.head_sha,
            "files_changed": len(changes.files),
            "total_additions": changes.total_additions,
            "total_deletions": changes.total_deletions,
            "commits": [commit.to_dict() for commit in changes.commits],
            "files": files,
            "failed_files": failed,
            "documentation": self._documents((DocumentKind.ARCHITECTURE,), analyses, context),
        }

    def _analyze_paths(
        self,
        paths: list[str],
        load: Callable[[str], str],
    ) -> tuple[list[FileAnalysis], list[str]]:
        analyses: list[FileAnalysis] = []
        failed: list[str] = []
        for path in paths:
            try:
                analyses.append(self.analysis.analyze(path, load(path)))
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to analyze file %s: %s", path, error)
                failed.append(path)
        return analyses, failed

    def _analyze_change_set(
        self,
        changes: ChangeSet,
    ) -> tuple[list[dict[str, Any]], list[FileAnalysis], list[str]]:
        files: list[dict[str, Any]] = []
        analyses: list[FileAnalysis] = []
        failed: list[str] = []
        for changed in changes.files:
            if changed.change_kind is ChangeKind.DELETED:
                files.append(
                    {
                        **FileAnalysis(path=changed.path, language="unknown").to_dict(),
                        "status": changed.change_kind.value,
                        "additions": changed.additions,
                        "deletions": changed.deletions,
                    },
                )
                continue
            try:
                analysis = self.analysis.analyze(changed.path, changed.content or "")
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to analyze file %s: %s", changed.path, error)
                failed.append(changed.path)
                continue
            analyses.append(analysis)
            files.append(
                {
                    **analysis.to_dict(),
                    "status": changed.change_kind.value,
                    "additions": changed.additions,
                    "deletions": changed.deletions,
                },
            )
        return files, analyses, failed

    def _documents(
        self,
        kinds: tuple[DocumentKind, ...],
        analyses: list[FileAnalysis],
        context: DocumentContext,
    ) -> dict[str, Any]:
        return {
            kind.value: self.documentation.generate(kind, analyses, context).to_dict()
            for kind in kinds
        }
