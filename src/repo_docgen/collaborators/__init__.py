"""External collaborators consumed by the job routines."""

from repo_docgen.collaborators.base import (
    AnalysisCollaborator,
    ChangedFile,
    ChangeKind,
    ChangeSet,
    CommitInfo,
    DocumentationCollaborator,
    DocumentContext,
    DocumentKind,
    FileAnalysis,
    GeneratedDocument,
    IngestionCollaborator,
    Snapshot,
)

__all__ = [
    "AnalysisCollaborator",
    "ChangeKind",
    "ChangeSet",
    "ChangedFile",
    "CommitInfo",
    "DocumentContext",
    "DocumentKind",
    "DocumentationCollaborator",
    "FileAnalysis",
    "GeneratedDocument",
    "IngestionCollaborator",
    "Snapshot",
]
