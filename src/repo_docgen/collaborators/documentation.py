"""Markdown documentation generation through Gemini, with offline templates."""

from __future__ import annotations

import logging
from collections import Counter

import httpx

from repo_docgen.collaborators.base import (
    DocumentContext,
    DocumentKind,
    FileAnalysis,
    GeneratedDocument,
)

logger = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta"
TEMPLATE_MODEL = "template"
PROMPT_FILE_LIMIT = 15
TEMPLATE_FILE_LIMIT = 20


def document_title(kind: DocumentKind, files: list[FileAnalysis], context: DocumentContext) -> str:
    if kind is DocumentKind.PR_SUMMARY:
        return f"Pull Request #{context.pr_number} Documentation"
    if kind is DocumentKind.ARCHITECTURE:
        return f"{context.repo_full_name} - Architecture Overview"
    if kind is DocumentKind.ONBOARDING:
        return f"{context.repo_full_name} - Developer Onboarding Guide"
    target = files[0].path if files else context.repo_full_name
    return f"API Documentation: {target}"


class DocumentationGenerator:
    """Generates documents with Gemini when a key is configured.

    Without a key, or when the model call fails, a deterministic Markdown
    template built from the analyzed files is returned instead. ``generate``
    does not raise on backend errors.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "gemini-flash-latest",
        api_url: str = GEMINI_API_URL,
        timeout_seconds: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=10.0))
        if not api_key:
            logger.info("No Gemini API key configured; using template documentation")

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DocumentationGenerator:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def generate(
        self,
        kind: DocumentKind,
        files: list[FileAnalysis],
        context: DocumentContext,
    ) -> GeneratedDocument:
        title = document_title(kind, files, context)
        if self.available:
            try:
                content = self._call_model(build_prompt(kind, files, context))
            except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as error:
                logger.error("Documentation model call failed for %s: %s", kind.value, error)
            else:
                return GeneratedDocument(
                    kind=kind,
                    title=title,
                    content=content,
                    model_used=self.model,
                )
        return GeneratedDocument(
            kind=kind,
            title=title,
            content=render_template(kind, files, context),
            model_used=TEMPLATE_MODEL,
        )

    def _call_model(self, prompt: str) -> str:
        response = self._client.post(
            f"{self.api_url}/models/{self.model}:generateContent",
            params={"key": self.api_key},
            json={"contents": [{"parts": [{"text": prompt}]}]},
        )
        response.raise_for_status()
        data = response.json()
        parts = data["candidates"][0]["content"]["parts"]
        text = "".join(str(part.get("text", "")) for part in parts)
        if not text.strip():
            raise ValueError("empty model response")
        return text


def build_prompt(kind: DocumentKind, files: list[FileAnalysis], context: DocumentContext) -> str:
    listed = files[:PROMPT_FILE_LIMIT]
    file_lines = "\n".join(
        f"- {item.path} ({item.line_count} LOC, {len(item.functions)} functions, "
        f"{len(item.classes)} classes)"
        for item in listed
    )
    languages = ", ".join(_language_counts(files)) or "unknown"

    if kind is DocumentKind.PR_SUMMARY:
        commits = "\n".join(
            f"- {commit.message.splitlines()[0]}"
            for commit in context.commits[:5]
            if commit.message
        )
        return (
            "Generate a professional Pull Request documentation summary in Markdown.\n\n"
            f"PR #{context.pr_number}: {len(files)} files changed, "
            f"+{context.total_additions}/-{context.total_deletions} lines.\n\n"
            f"Modified files:\n{file_lines or '- none'}\n\n"
            f"Recent commits:\n{commits or '- none'}\n\n"
            "Include: Summary, Key Changes, Impact (Low/Medium/High), Testing Notes, Review Focus."
        )
    if kind is DocumentKind.ARCHITECTURE:
        return (
            "Generate an architecture overview for this codebase in Markdown.\n\n"
            f"Repository: {context.repo_full_name}\n"
            f"Files analyzed: {len(files)}, total lines: {sum(item.line_count for item in files)}\n"
            f"Languages: {languages}\n\n"
            f"Key files:\n{file_lines or '- none'}\n\n"
            "Include: Overview, Tech Stack, Structure, Key Components, Getting Started."
        )
    if kind is DocumentKind.ONBOARDING:
        return (
            "Generate a developer onboarding guide for new team members in Markdown.\n\n"
            f"Project: {context.repo_full_name}\nLanguages: {languages}\n"
            f"Codebase size: {len(files)} files\n\n"
            "Include: Welcome, Prerequisites, Setup Steps, Project Structure, "
            "First Contribution, Resources."
        )
    target = files[0] if files else None
    symbols = ""
    if target is not None:
        symbols = "\n".join(
            [f"- function {fn.name}({', '.join(fn.params)})" for fn in target.functions[:10]]
            + [f"- class {cls.name}: {len(cls.methods)} methods" for cls in target.classes[:5]],
        )
    return (
        "Generate concise API documentation in Markdown for this file.\n\n"
        f"File: {target.path if target else context.repo_full_name}\n"
        f"Exports: {', '.join(target.exports) if target and target.exports else 'none'}\n\n"
        f"Symbols:\n{symbols or '- none'}\n\n"
        "Include: Purpose, Key Exports, Usage Example, Dependencies."
    )


def render_template(kind: DocumentKind, files: list[FileAnalysis], context: DocumentContext) -> str:
    """Render the deterministic offline document for ``kind``."""

    if kind is DocumentKind.PR_SUMMARY:
        return _pr_summary_template(files, context)
    if kind is DocumentKind.ARCHITECTURE:
        return _architecture_template(files, context)
    if kind is DocumentKind.ONBOARDING:
        return _onboarding_template(files, context)
    return _api_template(files, context)


def _pr_summary_template(files: list[FileAnalysis], context: DocumentContext) -> str:
    file_lines = "\n".join(
        f"- `{item.path}` ({item.line_count} lines, {len(item.functions)} functions)"
        for item in files
    )
    return "\n".join(
        [
            f"# Pull Request #{context.pr_number} Summary",
            "",
            "## Overview",
            f"This PR modifies {len(files)} files with "
            f"+{context.total_additions}/-{context.total_deletions} lines changed.",
            "",
            "## Files Changed",
            file_lines or "*No files analyzed*",
            "",
            "## Statistics",
            f"- **Total Functions**: {sum(len(item.functions) for item in files)}",
            f"- **Total Classes**: {sum(len(item.classes) for item in files)}",
            f"- **Languages**: {', '.join(sorted({item.language for item in files})) or 'none'}",
        ],
    )


def _architecture_template(files: list[FileAnalysis], context: DocumentContext) -> str:
    stack = "\n".join(f"- **{entry}** files" for entry in _language_counts(files))
    structure = "\n".join(f"- {item.path}" for item in files[:TEMPLATE_FILE_LIMIT])
    return "\n".join(
        [
            f"# {context.repo_full_name} - Architecture Overview",
            "",
            "## Project Statistics",
            f"- **Total Files**: {len(files)}",
            f"- **Total Functions**: {sum(len(item.functions) for item in files)}",
            f"- **Total Classes**: {sum(len(item.classes) for item in files)}",
            f"- **Total Lines**: {sum(item.line_count for item in files)}",
            "",
            "## Technology Stack",
            stack or "*Unknown*",
            "",
            "## File Structure",
            structure or "*No files analyzed*",
        ],
    )


def _onboarding_template(files: list[FileAnalysis], context: DocumentContext) -> str:
    languages = ", ".join(sorted({item.language for item in files})) or "unknown"
    structure = "\n".join(f"- `{item.path}`" for item in files[:PROMPT_FILE_LIMIT])
    return "\n".join(
        [
            f"# {context.repo_full_name} - Developer Onboarding",
            "",
            "## Welcome",
            f"Welcome to the {context.repo_full_name} project.",
            "",
            "## Tech Stack",
            f"- **Languages**: {languages}",
            f"- **Files**: {len(files)}",
            "",
            "## Getting Started",
            "1. Clone the repository",
            "2. Install dependencies",
            "3. Run the test suite",
            "",
            "## Project Structure",
            structure or "*No files analyzed*",
        ],
    )


def _api_template(files: list[FileAnalysis], context: DocumentContext) -> str:
    sections: list[str] = []
    for item in files:
        functions = "\n".join(
            f"- `{fn.name}({', '.join(fn.params)})`{' async' if fn.is_async else ''}"
            for fn in item.functions
        )
        classes = "\n".join(
            f"- `{cls.name}`: {', '.join(cls.methods) or 'no methods'}" for cls in item.classes
        )
        sections.extend(
            [
                f"## {item.path}",
                f"- **Language**: {item.language}",
                f"- **Lines of Code**: {item.line_count}",
                f"- **Exports**: {', '.join(item.exports) or 'none'}",
                "",
                "### Functions",
                functions or "*No functions found*",
                "",
                "### Classes",
                classes or "*No classes found*",
                "",
            ],
        )
    header = f"# {document_title(DocumentKind.API, files, context)}"
    return "\n".join([header, "", *sections]).rstrip() + "\n"


def _language_counts(files: list[FileAnalysis]) -> list[str]:
    counts = Counter(item.language for item in files)
    return [f"{language} ({count})" for language, count in sorted(counts.items())]
