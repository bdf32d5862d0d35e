from __future__ import annotations

import json

import allure
import httpx
import pytest

from repo_docgen.collaborators.base import (
    ClassInfo,
    CommitInfo,
    DocumentContext,
    DocumentKind,
    FileAnalysis,
    FunctionInfo,
)
from repo_docgen.collaborators.documentation import (
    TEMPLATE_MODEL,
    DocumentationGenerator,
    build_prompt,
    document_title,
)

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Documentation Generation"),
]

CONTEXT = DocumentContext(repo_full_name="acme/widgets", head_revision="head-sha")
PR_CONTEXT = DocumentContext(
    repo_full_name="acme/widgets",
    pr_number=7,
    commits=[CommitInfo(sha="c1", message="Add widgets\n\nLonger body", author="octocat")],
    total_additions=12,
    total_deletions=3,
)


def _files() -> list[FileAnalysis]:
    return [
        FileAnalysis(
            path="src/app.py",
            language="python",
            functions=[FunctionInfo(name="main", line=1, params=["argv"], is_exported=True)],
            classes=[ClassInfo(name="App", line=5, methods=["run"], is_exported=True)],
            exports=["main", "App"],
            line_count=20,
        ),
        FileAnalysis(path="web/index.ts", language="typescript", line_count=8),
    ]


def _model_reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _refuse(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


def _generator(handler, *, api_key: str | None = "test-key") -> DocumentationGenerator:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return DocumentationGenerator(api_key=api_key, client=client)


@pytest.mark.parametrize(
    ("kind", "context", "files", "title"),
    [
        (DocumentKind.PR_SUMMARY, PR_CONTEXT, [], "Pull Request #7 Documentation"),
        (DocumentKind.ARCHITECTURE, CONTEXT, [], "acme/widgets - Architecture Overview"),
        (DocumentKind.ONBOARDING, CONTEXT, [], "acme/widgets - Developer Onboarding Guide"),
        (DocumentKind.API, CONTEXT, _files(), "API Documentation: src/app.py"),
        (DocumentKind.API, CONTEXT, [], "API Documentation: acme/widgets"),
    ],
)
def test_document_titles(
    kind: DocumentKind,
    context: DocumentContext,
    files: list[FileAnalysis],
    title: str,
) -> None:
    assert document_title(kind, files, context) == title


def test_model_reply_is_used_when_key_is_configured() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_model_reply("# Architecture\n\nGenerated."))

    with _generator(handler) as generator:
        document = generator.generate(DocumentKind.ARCHITECTURE, _files(), CONTEXT)

    assert document.content == "# Architecture\n\nGenerated."
    assert document.model_used == "gemini-flash-latest"
    assert document.title == "acme/widgets - Architecture Overview"
    (request,) = requests
    assert request.url.path == "/v1beta/models/gemini-flash-latest:generateContent"
    assert request.url.params["key"] == "test-key"
    prompt = json.loads(request.content)["contents"][0]["parts"][0]["text"]
    assert "Repository: acme/widgets" in prompt
    assert "- src/app.py (20 LOC, 1 functions, 1 classes)" in prompt


def test_missing_key_renders_template_without_calling_model() -> None:
    generator = _generator(_refuse, api_key=None)

    document = generator.generate(DocumentKind.PR_SUMMARY, _files(), PR_CONTEXT)

    assert generator.available is False
    assert document.model_used == TEMPLATE_MODEL
    assert document.title == "Pull Request #7 Documentation"
    assert document.content.startswith("# Pull Request #7 Summary")
    assert "This PR modifies 2 files with +12/-3 lines changed." in document.content
    assert "- `src/app.py` (20 lines, 1 functions)" in document.content
    assert "- **Languages**: python, typescript" in document.content


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"candidates": []}),
        httpx.Response(200, json=_model_reply("   ")),
    ],
)
def test_model_failures_fall_back_to_template(response: httpx.Response) -> None:
    generator = _generator(lambda request: response)

    document = generator.generate(DocumentKind.ARCHITECTURE, _files(), CONTEXT)

    assert document.model_used == TEMPLATE_MODEL
    assert document.content.startswith("# acme/widgets - Architecture Overview")
    assert "- **Total Files**: 2" in document.content
    assert "- **Total Lines**: 28" in document.content
    assert "- **python (1)** files" in document.content


def test_transport_errors_fall_back_to_template() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    document = _generator(handler).generate(DocumentKind.ONBOARDING, _files(), CONTEXT)

    assert document.model_used == TEMPLATE_MODEL
    assert document.content.startswith("# acme/widgets - Developer Onboarding")
    assert "- **Languages**: python, typescript" in document.content


def test_api_template_lists_symbols_per_file() -> None:
    document = _generator(_refuse, api_key=None).generate(DocumentKind.API, _files(), CONTEXT)

    assert document.content.startswith("# API Documentation: src/app.py")
    assert "## src/app.py" in document.content
    assert "- `main(argv)`" in document.content
    assert "- `App`: run" in document.content
    assert "- **Exports**: main, App" in document.content
    assert "## web/index.ts" in document.content
    assert "*No functions found*" in document.content


def test_pr_prompt_carries_commit_subjects() -> None:
    prompt = build_prompt(DocumentKind.PR_SUMMARY, _files(), PR_CONTEXT)

    assert "PR #7: 2 files changed, +12/-3 lines." in prompt
    assert "- Add widgets" in prompt
    assert "Longer body" not in prompt
