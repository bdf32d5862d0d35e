"""Runtime configuration for the job dispatch pipeline."""

from __future__ import annotations

import os
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class RelaySettings:
    """Outbound relay and retry sweeper settings."""

    topic: str = "analyze-repo"
    sweep_interval_seconds: int = 300
    sweep_batch_size: int = 10
    max_retries: int = 3


@dataclass(slots=True)
class BusSettings:
    """SQLite message bus delivery policy."""

    max_delivery_attempts: int = 5
    lease_seconds: int = 900
    retry_base_seconds: int = 10
    retry_max_seconds: int = 600


@dataclass(slots=True)
class WorkerSettings:
    """Worker dispatcher settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}")
    poll_interval_seconds: float = 2.0
    stale_job_seconds: int = 1_800
    max_analyzed_files: int = 50


@dataclass(slots=True)
class IntakeSettings:
    """Inbound trigger acceptance settings."""

    webhook_secret: str | None = None
    default_branches: tuple[str, ...] = ("main", "master")


@dataclass(slots=True)
class CollaboratorSettings:
    """External collaborator endpoints and credentials."""

    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    workdir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "repo-docgen")
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-flash-latest"
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class ServerSettings:
    """HTTP server bind settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    embedded_worker: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".repo_docgen.db")
    sqlite_busy_timeout_ms: int = 5_000
    relay: RelaySettings = field(default_factory=RelaySettings)
    bus: BusSettings = field(default_factory=BusSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    intake: IntakeSettings = field(default_factory=IntakeSettings)
    collaborators: CollaboratorSettings = field(default_factory=CollaboratorSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        default_workdir = Path(tempfile.gettempdir()) / "repo-docgen"
        return cls(
            db_path=db_path or Path(os.getenv("REPO_DOCGEN_DB_PATH", ".repo_docgen.db")),
            sqlite_busy_timeout_ms=_env_int("REPO_DOCGEN_SQLITE_BUSY_TIMEOUT_MS", 5000),
            relay=RelaySettings(
                topic=os.getenv("REPO_DOCGEN_TOPIC", "analyze-repo").strip(),
                sweep_interval_seconds=_env_int("REPO_DOCGEN_SWEEP_INTERVAL_SECONDS", 300),
                sweep_batch_size=_env_int("REPO_DOCGEN_SWEEP_BATCH_SIZE", 10),
                max_retries=_env_int("REPO_DOCGEN_RELAY_MAX_RETRIES", 3),
            ),
            bus=BusSettings(
                max_delivery_attempts=_env_int("REPO_DOCGEN_BUS_MAX_DELIVERY_ATTEMPTS", 5),
                lease_seconds=_env_int("REPO_DOCGEN_BUS_LEASE_SECONDS", 900),
                retry_base_seconds=_env_int("REPO_DOCGEN_BUS_RETRY_BASE_SECONDS", 10),
                retry_max_seconds=_env_int("REPO_DOCGEN_BUS_RETRY_MAX_SECONDS", 600),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv(
                    "REPO_DOCGEN_WORKER_ID",
                    f"worker-{socket.gethostname()}",
                ),
                poll_interval_seconds=_env_float(
                    "REPO_DOCGEN_WORKER_POLL_INTERVAL_SECONDS",
                    2.0,
                ),
                stale_job_seconds=_env_int("REPO_DOCGEN_STALE_JOB_SECONDS", 1800),
                max_analyzed_files=_env_int("REPO_DOCGEN_MAX_ANALYZED_FILES", 50),
            ),
            intake=IntakeSettings(
                webhook_secret=_env_optional("REPO_DOCGEN_WEBHOOK_SECRET"),
                default_branches=_env_csv("REPO_DOCGEN_DEFAULT_BRANCHES", ("main", "master")),
            ),
            collaborators=CollaboratorSettings(
                github_token=_env_optional("REPO_DOCGEN_GITHUB_TOKEN"),
                github_api_url=os.getenv(
                    "REPO_DOCGEN_GITHUB_API_URL",
                    "https://api.github.com",
                ).rstrip("/"),
                workdir=Path(os.getenv("REPO_DOCGEN_WORKDIR", str(default_workdir))),
                gemini_api_key=_env_optional("REPO_DOCGEN_GEMINI_API_KEY"),
                gemini_model=os.getenv("REPO_DOCGEN_GEMINI_MODEL", "gemini-flash-latest"),
                request_timeout_seconds=_env_float(
                    "REPO_DOCGEN_REQUEST_TIMEOUT_SECONDS",
                    60.0,
                ),
            ),
            server=ServerSettings(
                host=os.getenv("REPO_DOCGEN_HOST", "127.0.0.1"),
                port=_env_int("REPO_DOCGEN_PORT", 8080),
                embedded_worker=_env_bool("REPO_DOCGEN_SERVE_EMBEDDED_WORKER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        if not self.relay.topic:
            raise ValueError("REPO_DOCGEN_TOPIC must not be empty.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("REPO_DOCGEN_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.relay.sweep_interval_seconds <= 0:
            raise ValueError("REPO_DOCGEN_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.relay.sweep_batch_size <= 0:
            raise ValueError("REPO_DOCGEN_SWEEP_BATCH_SIZE must be > 0.")
        if self.relay.max_retries <= 0:
            raise ValueError("REPO_DOCGEN_RELAY_MAX_RETRIES must be > 0.")
        if self.bus.max_delivery_attempts <= 0:
            raise ValueError("REPO_DOCGEN_BUS_MAX_DELIVERY_ATTEMPTS must be > 0.")
        if self.bus.lease_seconds <= 0:
            raise ValueError("REPO_DOCGEN_BUS_LEASE_SECONDS must be > 0.")
        if self.bus.retry_base_seconds < 0:
            raise ValueError("REPO_DOCGEN_BUS_RETRY_BASE_SECONDS must be >= 0.")
        if self.bus.retry_max_seconds < self.bus.retry_base_seconds:
            raise ValueError(
                "REPO_DOCGEN_BUS_RETRY_MAX_SECONDS must be >= REPO_DOCGEN_BUS_RETRY_BASE_SECONDS.",
            )
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("REPO_DOCGEN_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.stale_job_seconds <= 0:
            raise ValueError("REPO_DOCGEN_STALE_JOB_SECONDS must be > 0.")
        if self.worker.max_analyzed_files <= 0:
            raise ValueError("REPO_DOCGEN_MAX_ANALYZED_FILES must be > 0.")
        if not self.intake.default_branches:
            raise ValueError("REPO_DOCGEN_DEFAULT_BRANCHES must list at least one branch.")
        parsed = urlparse(self.collaborators.github_api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid REPO_DOCGEN_GITHUB_API_URL: "
                f"{self.collaborators.github_api_url!r}. Expected an absolute http(s) URL.",
            )
        if not 0 < self.server.port < 65536:
            raise ValueError("REPO_DOCGEN_PORT must be between 1 and 65535.")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    deduped: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in deduped:
            deduped.append(token)
    return tuple(deduped)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
