"""Runtime configuration for queue clients, runners, and the queue server."""

from __future__ import annotations

import netrc
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class StoreSettings:
    """Where the queue lives and how to reach it."""

    db_path: Path = Path(".remote_tasks.db")
    url: str | None = None
    username: str = "client"
    password: str | None = None
    request_timeout_seconds: float = 30.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RunnerSettings:
    """Fixed intervals of the agent runner; there is no adaptive backoff."""

    heartbeat_interval_seconds: float = 30.0
    log_flush_interval_seconds: float = 10.0
    poll_interval_seconds: float = 30.0
    stale_threshold_seconds: float = 60.0
    final_write_attempts: int = 3
    final_write_retry_seconds: float = 1.0
    pre_task_commands: tuple[tuple[str, ...], ...] = ()
    default_tag: str | None = None


@dataclass(slots=True)
class ServerSettings:
    """HTTP queue server settings."""

    host: str = "127.0.0.1"
    port: int = 8787
    password: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None, url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        store_url = url or os.getenv("REMOTE_TASKS_URL", "").strip() or None
        return cls(
            store=StoreSettings(
                db_path=db_path or Path(os.getenv("REMOTE_TASKS_DB_PATH", ".remote_tasks.db")),
                url=store_url,
                username=os.getenv("REMOTE_TASKS_USERNAME", "client"),
                password=load_password(store_url),
                request_timeout_seconds=float(
                    os.getenv("REMOTE_TASKS_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                sqlite_busy_timeout_ms=int(os.getenv("REMOTE_TASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            runner=RunnerSettings(
                heartbeat_interval_seconds=float(
                    os.getenv("REMOTE_TASKS_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                log_flush_interval_seconds=float(
                    os.getenv("REMOTE_TASKS_LOG_FLUSH_INTERVAL_SECONDS", "10"),
                ),
                poll_interval_seconds=float(os.getenv("REMOTE_TASKS_POLL_INTERVAL_SECONDS", "30")),
                stale_threshold_seconds=float(
                    os.getenv("REMOTE_TASKS_STALE_THRESHOLD_SECONDS", "60"),
                ),
                pre_task_commands=parse_pre_task_commands(os.getenv("REMOTE_TASKS_PRE_TASK", "")),
                default_tag=os.getenv("REMOTE_TASKS_DEFAULT_TAG", "").strip() or None,
            ),
            server=ServerSettings(
                host=os.getenv("REMOTE_TASKS_HOST", "127.0.0.1"),
                port=int(os.getenv("REMOTE_TASKS_PORT", "8787")),
                password=os.getenv("REMOTE_TASKS_SERVER_PASSWORD") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for intervals that cannot work together."""

        runner = self.runner
        for name, value in (
            ("REMOTE_TASKS_HEARTBEAT_INTERVAL_SECONDS", runner.heartbeat_interval_seconds),
            ("REMOTE_TASKS_LOG_FLUSH_INTERVAL_SECONDS", runner.log_flush_interval_seconds),
            ("REMOTE_TASKS_POLL_INTERVAL_SECONDS", runner.poll_interval_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if runner.stale_threshold_seconds <= runner.heartbeat_interval_seconds:
            raise ValueError(
                "REMOTE_TASKS_STALE_THRESHOLD_SECONDS must be greater than "
                "REMOTE_TASKS_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.store.url is not None:
            _validate_store_url(self.store.url)

    def resolve_tag(self, tag: str | None) -> str:
        resolved = tag or self.runner.default_tag
        if not resolved:
            raise ValueError("Tag is required. Pass --tag or set REMOTE_TASKS_DEFAULT_TAG.")
        return resolved


def parse_pre_task_commands(raw: str) -> tuple[tuple[str, ...], ...]:
    """One command per non-empty line, split with shell quoting rules."""

    commands: list[tuple[str, ...]] = []
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        try:
            argv = shlex.split(stripped)
        except ValueError as error:
            raise ValueError(f"Invalid REMOTE_TASKS_PRE_TASK entry {stripped!r}: {error}") from error
        commands.append(tuple(argv))
    return tuple(commands)


def load_password(url: str | None, *, netrc_path: Path | None = None) -> str | None:
    """Password from REMOTE_TASKS_PASSWORD, else from the netrc entry of the URL host."""

    password = os.getenv("REMOTE_TASKS_PASSWORD")
    if password is not None:
        return password
    if not url:
        return None

    host = urlparse(url).netloc
    path = netrc_path or Path.home() / ".netrc"
    try:
        entries = netrc.netrc(str(path))
    except (FileNotFoundError, netrc.NetrcParseError):
        return None
    auth = entries.authenticators(host)
    if auth is None and ":" in host:
        auth = entries.authenticators(host.split(":", 1)[0])
    if auth is None:
        return None
    return auth[2] or None


def _validate_store_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"Invalid REMOTE_TASKS_URL: {url!r}")
