"""Runtime settings for the plugin dispatcher, read once from the environment.

Every component that talks to GitHub receives its credential through these
settings at construction time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() not in {"0", "false", "no"}


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    github_token: str = field(default="", repr=False)
    webhook_secret: str = field(default="", repr=False)
    api_url: str = "https://api.github.com"
    commands_file: Path = ROOT / ".openclaw" / "plugin-commands.yaml"
    host: str = "127.0.0.1"
    port: int = 8787
    max_workers: int = 8
    http_timeout_sec: float = 15.0
    poll_interval_sec: float = 15.0
    poll_timeout_sec: float = 900.0
    poll_max_attempts: int | None = None
    allow_multiple_jobs: bool = False
    post_result_comments: bool = True
    state_dir: Path = ROOT / ".openclaw" / "state"
    log_file: Path = ROOT / ".openclaw" / "state" / "plugin-dispatcher.log"

    @classmethod
    def from_env(cls) -> Settings:
        state_dir = Path(os.getenv("STATE_DIR", ROOT / ".openclaw" / "state"))
        log_dir = Path(os.getenv("DISPATCHER_LOG_DIR", state_dir))
        return cls(
            github_token=os.getenv("GITHUB_TOKEN", ""),
            webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET", ""),
            api_url=os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/"),
            commands_file=Path(os.getenv("COMMANDS_FILE", ROOT / ".openclaw" / "plugin-commands.yaml")),
            host=os.getenv("DISPATCHER_HOST", "127.0.0.1"),
            port=int(os.getenv("DISPATCHER_PORT", "8787")),
            max_workers=max(1, int(os.getenv("DISPATCHER_MAX_WORKERS", "8"))),
            http_timeout_sec=float(os.getenv("GITHUB_HTTP_TIMEOUT_SEC", "15")),
            poll_interval_sec=float(os.getenv("RUN_POLL_INTERVAL_SEC", "15")),
            poll_timeout_sec=float(os.getenv("RUN_POLL_TIMEOUT_SEC", "900")),
            poll_max_attempts=_env_int("RUN_POLL_MAX_ATTEMPTS", None),
            allow_multiple_jobs=_env_flag("ALLOW_MULTIPLE_JOBS", "0"),
            post_result_comments=_env_flag("POST_RESULT_COMMENTS", "1"),
            state_dir=state_dir,
            log_file=Path(os.getenv("DISPATCHER_LOG_FILE", log_dir / "plugin-dispatcher.log")),
        )
