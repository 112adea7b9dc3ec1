#!/usr/bin/env python3
"""GitHub webhook -> plugin command dispatcher.

Supported flow:
- issue_comment.created: resolve a slash command from the comment body, fire a
  repository_dispatch for the matching plugin, then (on a bounded worker pool)
  wait for the plugin's workflow run and post its outputs back to the issue.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable

from automation.plugin_dispatcher.commands import Command, load_commands, resolve
from automation.plugin_dispatcher.comments import render_help_menu, render_outcome
from automation.plugin_dispatcher.config import Settings
from automation.plugin_dispatcher.errors import ConfigurationError
from automation.plugin_dispatcher.github_api import ActionsClient
from automation.plugin_dispatcher.invoker import InvocationOutcome, PluginInvoker

EVENTS_ALLOWED = {"issue_comment"}
COMMENT_ACTIONS_ALLOWED = {"created"}
HELP_PREFIX = "/help"

logger = logging.getLogger("plugin-dispatcher")


def _now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _setup_logging(settings: Settings) -> None:
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(settings.log_file, encoding="utf-8"),
        ],
    )


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    if not secret:
        return False
    if not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


class DeliveryLog:
    """Processed X-GitHub-Delivery ids, persisted so redeliveries never dispatch twice."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("delivery log unreadable, starting fresh path=%s", self._path)
            return {}
        deliveries = raw.get("deliveries", {}) if isinstance(raw, dict) else {}
        return deliveries if isinstance(deliveries, dict) else {}

    def claim(self, delivery: str) -> bool:
        """Record ``delivery`` and return True, or return False if it was already recorded."""
        with self._lock:
            deliveries = self._load()
            if delivery in deliveries:
                return False
            deliveries[delivery] = _now_iso()
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps({"deliveries": deliveries}, indent=2, sort_keys=True))
            return True


class WebhookApp:
    def __init__(
        self,
        settings: Settings,
        invoker: PluginInvoker,
        client: ActionsClient,
        commands_loader: Callable[[], list[Command]] | None = None,
    ) -> None:
        self.settings = settings
        self.cancel = threading.Event()
        self._invoker = invoker
        self._client = client
        self._commands_loader = commands_loader or (lambda: load_commands(settings.commands_file))
        self._deliveries = DeliveryLog(settings.state_dir / "processed_deliveries.json")
        self._executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="plugin-run")

    @classmethod
    def from_settings(cls, settings: Settings) -> WebhookApp:
        client = ActionsClient(settings.github_token, settings.api_url, timeout=settings.http_timeout_sec)
        return cls(settings, PluginInvoker.from_settings(settings), client)

    def close(self, *, cancel_pending: bool = True) -> None:
        """Stop the worker pool; by default running poll waits are cancelled."""
        if cancel_pending:
            self.cancel.set()
        self._executor.shutdown(wait=not cancel_pending, cancel_futures=cancel_pending)

    def _post_outcome(self, repo: str, issue_number: int, outcome: InvocationOutcome) -> None:
        if not self.settings.post_result_comments:
            return
        text = render_outcome(outcome)
        if text:
            self._client.create_comment(repo, issue_number, text)

    def _run_invocation(
        self, body: str, commands: list[Command], repo: str, issue_number: int, sender: str
    ) -> InvocationOutcome | None:
        try:
            return self._invoker.invoke(
                body,
                commands,
                repository=repo,
                issue_number=issue_number,
                sender=sender,
                cancel=self.cancel,
                on_result=lambda outcome: self._post_outcome(repo, issue_number, outcome),
            )
        except Exception:
            # Worker boundary: a broken invocation must not take the pool down.
            logger.exception("invocation crashed repo=%s issue=%s", repo, issue_number)
            return None

    def submit(
        self, body: str, commands: list[Command], repo: str, issue_number: int, sender: str
    ) -> Future[InvocationOutcome | None]:
        return self._executor.submit(self._run_invocation, body, commands, repo, issue_number, sender)

    def handle_webhook(
        self, evt: str, delivery: str, signature: str, body: bytes
    ) -> tuple[HTTPStatus, dict[str, Any]]:
        if evt not in EVENTS_ALLOWED:
            return HTTPStatus.OK, {"ok": True, "ignored": f"event {evt}"}

        if not _verify_signature(self.settings.webhook_secret, body, signature):
            return HTTPStatus.UNAUTHORIZED, {"ok": False, "error": "bad signature"}

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "invalid json"}
        if not isinstance(payload, dict):
            return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "invalid json"}

        action = payload.get("action")
        if not isinstance(action, str) or action not in COMMENT_ACTIONS_ALLOWED:
            return HTTPStatus.OK, {"ok": True, "ignored": f"action {action}"}

        comment = _section(payload, "comment")
        if _section(comment, "user").get("type") == "Bot":
            return HTTPStatus.OK, {"ok": True, "ignored": "bot comment"}

        repo = _section(payload, "repository").get("full_name")
        issue_number = _section(payload, "issue").get("number")
        if not isinstance(repo, str) or not repo or type(issue_number) is not int:
            return HTTPStatus.BAD_REQUEST, {"ok": False, "error": "missing issue/repo"}
        text = comment.get("body")
        if not isinstance(text, str):
            text = ""
        sender = str(_section(payload, "sender").get("login", "unknown"))

        try:
            commands = self._commands_loader()
        except ConfigurationError as exc:
            logger.error("command configuration unusable: %s", exc)
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"ok": False, "error": "command configuration invalid"}

        command = resolve(text, commands)
        if command is None and not text.startswith(HELP_PREFIX):
            return HTTPStatus.OK, {"ok": True, "ignored": "no matching command"}

        if delivery and not self._deliveries.claim(delivery):
            return HTTPStatus.OK, {"ok": True, "ignored": "duplicate delivery"}

        if command is None:
            self._client.create_comment(repo, issue_number, render_help_menu(commands))
            return HTTPStatus.OK, {"ok": True, "repo": repo, "issue": issue_number, "help": True}

        logger.info("found command handler command=%s repo=%s issue=%s", command.id, repo, issue_number)
        self.submit(text, commands, repo, issue_number, sender)
        return HTTPStatus.ACCEPTED, {
            "ok": True,
            "repo": repo,
            "issue": issue_number,
            "command": command.id,
            "event_type": command.event_type,
        }


def make_handler(app: WebhookApp) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, fmt: str, *args: Any) -> None:
            logger.info("http %s - %s", self.address_string(), fmt % args)

        def _respond(self, code: HTTPStatus, payload: dict[str, Any]) -> None:
            data = json.dumps(payload).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self) -> None:  # noqa: N802
            if self.path == "/healthz":
                self._respond(HTTPStatus.OK, {"ok": True})
                return
            self._respond(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})

        def do_POST(self) -> None:  # noqa: N802
            if self.path != "/github/webhook":
                self._respond(HTTPStatus.NOT_FOUND, {"ok": False, "error": "not found"})
                return

            body = self.rfile.read(int(self.headers.get("Content-Length", "0")))
            code, payload = app.handle_webhook(
                self.headers.get("X-GitHub-Event", ""),
                self.headers.get("X-GitHub-Delivery", ""),
                self.headers.get("X-Hub-Signature-256", ""),
                body,
            )
            self._respond(code, payload)

    return Handler


def main() -> None:
    settings = Settings.from_env()
    _setup_logging(settings)
    logger.info("Plugin dispatcher listening on http://%s:%s/github/webhook", settings.host, settings.port)
    logger.info("Health endpoint: http://%s:%s/healthz", settings.host, settings.port)
    logger.info("Commands file: %s", settings.commands_file)
    logger.info("Log file: %s", settings.log_file)
    if not settings.webhook_secret:
        logger.warning("GITHUB_WEBHOOK_SECRET is empty; signature checks will fail.")
    if not settings.github_token:
        logger.warning("GITHUB_TOKEN is empty; dispatches will be rejected.")

    app = WebhookApp.from_settings(settings)
    server = ThreadingHTTPServer((settings.host, settings.port), make_handler(app))
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down; cancelling pending runs")
    finally:
        server.server_close()
        app.close()


if __name__ == "__main__":
    main()
