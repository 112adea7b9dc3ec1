from __future__ import annotations

import hashlib
import hmac
import json
import tempfile
import threading
import unittest
from http import HTTPStatus
from http.server import ThreadingHTTPServer
from pathlib import Path
from urllib import request

from automation.plugin_dispatcher import dispatcher as module
from automation.plugin_dispatcher import invoker
from automation.plugin_dispatcher.commands import load_commands, parse_commands
from automation.plugin_dispatcher.config import ROOT, Settings
from automation.plugin_dispatcher.errors import ConfigurationError

SECRET = "hush"


def _sign(body: bytes) -> str:
    return "sha256=" + hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _payload(body: str = "/help", user_type: str = "User", action: str = "created") -> bytes:
    return json.dumps(
        {
            "action": action,
            "repository": {"full_name": "fourmajor/hoopsmania", "name": "hoopsmania", "owner": {"login": "fourmajor"}},
            "issue": {"number": 74, "title": "CI flake"},
            "comment": {"id": 1001, "body": body, "user": {"login": "locktrace", "type": user_type}},
            "sender": {"login": "locktrace"},
        }
    ).encode("utf-8")


class RecordingInvoker:
    def __init__(self, outcome: invoker.InvocationOutcome) -> None:
        self.outcome = outcome
        self.calls: list[dict] = []

    def invoke(self, text, commands, **kwargs):
        self.calls.append({"text": text, **kwargs})
        kwargs["on_result"](self.outcome)
        return self.outcome


class RecordingClient:
    def __init__(self) -> None:
        self.comments: list[tuple[str, int, str]] = []

    def create_comment(self, repo: str, issue_number: int, text: str) -> None:
        self.comments.append((repo, issue_number, text))


class WebhookAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = Settings(webhook_secret=SECRET, state_dir=Path(self.tmp.name), max_workers=2)
        self.commands = parse_commands({"commands": [{"name": "Help Menu", "command": "/help"}]})
        self.invoker = RecordingInvoker(
            invoker.InvocationOutcome(invoker.COMPLETED, "help-menu", "help-menu", 9001, {"answer": "42"})
        )
        self.client = RecordingClient()
        self.app = module.WebhookApp(self.settings, self.invoker, self.client, lambda: self.commands)

    def tearDown(self) -> None:
        self.app.close()
        self.tmp.cleanup()

    def _post(self, body: bytes, evt: str = "issue_comment", delivery: str = "d-1", signature: str | None = None):
        return self.app.handle_webhook(evt, delivery, _sign(body) if signature is None else signature, body)

    def test_ignores_unsupported_events(self) -> None:
        code, payload = self._post(_payload(), evt="issues")
        self.assertEqual(code, HTTPStatus.OK)
        self.assertEqual(payload["ignored"], "event issues")

    def test_rejects_bad_signature(self) -> None:
        code, _ = self._post(_payload(), signature="sha256=deadbeef")
        self.assertEqual(code, HTTPStatus.UNAUTHORIZED)

    def test_rejects_everything_when_secret_unset(self) -> None:
        self.assertFalse(module._verify_signature("", b"{}", _sign(b"{}")))

    def test_skips_bot_comments_and_other_actions(self) -> None:
        self.assertEqual(self._post(_payload(user_type="Bot"))[1]["ignored"], "bot comment")
        self.assertEqual(self._post(_payload(action="edited"))[1]["ignored"], "action edited")
        self.assertEqual(self.invoker.calls, [])

    def test_matched_command_is_queued_and_result_posted(self) -> None:
        code, payload = self._post(_payload("/help please"))
        self.app.close(cancel_pending=False)

        self.assertEqual(code, HTTPStatus.ACCEPTED)
        self.assertEqual(payload["event_type"], "help-menu")
        self.assertEqual(len(self.invoker.calls), 1)
        call = self.invoker.calls[0]
        self.assertEqual(call["text"], "/help please")
        self.assertEqual(call["repository"], "fourmajor/hoopsmania")
        self.assertEqual(call["issue_number"], 74)
        self.assertEqual(call["sender"], "locktrace")
        self.assertIs(call["cancel"], self.app.cancel)
        self.assertEqual(self.client.comments, [("fourmajor/hoopsmania", 74, "42")])

    def test_duplicate_delivery_is_not_dispatched_twice(self) -> None:
        self._post(_payload(), delivery="same")
        code, payload = self._post(_payload(), delivery="same")
        self.app.close(cancel_pending=False)

        self.assertEqual(code, HTTPStatus.OK)
        self.assertEqual(payload["ignored"], "duplicate delivery")
        self.assertEqual(len(self.invoker.calls), 1)

    def test_unmatched_help_prefix_posts_help_menu(self) -> None:
        self.commands = parse_commands({"commands": [{"name": "Research Command", "command": "/research"}]})

        code, payload = self._post(_payload("/helpme"))

        self.assertEqual(code, HTTPStatus.OK)
        self.assertTrue(payload["help"])
        self.assertEqual(len(self.client.comments), 1)
        self.assertIn("`research-command`", self.client.comments[0][2])
        self.assertEqual(self.invoker.calls, [])

    def test_plain_comment_is_ignored(self) -> None:
        code, payload = self._post(_payload("nice work"))
        self.assertEqual(code, HTTPStatus.OK)
        self.assertEqual(payload["ignored"], "no matching command")

    def test_invalid_command_configuration_is_server_error(self) -> None:
        def broken():
            raise ConfigurationError("command set is empty")

        app = module.WebhookApp(self.settings, self.invoker, self.client, broken)
        try:
            code, payload = app.handle_webhook("issue_comment", "d-9", _sign(_payload()), _payload())
        finally:
            app.close()

        self.assertEqual(code, HTTPStatus.INTERNAL_SERVER_ERROR)
        self.assertNotIn("empty", payload["error"])

    def test_neutral_outcome_posts_nothing(self) -> None:
        self.invoker.outcome = invoker.InvocationOutcome(invoker.NO_RUN, "help-menu", "help-menu")
        self._post(_payload())
        self.app.close(cancel_pending=False)

        self.assertEqual(self.client.comments, [])

    def test_non_object_body_is_rejected(self) -> None:
        code, payload = self._post(b"[]")

        self.assertEqual(code, HTTPStatus.BAD_REQUEST)
        self.assertEqual(payload["error"], "invalid json")
        self.assertEqual(self.invoker.calls, [])

    def test_non_numeric_issue_number_is_rejected(self) -> None:
        raw = json.loads(_payload())
        raw["issue"]["number"] = "seventy-four"

        code, payload = self._post(json.dumps(raw).encode("utf-8"))

        self.assertEqual(code, HTTPStatus.BAD_REQUEST)
        self.assertEqual(payload["error"], "missing issue/repo")
        self.assertEqual(self.invoker.calls, [])

    def test_malformed_sections_do_not_crash(self) -> None:
        raw = json.loads(_payload())
        raw["comment"] = "not an object"
        listed_action = {**raw, "action": ["created"]}

        code, payload = self._post(json.dumps(raw).encode("utf-8"))
        self.assertEqual(code, HTTPStatus.OK)
        self.assertEqual(payload["ignored"], "no matching command")

        code, payload = self._post(json.dumps(listed_action).encode("utf-8"), delivery="d-2")
        self.assertEqual(code, HTTPStatus.OK)
        self.assertEqual(payload["ignored"], "action ['created']")

    def test_concurrent_redeliveries_claim_once(self) -> None:
        log = module.DeliveryLog(Path(self.tmp.name) / "claims.json")
        barrier = threading.Barrier(8)
        results = []

        def claim() -> None:
            barrier.wait()
            results.append(log.claim("same-delivery"))

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(results), [False] * 7 + [True])
        self.assertFalse(log.claim("same-delivery"))

    def test_sample_configuration_answers_help_with_menu(self) -> None:
        self.commands = load_commands(ROOT / ".openclaw" / "plugin-commands.yaml")

        code, payload = self._post(_payload("/help"))

        self.assertEqual(code, HTTPStatus.OK)
        self.assertTrue(payload["help"])
        self.assertEqual(self.invoker.calls, [])
        self.assertIn("### Available Commands", self.client.comments[0][2])
        self.assertIn("`wallet-registration`", self.client.comments[0][2])

    def test_crashing_invocation_does_not_escape_worker(self) -> None:
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        self.invoker.invoke = explode
        future = self.app.submit("/help", self.commands, "fourmajor/hoopsmania", 74, "locktrace")

        self.assertIsNone(future.result(timeout=5))


class WebhookServerTests(unittest.TestCase):
    def test_health_and_webhook_over_http(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            settings = Settings(webhook_secret=SECRET, state_dir=Path(tmp))
            app = module.WebhookApp(
                settings,
                RecordingInvoker(invoker.InvocationOutcome(invoker.NO_RUN, "help-menu", "help-menu")),
                RecordingClient(),
                lambda: parse_commands({"commands": [{"name": "Help Menu", "command": "/help"}]}),
            )
            server = ThreadingHTTPServer(("127.0.0.1", 0), module.make_handler(app))
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            base = f"http://127.0.0.1:{server.server_address[1]}"
            try:
                with request.urlopen(f"{base}/healthz", timeout=5) as resp:
                    self.assertEqual(json.loads(resp.read()), {"ok": True})

                body = _payload()
                req = request.Request(f"{base}/github/webhook", data=body, method="POST")
                req.add_header("Content-Type", "application/json")
                req.add_header("X-GitHub-Event", "issue_comment")
                req.add_header("X-GitHub-Delivery", "d-http")
                req.add_header("X-Hub-Signature-256", _sign(body))
                with request.urlopen(req, timeout=5) as resp:
                    self.assertEqual(resp.status, 202)
                    self.assertEqual(json.loads(resp.read())["command"], "help-menu")
            finally:
                server.shutdown()
                server.server_close()
                app.close()


if __name__ == "__main__":
    unittest.main()
