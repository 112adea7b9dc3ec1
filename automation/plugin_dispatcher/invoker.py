"""Resolve -> dispatch -> locate -> poll -> extract, as one tagged outcome."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from automation.plugin_dispatcher.commands import Command, resolve
from automation.plugin_dispatcher.config import Settings
from automation.plugin_dispatcher.errors import (
    AuthError,
    ExtractionError,
    PollCancelledError,
    PollTimeoutError,
    TransportError,
)
from automation.plugin_dispatcher.github_api import ActionsClient
from automation.plugin_dispatcher.runs import CompletionPoller, OutputExtractor, RunLocator

COMPLETED = "completed"
NO_MATCH = "no_match"
CONFIGURATION_ERROR = "configuration_error"
DISPATCH_FAILED = "dispatch_failed"
NO_RUN = "no_run"
LOCATE_FAILED = "locate_failed"
POLL_FAILED = "poll_failed"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"
EXTRACTION_FAILED = "extraction_failed"

# Negative but expected results; everything else besides COMPLETED is a failure.
NEUTRAL_KINDS = {NO_MATCH, NO_RUN, CANCELLED}

REPOSITORY_RE = re.compile(r"^[^/\s]+/[^/\s]+$")

logger = logging.getLogger("plugin-dispatcher")


@dataclass(frozen=True)
class DispatchRequest:
    event_type: str
    payload: dict[str, Any]

    @classmethod
    def for_comment(
        cls,
        command: Command,
        *,
        body: str,
        issue_number: int,
        sender: str,
        repo_owner: str,
        repo_name: str,
    ) -> DispatchRequest:
        # Minimal payload; the plugin workflow rebuilds everything else from it.
        return cls(
            event_type=command.event_type,
            payload={
                "body": body,
                "issueNumber": issue_number,
                "sender": sender,
                "repo": repo_name,
                "org": repo_owner,
            },
        )


@dataclass(frozen=True)
class InvocationOutcome:
    kind: str
    command_id: str | None = None
    event_type: str | None = None
    run_id: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == COMPLETED

    @property
    def failed(self) -> bool:
        return self.kind != COMPLETED and self.kind not in NEUTRAL_KINDS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PluginInvoker:
    def __init__(
        self,
        client: ActionsClient,
        locator: RunLocator,
        poller: CompletionPoller,
        extractor: OutputExtractor,
    ) -> None:
        self._client = client
        self._locator = locator
        self._poller = poller
        self._extractor = extractor

    @classmethod
    def from_settings(cls, settings: Settings) -> PluginInvoker:
        client = ActionsClient(settings.github_token, settings.api_url, timeout=settings.http_timeout_sec)
        return cls(
            client,
            RunLocator(client),
            CompletionPoller(
                client,
                interval=settings.poll_interval_sec,
                timeout=settings.poll_timeout_sec,
                max_attempts=settings.poll_max_attempts,
            ),
            OutputExtractor(client, allow_multiple_jobs=settings.allow_multiple_jobs),
        )

    def dispatch(self, owner: str, repo: str, dispatch_request: DispatchRequest) -> None:
        logger.info("dispatching event_type=%s to %s/%s", dispatch_request.event_type, owner, repo)
        self._client.create_dispatch(owner, repo, dispatch_request.event_type, dispatch_request.payload)
        logger.info("dispatched event_type=%s to %s/%s", dispatch_request.event_type, owner, repo)

    def invoke(
        self,
        text: str,
        commands: list[Command],
        *,
        repository: str,
        issue_number: int,
        sender: str,
        cancel: threading.Event | None = None,
        on_result: Callable[[InvocationOutcome], None] | None = None,
    ) -> InvocationOutcome:
        """Run the whole pipeline for one comment.

        Stage failures come back as tagged outcomes. Every outcome of a
        resolved command is handed to ``on_result``, which owns posting.
        """
        if not commands:
            return InvocationOutcome(CONFIGURATION_ERROR, detail="command set is empty")

        command = resolve(text, commands)
        if command is None:
            return InvocationOutcome(NO_MATCH)

        outcome = self._run(command, text, repository, issue_number, sender, cancel)
        log = logger.warning if outcome.failed else logger.info
        log(
            "invocation finished command=%s kind=%s run_id=%s detail=%s",
            command.id,
            outcome.kind,
            outcome.run_id,
            outcome.detail,
        )
        if on_result is not None:
            try:
                on_result(outcome)
            except Exception:
                logger.exception("result sink failed command=%s kind=%s", command.id, outcome.kind)
        return outcome

    def _run(
        self,
        command: Command,
        text: str,
        repository: str,
        issue_number: int,
        sender: str,
        cancel: threading.Event | None,
    ) -> InvocationOutcome:
        event_type = command.event_type

        def tagged(kind: str, run_id: int | None = None, detail: str = "", **extra: Any) -> InvocationOutcome:
            return InvocationOutcome(kind, command.id, event_type, run_id, detail=detail, **extra)

        if not REPOSITORY_RE.match(repository or ""):
            return tagged(CONFIGURATION_ERROR, detail=f"repository must be owner/repo, got {repository!r}")
        repo_owner, repo_name = repository.split("/", 1)
        owner, repo = command.destination(repository)

        dispatch_request = DispatchRequest.for_comment(
            command,
            body=text,
            issue_number=issue_number,
            sender=sender,
            repo_owner=repo_owner,
            repo_name=repo_name,
        )
        try:
            self.dispatch(owner, repo, dispatch_request)
        except AuthError as exc:
            return tagged(DISPATCH_FAILED, detail=f"auth: {exc}")
        except TransportError as exc:
            return tagged(DISPATCH_FAILED, detail=str(exc))

        try:
            runs = self._locator.locate(owner, repo, event_type)
        except TransportError as exc:
            return tagged(LOCATE_FAILED, detail=str(exc))
        except (TypeError, ValueError) as exc:
            return tagged(LOCATE_FAILED, detail=f"malformed run listing: {exc}")
        if not runs:
            # Same signal for "never started", "already finished" and "too many in flight".
            return tagged(NO_RUN, detail="no in-progress run found in recent history")

        run_id = runs[0].id
        try:
            run = self._poller.wait_for_completion(run_id, owner, repo, cancel)
        except PollTimeoutError as exc:
            return tagged(TIMED_OUT, run_id, str(exc))
        except PollCancelledError as exc:
            return tagged(CANCELLED, run_id, str(exc))
        except TransportError as exc:
            return tagged(POLL_FAILED, run_id, str(exc))
        except (TypeError, ValueError) as exc:
            return tagged(POLL_FAILED, run_id, f"malformed run status: {exc}")

        try:
            outputs = self._extractor.extract(run.id, owner, repo)
        except ExtractionError as exc:
            return tagged(EXTRACTION_FAILED, run.id, str(exc))

        return tagged(COMPLETED, run.id, outputs=outputs)
