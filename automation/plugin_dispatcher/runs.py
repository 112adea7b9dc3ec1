"""Locate, await and read the workflow run caused by a repository dispatch.

A dispatch returns no run id, so the run is found by name and recency only.
Everything here only reads from the Actions API.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from automation.plugin_dispatcher.errors import (
    ExtractionError,
    PollCancelledError,
    PollTimeoutError,
    TransportError,
)
from automation.plugin_dispatcher.github_api import ActionsClient

QUEUED = "queued"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"

RUN_LOOKBACK = 5
DEFAULT_POLL_INTERVAL_SEC = 15.0
DEFAULT_POLL_TIMEOUT_SEC = 900.0

logger = logging.getLogger("plugin-dispatcher")


@dataclass(frozen=True)
class ExecutionRun:
    id: int
    name: str
    status: str
    conclusion: str | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any], run_id: int | None = None) -> ExecutionRun:
        return cls(
            id=int(raw.get("id", run_id or 0)),
            name=raw.get("name", "") or "",
            status=raw.get("status", "") or "",
            conclusion=raw.get("conclusion"),
        )


@dataclass(frozen=True)
class Step:
    name: str
    conclusion: str | None
    outputs: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> Step:
        outputs = raw.get("outputs") or {}
        return cls(
            name=raw.get("name", "") or "",
            conclusion=raw.get("conclusion"),
            outputs={str(k): str(v) for k, v in outputs.items()} if isinstance(outputs, dict) else {},
        )


class RunLocator:
    """Find in-progress runs named after a dispatch event type.

    Only the ``lookback`` most recent same-named runs are considered. More
    same-named runs in flight than that, or a run that already completed
    before the first query, both come back as an empty list.
    """

    def __init__(self, client: ActionsClient, lookback: int = RUN_LOOKBACK) -> None:
        self._client = client
        self._lookback = lookback

    def recent_runs(self, owner: str, repo: str, event_type: str) -> list[ExecutionRun]:
        raw_runs = self._client.list_recent_runs(owner, repo)
        named = [x for x in raw_runs if x.get("name") == event_type]
        named.sort(key=lambda x: x.get("created_at") or "", reverse=True)
        return [ExecutionRun.from_api(x) for x in named[: self._lookback]]

    def locate(self, owner: str, repo: str, event_type: str) -> list[ExecutionRun]:
        runs = [r for r in self.recent_runs(owner, repo, event_type) if r.status == IN_PROGRESS]
        logger.info("located runs repo=%s/%s event_type=%s in_progress=%s", owner, repo, event_type, len(runs))
        return runs


class CompletionPoller:
    def __init__(
        self,
        client: ActionsClient,
        *,
        interval: float = DEFAULT_POLL_INTERVAL_SEC,
        timeout: float = DEFAULT_POLL_TIMEOUT_SEC,
        max_attempts: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._interval = interval
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._clock = clock

    def wait_for_completion(
        self,
        run_id: int,
        owner: str,
        repo: str,
        cancel: threading.Event | None = None,
    ) -> ExecutionRun:
        """Return the run once its status is ``completed``.

        Raises PollTimeoutError when the attempt or wall-clock budget runs
        out and PollCancelledError as soon as ``cancel`` is set. A failed
        status read propagates as TransportError without retry.
        """
        cancel = cancel or threading.Event()
        started = self._clock()
        attempts = 0
        while True:
            if cancel.is_set():
                raise PollCancelledError(run_id, attempts)

            attempts += 1
            run = ExecutionRun.from_api(self._client.get_run(owner, repo, run_id), run_id)
            if run.status == COMPLETED:
                logger.info("run completed run_id=%s conclusion=%s checks=%s", run_id, run.conclusion, attempts)
                return run

            elapsed = self._clock() - started
            if self._max_attempts is not None and attempts >= self._max_attempts:
                raise PollTimeoutError(run_id, attempts, elapsed)
            if elapsed + self._interval > self._timeout:
                raise PollTimeoutError(run_id, attempts, elapsed)

            logger.info("polling run run_id=%s status=%s checks=%s", run_id, run.status, attempts)
            if cancel.wait(self._interval):
                raise PollCancelledError(run_id, attempts)


class OutputExtractor:
    def __init__(self, client: ActionsClient, *, allow_multiple_jobs: bool = False) -> None:
        self._client = client
        self._allow_multiple_jobs = allow_multiple_jobs

    def extract(self, run_id: int, owner: str, repo: str) -> dict[str, str]:
        """Merge the outputs of every successful step; later steps win on key collisions."""
        try:
            jobs = self._client.list_jobs(owner, repo, run_id)
        except TransportError as exc:
            raise ExtractionError(f"could not list jobs for run {run_id}: {exc}") from exc

        if not jobs:
            raise ExtractionError(f"run {run_id} exposes no jobs")
        if len(jobs) > 1 and not self._allow_multiple_jobs:
            raise ExtractionError(f"run {run_id} has {len(jobs)} jobs; expected exactly one")

        result: dict[str, str] = {}
        for job in jobs:
            try:
                raw_steps = self._client.get_job_steps(owner, repo, int(job["id"]))
            except TransportError as exc:
                raise ExtractionError(f"could not read steps for job {job.get('id')}: {exc}") from exc
            except (KeyError, TypeError, ValueError) as exc:
                raise ExtractionError(f"run {run_id} lists a job without an id") from exc

            try:
                steps = [Step.from_api(x) for x in raw_steps]
            except (AttributeError, TypeError, ValueError) as exc:
                raise ExtractionError(f"job {job['id']} of run {run_id} has malformed steps") from exc

            for step in steps:
                if step.conclusion == "success" and step.outputs:
                    result.update(step.outputs)
        return result
