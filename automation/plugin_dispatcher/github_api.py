"""Thin GitHub REST client for repository dispatches and Actions run history.

Error messages name the operation and HTTP status only; request URLs and the
token never end up in exception text.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, parse, request

from automation.plugin_dispatcher.errors import AuthError, TransportError

ACCEPT_TYPE = "application/vnd.github+json"
API_VERSION = "2022-11-28"

logger = logging.getLogger("plugin-dispatcher")


class ActionsClient:
    def __init__(self, token: str, api_url: str = "https://api.github.com", timeout: float = 15.0) -> None:
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout

    def _request(
        self,
        operation: str,
        path: str,
        *,
        method: str = "GET",
        payload: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._api_url}{path}"
        if query:
            url = f"{url}?{parse.urlencode(query)}"
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
        req = request.Request(url, data=data, method=method)
        req.add_header("Accept", ACCEPT_TYPE)
        req.add_header("X-GitHub-Api-Version", API_VERSION)
        if self._token:
            req.add_header("Authorization", f"Bearer {self._token}")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        try:
            with request.urlopen(req, timeout=self._timeout) as resp:
                body = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            if exc.code in (401, 403):
                raise AuthError(f"{operation} rejected: HTTP {exc.code}", status_code=exc.code) from exc
            raise TransportError(f"{operation} failed: HTTP {exc.code}", status_code=exc.code) from exc
        except OSError as exc:
            raise TransportError(f"{operation} failed: {exc.__class__.__name__}") from exc
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransportError(f"{operation} returned a non-JSON body") from exc

    def create_dispatch(self, owner: str, repo: str, event_type: str, client_payload: dict[str, Any]) -> None:
        self._request(
            "create dispatch",
            f"/repos/{owner}/{repo}/dispatches",
            method="POST",
            payload={"event_type": event_type, "client_payload": client_payload},
        )

    def list_recent_runs(self, owner: str, repo: str, per_page: int = 30) -> list[dict[str, Any]]:
        """Most recent repository_dispatch runs first, as returned by GitHub."""
        data = self._request(
            "list workflow runs",
            f"/repos/{owner}/{repo}/actions/runs",
            query={"event": "repository_dispatch", "per_page": per_page},
        )
        runs = data.get("workflow_runs", []) if isinstance(data, dict) else []
        return [x for x in runs if isinstance(x, dict)]

    def get_run(self, owner: str, repo: str, run_id: int) -> dict[str, Any]:
        data = self._request("get workflow run", f"/repos/{owner}/{repo}/actions/runs/{run_id}")
        if not isinstance(data, dict):
            raise TransportError("get workflow run returned an unexpected body")
        return data

    def list_jobs(self, owner: str, repo: str, run_id: int) -> list[dict[str, Any]]:
        data = self._request("list run jobs", f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs")
        jobs = data.get("jobs", []) if isinstance(data, dict) else []
        return [x for x in jobs if isinstance(x, dict)]

    def get_job_steps(self, owner: str, repo: str, job_id: int) -> list[dict[str, Any]]:
        data = self._request("get job", f"/repos/{owner}/{repo}/actions/jobs/{job_id}")
        steps = data.get("steps", []) if isinstance(data, dict) else []
        return [x for x in steps if isinstance(x, dict)]

    def create_comment(self, repo: str, issue_number: int, text: str) -> None:
        try:
            self._request(
                "create comment",
                f"/repos/{repo}/issues/{issue_number}/comments",
                method="POST",
                payload={"body": text},
            )
        except TransportError as exc:
            logger.warning("failed to post comment repo=%s issue=%s err=%s", repo, issue_number, exc)
