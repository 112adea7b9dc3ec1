"""Plugin-side HTTP surface: serve the manifest and run signed kernel invocations.

The kernel POSTs ``{stateId, eventName, eventPayload, authToken, settings, ref,
signature}``; the signature is an HMAC-SHA256 (shared kernel secret) over the
canonical JSON of every other field.
"""

from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from jsonschema import Draft202012Validator

from automation.plugin_dispatcher.github_api import ActionsClient

HEADER_NAME = "PluginDispatcher"

INPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["stateId", "eventName", "eventPayload", "authToken", "settings", "ref", "signature"],
    "properties": {
        "stateId": {"type": "string"},
        "eventName": {"type": "string"},
        "eventPayload": {"type": "object"},
        "authToken": {"type": "string"},
        "settings": {"type": "object"},
        "ref": {"type": "string"},
        "signature": {"type": "string"},
    },
}

logger = logging.getLogger("plugin-server")


@dataclass
class PluginContext:
    event_name: str
    payload: dict[str, Any]
    config: dict[str, Any]
    env: dict[str, Any]
    client: ActionsClient = field(repr=False)
    deployment: str = "localhost"


PluginHandler = Callable[[PluginContext], "dict[str, Any] | None | Awaitable[dict[str, Any] | None]"]


def _canonical(inputs: dict[str, Any]) -> bytes:
    unsigned = {k: v for k, v in inputs.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_inputs(secret: str, inputs: dict[str, Any]) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), _canonical(inputs), hashlib.sha256).hexdigest()


def verify_inputs(secret: str, inputs: dict[str, Any]) -> bool:
    if not secret:
        return False
    signature = inputs.get("signature", "")
    if not isinstance(signature, str) or not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_inputs(secret, inputs), signature)


def _with_defaults(schema: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    for key, prop in (schema.get("properties") or {}).items():
        if key not in merged and isinstance(prop, dict) and "default" in prop:
            merged[key] = prop["default"]
    return merged


def _decode(schema: dict[str, Any] | None, data: dict[str, Any], what: str) -> dict[str, Any]:
    if schema is None:
        return data
    value = _with_defaults(schema, data)
    errors = sorted(Draft202012Validator(schema).iter_errors(value), key=lambda e: list(e.absolute_path))
    if errors:
        for err in errors:
            logger.error("%s error at %s: %s", what, "/".join(str(p) for p in err.absolute_path) or "<root>", err.message)
        raise ValueError(f"invalid {what}")
    return value


def _deployment_name(ref: str) -> str:
    host = urlparse(ref).hostname or ""
    if not host or "localhost" in host:
        return "localhost"
    return host.split(".")[0]


def _issue_number(payload: dict[str, Any]) -> int | None:
    for key in ("issue", "pull_request", "discussion"):
        number = (payload.get(key) or {}).get("number")
        if number:
            return int(number)
    return None


def render_error_comment(context: PluginContext, exc: BaseException) -> str:
    """Public issue comment for a failed handler; the stack trace stays in the log."""
    payload = context.payload
    header = (
        (payload.get("organization") or {}).get("login")
        or ((payload.get("repository") or {}).get("owner") or {}).get("login")
        or (payload.get("sender") or {}).get("login")
        or HEADER_NAME
    )
    metadata = {
        "message": str(exc),
        "name": exc.__class__.__name__,
    }
    hidden = "\n".join(
        [
            f"<!-- {HEADER_NAME} - {header} - error - {context.deployment}",
            json.dumps(metadata, indent=2).replace("--", "- -"),
            "-->",
        ]
    )
    return f"> [!CAUTION]\n> The plugin failed with `{exc.__class__.__name__}`.\n\n{hidden}\n"


def post_error_comment(context: PluginContext, exc: BaseException) -> None:
    repo = (context.payload.get("repository") or {}).get("full_name")
    number = _issue_number(context.payload)
    if not repo or number is None:
        logger.info("Cannot post comment because issue is not found in the payload")
        return
    context.client.create_comment(repo, number, render_error_comment(context, exc))


def create_plugin(
    handler: PluginHandler,
    manifest: dict[str, Any],
    *,
    kernel_secret: str | None = None,
    settings_schema: dict[str, Any] | None = None,
    env_schema: dict[str, Any] | None = None,
    env: dict[str, Any] | None = None,
    post_comment_on_error: bool = True,
    api_url: str = "https://api.github.com",
) -> FastAPI:
    secret = kernel_secret if kernel_secret is not None else os.getenv("PLUGIN_KERNEL_SECRET", "")
    input_validator = Draft202012Validator(INPUT_SCHEMA)
    app = FastAPI()

    @app.get("/manifest.json")
    def get_manifest() -> dict[str, Any]:
        return manifest

    @app.post("/")
    async def invoke(request: Request) -> dict[str, Any]:
        if request.headers.get("content-type", "").split(";")[0].strip() != "application/json":
            raise HTTPException(status_code=400, detail="Content-Type must be application/json")

        try:
            inputs = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid body") from None
        input_errors = list(input_validator.iter_errors(inputs))
        if input_errors:
            for err in input_errors:
                logger.error("input error: %s", err.message)
            raise HTTPException(status_code=400, detail="Invalid body")
        if not verify_inputs(secret, inputs):
            raise HTTPException(status_code=400, detail="Invalid signature")

        try:
            config = _decode(settings_schema, inputs["settings"], "settings")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid settings") from None
        try:
            plugin_env = _decode(env_schema, dict(os.environ) if env is None else env, "environment")
        except ValueError:
            raise HTTPException(status_code=500, detail="Invalid environment") from None

        context = PluginContext(
            event_name=inputs["eventName"],
            payload=inputs["eventPayload"],
            config=config,
            env=plugin_env,
            client=ActionsClient(inputs["authToken"], api_url),
            deployment=_deployment_name(inputs["ref"]),
        )

        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(context)
            else:
                result = await run_in_threadpool(handler, context)
        except Exception as exc:
            logger.exception("plugin handler failed event=%s", context.event_name)
            if post_comment_on_error:
                await run_in_threadpool(post_error_comment, context, exc)
            raise HTTPException(status_code=500, detail="Unexpected error")

        return {"stateId": inputs["stateId"], "output": result}

    return app
