"""Command configuration loading and comment -> command resolution."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from automation.plugin_dispatcher.errors import ConfigurationError

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "commands.schema.json"


def derive_event_type(display_name: str) -> str:
    """Lowercased display name with whitespace replaced by hyphens ("Help Menu" -> "help-menu")."""
    return re.sub(r"\s", "-", display_name.lower())


@dataclass(frozen=True)
class Command:
    id: str
    match_pattern: str
    display_name: str
    description: str = ""
    example_usage: str = ""
    enabled: bool = True
    target: str | None = None
    pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            compiled = re.compile(self.match_pattern)
        except re.error as exc:
            raise ConfigurationError(f"command {self.id!r} has an invalid pattern: {exc}") from exc
        object.__setattr__(self, "pattern", compiled)

    @property
    def event_type(self) -> str:
        return derive_event_type(self.display_name)

    def destination(self, default_repo: str) -> tuple[str, str]:
        owner, repo = (self.target or default_repo).split("/", 1)
        return owner, repo


def _schema_errors(data: Any) -> list[str]:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    return [f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors]


def parse_commands(data: Any) -> list[Command]:
    errors = _schema_errors(data)
    if errors:
        raise ConfigurationError(f"schema error at {errors[0]}")

    commands = [
        Command(
            id=raw.get("id") or derive_event_type(raw["name"]),
            match_pattern=raw["command"],
            display_name=raw["name"],
            description=raw.get("description", ""),
            example_usage=raw.get("example", ""),
            enabled=raw.get("enabled", True),
            target=raw.get("target"),
        )
        for raw in data["commands"]
    ]
    if not commands:
        raise ConfigurationError("command set is empty")

    # The run locator tells runs apart by event type alone.
    seen: dict[tuple[str | None, str], str] = {}
    for cmd in commands:
        if not cmd.enabled:
            continue
        key = (cmd.target, cmd.event_type)
        if key in seen:
            raise ConfigurationError(
                f"commands {seen[key]!r} and {cmd.id!r} share dispatch event type {cmd.event_type!r}"
            )
        seen[key] = cmd.id
    return commands


def load_commands(path: Path) -> list[Command]:
    if not path.exists():
        raise ConfigurationError(f"commands file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"commands file is not valid YAML: {path}") from exc
    return parse_commands(data or {})


@lru_cache(maxsize=64)
def _alternation(patterns: tuple[str, ...]) -> re.Pattern[str]:
    branches = "|".join(f"(?P<c{i}>(?:{p}))(?!\\w)" for i, p in enumerate(patterns))
    return re.compile(f"^(?:{branches})")


def resolve(text: str, commands: list[Command]) -> Command | None:
    """Return the first enabled command (configuration order) matching a prefix of ``text``."""
    enabled = [cmd for cmd in commands if cmd.enabled]
    if not enabled:
        return None

    match = _alternation(tuple(cmd.match_pattern for cmd in enabled)).match(text)
    if not match:
        return None
    for i, cmd in enumerate(enabled):
        if match.group(f"c{i}") is not None:
            return cmd
    return None
