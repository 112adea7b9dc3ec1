#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from automation.plugin_dispatcher.commands import load_commands
from automation.plugin_dispatcher.config import Settings
from automation.plugin_dispatcher.errors import ConfigurationError
from automation.plugin_dispatcher.invoker import PluginInvoker


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run one plugin command end to end and print its outcome.")
    parser.add_argument("--repo", required=True, help="owner/repo the comment belongs to")
    parser.add_argument("--body", required=True, help="comment body, e.g. '/help'")
    parser.add_argument("--issue", required=True, type=int, help="issue number")
    parser.add_argument("--sender", default="cli", help="comment author login")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = Settings.from_env()
    try:
        commands = load_commands(settings.commands_file)
    except ConfigurationError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}))
        return 2

    outcome = PluginInvoker.from_settings(settings).invoke(
        args.body,
        commands,
        repository=args.repo,
        issue_number=args.issue,
        sender=args.sender,
    )
    print(json.dumps({"ok": not outcome.failed, **outcome.to_dict()}))
    return 1 if outcome.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
