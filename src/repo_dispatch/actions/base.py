"""Action configuration and the executor interface used by dispatch."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from repo_dispatch.events import Event


class ActionConfigError(ValueError):
    """Invalid action definition."""


class UnknownActionError(KeyError):
    """Action name has no configuration."""

    def __init__(self, action_name: str) -> None:
        super().__init__(action_name)
        self.action_name = action_name

    def __str__(self) -> str:
        return f'Action "{self.action_name}" not found in configuration'


class ActionExecutionError(RuntimeError):
    """Action ran and failed."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True, frozen=True)
class ShellAction:
    """Shell command run with ``bash -c``."""

    command: str
    timeout_seconds: float | None = None
    type: str = "shell"


@dataclass(slots=True, frozen=True)
class ScriptAction:
    """Script file run by an interpreter (the current Python by default)."""

    path: str
    interpreter: str = sys.executable
    args: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    type: str = "script"


@dataclass(slots=True, frozen=True)
class AgentAction:
    """CLI agent invoked through a command template containing ``{prompt}``."""

    command_template: str
    prompt: str
    timeout_seconds: float | None = None
    type: str = "agent"


ActionConfig = ShellAction | ScriptAction | AgentAction


class ActionExecutor(Protocol):
    """Protocol implemented by action executors."""

    def execute(self, action: ActionConfig, event: Event, logger: logging.Logger) -> None:
        """Run the action; raise on failure."""

    def execute_dry_run(self, action: ActionConfig, event: Event, logger: logging.Logger) -> None:
        """Log what ``execute`` would do without running it."""


def parse_actions(raw: Mapping[str, Any]) -> dict[str, ActionConfig]:
    """Build action configs from a ``{name: {"type": ..., ...}}`` mapping."""

    actions: dict[str, ActionConfig] = {}
    for name, entry in raw.items():
        if not isinstance(entry, Mapping):
            raise ActionConfigError(
                f"Action {name!r} must be an object, got {type(entry).__name__}",
            )
        actions[name] = _parse_action(name, entry)
    return actions


def load_actions(path: Path) -> dict[str, ActionConfig]:
    """Read action definitions from a JSON file."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise ActionConfigError(f"Actions file not found: {path}") from error
    except json.JSONDecodeError as error:
        raise ActionConfigError(f"Actions file is not valid JSON: {path}: {error}") from error
    if not isinstance(raw, Mapping):
        raise ActionConfigError(f"Actions file must contain a JSON object: {path}")
    return parse_actions(raw)


def render_command_template(template: str, *, prompt: str, work_dir: str, repo_dir: str) -> str:
    """Fill ``{prompt}``, ``{work_dir}`` and ``{repo_dir}``; values are inserted as given."""

    try:
        return template.strip().format(prompt=prompt, work_dir=work_dir, repo_dir=repo_dir)
    except (AttributeError, IndexError, KeyError) as error:
        raise ActionConfigError(f"Unsupported command template placeholder: {error}") from error
    except ValueError as error:
        raise ActionConfigError(f"Malformed command template: {error}") from error


def _parse_action(name: str, entry: Mapping[str, Any]) -> ActionConfig:
    action_type = entry.get("type")
    timeout = _optional_timeout(name, entry.get("timeout_seconds"))
    if action_type == "shell":
        return ShellAction(command=_required_str(name, entry, "command"), timeout_seconds=timeout)
    if action_type == "script":
        args = entry.get("args", ())
        if not isinstance(args, list | tuple) or not all(isinstance(arg, str) for arg in args):
            raise ActionConfigError(f"Action {name!r}: 'args' must be a list of strings")
        return ScriptAction(
            path=_required_str(name, entry, "path"),
            interpreter=str(entry.get("interpreter") or sys.executable),
            args=tuple(args),
            timeout_seconds=timeout,
        )
    if action_type == "agent":
        template = _required_str(name, entry, "command_template")
        if "{prompt}" not in template:
            raise ActionConfigError(f"Action {name!r}: command_template must include {{prompt}}")
        try:
            render_command_template(template, prompt="", work_dir="", repo_dir="")
        except ActionConfigError as error:
            raise ActionConfigError(f"Action {name!r}: {error}") from error
        return AgentAction(
            command_template=template,
            prompt=_required_str(name, entry, "prompt"),
            timeout_seconds=timeout,
        )
    raise ActionConfigError(f"Unknown action type for {name!r}: {action_type!r}")


def _required_str(name: str, entry: Mapping[str, Any], key: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ActionConfigError(f"Action {name!r} missing {key!r} field")
    return value


def _optional_timeout(name: str, value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ActionConfigError(f"Action {name!r}: timeout_seconds must be a positive number")
    return float(value)
