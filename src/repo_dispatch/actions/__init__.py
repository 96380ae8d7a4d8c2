"""Action definitions and the executors that run them for dispatched jobs."""

from repo_dispatch.actions.base import (
    ActionConfig,
    ActionConfigError,
    ActionExecutionError,
    ActionExecutor,
    AgentAction,
    ScriptAction,
    ShellAction,
    UnknownActionError,
    load_actions,
    parse_actions,
    render_command_template,
)
from repo_dispatch.actions.executors import (
    AgentExecutor,
    ScriptExecutor,
    ShellExecutor,
    default_executors,
)

__all__ = [
    "ActionConfig",
    "ActionConfigError",
    "ActionExecutionError",
    "ActionExecutor",
    "AgentAction",
    "AgentExecutor",
    "ScriptAction",
    "ScriptExecutor",
    "ShellAction",
    "ShellExecutor",
    "UnknownActionError",
    "default_executors",
    "load_actions",
    "parse_actions",
    "render_command_template",
]
