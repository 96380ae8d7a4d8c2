"""Subprocess-based executors for shell, script and agent actions."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path

from repo_dispatch.actions.base import (
    ActionConfig,
    ActionConfigError,
    ActionExecutionError,
    ActionExecutor,
    AgentAction,
    ScriptAction,
    ShellAction,
    render_command_template,
)
from repo_dispatch.events import Event, event_key, issue_number, pull_request_number
from repo_dispatch.queue.workdir import WorkDirectoryManager

TIMEOUT_EXIT_CODE = 124


class _SubprocessExecutor(ABC):
    """Runs a command inside the event's work directory and streams its output.

    Subclasses only decide the argv; environment, working directory, output
    capture, timeouts and exit-code handling are shared.
    """

    action_type: type[ShellAction | ScriptAction | AgentAction]

    def __init__(self, workdir_manager: WorkDirectoryManager) -> None:
        self.workdir_manager = workdir_manager

    def execute(self, action: ActionConfig, event: Event, logger: logging.Logger) -> None:
        action = self._check_type(action)
        work_dir = self.workdir_manager.get_work_dir_for_event(event)
        repo_dir = self.workdir_manager.ensure_work_dir(work_dir)
        run_args = self.build_run_args(action, work_dir=work_dir, repo_dir=repo_dir)
        env = os.environ.copy()
        env.update(build_event_environment(event, work_dir=work_dir, repo_dir=repo_dir))

        logger.info("Running %s action: %s", action.type, shlex.join(run_args))
        exit_code = run_streaming(
            run_args,
            cwd=work_dir,
            env=env,
            logger=logger,
            timeout_seconds=action.timeout_seconds,
        )
        if exit_code == TIMEOUT_EXIT_CODE and action.timeout_seconds is not None:
            raise ActionExecutionError(
                f"{action.type} action timed out after {action.timeout_seconds:g}s",
                exit_code=exit_code,
            )
        if exit_code != 0:
            raise ActionExecutionError(
                f"{action.type} action exited with code {exit_code}",
                exit_code=exit_code,
            )
        logger.info("%s action finished successfully", action.type)

    def execute_dry_run(self, action: ActionConfig, event: Event, logger: logging.Logger) -> None:
        action = self._check_type(action)
        work_dir = self.workdir_manager.get_work_dir_for_event(event)
        repo_dir = self.workdir_manager.get_repository_dir(work_dir)
        run_args = self.build_run_args(action, work_dir=work_dir, repo_dir=repo_dir)
        logger.info("[DRY RUN] Would run %s action in %s", action.type, work_dir)
        logger.info("[DRY RUN] Command: %s", shlex.join(run_args))

    @abstractmethod
    def build_run_args(
        self,
        action: ActionConfig,
        *,
        work_dir: Path,
        repo_dir: Path,
    ) -> list[str]:
        """Command line for ``action``; the first item is the program."""

    def _check_type(self, action: ActionConfig) -> ActionConfig:
        if not isinstance(action, self.action_type):
            raise ActionConfigError(
                f"{type(self).__name__} cannot run {type(action).__name__}",
            )
        return action


class ShellExecutor(_SubprocessExecutor):
    action_type = ShellAction

    def build_run_args(self, action: ShellAction, *, work_dir: Path, repo_dir: Path) -> list[str]:
        return ["bash", "-c", action.command]


class ScriptExecutor(_SubprocessExecutor):
    """Relative script paths resolve against the process working directory."""

    action_type = ScriptAction

    def build_run_args(
        self,
        action: ScriptAction,
        *,
        work_dir: Path,
        repo_dir: Path,
    ) -> list[str]:
        script = Path(action.path).expanduser().resolve()
        return [action.interpreter, str(script), *action.args]


class AgentExecutor(_SubprocessExecutor):
    """Renders ``{prompt}``, ``{work_dir}`` and ``{repo_dir}`` into the template."""

    action_type = AgentAction

    def build_run_args(self, action: AgentAction, *, work_dir: Path, repo_dir: Path) -> list[str]:
        rendered = render_command_template(
            action.command_template,
            prompt=shlex.quote(action.prompt),
            work_dir=shlex.quote(str(work_dir)),
            repo_dir=shlex.quote(str(repo_dir)),
        )
        argv = shlex.split(rendered)
        if not argv:
            raise ActionConfigError("Agent command template rendered empty command.")
        return argv


def default_executors(workdir_manager: WorkDirectoryManager) -> dict[str, ActionExecutor]:
    """Executors keyed by action ``type``."""

    return {
        "shell": ShellExecutor(workdir_manager),
        "script": ScriptExecutor(workdir_manager),
        "agent": AgentExecutor(workdir_manager),
    }


def build_event_environment(event: Event, *, work_dir: Path, repo_dir: Path) -> dict[str, str]:
    """Environment variables describing the event for the action process."""

    env = {
        "EVENT_ID": str(event.get("id", "")),
        "EVENT_TYPE": str(event.get("type", "")),
        "EVENT_REPOSITORY": str(event.get("repository", "")),
        "EVENT_KEY": event_key(event),
        "EVENT_JSON": json.dumps(dict(event), ensure_ascii=False, default=str),
        "WORK_DIR": str(work_dir),
        "REPO_DIR": str(repo_dir),
    }
    for key, name in (("actor", "EVENT_ACTOR"), ("created_at", "EVENT_CREATED_AT")):
        if event.get(key) is not None:
            env[name] = str(event[key])

    number = issue_number(event)
    if number:
        env["EVENT_ISSUE_NUMBER"] = str(number)
        _copy_text(event.get("issue"), "title", env, "EVENT_ISSUE_TITLE")
    number = pull_request_number(event)
    if number:
        env["EVENT_PR_NUMBER"] = str(number)
        pull_request = event.get("pull_request") or event.get("pullRequest")
        _copy_text(pull_request, "title", env, "EVENT_PR_TITLE")
        _copy_text(pull_request, "head_ref", env, "EVENT_PR_HEAD_REF")
    _copy_text(event.get("comment"), "body", env, "EVENT_COMMENT_BODY")
    _copy_text(event.get("label"), "name", env, "EVENT_LABEL_NAME")
    return env


def run_streaming(
    run_args: list[str],
    *,
    cwd: Path,
    env: dict[str, str],
    logger: logging.Logger,
    timeout_seconds: float | None = None,
) -> int:
    """Run ``run_args`` and forward each stdout/stderr line to ``logger``.

    Returns the exit code, or ``TIMEOUT_EXIT_CODE`` when the process had to be
    terminated after ``timeout_seconds``.
    """

    try:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as error:
        raise ActionExecutionError(f"Command not found: {run_args[0]}") from error
    except OSError as error:
        raise ActionExecutionError(f"Command failed to start: {error}") from error

    timed_out = threading.Event()
    timer: threading.Timer | None = None
    if timeout_seconds is not None:

        def _on_timeout() -> None:
            timed_out.set()
            _terminate_process(process)

        timer = threading.Timer(timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()

    try:
        assert process.stdout is not None
        with process.stdout:
            for line in process.stdout:
                text = line.rstrip()
                if text:
                    logger.info("%s", text)
        returncode = process.wait()
    finally:
        if timer is not None:
            timer.cancel()

    if timed_out.is_set():
        logger.error("Process terminated after %.1fs timeout", timeout_seconds)
        return TIMEOUT_EXIT_CODE
    return returncode


def _copy_text(section: object, key: str, env: dict[str, str], name: str) -> None:
    if isinstance(section, Mapping) and section.get(key) is not None:
        env[name] = str(section[key])


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
