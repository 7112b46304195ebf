"""Subprocess-based agent adapters for coding-assistant CLIs."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from typing import IO

from agent_loop.agents.base import (
    EXIT_CODE_INTERRUPTED,
    EXIT_CODE_SPAWN_FAILED,
    EXIT_CODE_TIMEOUT,
    AgentCapabilities,
    AgentExecuteContext,
    OutputCallback,
)
from agent_loop.engine.models import AgentOutput

logger = logging.getLogger(__name__)

_READER_JOIN_SECONDS = 2.0


class AgentCommandError(ValueError):
    """Command template cannot be rendered into an argv."""


class CliAgentAdapter:
    """Execute a command-template agent as a child process.

    The template must contain ``{prompt}`` and may contain ``{model}``; both
    values are shell-quoted before the template is split into argv.
    """

    agent_id = "command"
    capabilities = AgentCapabilities(
        supports_streaming=True,
        supports_interrupt=True,
        supports_file_context=False,
        supports_structured_output=False,
        output_format="text",
    )
    default_command = ""

    def __init__(
        self,
        *,
        command: str | None = None,
        model: str | None = None,
        extra_args: Sequence[str] = (),
        graceful_interrupt_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.command = (command or self.default_command).strip()
        self.model = model
        self.extra_args = tuple(extra_args)
        self.graceful_interrupt_seconds = max(0.0, graceful_interrupt_seconds)
        self.poll_interval_seconds = poll_interval_seconds
        self._process_lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._interrupt_sent = False

    def detect(self) -> bool:
        head = self.executable
        if not head:
            return False
        if os.sep in head:
            candidate = Path(head)
            return candidate.is_file() and os.access(candidate, os.X_OK)
        return shutil.which(head) is not None

    @property
    def executable(self) -> str:
        try:
            parts = shlex.split(self.command)
        except ValueError:
            return ""
        return parts[0] if parts else ""

    def build_prompt(self, context: AgentExecuteContext) -> str:
        if not context.files or not self.capabilities.supports_file_context:
            return context.prompt
        lines = [context.prompt, "", "Relevant files:"]
        for item in context.files:
            suffix = f" - {item.note}" if item.note else ""
            lines.append(f"- {item.path}{suffix}")
        return "\n".join(lines)

    def build_args(self, context: AgentExecuteContext) -> list[str]:
        model = context.model or self.model
        if not self.command:
            raise AgentCommandError(f"Agent {self.agent_id!r} command template is empty.")
        if "{prompt}" not in self.command:
            raise AgentCommandError(f"Agent {self.agent_id!r} command template must include {{prompt}}.")
        if "{model}" in self.command and not model:
            raise AgentCommandError(f"Agent {self.agent_id!r} command template needs a model.")
        try:
            rendered = self.command.format(
                prompt=shlex.quote(self.build_prompt(context)),
                model=shlex.quote(model or ""),
            )
        except (KeyError, IndexError) as error:
            raise AgentCommandError(f"Unsupported command template placeholder: {error}") from error
        argv = shlex.split(rendered)
        if not argv:
            raise AgentCommandError("Agent command template rendered empty command.")
        return [*argv, *self.extra_args]

    def execute(self, context: AgentExecuteContext) -> AgentOutput:
        start_monotonic = time.monotonic()
        if context.cancellation.is_cancelled:
            return AgentOutput(
                stdout="",
                stderr="Execution cancelled before start.",
                exit_code=EXIT_CODE_INTERRUPTED,
                duration_ms=0,
                interrupted=True,
            )
        try:
            argv = self.build_args(context)
        except AgentCommandError as error:
            return _spawn_failure(str(error), start_monotonic)

        logger.info("Starting agent %s: %s", self.agent_id, argv[0])
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=context.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError:
            return _spawn_failure(f"Agent command not found: {argv[0]}", start_monotonic)
        except OSError as error:
            return _spawn_failure(f"Agent failed to start: {error}", start_monotonic)

        with self._process_lock:
            self._process = process
            self._interrupt_sent = False

        callback = context.on_output if self.capabilities.supports_streaming else None
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            _start_reader(process.stdout, "stdout", stdout_chunks, callback),
            _start_reader(process.stderr, "stderr", stderr_chunks, callback),
        ]
        try:
            exit_code, timed_out, interrupted = self._wait(process, context, start_monotonic)
        finally:
            for reader in readers:
                reader.join(timeout=_READER_JOIN_SECONDS)
            with self._process_lock:
                self._process = None

        duration_ms = int((time.monotonic() - start_monotonic) * 1000)
        logger.info(
            "Agent %s finished: exit_code=%d timed_out=%s interrupted=%s duration_ms=%d",
            self.agent_id,
            exit_code,
            timed_out,
            interrupted,
            duration_ms,
        )
        return AgentOutput(
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            exit_code=exit_code,
            duration_ms=duration_ms,
            timed_out=timed_out,
            interrupted=interrupted,
        )

    def interrupt(self) -> None:
        with self._process_lock:
            process = self._process
            if process is None or self._interrupt_sent:
                return
            self._interrupt_sent = True
        try:
            if os.name == "nt":
                process.terminate()
            else:
                process.send_signal(signal.SIGINT)
        except OSError:
            return
        logger.info("Sent interrupt to agent %s (pid=%d)", self.agent_id, process.pid)

    def _wait(
        self,
        process: subprocess.Popen[str],
        context: AgentExecuteContext,
        start_monotonic: float,
    ) -> tuple[int, bool, bool]:
        interrupt_deadline: float | None = None
        while True:
            returncode = process.poll()
            if returncode is not None:
                if interrupt_deadline is not None:
                    return EXIT_CODE_INTERRUPTED, False, True
                return returncode, False, False

            now = time.monotonic()
            if now - start_monotonic >= context.timeout_seconds:
                logger.warning("Agent %s timed out after %.1fs", self.agent_id, context.timeout_seconds)
                _terminate_process(process)
                return EXIT_CODE_TIMEOUT, True, False

            if context.cancellation.is_cancelled:
                if interrupt_deadline is None:
                    self.interrupt()
                    interrupt_deadline = now + self.graceful_interrupt_seconds
                elif now >= interrupt_deadline:
                    logger.warning("Agent %s ignored interrupt, terminating", self.agent_id)
                    _terminate_process(process)
                    return EXIT_CODE_INTERRUPTED, False, True
                time.sleep(self.poll_interval_seconds)
                continue

            context.cancellation.wait(self.poll_interval_seconds)


class ClaudeAgentAdapter(CliAgentAdapter):
    """Claude Code CLI in non-interactive print mode."""

    agent_id = "claude"
    capabilities = AgentCapabilities(
        supports_streaming=True,
        supports_interrupt=True,
        supports_file_context=True,
        supports_structured_output=False,
        output_format="text",
    )
    default_command = "claude"

    def __init__(self, *, skip_permissions: bool = False, **kwargs) -> None:
        super().__init__(**kwargs)
        self.skip_permissions = skip_permissions

    def build_args(self, context: AgentExecuteContext) -> list[str]:
        if "{prompt}" in self.command:
            return super().build_args(context)
        argv = [*shlex.split(self.command), "--print"]
        model = context.model or self.model
        if model:
            argv.extend(["--model", model])
        if self.skip_permissions:
            argv.append("--dangerously-skip-permissions")
        argv.extend(self.extra_args)
        argv.append(self.build_prompt(context))
        return argv


class DroidAgentAdapter(CliAgentAdapter):
    """Factory Droid CLI in non-interactive exec mode with JSONL output."""

    agent_id = "droid"
    capabilities = AgentCapabilities(
        supports_streaming=True,
        supports_interrupt=True,
        supports_file_context=False,
        supports_structured_output=True,
        output_format="jsonl",
    )
    default_command = "droid"

    def __init__(
        self,
        *,
        skip_permissions: bool = False,
        reasoning_effort: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.skip_permissions = skip_permissions
        self.reasoning_effort = reasoning_effort
        if skip_permissions:
            logger.warning("Droid skip-permissions mode enabled; running with --skip-permissions-unsafe")

    def build_args(self, context: AgentExecuteContext) -> list[str]:
        if "{prompt}" in self.command:
            return super().build_args(context)
        argv = [*shlex.split(self.command), "exec", "--output-format", "stream-json"]
        cwd = context.cwd or Path.cwd()
        argv.extend(["--cwd", str(cwd)])
        model = context.model or self.model
        if model:
            argv.extend(["--model", model])
        if self.reasoning_effort:
            argv.extend(["--reasoning-effort", self.reasoning_effort])
        if self.skip_permissions:
            argv.append("--skip-permissions-unsafe")
        argv.extend(self.extra_args)
        argv.append(context.prompt)
        return argv


class CodexAgentAdapter(CliAgentAdapter):
    """Codex CLI exec mode sandboxed to the workspace."""

    agent_id = "codex"
    default_command = "codex"

    def build_args(self, context: AgentExecuteContext) -> list[str]:
        if "{prompt}" in self.command:
            return super().build_args(context)
        argv = [*shlex.split(self.command), "exec", "--sandbox", "workspace-write"]
        model = context.model or self.model
        if model:
            argv.extend(["--model", model])
        argv.extend(self.extra_args)
        argv.append(context.prompt)
        return argv


def _spawn_failure(message: str, start_monotonic: float) -> AgentOutput:
    logger.error("%s", message)
    return AgentOutput(
        stdout="",
        stderr=message,
        exit_code=EXIT_CODE_SPAWN_FAILED,
        duration_ms=int((time.monotonic() - start_monotonic) * 1000),
    )


def _start_reader(
    stream: IO[str] | None,
    name: str,
    sink: list[str],
    callback: OutputCallback | None,
) -> threading.Thread:
    thread = threading.Thread(
        target=_pump_stream,
        args=(stream, name, sink, callback),
        daemon=True,
        name=f"agent-{name}",
    )
    thread.start()
    return thread


def _pump_stream(
    stream: IO[str] | None,
    name: str,
    sink: list[str],
    callback: OutputCallback | None,
) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            sink.append(line)
            if callback is None:
                continue
            try:
                callback(name, line)
            except Exception:
                logger.exception("Agent output callback failed")
    finally:
        stream.close()


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
