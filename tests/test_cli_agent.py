from __future__ import annotations

import threading
import time
from pathlib import Path

import allure
import pytest

from agent_loop.agents.base import (
    EXIT_CODE_INTERRUPTED,
    EXIT_CODE_SPAWN_FAILED,
    EXIT_CODE_TIMEOUT,
    AgentAdapter,
    AgentExecuteContext,
    AgentFileContext,
    CancellationToken,
)
from agent_loop.agents.cli_agent import (
    AgentCommandError,
    ClaudeAgentAdapter,
    CliAgentAdapter,
    CodexAgentAdapter,
    DroidAgentAdapter,
)
from agent_loop.agents.echo_agent import COMPLETION_MARKER
from agent_loop.agents.registry import create_agent, register_agent, supported_agents
from agent_loop.engine.errors import UnknownAdapterError

pytestmark = [
    allure.epic("Agent Adapters"),
    allure.feature("CLI Agent Execution"),
]


def _context(prompt: str = "hello", **overrides) -> AgentExecuteContext:
    return AgentExecuteContext(prompt=prompt, timeout_seconds=overrides.pop("timeout", 30.0), **overrides)


def test_echo_agent_success_streams_output(echo_agent_command: str) -> None:
    adapter = CliAgentAdapter(command=f"{echo_agent_command} --complete")
    chunks: list[tuple[str, str]] = []

    assert adapter.detect() is True
    output = adapter.execute(_context("build the thing", on_output=lambda s, c: chunks.append((s, c))))

    assert output.exit_code == 0
    assert output.timed_out is False
    assert output.interrupted is False
    assert "echo: build the thing" in output.stdout
    assert COMPLETION_MARKER in output.stdout
    assert ("stdout", "echo: build the thing\n") in chunks


def test_non_zero_exit_and_stderr_are_captured(echo_agent_command: str) -> None:
    adapter = CliAgentAdapter(command=f"{echo_agent_command} --exit-code 3 --stderr oops")

    output = adapter.execute(_context())

    assert output.exit_code == 3
    assert "oops" in output.stderr


def test_timeout_terminates_agent(echo_agent_command: str) -> None:
    adapter = CliAgentAdapter(command=f"{echo_agent_command} --sleep 30")

    started = time.monotonic()
    output = adapter.execute(_context(timeout=0.5))

    assert output.exit_code == EXIT_CODE_TIMEOUT
    assert output.timed_out is True
    assert time.monotonic() - started < 10


def test_cancellation_interrupts_running_agent(echo_agent_command: str) -> None:
    adapter = CliAgentAdapter(command=f"{echo_agent_command} --sleep 30")
    token = CancellationToken()
    seen_output = threading.Event()

    def _on_output(stream: str, chunk: str) -> None:
        if chunk.startswith("echo:"):
            seen_output.set()

    def _cancel_when_started() -> None:
        if seen_output.wait(10):
            token.cancel()

    canceller = threading.Thread(target=_cancel_when_started, daemon=True)
    canceller.start()
    started = time.monotonic()
    output = adapter.execute(_context(cancellation=token, on_output=_on_output))
    canceller.join(5)

    assert output.exit_code == EXIT_CODE_INTERRUPTED
    assert output.interrupted is True
    assert time.monotonic() - started < 10


def test_agent_ignoring_interrupt_is_terminated_after_grace(echo_agent_command: str) -> None:
    adapter = CliAgentAdapter(
        command=f"{echo_agent_command} --sleep 30 --ignore-interrupt",
        graceful_interrupt_seconds=0.3,
    )
    token = CancellationToken()
    timer = threading.Timer(0.5, token.cancel)
    timer.start()

    started = time.monotonic()
    output = adapter.execute(_context(cancellation=token))
    timer.cancel()

    assert output.exit_code == EXIT_CODE_INTERRUPTED
    assert output.interrupted is True
    assert time.monotonic() - started < 10


def test_cancelled_before_start_does_not_spawn() -> None:
    adapter = CliAgentAdapter(command="definitely-not-installed-agent {prompt}")
    token = CancellationToken()
    token.cancel()

    output = adapter.execute(_context(cancellation=token))

    assert output.interrupted is True
    assert output.exit_code == EXIT_CODE_INTERRUPTED


def test_missing_binary_reports_spawn_failure() -> None:
    adapter = CliAgentAdapter(command="definitely-not-installed-agent {prompt}")

    assert adapter.detect() is False
    output = adapter.execute(_context())

    assert output.exit_code == EXIT_CODE_SPAWN_FAILED
    assert "not found" in output.stderr


def test_interrupt_without_process_is_noop() -> None:
    CliAgentAdapter(command="agent {prompt}").interrupt()


def test_template_validation() -> None:
    with pytest.raises(AgentCommandError, match="must include"):
        CliAgentAdapter(command="agent --run").build_args(_context())
    with pytest.raises(AgentCommandError, match="needs a model"):
        CliAgentAdapter(command="agent --model {model} {prompt}").build_args(_context())
    with pytest.raises(AgentCommandError, match="Unsupported command template placeholder"):
        CliAgentAdapter(command="agent {unknown} {prompt}").build_args(_context())


def test_template_quotes_values() -> None:
    adapter = CliAgentAdapter(command="agent --model {model} -- {prompt}", extra_args=("--json",))

    args = adapter.build_args(_context("it's a 'quoted' prompt; rm -rf /", model="m 1"))

    assert args == ["agent", "--model", "m 1", "--", "it's a 'quoted' prompt; rm -rf /", "--json"]


def test_claude_args_and_file_context() -> None:
    adapter = ClaudeAgentAdapter(model="sonnet", skip_permissions=True)
    context = _context(
        "fix bug",
        files=[AgentFileContext(path=Path("src/app.py"), note="entrypoint")],
    )

    args = adapter.build_args(context)

    assert args[:4] == ["claude", "--print", "--model", "sonnet"]
    assert "--dangerously-skip-permissions" in args
    assert args[-1].startswith("fix bug")
    assert "- src/app.py - entrypoint" in args[-1]


def test_droid_args_use_jsonl_exec(tmp_path: Path) -> None:
    adapter = DroidAgentAdapter(reasoning_effort="high")

    args = adapter.build_args(_context("do it", cwd=tmp_path, model="glm"))

    assert args[:4] == ["droid", "exec", "--output-format", "stream-json"]
    assert args[args.index("--cwd") + 1] == str(tmp_path)
    assert args[args.index("--model") + 1] == "glm"
    assert args[args.index("--reasoning-effort") + 1] == "high"
    assert args[-1] == "do it"
    assert adapter.capabilities.output_format == "jsonl"


def test_codex_args_are_sandboxed() -> None:
    args = CodexAgentAdapter().build_args(_context("task"))

    assert args == ["codex", "exec", "--sandbox", "workspace-write", "task"]


def test_registry_creates_known_agents() -> None:
    agent = create_agent("Claude", model="opus", command=None)

    assert isinstance(agent, ClaudeAgentAdapter)
    assert isinstance(agent, AgentAdapter)
    assert agent.model == "opus"
    assert {"claude", "codex", "droid", "command"} <= set(supported_agents())


def test_registry_rejects_unknown_agent() -> None:
    with pytest.raises(UnknownAdapterError, match="Unsupported agent 'gpt-cli'"):
        create_agent("gpt-cli")


def test_registry_accepts_custom_agent() -> None:
    class _Custom(CliAgentAdapter):
        agent_id = "custom"
        default_command = "custom-agent {prompt}"

    register_agent("custom", _Custom)

    assert isinstance(create_agent("custom"), _Custom)
