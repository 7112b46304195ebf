"""CLI entrypoint for agent-loop."""

import logging
import sys
from pathlib import Path

import rich_click as click

from agent_loop import __version__
from agent_loop.agents.registry import supported_agents
from agent_loop.controllers import (
    ON_BLOCKED_CHOICES,
    AgentLoopCliController,
    ClassifyCommand,
    RunCommand,
    StatusCommand,
    TasksCommand,
    UnlockCommand,
)
from agent_loop.engine.errors import AgentLoopError
from agent_loop.trackers.registry import supported_trackers

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentLoopCliController()

_WORKSPACE_OPTION = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root. Defaults to the current directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def agent_loop(log_level: str) -> None:
    """Drive a coding agent through tracker tasks, one iteration at a time."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@agent_loop.command("run")
@_WORKSPACE_OPTION
@click.option("--max-iterations", type=click.IntRange(min=1), default=None, help="Iteration budget.")
@click.option("--agent", type=click.Choice(supported_agents()), default=None, help="Agent backend.")
@click.option(
    "--agent-command",
    default=None,
    help="Command template for the agent; must contain {prompt}.",
)
@click.option("--model", default=None, help="Model passed to the agent.")
@click.option(
    "--tracker",
    type=click.Choice(supported_trackers()),
    default=None,
    help="Tracker backend.",
)
@click.option("--prd", "prd_path", type=click.Path(path_type=Path), default=None, help="PRD file.")
@click.option("--epic", default=None, help="Beads epic to restrict tasks to.")
@click.option(
    "--delay",
    "delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait between iterations.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-iteration agent timeout in seconds.",
)
@click.option(
    "--on-blocked",
    type=click.Choice(ON_BLOCKED_CHOICES),
    default="skip",
    show_default=True,
    help="Decision applied when the agent blocks on a permission prompt.",
)
@click.option("--show-output/--hide-output", default=False, help="Echo agent output lines.")
def run(  # noqa: PLR0913
    workspace: Path | None,
    max_iterations: int | None,
    agent: str | None,
    agent_command: str | None,
    model: str | None,
    tracker: str | None,
    prd_path: Path | None,
    epic: str | None,
    delay_seconds: float | None,
    timeout_seconds: float | None,
    on_blocked: str,
    show_output: bool,
) -> None:
    """Run the agent loop until tasks are done, the budget runs out, or it is interrupted."""

    try:
        result = CONTROLLER.run(
            RunCommand(
                workspace=workspace,
                max_iterations=max_iterations,
                agent=agent,
                agent_command=agent_command,
                model=model,
                tracker=tracker,
                prd_path=prd_path,
                epic=epic,
                delay_seconds=delay_seconds,
                timeout_seconds=timeout_seconds,
                on_blocked=on_blocked,
                show_output=show_output,
            ),
            emit=click.echo,
        )
    except (AgentLoopError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


@agent_loop.command("status")
@_WORKSPACE_OPTION
def status(workspace: Path | None) -> None:
    """Show session progress and lock state for a workspace."""

    try:
        _emit_lines(CONTROLLER.status(StatusCommand(workspace=workspace)))
    except AgentLoopError as error:
        raise click.ClickException(str(error)) from error


@agent_loop.command("unlock")
@_WORKSPACE_OPTION
@click.option("--force", is_flag=True, default=False, help="Remove the lock even if its owner is alive.")
def unlock(workspace: Path | None, force: bool) -> None:
    """Remove a stale workspace lock."""

    try:
        _emit_lines(CONTROLLER.unlock(UnlockCommand(workspace=workspace, force=force)))
    except AgentLoopError as error:
        raise click.ClickException(str(error)) from error


@agent_loop.command("classify")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@click.option("--agent", default=None, help="Agent id; only prompting agents can block.")
def classify(source, agent: str | None) -> None:
    """Classify agent output from SOURCE (or stdin) as permission-blocked or not."""

    _emit_lines(CONTROLLER.classify(ClassifyCommand(text=source.read(), agent=agent)))


@agent_loop.command("tasks")
@_WORKSPACE_OPTION
@click.option(
    "--tracker",
    type=click.Choice(supported_trackers()),
    default=None,
    help="Tracker backend.",
)
@click.option("--prd", "prd_path", type=click.Path(path_type=Path), default=None, help="PRD file.")
@click.option("--epic", default=None, help="Beads epic to restrict tasks to.")
@click.option("--open-only", is_flag=True, default=False, help="Hide completed tasks.")
def tasks(
    workspace: Path | None,
    tracker: str | None,
    prd_path: Path | None,
    epic: str | None,
    open_only: bool,
) -> None:
    """List tracker tasks with their status."""

    try:
        _emit_lines(
            CONTROLLER.tasks(
                TasksCommand(
                    workspace=workspace,
                    tracker=tracker,
                    prd_path=prd_path,
                    epic=epic,
                    include_completed=not open_only,
                ),
            ),
        )
    except (AgentLoopError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop()
