"""Deterministic detection of agents stalled on human permission prompts.

The classifier is a pure function over untrusted agent text. Rules are evaluated
in table order and the first match wins, so more specific agent utterances
(``Claude wants to run: ...``) come before generic phrasing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_loop.engine.models import AgentOutput, PermissionBlockResult

PERMISSION_CLASSIFIER_VERSION = 1

PROMPTING_AGENT_FAMILY = "claude"

MAX_COMMAND_CHARS = 100
MAX_MESSAGE_CHARS = 150
MESSAGE_CONTEXT_BEFORE = 20
MESSAGE_CONTEXT_AFTER = 80
DEFAULT_MESSAGE = "Permission required"
STALL_OPERATION = "blocked operation"

_ELLIPSIS = "..."
_FLAGS = re.IGNORECASE | re.MULTILINE
_PREFIX_WINDOW = 60

_PAST_TENSE = re.compile(r"\b(?:was|were|been|had)\s+$", re.IGNORECASE)
_PAST_NARRATION = re.compile(r"\b(?:was|were|been|had)\s+(?:\w+\s+){0,2}$", re.IGNORECASE)
_SETTLED = re.compile(r"\b(?:previously|already)\s+$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class PermissionRule:
    """One ordered classification rule.

    When ``captures_command`` is set, group 1 of ``pattern`` holds the
    blocked command or file path. A match whose preceding text ends with
    ``excluded_prefix`` is narration, not a live prompt, and is skipped.
    """

    name: str
    pattern: re.Pattern[str]
    operation: str
    captures_command: bool = False
    excluded_prefix: re.Pattern[str] | None = None


PERMISSION_RULES: tuple[PermissionRule, ...] = (
    PermissionRule(
        name="agent_wants_to_run",
        pattern=re.compile(r"^[ \t]*Claude wants to (?:run|execute)[:\s]+(.+)", _FLAGS),
        operation="bash command",
        captures_command=True,
    ),
    PermissionRule(
        name="agent_wants_to_write",
        pattern=re.compile(
            r"^[ \t]*Claude wants to (?:write|create|modify)(?: to)?[:\s]+(.+)",
            _FLAGS,
        ),
        operation="file modification",
        captures_command=True,
    ),
    PermissionRule(
        name="agent_wants_to_edit",
        pattern=re.compile(r"^[ \t]*Claude wants to edit[:\s]+(.+)", _FLAGS),
        operation="file edit",
        captures_command=True,
    ),
    PermissionRule(
        name="waiting_for_permission",
        pattern=re.compile(
            r"\bwaiting for (?:user )?(?:permission|approval)\b",
            _FLAGS,
        ),
        operation="operation",
        excluded_prefix=_PAST_TENSE,
    ),
    PermissionRule(
        name="jsonl_permission_marker",
        pattern=re.compile(r'"type"\s*:\s*"permission"', _FLAGS),
        operation="permission request",
    ),
    PermissionRule(
        name="requires_confirmation",
        pattern=re.compile(
            r"\brequires? (?:user )?(?:input|confirmation|approval)\b",
            _FLAGS,
        ),
        operation="user confirmation",
        excluded_prefix=_SETTLED,
    ),
    PermissionRule(
        name="git_permission",
        pattern=re.compile(
            r"(?:\bgit (?:commit|push|pull|merge|rebase)\b[^\n]*?\brequires?\b"
            r"|\bpermission\b[^\n]*?\bgit\b)",
            _FLAGS,
        ),
        operation="git operation",
        excluded_prefix=_PAST_NARRATION,
    ),
    PermissionRule(
        name="interactive_keypress",
        pattern=re.compile(
            r"\b(?:press|hit|type)\s+(?:\[?[yn]\]?|enter|return)\s+to\s+"
            r"(?:continue|confirm|proceed)\b",
            _FLAGS,
        ),
        operation="interactive prompt",
    ),
)

STALL_RULES: tuple[PermissionRule, ...] = (
    PermissionRule(
        name="waiting_for_input",
        pattern=re.compile(r"\bwaiting for input\b", _FLAGS),
        operation=STALL_OPERATION,
        excluded_prefix=_PAST_TENSE,
    ),
    PermissionRule(
        name="awaiting_response",
        pattern=re.compile(r"\bawaiting response\b", _FLAGS),
        operation=STALL_OPERATION,
        excluded_prefix=_PAST_TENSE,
    ),
    PermissionRule(
        name="paused_for_confirmation",
        pattern=re.compile(r"\bpaused for confirmation\b", _FLAGS),
        operation=STALL_OPERATION,
        excluded_prefix=_PAST_TENSE,
    ),
    PermissionRule(
        name="jsonl_blocked_tool",
        pattern=re.compile(
            r'"tool"\s*:\s*"(?:Bash|Write|Edit)".*?"blocked"\s*:\s*true',
            _FLAGS | re.DOTALL,
        ),
        operation=STALL_OPERATION,
    ),
)

_OPERATION_CONTEXT: dict[str, tuple[str, str]] = {
    "bash command": (
        "The agent needs to run a shell command to complete this task.",
        "The command will execute in your terminal with your permissions.",
    ),
    "file modification": (
        "The agent needs to create or modify a file to complete this task.",
        "This will write changes to your filesystem.",
    ),
    "file edit": (
        "The agent needs to edit an existing file to complete this task.",
        "This will modify the contents of the specified file.",
    ),
    "git operation": (
        "The agent needs to perform a git operation to complete this task.",
        "This may modify your git history or push changes to a remote.",
    ),
    "permission request": (
        "The agent needs your approval before proceeding.",
        "Review the operation details before allowing it to continue.",
    ),
    "user confirmation": (
        "The agent needs your approval before proceeding.",
        "Review the operation details before allowing it to continue.",
    ),
    "interactive prompt": (
        "The agent hit an interactive prompt requiring input.",
        "The operation is waiting for user input to proceed.",
    ),
}
_DEFAULT_CONTEXT = (
    "The agent needs permission to perform an operation.",
    "Review the details below before proceeding.",
)


def classify(output: str, agent_id: str | None = None) -> PermissionBlockResult:
    """Classify agent output as blocked on a permission prompt or not."""

    if agent_id is not None and not is_prompting_agent(agent_id):
        return PermissionBlockResult(is_blocked=False)
    if not output or not output.strip():
        return PermissionBlockResult(is_blocked=False)

    for rule in PERMISSION_RULES:
        match = _search(rule, output)
        if match is None:
            continue
        full_command = _captured_command(match) if rule.captures_command else None
        return PermissionBlockResult(
            is_blocked=True,
            operation=rule.operation,
            message=_extract_message(output, match),
            blocked_command=_truncate(full_command, MAX_COMMAND_CHARS) if full_command else None,
            full_blocked_command=full_command,
        )

    for rule in STALL_RULES:
        match = _search(rule, output)
        if match is not None:
            return PermissionBlockResult(
                is_blocked=True,
                operation=rule.operation,
                message=_extract_message(output, match),
            )

    return PermissionBlockResult(is_blocked=False)


def classify_agent_output(output: AgentOutput, agent_id: str | None = None) -> PermissionBlockResult:
    """Classify combined stdout and stderr of an agent execution."""

    return classify(output.combined, agent_id)


def is_prompting_agent(agent_id: str) -> bool:
    """Whether the agent family emits human-readable permission prompts."""

    return PROMPTING_AGENT_FAMILY in agent_id.lower()


def describe_operation(operation: str | None) -> tuple[str, str]:
    """Return ``(why, affects)`` explanation lines for a blocked operation label."""

    if operation is None:
        return _DEFAULT_CONTEXT
    return _OPERATION_CONTEXT.get(operation.lower(), _DEFAULT_CONTEXT)


def _search(rule: PermissionRule, output: str) -> re.Match[str] | None:
    for match in rule.pattern.finditer(output):
        if rule.excluded_prefix is None:
            return match
        window_start = max(0, match.start() - _PREFIX_WINDOW)
        if rule.excluded_prefix.search(output[window_start : match.start()]) is None:
            return match
    return None


def _captured_command(match: re.Match[str]) -> str | None:
    command = match.group(1).strip()
    return command or None


def _extract_message(output: str, match: re.Match[str] | None) -> str:
    if match is None:
        return DEFAULT_MESSAGE
    start = max(0, match.start() - MESSAGE_CONTEXT_BEFORE)
    end = min(len(output), match.end() + MESSAGE_CONTEXT_AFTER)
    message = re.sub(r"\s+", " ", output[start:end]).strip()
    if not message:
        return DEFAULT_MESSAGE
    return _truncate(message, MAX_MESSAGE_CHARS)


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - len(_ELLIPSIS)] + _ELLIPSIS
