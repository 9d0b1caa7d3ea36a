"""Sidekick bridge CLI.

Usage:
    sidekick-bridge chat "List the files here"            # ask before each approval
    sidekick-bridge chat "Run the tests" --approvals safe  # auto-approve read-only commands
    sidekick-bridge chat "..." --json                      # one wire event per line
    sidekick-bridge config                                 # show resolved configuration

Events go to stdout; logs and prompts go to stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import sys
import threading
from pathlib import Path

import click

from .approvals import ApprovalDecision, ApprovalKind
from .bridge import AgentBridge, WorkspaceContext
from .config import PEER_SUBCOMMAND, BridgeConfig, SandboxMode
from .errors import BridgeError
from .events import (
    ApprovalRequestEvent,
    BridgeEvent,
    DeltaKind,
    ErrorEvent,
    ItemCompletedEvent,
    ItemDeltaEvent,
    ItemStartedEvent,
    TurnCompletedEvent,
)

logger = logging.getLogger(__name__)

APPROVAL_MODES = ("ask", "deny", "safe", "all")

# Read-only commands auto-approved by ``--approvals safe``
SAFE_COMMAND_PREFIXES = (
    "ls",
    "pwd",
    "whoami",
    "cat ",
    "head ",
    "tail ",
    "rg ",
    "find ",
    "git status",
    "git diff",
)

_SHELL_WRAPPER_PATTERNS = (
    re.compile(r"-lc\s+(.+)$"),
    re.compile(r"-c\s+(.+)$"),
)


def extract_inner_command(command: str | None) -> str:
    """Unwrap ``bash -lc '<cmd>'`` style invocations to the inner command."""
    if not command:
        return ""
    for pattern in _SHELL_WRAPPER_PATTERNS:
        match = pattern.search(command)
        if match:
            inner = match.group(1).strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
                inner = inner[1:-1].strip()
            return inner
    return command.strip()


def is_safe_command(command: str) -> bool:
    command = command.strip()
    return any(command == prefix or command.startswith(prefix) for prefix in SAFE_COMMAND_PREFIXES)


def automatic_decision(event: ApprovalRequestEvent, mode: str) -> ApprovalDecision | None:
    """Decision for a non-interactive mode, or None when the user must be asked."""
    if mode == "all":
        return ApprovalDecision.APPROVE_ONCE
    if mode == "deny":
        return ApprovalDecision.DENY_ONCE
    if mode == "safe":
        approval = event.approval
        command = extract_inner_command(approval.details.get("command"))
        if approval.kind == ApprovalKind.COMMAND and command and is_safe_command(command):
            return ApprovalDecision.APPROVE_ONCE
        return ApprovalDecision.DENY_ONCE
    return None


def format_event(event: BridgeEvent) -> str | None:
    """Human-readable rendering of an event, or None to print nothing."""
    if isinstance(event, ItemDeltaEvent):
        if event.kind == DeltaKind.REASONING_SUMMARY:
            return None
        return event.delta
    if isinstance(event, ItemStartedEvent):
        if event.item.get("type") == "commandExecution":
            return f"\n$ {event.item.get('command', '')}\n"
        return None
    if isinstance(event, ItemCompletedEvent):
        if event.item.get("type") == "commandExecution" and "exitCode" in event.item:
            return f"[exit {event.item['exitCode']}]\n"
        return None
    if isinstance(event, TurnCompletedEvent):
        return f"\n[turn {event.status or 'completed'}]\n"
    if isinstance(event, ErrorEvent):
        return f"\n[error] {event.message}\n"
    return None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _load_config(
    config_path: str | None,
    binary: str | None = None,
    model: str | None = None,
    sandbox: str | None = None,
    approval_policy: str | None = None,
) -> BridgeConfig:
    config = BridgeConfig.from_env()
    if config_path:
        config = BridgeConfig.from_yaml(config_path, base=config)
    if binary:
        config.command = [binary, PEER_SUBCOMMAND]
    if model:
        config.model = model
    if sandbox:
        config.sandbox = SandboxMode(sandbox)
    if approval_policy:
        config.approval_policy = approval_policy
    return config


@click.group()
@click.version_option(package_name="sidekick-bridge")
def main() -> None:
    """Drive a codex app-server peer from the command line."""


# =============================================================================
# Chat Command
# =============================================================================


@main.command("chat")
@click.argument("prompt")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Workspace root (default: cwd)")
@click.option("--model", default=None, help="Model for the new thread")
@click.option(
    "--sandbox",
    type=click.Choice([mode.value for mode in SandboxMode]),
    default=None,
    help="Sandbox mode for the new thread",
)
@click.option("--approval-policy", default=None, help="Approval policy sent on thread/start")
@click.option("--bin", "binary", default=None, help="Path to the codex binary")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML config file",
)
@click.option("--attach", "attachments", multiple=True, help="File to attach (repeatable)")
@click.option(
    "--approvals",
    type=click.Choice(APPROVAL_MODES),
    default="ask",
    show_default=True,
    help="How approval requests are answered",
)
@click.option("--json", "output_json", is_flag=True, help="Print events as JSON lines")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging to stderr")
def chat(
    prompt: str,
    cwd: str | None,
    model: str | None,
    sandbox: str | None,
    approval_policy: str | None,
    binary: str | None,
    config_path: str | None,
    attachments: tuple[str, ...],
    approvals: str,
    output_json: bool,
    verbose: bool,
) -> None:
    """Send PROMPT in a new thread and stream events until the turn completes.

    Examples:

        sidekick-bridge chat "What does this repo do?"
        sidekick-bridge chat "Show git status" --approvals safe --json
    """
    _configure_logging(verbose)

    try:
        config = _load_config(config_path, binary, model, sandbox, approval_policy)
    except (OSError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)

    workspace = str(Path(cwd or Path.cwd()).resolve())

    try:
        exit_code = asyncio.run(
            run_chat(config, prompt, workspace, list(attachments), approvals, output_json)
        )
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        exit_code = 130
    sys.exit(exit_code)


async def run_chat(
    config: BridgeConfig,
    prompt: str,
    workspace: str,
    attachments: list[str],
    approvals: str,
    output_json: bool,
    bridge: AgentBridge | None = None,
) -> int:
    """Run one prompt to completion. Returns the process exit code."""
    bridge = bridge or AgentBridge(config)
    loop = asyncio.get_running_loop()
    finished: asyncio.Future[int] = loop.create_future()
    pending: asyncio.Queue[ApprovalRequestEvent] = asyncio.Queue()

    def on_event(event: BridgeEvent) -> None:
        if output_json:
            click.echo(json.dumps(event.to_wire(), ensure_ascii=False))
        else:
            text = format_event(event)
            if text:
                click.echo(text, nl=False)

        if isinstance(event, ApprovalRequestEvent):
            pending.put_nowait(event)
        elif isinstance(event, TurnCompletedEvent) and not finished.done():
            finished.set_result(1 if event.status == "failed" else 0)
        elif isinstance(event, ErrorEvent) and not finished.done():
            finished.set_result(1)

    bridge.on_event(on_event)
    answering = asyncio.create_task(_answer_approvals(bridge, pending, approvals))

    try:
        await bridge.wait_ready()
        thread_id = await bridge.create_thread(WorkspaceContext(workspace_root=workspace))
        turn_id = await bridge.send_message(thread_id, prompt, attachments)
        logger.info(f"Started turn {turn_id} on thread {thread_id}")
        return await finished
    except BridgeError as e:
        click.echo(f"Error: {e}", err=True)
        return 1
    finally:
        answering.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await answering
        await bridge.shutdown()


async def _answer_approvals(
    bridge: AgentBridge,
    pending: asyncio.Queue[ApprovalRequestEvent],
    mode: str,
) -> None:
    while True:
        event = await pending.get()
        decision = automatic_decision(event, mode)
        if decision is None:
            decision = await _ask_in_background(event)
        elif event.approval.details.get("command"):
            click.echo(f"[approval] {decision.value}: {event.approval.details['command']}", err=True)
        await bridge.respond_approval(event.approval.id, decision)


def _ask_in_background(event: ApprovalRequestEvent) -> asyncio.Future[ApprovalDecision]:
    """Prompt on a daemon thread so a pending prompt never blocks loop shutdown.

    Cancelling the returned future abandons the prompt; the thread's late
    answer is discarded.
    """
    loop = asyncio.get_running_loop()
    answer: asyncio.Future[ApprovalDecision] = loop.create_future()

    def settle(decision: ApprovalDecision | None, error: BaseException | None) -> None:
        if answer.done():
            return
        if error is not None:
            answer.set_exception(error)
        else:
            answer.set_result(decision)

    def prompt() -> None:
        decision, error = None, None
        try:
            decision = _ask(event)
        except click.Abort:
            decision = ApprovalDecision.DENY_ONCE
        except Exception as e:
            error = e
        # The loop may already be closed once the chat has finished
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, decision, error)

    threading.Thread(target=prompt, name="approval-prompt", daemon=True).start()
    return answer


def _ask(event: ApprovalRequestEvent) -> ApprovalDecision:
    approval = event.approval
    subject = approval.details.get("command") or approval.details.get("method", "")
    approved = click.confirm(f"{approval.title} {subject}", default=False, err=True)
    return ApprovalDecision.APPROVE_ONCE if approved else ApprovalDecision.DENY_ONCE


# =============================================================================
# Config Command
# =============================================================================


@main.command("config")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML config file",
)
def show_config(config_path: str | None) -> None:
    """Show the resolved configuration as JSON.

    Examples:

        sidekick-bridge config
        sidekick-bridge config --config bridge.yaml
    """
    try:
        config = _load_config(config_path)
    except (OSError, ValueError) as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(2)

    click.echo(json.dumps(config.to_dict(), indent=2))


if __name__ == "__main__":
    main()
