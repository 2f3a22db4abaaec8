"""agent-engine CLI entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

import click
import litellm
from prompt_toolkit import PromptSession
from rich.logging import RichHandler

from agent_engine import __version__
from agent_engine.config import ConfigError, EngineConfig, apply_cli_overrides, load_config
from agent_engine.core.compactor import ContextCompactor, LLMSummarizer, TranscriptSummarizer, litellm_cost
from agent_engine.core.coordinator import TurnCoordinator
from agent_engine.core.errors import PermissionResolveError, ProviderError
from agent_engine.core.events import EventBus, EventKind, Subscription
from agent_engine.core.interrupt import CancelSignal
from agent_engine.core.llm import LiteLLMProvider
from agent_engine.core.models import Session, TurnOutcome
from agent_engine.core.permissions import PermissionDecision, PermissionGate
from agent_engine.observers import EventLogger
from agent_engine.state.store import JsonlSessionStore
from agent_engine.system_prompt import SYSTEM_PROMPT
from agent_engine.tools import build_registry
from agent_engine.ui.renderer import Renderer

litellm.suppress_debug_info = True

_log = logging.getLogger(__name__)

USER_PROMPT = "You   > "
APPROVAL_PROMPT = "Allow? [y]es / [a]lways / [n]o: "

_ANSWERS = {
    "y": PermissionDecision.APPROVED_ONCE,
    "yes": PermissionDecision.APPROVED_ONCE,
    "a": PermissionDecision.APPROVED_ALWAYS,
    "always": PermissionDecision.APPROVED_ALWAYS,
    "n": PermissionDecision.DENIED,
    "no": PermissionDecision.DENIED,
}


def configure_logging(config: EngineConfig) -> None:
    """Route log records to a file, or to the console through RichHandler."""
    if config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler = RichHandler(show_path=False, rich_tracebacks=True)
    root = logging.getLogger("agent_engine")
    root.handlers[:] = [handler]
    root.setLevel(config.log_level)


def parse_answer(text: str) -> PermissionDecision | None:
    """Map a y/a/n reply onto a decision; None if the reply is not understood."""
    return _ANSWERS.get(text.strip().lower())


class InteractiveSession:
    """Runs turns for one session and relays events between engine and terminal."""

    def __init__(
        self,
        coordinator: TurnCoordinator,
        session: Session,
        renderer: Renderer,
        prompt: PromptSession,
    ) -> None:
        self.coordinator = coordinator
        self.session = session
        self.renderer = renderer
        self.prompt = prompt

    @property
    def bus(self) -> EventBus:
        return self.coordinator.bus

    @property
    def gate(self) -> PermissionGate:
        return self.coordinator.gate

    async def run_turn(self, text: str) -> TurnOutcome:
        """Start a turn and render its events until the turn ends."""
        events = self.bus.subscribe(session_id=self.session.id)
        cancel = CancelSignal()
        cancel.setup_signal_handler()
        task = asyncio.create_task(self.coordinator.run_turn(self.session, text, cancel=cancel))
        try:
            await self._relay(events, task, cancel)
            return await task
        finally:
            cancel.restore_signal_handler()
            events.close()

    async def _relay(self, events: Subscription, task: asyncio.Task, cancel: CancelSignal) -> None:
        while True:
            getter = asyncio.ensure_future(events.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                while (event := events.get_nowait()) is not None:
                    self.renderer.handle(event)
                return
            event = getter.result()
            self.renderer.handle(event)
            if event.kind is EventKind.PERMISSION_REQUESTED:
                await self._ask(event.entity_id, cancel)
            if event.kind.is_terminal:
                return

    async def _ask(self, tool_call_id: str, cancel: CancelSignal) -> None:
        """Prompt for a y/a/n answer and forward it to the permission gate."""
        while True:
            try:
                answer = await self.prompt.prompt_async(APPROVAL_PROMPT)
            except (KeyboardInterrupt, EOFError):
                cancel.cancel()
                return
            decision = parse_answer(answer)
            if decision is not None:
                break
            self.renderer.print_info("  Please answer y, a or n.")

        try:
            applied = self.gate.resolve(tool_call_id, decision)
        except PermissionResolveError as e:
            self.renderer.print_warning(f"  {e.message} (it may have expired)")
            return
        if decision is PermissionDecision.APPROVED_ALWAYS and applied is not decision:
            self.renderer.print_warning("  Destructive command approved once only.")


def _open_session(store: JsonlSessionStore, config: EngineConfig, resume: bool, session_id: str | None) -> Session:
    if session_id:
        session = store.load_session(session_id)
        if session is None:
            raise click.ClickException(f"Session not found: {session_id}")
        click.echo(f"Resuming session: {session.title} ({len(session.messages)} messages)")
        return session
    if resume:
        session = store.load_latest()
        if session is not None:
            click.echo(f"Resuming session: {session.title} ({len(session.messages)} messages)")
            return session
        click.echo(click.style("No previous sessions found. Starting a new session.", fg="yellow"))
    return store.create(model=config.model)


async def _repl(config: EngineConfig, resume: bool, session_id: str | None) -> None:
    renderer = Renderer()
    renderer.render_banner(__version__)
    renderer.render_config({
        "Model": config.model,
        "API": config.api_base or "provider default",
        "Workspace": config.workspace_root or os.getcwd(),
    })

    provider = LiteLLMProvider.from_config(config)
    try:
        await provider.verify_connection()
    except ProviderError as e:
        renderer.print_error(e.message)
        sys.exit(1)
    renderer.print_info("Connected to LiteLLM")
    if config.bypass_permissions:
        renderer.print_warning("Bypass mode: every tool call is approved automatically.")

    store = JsonlSessionStore(Path(config.sessions_dir) if config.sessions_dir else None)
    session = _open_session(store, config, resume, session_id)

    summarizer = LLMSummarizer(provider) if config.llm_summaries else TranscriptSummarizer()
    coordinator = TurnCoordinator(
        provider,
        build_registry(config.workspace_root),
        config,
        compactor=ContextCompactor(cost_fn=litellm_cost(config.model), summarizer=summarizer),
        store=store,
        system_prompt=SYSTEM_PROMPT,
    )
    event_log = None
    if config.log_file:
        event_log = EventLogger(coordinator.bus, session_id=session.id)
        event_log.start()
    prompt: PromptSession = PromptSession()
    interactive = InteractiveSession(coordinator, session, renderer, prompt)

    click.echo(click.style("Type 'exit' to quit.\n", fg="green"))
    while True:
        try:
            text = await prompt.prompt_async(USER_PROMPT)
        except KeyboardInterrupt:
            click.echo("\nUse Ctrl+D or type 'exit' to quit.")
            continue
        except EOFError:
            break

        text = text.strip()
        if not text:
            continue
        if text.lower() in ("exit", "quit", "/exit", "/quit"):
            break

        outcome = await interactive.run_turn(text)
        _log.debug("Turn outcome: %s", outcome.to_payload())
        renderer.render_status_line(config.model, session.token_estimate, session.id)
        renderer.render_separator()

    coordinator.gate.forget_session(session.id)
    if event_log is not None:
        await event_log.stop()


@click.command()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Config file (default: ~/.agent-engine/config.yaml)")
@click.option("--model", default=None, help="Override LLM model (e.g., litellm/gpt-4o)")
@click.option("--api-base", default=None, help="Override LiteLLM API base URL")
@click.option("--resume", is_flag=True, help="Resume the most recent session")
@click.option("--session", "session_id", default=None, help="Resume a specific session by ID")
@click.option("--yolo", is_flag=True, default=None, help="Approve every tool call without asking")
@click.option("--max-rounds", type=int, default=None, help="Maximum provider requests per turn")
def main(
    config_path: Path | None,
    model: str | None,
    api_base: str | None,
    resume: bool,
    session_id: str | None,
    yolo: bool | None,
    max_rounds: int | None,
) -> None:
    """Interactive coding assistant - streamed answers, tools behind approval."""
    try:
        config = load_config(config_path)
        config = apply_cli_overrides(
            config,
            model=model,
            api_base=api_base,
            bypass_permissions=yolo or None,
            max_rounds=max_rounds,
        )
    except ConfigError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    configure_logging(config)
    if config.https_proxy:
        os.environ["HTTPS_PROXY"] = config.https_proxy
        os.environ["HTTP_PROXY"] = config.https_proxy

    asyncio.run(_repl(config, resume, session_id))
