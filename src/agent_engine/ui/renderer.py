"""Rich terminal rendering of engine events."""

from __future__ import annotations

import io

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from agent_engine.core.events import Event, EventKind

_MAX_ARG_DISPLAY = 50
_MAX_OUTPUT_PREVIEW = 400


class Renderer:
    """Render assistant text, tool activity and turn outcomes in the terminal.

    Events are fed one at a time through handle(); the renderer keeps only
    the state needed to stitch streamed text together.
    """

    def __init__(self, output_file: io.TextIOBase | None = None) -> None:
        if output_file is not None:
            self.console = Console(file=output_file, force_terminal=False, highlight=False, width=120)
        else:
            self.console = Console()
        self._streaming = False
        self._last_seq: dict[str, int] = {}
        self.gaps = 0

    def handle(self, event: Event) -> None:
        """Render one event."""
        last = self._last_seq.get(event.session_id)
        if last is not None and event.seq > last + 1:
            self.gaps += 1
        self._last_seq[event.session_id] = event.seq

        handler = getattr(self, f"_on_{event.kind.name.lower()}", None)
        if handler is not None:
            handler(event)

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def _on_assistant_delta(self, event: Event) -> None:
        self._streaming = True
        self.console.print(event.payload.get("text", ""), end="", markup=False, highlight=False)

    def _on_provider_retry(self, event: Event) -> None:
        self._end_stream()
        p = event.payload
        self.print_warning(
            f"  Provider error, retrying in {p.get('delay', 0):.1f}s "
            f"(attempt {p.get('attempt')}/{p.get('max_attempts')}): {p.get('error', '')}"
        )

    def _on_tool_call_started(self, event: Event) -> None:
        self._end_stream()
        self.render_tool_panel(event.payload.get("tool_name", "?"), event.payload.get("arguments") or {})

    def _on_permission_requested(self, event: Event) -> None:
        self._end_stream()
        self.render_permission_request(
            event.payload.get("tool_name", "?"),
            event.payload.get("description", ""),
            destructive=bool(event.payload.get("destructive")),
        )

    def _on_permission_resolved(self, event: Event) -> None:
        if event.payload.get("decision") == "denied":
            self.print_info("  ✗ denied")

    def _on_tool_call_finished(self, event: Event) -> None:
        self._end_stream()
        p = event.payload
        status = p.get("status")
        name = p.get("tool_name", "?")
        if status == "succeeded":
            result = p.get("result") or {}
            message = result.get("message") or "done"
            self.print_success(f"  ✓ {name}: {message}")
        elif status == "cancelled":
            self.print_warning(f"  ⊘ {name} cancelled")
        else:
            self.print_error(f"  ✗ {name} [{p.get('error_code')}]: {p.get('error') or ''}"[:_MAX_OUTPUT_PREVIEW])

    def _on_context_compacted(self, event: Event) -> None:
        p = event.payload
        self.print_info(
            f"  Context compacted: {p.get('dropped')} message(s) summarized, "
            f"~{p.get('estimated_tokens', 0):,}/{p.get('budget', 0):,} tokens"
        )

    def _on_persistence_warning(self, event: Event) -> None:
        self.print_warning(f"  Session not saved: {event.payload.get('error', '')}")

    def _on_turn_finished(self, event: Event) -> None:
        self._end_stream()
        self.console.print()

    def _on_turn_cancelled(self, event: Event) -> None:
        self._end_stream()
        self.print_warning("\nInterrupted! Turn cancelled.")

    def _on_turn_failed(self, event: Event) -> None:
        self._end_stream()
        p = event.payload
        self.print_error(f"Error ({p.get('reason')}): {p.get('message') or ''}")

    def print_error(self, message: str) -> None:
        """Print a styled error message."""
        self.console.print(Text(message, style="red"), highlight=False)

    def print_info(self, message: str) -> None:
        """Print a styled informational message."""
        self.console.print(Text(message, style="dim"), highlight=False)

    def print_warning(self, message: str) -> None:
        """Print a styled warning message."""
        self.console.print(Text(message, style="yellow"), highlight=False)

    def print_success(self, message: str) -> None:
        """Print a styled success message."""
        self.console.print(Text(message, style="green"), highlight=False)

    def render_separator(self) -> None:
        self.console.print(Rule(style="dim"))

    def render_banner(self, version: str) -> None:
        """Render the application banner.

        Args:
            version: Application version string.
        """
        content = Text.assemble(
            ("agent-engine", "bold cyan"),
            ("  v" + version, "dim"),
        )
        self.console.print(Panel(
            Align.left(content),
            border_style="cyan dim",
            expand=False,
            padding=(0, 2),
        ))

    def render_config(self, config_items: dict) -> None:
        """Render configuration items one per line, left-aligned."""
        for key, value in config_items.items():
            line = Text.assemble(
                (f"{key}: ", "dim"),
                (str(value), "#888888"),
            )
            self.console.print(line, highlight=False)

    def render_status_line(self, model: str, token_count: int | None, session_id: str | None) -> None:
        """Render compact status line after each turn.

        Args:
            model: The model name being used
            token_count: Estimated token count of the last request (optional)
            session_id: Current session ID (optional)
        """
        parts = [model]
        if token_count is not None:
            parts.append(f"{token_count:,} tokens")
        if session_id is not None:
            short_id = session_id[:12] + "..." if len(session_id) > 12 else session_id
            parts.append(short_id)
        self.console.print(Text(" | ".join(parts), style="dim"))

    def render_tool_panel(self, tool_name: str, tool_args: dict) -> None:
        """Render a compact inline display for tool execution.

        Args:
            tool_name: Name of the tool being executed
            tool_args: Dictionary of tool arguments
        """
        self.console.print(Text.assemble(("◆ ", "bold cyan"), (tool_name, "cyan")))
        for key, value in tool_args.items():
            value_str = str(value)
            if len(value_str) > _MAX_ARG_DISPLAY:
                value_str = value_str[:_MAX_ARG_DISPLAY - 3] + "..."
            self.console.print(Text.assemble((f"  {key}", "dim"), (f": {value_str}", "")), highlight=False)

    def render_permission_request(self, tool_name: str, description: str, *, destructive: bool = False) -> None:
        """Render the approval panel shown before a y/a/n prompt."""
        body = Text(description)
        if destructive:
            body.append("\n\nWARNING: this command looks destructive and cannot be approved permanently.", style="bold red")
        self.console.print(Panel(
            body,
            title=f"Approve {tool_name}?",
            title_align="left",
            border_style="red" if destructive else "yellow",
            expand=False,
        ))
