"""
Rich-formatted logging for the gateway.

Provides three verbosity levels:
- Normal: Clean, rich-formatted logs for key events (requests, residency changes, errors)
- Verbose (--verbose/-v): Additional detail such as prompts and per-chunk progress
- Debug (--debug): Low-level DEBUG messages, unformatted for debugging

Usage:
    from .logging import setup_service_logging, get_service_logger

    # At startup
    setup_service_logging(verbose=args.verbose, debug=args.debug)

    # Create logger for a module
    log = get_service_logger(__name__)

    # Log events
    log.complexity(ctx, "complex", 6, num_predict=2500, timeout=300)
    log.model_evicted("llama3.1:8b")
"""

import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from uuid import uuid4

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

# Context variable to track request IDs across async operations
_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

# Custom theme for service logs
SERVICE_THEME = Theme({
    "api.method": "bold cyan",
    "api.path": "green",
    "api.status.ok": "bold green",
    "api.status.error": "bold red",
    "model.name": "bold magenta",
    "timing": "dim cyan",
    "request_id": "dim yellow",
    "complexity": "bold yellow",
    "residency": "cyan",
})

# Global state
_verbose = False
_debug = False
_console: Console | None = None


def get_console() -> Console:
    """Get the shared console instance."""
    global _console
    if _console is None:
        _console = Console(theme=SERVICE_THEME, stderr=True)
    return _console


def setup_service_logging(verbose: bool = False, debug: bool = False) -> None:
    """
    Configure logging for the service.

    Args:
        verbose: Enable verbose logging (prompts, chunk progress)
        debug: Enable debug logging (low-level DEBUG messages, unformatted)
    """
    global _verbose, _debug

    _verbose = verbose
    _debug = debug

    level = logging.DEBUG if debug else logging.INFO

    if debug:
        # Debug mode: simple format, no rich
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S",
            force=True,
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(
                console=get_console(),
                show_path=False,
                rich_tracebacks=True,
                tracebacks_show_locals=verbose,
                markup=True,
            )],
            force=True,
        )

    # Reduce noise from third-party libraries
    noisy_loggers = [
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "httpx",
        "httpcore",
        "asyncio",
        "urllib3",
        "urllib3.connectionpool",
    ]

    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING if not debug else logging.INFO)


def generate_request_id() -> str:
    """Generate a short request ID for tracing."""
    return uuid4().hex[:8]


def set_request_id(request_id: str) -> None:
    """Set the current request ID (for async context)."""
    _request_id.set(request_id)


def get_request_id() -> str | None:
    """Get the current request ID."""
    return _request_id.get()


@dataclass
class RequestContext:
    """Context for tracking a single request."""
    request_id: str
    method: str
    path: str
    start_time: float = field(default_factory=time.time)
    model: str | None = None
    stream: bool = False

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


class ServiceLogger:
    """
    Rich-formatted logger for the gateway.

    Provides structured logging methods for common service events.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)
        self._console = get_console()

    # -------------------------------------------------------------------------
    # Standard logging methods (delegate to underlying logger)
    # -------------------------------------------------------------------------

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(msg, *args, **kwargs)

    # -------------------------------------------------------------------------
    # Structured service logging methods
    # -------------------------------------------------------------------------

    def startup(self, version: str, host: str, port: int, engine_url: str, models: list[str]) -> None:
        """Log service startup with configuration summary."""
        if _debug:
            self._logger.info(f"Gateway v{version} starting on {host}:{port}")
            self._logger.info(f"Engine: {engine_url}")
            self._logger.info(f"Models: {', '.join(models)}")
            return

        table = Table(title="Ollama Gateway Started", show_header=False, box=None)
        table.add_column("Key", style="dim")
        table.add_column("Value")
        table.add_row("Version", f"[bold]{version}[/bold]")
        table.add_row("Endpoint", f"[bold green]http://{host}:{port}[/bold green]")
        table.add_row("Engine", engine_url)
        table.add_row("Models", f"[model.name]{', '.join(models)}[/model.name]")

        self._console.print()
        self._console.print(Panel(table, border_style="green"))
        self._console.print()

    def shutdown(self) -> None:
        """Log service shutdown."""
        if _debug:
            self._logger.info("Gateway shutting down")
            return

        self._console.print("[dim]Gateway shutting down...[/dim]")

    def api_request(self, ctx: RequestContext) -> None:
        """Log an incoming API request."""
        parts = [
            f"[request_id]\\[{ctx.request_id}][/request_id]",
            f"[api.method]{ctx.method}[/api.method]",
            f"[api.path]{ctx.path}[/api.path]",
        ]
        if ctx.model:
            parts.append(f"model=[model.name]{ctx.model}[/model.name]")
        if ctx.stream:
            parts.append("[dim]streaming[/dim]")

        self._logger.info(" ".join(parts))

    def api_response(self, ctx: RequestContext, status: int = 200) -> None:
        """Log an API response."""
        if status < 400:
            status_str = f"[api.status.ok]{status}[/api.status.ok]"
        else:
            status_str = f"[api.status.error]{status}[/api.status.error]"

        self._logger.info(
            f"[request_id]\\[{ctx.request_id}][/request_id] {status_str} "
            f"[timing]{ctx.elapsed_ms:.0f}ms[/timing]"
        )

    def api_error(self, ctx: RequestContext, error: str, status: int = 500) -> None:
        """Log an API error."""
        self._logger.error(
            f"[request_id]\\[{ctx.request_id}][/request_id] "
            f"[api.status.error]{status}[/api.status.error] "
            f"[timing]{ctx.elapsed_ms:.0f}ms[/timing] {error}"
        )

    def complexity(self, ctx: RequestContext, complexity: str, score: int, num_predict: int, timeout: float) -> None:
        """Log the complexity verdict and the budget it bought."""
        self._logger.info(
            f"[request_id]\\[{ctx.request_id}][/request_id] "
            f"complexity=[complexity]{complexity}[/complexity] [dim](score {score})[/dim] "
            f"max_tokens={num_predict} timeout={timeout:.0f}s"
        )

    def prompt(self, ctx: RequestContext, content: str) -> None:
        """Show the (truncated) prompt, verbose only."""
        if not _verbose:
            return
        display = content[:100] + "..." if len(content) > 100 else content
        self._console.print(f"  [green]prompt:[/green] {display}")

    def residency_check(self, target: str, loaded: list[str]) -> None:
        resident = ", ".join(loaded) if loaded else "none"
        self._logger.debug(f"residency check for {target}: resident=[{resident}]")

    def model_evicted(self, model: str) -> None:
        self._logger.info(f"[residency]evicted[/residency] [model.name]{model}[/model.name]")

    def model_evict_failed(self, model: str, error: str) -> None:
        self._logger.warning(
            f"[residency]evict failed[/residency] [model.name]{model}[/model.name]: {error}"
        )

    def model_loading(self, model: str) -> None:
        """Log model loading event."""
        self._logger.info(f"[model.name]{model}[/model.name] [bold yellow]loading...[/bold yellow]")

    def model_loaded(self, model: str, load_time_ms: float, evicted: int = 0) -> None:
        """Log model loaded successfully."""
        suffix = f" [dim]({evicted} evicted)[/dim]" if evicted else ""
        self._logger.info(
            f"[model.name]{model}[/model.name] [bold green]loaded[/bold green] "
            f"[timing]{load_time_ms:.0f}ms[/timing]{suffix}"
        )

    def model_error(self, model: str, error: str) -> None:
        """Log model loading error."""
        self._logger.error(f"[model.name]{model}[/model.name] [bold red]failed to load:[/bold red] {error}")

    def stream_chunk(self, index: int, size: int) -> None:
        """Per-chunk progress (verbose only)."""
        if _verbose:
            self._logger.debug(f"[dim]chunk {index} ({size} chars)[/dim]")

    def stream_parse_error(self, line: bytes | str, error: str) -> None:
        preview = line[:80] if line else line
        self._logger.warning(f"Skipping malformed engine line {preview!r}: {error}")

    def stream_closed(self, reason: str) -> None:
        self._logger.info(f"[dim]stream closed: {reason}[/dim]")


# Module-level convenience function
def get_service_logger(name: str) -> ServiceLogger:
    """Get a ServiceLogger instance for the given module name."""
    return ServiceLogger(name)
