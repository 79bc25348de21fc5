"""
Console reporter
Step-by-step user feedback printed with rich and mirrored to the log
"""
import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)

SEPARATOR = "━" * 50
BANNER = "═" * 50


class ConsoleReporter:
    """Prints success/error/warning/info lines as each step finishes"""

    def __init__(self, console: Optional[Console] = None, quiet: bool = False):
        self.console = console or Console(highlight=False)
        self.quiet = quiet

    def _print(self, text: str) -> None:
        if not self.quiet:
            self.console.print(text)

    def success(self, message: str) -> None:
        self._print(f"[green]✅ {escape(message)}[/green]")
        logger.info(message)

    def error(self, message: str) -> None:
        self._print(f"[red]❌ {escape(message)}[/red]")
        logger.error(message)

    def warning(self, message: str) -> None:
        self._print(f"[yellow]⚠️  {escape(message)}[/yellow]")
        logger.warning(message)

    def info(self, message: str) -> None:
        self._print(f"ℹ️  {escape(message)}")
        logger.info(message)

    def line(self, message: str = "") -> None:
        self._print(escape(message))

    def banner(self, title: str) -> None:
        self._print("")
        self._print(BANNER)
        self._print(f"[bold] {escape(title)}[/bold]")
        self._print(BANNER)

    def section(self, title: str) -> None:
        self._print("")
        self._print(SEPARATOR)
        self._print(f"[bold]{escape(title)}[/bold]")
        self._print(SEPARATOR)
