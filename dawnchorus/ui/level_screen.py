"""Terminal level meter for every capture source."""

import logging
import threading
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from ..audio.levels import LevelMonitor
from ..services.stream_registry import StreamRegistry

logger = logging.getLogger(__name__)

BAR_WIDTH = 30


def level_bar(level: int, clipping: bool) -> str:
    filled = int(level * BAR_WIDTH / 100)
    bar = "█" * filled + "·" * (BAR_WIDTH - filled)
    style = "red" if clipping else ("green" if level < 80 else "yellow")
    return f"[{style}]{bar}[/{style}]"


class LevelScreen:
    """Live table of source levels, stream health and buffer fill."""

    def __init__(self, monitor: LevelMonitor, registry: StreamRegistry, refresh_per_second: int = 4):
        self.console = Console()
        self.monitor = monitor
        self.registry = registry
        self.refresh_per_second = refresh_per_second
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def render(self) -> Panel:
        table = Table(show_header=True, header_style="bold magenta", expand=True)
        table.add_column("Source", style="cyan")
        table.add_column("Level", no_wrap=True)
        table.add_column("Value", justify="right")
        table.add_column("Status", style="white")

        levels = self.monitor.snapshot()
        for source in self.registry.sources():
            data = levels.get(source.source_id)
            level = data.level if data else 0
            clipping = data.clipping if data else False
            if self.registry.is_degraded(source.source_id):
                status = "⚠️ degraded"
            elif level == 0:
                status = "🔇 silent"
            else:
                status = "🔴 clipping" if clipping else "✅ live"
            table.add_row(source.name, level_bar(level, clipping), str(level), status)

        if not levels:
            table.add_row("[dim]no sources configured[/dim]", "", "", "")

        return Panel(table, title="🐦 DawnChorus levels", border_style="green")

    def _run(self) -> None:
        with Live(self.render(), console=self.console, refresh_per_second=self.refresh_per_second) as live:
            while not self.stop_event.wait(1.0 / self.refresh_per_second):
                live.update(self.render())

    def start(self) -> None:
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.name = "LevelScreenThread"
        self.thread.start()

    def stop(self) -> None:
        self.stop_event.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=2.0)
