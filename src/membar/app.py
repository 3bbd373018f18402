"""membar - Main Textual application."""

from __future__ import annotations

from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.events import AppBlur, AppFocus
from textual.widgets import Footer, Static

from membar.channel import StatisticsChannel
from membar.config import REFRESH_INTERVALS, Settings
from membar.display import DisplayState, next_display_state
from membar.models import FetchResult
from membar.monitor import MemoryMonitor
from membar.scoring import PressureBucket

BUCKET_COLORS = {
    PressureBucket.LOW: "green",
    PressureBucket.MODERATE: "yellow",
    PressureBucket.ELEVATED: "dark_orange",
    PressureBucket.HIGH: "red",
}

PRESSURE_COLORS = {
    "Normal": "green",
    "Warning": "yellow",
    "Critical": "red",
}


class StatsPanel(Static):
    """Panel showing pressure, memory, swap and the composite score."""

    DEFAULT_CSS = """
    StatsPanel {
        height: auto;
        min-height: 7;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize StatsPanel."""
        super().__init__("Loading...", *args, **kwargs)
        self._display_state: DisplayState | None = None

    @property
    def display_state(self) -> DisplayState | None:
        """Get the display state currently shown."""
        return self._display_state

    def show(self, state: DisplayState) -> None:
        """Render a display state."""
        self._display_state = state
        self.update(self._render_state(state))

    def _render_state(self, state: DisplayState) -> str:
        pressure_color = PRESSURE_COLORS.get(state.pressure, "red")
        overall = state.score.overall
        bucket = PressureBucket.for_score(overall)
        bar_len = min(int(overall / 5), 20)  # Cap at 20 chars
        color = BUCKET_COLORS[bucket]
        bar = f"[{color}]█[/{color}]" * bar_len + "[dim]░[/dim]" * (20 - bar_len)
        updated = state.updated_at.strftime("%H:%M:%S") if state.updated_at else "never"

        lines = [
            f"Pressure: [{pressure_color}]{state.pressure}[/{pressure_color}]",
            f"Used:     {state.used}",
            f"Swap:     {state.swap}",
            f"Score  \\[{bar}] {overall:5.1f}% ({bucket.value})",
            f"  memory {state.score.memory_usage_percent:5.1f}%"
            f"  swap {state.score.swap_usage_percent:4.0f}%",
            f"Updated:  {updated}",
        ]
        if state.degraded and state.message:
            lines.append(f"[dim]{state.message}[/dim]")
        return "\n".join(lines)


class MemBarApp(App):
    """Main membar application."""

    TITLE = "membar"
    SUB_TITLE = "Memory Pressure Monitor"

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("d", "toggle_detail", "Detail"),
        ("i", "cycle_interval", "Interval"),
        ("a", "toggle_auto_refresh", "Auto"),
    ]

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the MemBarApp."""
        super().__init__()
        self._app_settings = settings if settings is not None else Settings.from_env()
        self._update_queue: Queue[FetchResult] = Queue()
        self._monitor = MemoryMonitor(
            self._update_queue,
            channel_factory=self._make_channel,
            poll_rate=self._app_settings.refresh_interval,
            focused_rate=self._app_settings.focused_interval,
            detailed=self._app_settings.detailed,
            request_timeout=self._app_settings.request_timeout,
        )
        self._display_state: DisplayState | None = None

    def _make_channel(self) -> StatisticsChannel:
        return StatisticsChannel(
            self._app_settings.endpoint,
            reconnect_delay=self._app_settings.reconnect_delay,
        )

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatsPanel(id="stats")
        yield Footer()

    def on_mount(self) -> None:
        """Start the memory monitor when the app is mounted."""
        self._monitor.start()
        # Set up a timer to poll the queue for updates
        self.set_interval(0.5, self._check_for_updates)

    def on_unmount(self) -> None:
        """Stop the memory monitor when the app is unmounted."""
        self._monitor.stop(timeout=1.0)

    def on_app_focus(self, event: AppFocus) -> None:
        """Poll faster while the terminal has focus."""
        self._monitor.focused = True

    def on_app_blur(self, event: AppBlur) -> None:
        """Fall back to the normal poll rate."""
        self._monitor.focused = False

    def _check_for_updates(self) -> None:
        """Drain the queue and apply the most recent result."""
        result = None
        while True:
            try:
                result = self._update_queue.get_nowait()
            except Empty:
                break

        if result is not None:
            self.apply_result(result)

    def apply_result(self, result: FetchResult) -> bool:
        """Fold a result into the display; returns whether it re-rendered."""
        self._display_state, changed = next_display_state(self._display_state, result)
        if changed or self._monitor.focused:
            self.query_one("#stats", StatsPanel).show(self._display_state)
            return True
        return False

    def action_refresh(self) -> None:
        """Query immediately."""
        self._monitor.refresh_now()

    def action_toggle_detail(self) -> None:
        """Toggle between summary and detailed queries."""
        self._monitor.detailed = not self._monitor.detailed
        self.notify("Detail: " + ("on" if self._monitor.detailed else "off"))

    def action_cycle_interval(self) -> None:
        """Step to the next refresh interval, wrapping around."""
        current = self._monitor.poll_rate
        later = [value for value in REFRESH_INTERVALS if value > current]
        self._monitor.poll_rate = later[0] if later else REFRESH_INTERVALS[0]
        self.notify(f"Refresh every {self._monitor.poll_rate:.0f}s")

    def action_toggle_auto_refresh(self) -> None:
        """Pause or resume periodic refresh."""
        self._monitor.auto_refresh = not self._monitor.auto_refresh
        self.notify("Auto refresh: " + ("on" if self._monitor.auto_refresh else "off"))

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def main(settings: Settings | None = None) -> None:
    """Entry point for the membar application."""
    app = MemBarApp(settings)
    app.run()


if __name__ == "__main__":
    main()
