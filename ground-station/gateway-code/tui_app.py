"""Textual TUI for the Pod Telemetry Gateway."""

from textual import on, work
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.message import Message
from textual.widgets import DataTable, Footer, Header, Input, RichLog, Static

from constants import RELAY_IDS, RELAY_NAMES
from health import overall_status_label
from io_thread import IoThread
from pod_gateway import PodGateway
from pod_state import ErrorLogEntry, Severity

SEVERITY_STYLES = {
    Severity.ERROR: "bold red",
    Severity.WARNING: "yellow",
    Severity.INFO: "",
}

# (row key, label, formatter)
SENSOR_ROWS = [
    ("gap_height", "Gap height", lambda s: f"{s.gap_height:.1f} mm"),
    ("gap_height2", "Gap height 2", lambda s: f"{s.gap_height2:.1f} mm"),
    ("temps", "Temperatures", lambda s: "  ".join(f"{t:.1f}" for t in s.temperatures) + " C"),
    ("voltages", "Voltages", lambda s: f"{s.voltage1:.2f} / {s.voltage2:.2f} / {s.voltage3:.2f} V"),
    ("pressure", "Pressure", lambda s: f"{s.pressure:.2f} bar"),
    ("orientation", "Orientation", lambda s: (
        f"H {s.orientation.x:.1f}  P {s.orientation.y:.1f}  R {s.orientation.z:.1f}")),
    ("acceleration", "Acceleration", lambda s: (
        f"{s.acceleration.x:.2f}, {s.acceleration.y:.2f}, {s.acceleration.z:.2f}"
        f"  |a| {s.acceleration.magnitude:.2f} m/s2")),
    ("calibration", "IMU calibration", lambda s: (
        f"gyro {s.calibration.gyro}  sys {s.calibration.sys}  mag {s.calibration.magneto}")),
    ("heartbeat", "Heartbeat", lambda s: f"#{s.heartbeat_count} @ {s.last_heartbeat_ms} ms"),
    ("state", "Pod state", lambda s: s.current_state or "-"),
]


class PodConsoleApp(App):
    """Operator console: live sensors, relays, event log and command line."""

    TITLE = "Pod Telemetry Gateway"

    CSS = """
    #sidebar {
        width: 30;
        dock: left;
        border-right: solid $accent;
        padding: 1;
        background: $surface;
    }
    #sensors-table {
        height: auto;
        max-height: 14;
        border: solid $primary;
    }
    #log {
        height: 1fr;
        border: solid $primary;
    }
    #cmd-input {
        dock: bottom;
    }
    """

    BINDINGS = [
        ("f3", "clear_log", "Clear"),
        ("f9", "emergency_stop", "E-STOP"),
        ("escape", "focus_input", "Input"),
    ]

    # ---- Custom Messages ----

    class SensorDataMsg(Message):
        """A telemetry update was merged into the snapshot."""
        def __init__(self, snapshot):
            super().__init__()
            self.snapshot = snapshot

    class RelayMsg(Message):
        def __init__(self, relays):
            super().__init__()
            self.relays = relays

    class ConnectionMsg(Message):
        def __init__(self, info: dict):
            super().__init__()
            self.info = info

    class LogMsg(Message):
        """Line for the RichLog panel."""
        def __init__(self, text: str, style: str = ""):
            super().__init__()
            self.text = text
            self.style = style

    # ---- Init ----

    def __init__(self, gateway: PodGateway, io_thread: IoThread = None,
                 auto_connect: bool = True):
        super().__init__()
        self.gateway = gateway
        self.io_thread = io_thread or IoThread()
        self._owns_thread = io_thread is None
        self.auto_connect = auto_connect
        self.gateway.add_listener(self._on_gateway_event)

    # ---- Layout ----

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield Static("Disconnected", id="sidebar")
            with Vertical():
                yield DataTable(id="sensors-table")
                yield RichLog(id="log", wrap=True, highlight=True, markup=True)
        yield Input(placeholder="Enter command (type 'help' for list)", id="cmd-input")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#sensors-table", DataTable)
        table.add_column("Channel", key="channel")
        table.add_column("Value", key="value")
        table.cursor_type = "none"
        snapshot = self.gateway.sensor_snapshot
        for key, label, fmt in SENSOR_ROWS:
            table.add_row(label, fmt(snapshot), key=key)

        self.query_one("#cmd-input", Input).focus()
        if self._owns_thread:
            self.io_thread.start()
        self.update_status()
        if self.auto_connect:
            self.connect_pod()

    # ---- Gateway bridge ----

    def _on_gateway_event(self, event: str, payload) -> None:
        """Runs on the I/O thread; hand everything to the UI thread."""
        if event == "sensor_data":
            msg = self.SensorDataMsg(payload)
        elif event == "relays":
            msg = self.RelayMsg(payload)
        elif event == "connection":
            msg = self.ConnectionMsg(payload)
        elif event == "log" and isinstance(payload, ErrorLogEntry):
            prefix = f"[{payload.kind}] " if payload.kind else ""
            msg = self.LogMsg(prefix + payload.message, SEVERITY_STYLES[payload.severity])
        else:
            return
        # post_message is thread-safe and does not wait for the UI thread
        self.post_message(msg)

    # ---- Workers ----

    @work(exclusive=True, group="connect")
    async def connect_pod(self) -> None:
        self.log_message(f"Connecting via {self.gateway.transport.describe()}...")
        ok = await self.io_thread.submit_async(self.gateway.connect())
        if not ok:
            self.log_message("Connection failed. Type 'connect' to retry.", style="bold red")

    @work(group="estop")
    async def emergency_stop_pod(self) -> None:
        """Own worker, never cancelled by later commands or a second press."""
        if not await self.io_thread.submit_async(self.gateway.emergency_stop(), shield=True):
            self.log_message("Emergency stop failed!", style="bold red")
        self.update_status()

    @on(Input.Submitted, "#cmd-input")
    def on_cmd_submitted(self, event: Input.Submitted) -> None:
        cmd = event.value.strip()
        event.input.value = ""
        if cmd:
            self.log_message(f"> {cmd}", style="bold cyan")
            self.dispatch_command(cmd.lower())

    @work(exclusive=True, group="cmd")
    async def dispatch_command(self, cmd: str) -> None:
        """Parse and run one console command on the I/O thread."""
        gw = self.gateway
        io = self.io_thread
        parts = cmd.split(None, 1)
        verb = parts[0]
        arg = parts[1].strip() if len(parts) > 1 else ""
        try:
            if verb in ("q", "quit", "exit"):
                await io.submit_async(gw.disconnect())
                self.exit()

            elif verb == "connect":
                self.connect_pod()

            elif verb == "disconnect":
                await io.submit_async(gw.disconnect())

            elif verb == "relay":
                if not arg:
                    self.log_message("Usage: relay <1-4>")
                    return
                relay_id = int(arg)
                if relay_id not in RELAY_IDS:
                    self.log_message("Invalid relay (use 1-4)")
                    return
                await io.submit_async(gw.toggle_relay(relay_id), shield=True)

            elif verb == "on":
                await io.submit_async(gw.turn_all_on(), shield=True)

            elif verb == "off":
                await io.submit_async(gw.turn_all_off(), shield=True)

            elif verb in ("estop", "stop"):
                self.emergency_stop_pod()

            elif verb == "status":
                await io.submit_async(gw.request_status(), shield=True)

            elif verb == "raw":
                if not arg:
                    self.log_message("Usage: raw <command>")
                    return
                await io.submit_async(gw.send_raw(arg), shield=True)

            elif verb == "history" and arg == "clear":
                gw.clear_history()
                self.notify("History cleared")

            elif verb == "errors" and arg == "clear":
                gw.clear_error_log()
                self.notify("Error log cleared")

            elif verb in ("clear", "cls"):
                self.action_clear_log()

            elif verb == "help":
                self._show_help()

            else:
                self.log_message("Unknown command. Type 'help' for list.")

        except ValueError as e:
            self.log_message(f"Invalid value: {e}", style="yellow")

        self.update_status()

    # ---- Message Handlers ----

    def on_pod_console_app_sensor_data_msg(self, msg: SensorDataMsg) -> None:
        table = self.query_one("#sensors-table", DataTable)
        for key, _label, fmt in SENSOR_ROWS:
            table.update_cell(key, "value", fmt(msg.snapshot))
        self.update_status()

    def on_pod_console_app_relay_msg(self, msg: RelayMsg) -> None:
        self.update_status()

    def on_pod_console_app_connection_msg(self, msg: ConnectionMsg) -> None:
        self.update_status()

    def on_pod_console_app_log_msg(self, msg: LogMsg) -> None:
        log = self.query_one("#log", RichLog)
        if msg.style:
            log.write(f"[{msg.style}]{msg.text}[/{msg.style}]")
        else:
            log.write(msg.text)

    # ---- UI Updates ----

    def update_status(self) -> None:
        """Refresh the sidebar: link, relays, health, emergencies."""
        gw = self.gateway
        info = gw.connection_info()
        lines = ["[bold]Link[/bold]"]
        if info["is_connected"]:
            lines.append("[green]Connected[/green]")
        elif info["is_connecting"]:
            lines.append("[yellow]Connecting...[/yellow]")
        else:
            lines.append("[red]Disconnected[/red]")
        lines.append(info["transport"])
        if info["last_error"] and not info["is_connected"]:
            lines.append(f"[dim]{info['last_error']}[/dim]")

        lines.append("\n[bold]Relays[/bold]")
        relays = gw.relay_states
        for relay_id in RELAY_IDS:
            is_on = relays.get(relay_id)
            state = "[green]ON [/green]" if is_on else "[dim]OFF[/dim]"
            lines.append(f"{relay_id} {state} {RELAY_NAMES[relay_id]}")

        health = gw.health_info()
        lines.append("\n[bold]Health[/bold]")
        lines.append(f"{health['score']:.0f}%  {overall_status_label(health['score'])}")
        if health["safety_critical"]:
            lines.append("[bold red]SAFETY CRITICAL[/bold red]")

        emergencies = gw.aggregator.active_emergencies()
        if emergencies:
            lines.append("\n[bold red]Emergencies[/bold red]")
            lines.extend(f"[red]{m}[/red]" for m in emergencies)

        self.query_one("#sidebar", Static).update("\n".join(lines))

    def _show_help(self):
        help_text = (
            "[bold]--- Link ---[/bold]\n"
            "  connect         Open the pod link\n"
            "  disconnect      Close the pod link\n"
            "\n"
            "[bold]--- Relays ---[/bold]\n"
            "  relay <1-4>     Toggle one relay\n"
            "  on / off        All relays on / off\n"
            "  estop           Emergency stop (or F9)\n"
            "  status          Ask the pod for relay state\n"
            "  raw <cmd>       Send RELAYn_ON|OFF, ALL_ON, ALL_OFF or STATUS\n"
            "\n"
            "[bold]--- Keys / Misc ---[/bold]\n"
            "  history clear   Drop chart history\n"
            "  errors clear    Empty the error log\n"
            "  clear / cls     Clear log panel (or F3)\n"
            "  Esc             Focus input\n"
            "  q / quit        Quit"
        )
        self.query_one("#log", RichLog).write(help_text)

    # ---- Actions ----

    def action_emergency_stop(self) -> None:
        self.log_message("EMERGENCY STOP", style="bold red")
        self.emergency_stop_pod()

    def action_clear_log(self) -> None:
        self.query_one("#log", RichLog).clear()

    def action_focus_input(self) -> None:
        self.query_one("#cmd-input", Input).focus()

    def log_message(self, text: str, style: str = ""):
        self.post_message(self.LogMsg(text, style))

    def on_unmount(self) -> None:
        """Close the link and stop the I/O thread we started."""
        self.gateway.remove_listener(self._on_gateway_event)
        if self.io_thread.is_running and self.gateway.is_connected:
            try:
                self.io_thread.submit(self.gateway.disconnect()).result(timeout=3.0)
            except Exception as e:
                self.log.warning(f"Disconnect on exit failed: {e}")
        if self._owns_thread:
            self.io_thread.stop()
