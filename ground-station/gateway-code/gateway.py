#!/usr/bin/env python3
"""
Ground-station gateway for the hyperloop pod controller.
Reads pod telemetry over serial, WebSocket or BLE and drives the relays.

Usage:
    python gateway.py                          # TUI console (default)
    python gateway.py --web                    # TUI + web dashboard API
    python gateway.py --web-only               # Web dashboard API only
    python gateway.py --no-tui                 # Plain monitor printing snapshots
    python gateway.py --port /dev/ttyUSB0      # Pick the serial port
    python gateway.py --transport websocket --url ws://pod.local:81/
    python gateway.py --status                 # One-shot: print relay state
    python gateway.py --relay 2                # One-shot: toggle relay 2
    python gateway.py --all-off                # One-shot: all relays off
    python gateway.py --estop                  # One-shot: emergency stop

Settings come from POD_* environment variables (or a .env file); the flags
below override them.
"""

import argparse
import asyncio
import dataclasses
import logging

from config import get_settings, setup_logging
from constants import RELAY_IDS, RELAY_NAMES
from io_thread import IoThread
from pod_gateway import PodGateway

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pod telemetry ground-station gateway")
    parser.add_argument("--transport", choices=["serial", "websocket", "ble"],
                        help="Link to the pod (default: POD_TRANSPORT or serial)")
    parser.add_argument("--port", type=str, help="Serial port (default: auto-detect)")
    parser.add_argument("--baud", type=int, help="Serial baud rate (default 115200)")
    parser.add_argument("--url", type=str, help="WebSocket URL of the pod bridge")
    parser.add_argument("--address", type=str, help="BLE address of the pod controller")
    parser.add_argument("--timeout", type=float, help="Connect timeout in seconds (0 disables)")
    parser.add_argument("--no-tui", action="store_true",
                        help="Plain monitor instead of the TUI")
    parser.add_argument("--web", action="store_true",
                        help="Enable web dashboard API alongside the TUI")
    parser.add_argument("--web-only", action="store_true",
                        help="Web dashboard API only, no TUI")
    parser.add_argument("--web-host", type=str, help="Web bind address (default 0.0.0.0)")
    parser.add_argument("--web-port", type=int, help="Web port (default 8000)")
    parser.add_argument("--log-file", type=str, help="Write diagnostic logs to this file")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING or ERROR")

    oneshot = parser.add_mutually_exclusive_group()
    oneshot.add_argument("--status", action="store_true", help="Print relay state and exit")
    oneshot.add_argument("--relay", type=int, choices=RELAY_IDS, help="Toggle one relay and exit")
    oneshot.add_argument("--all-on", action="store_true", help="All relays on and exit")
    oneshot.add_argument("--all-off", action="store_true", help="All relays off and exit")
    oneshot.add_argument("--estop", action="store_true", help="Emergency stop and exit")
    return parser


def settings_from_args(args):
    """Environment settings with command-line overrides applied."""
    settings = get_settings()
    overrides = {
        "transport": args.transport,
        "serial_port": args.port,
        "baud_rate": args.baud,
        "ws_url": args.url,
        "ble_address": args.address,
        "web_host": args.web_host,
        "web_port": args.web_port,
        "log_file": args.log_file,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.timeout is not None:
        overrides["connect_timeout"] = args.timeout if args.timeout > 0 else None
    return dataclasses.replace(settings, **overrides)


def main():
    """Entry point: decides between TUI, web-only, plain monitor and one-shot."""
    parser = build_parser()
    args = parser.parse_args()
    try:
        settings = settings_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    is_oneshot = args.status or args.relay is not None or args.all_on \
        or args.all_off or args.estop
    use_tui = not (is_oneshot or args.no_tui or args.web_only)

    # Textual owns the terminal: logs only go to the log file
    setup_logging(settings.log_level, settings.log_file, console=not use_tui)

    if args.web_only:
        _run_web_only(settings)
        return

    if use_tui:
        from tui_app import PodConsoleApp

        gateway = PodGateway(settings)
        with IoThread() as io_thread:
            if args.web:
                io_thread.submit(_serve_web(gateway, settings, quiet=True))
            PodConsoleApp(gateway, io_thread=io_thread).run()
        return

    # Plain monitor or one-shot
    asyncio.run(_run_cli(args, settings))


async def _run_cli(args, settings):
    """Run a one-shot command or the plain monitor (--no-tui)."""
    gateway = PodGateway(settings)
    gateway.add_listener(_print_log_entries)

    print("\n" + "=" * 50)
    print("  Pod Telemetry Gateway")
    print("=" * 50)

    if not await gateway.connect():
        return

    try:
        if args.relay is not None:
            await gateway.toggle_relay(args.relay)
            await asyncio.sleep(1)
        elif args.all_on:
            await gateway.turn_all_on()
            await asyncio.sleep(1)
        elif args.all_off:
            await gateway.turn_all_off()
            await asyncio.sleep(1)
        elif args.estop:
            await gateway.emergency_stop()
            await asyncio.sleep(1)
        elif args.status:
            await asyncio.sleep(2)  # STATUS was sent on connect; wait for the echo
        else:
            await _monitor(gateway)
            return

        relays = gateway.relay_states
        for relay_id in RELAY_IDS:
            state = "ON" if relays.get(relay_id) else "OFF"
            print(f"  Relay {relay_id} ({RELAY_NAMES[relay_id]}): {state}")
    finally:
        await gateway.disconnect()


async def _monitor(gateway: PodGateway):
    """Print a compact snapshot line every second until the link drops."""
    print("Monitoring... press Ctrl+C to stop")
    while gateway.is_connected:
        s = gateway.sensor_snapshot
        health = gateway.health_info()
        temps = "/".join(f"{t:.1f}" for t in s.temperatures)
        print(f"gap {s.gap_height:6.1f}mm  T {temps}C  "
              f"V {s.voltage1:.2f}/{s.voltage2:.2f}/{s.voltage3:.2f}  "
              f"P {s.pressure:.2f}bar  |a| {s.acceleration.magnitude:.2f}  "
              f"health {health['score']:.0f}% {health['label']}  "
              f"state {s.current_state or '-'}")
        await asyncio.sleep(1)
    if gateway.last_error:
        print(f"  Link closed: {gateway.last_error}")


def _print_log_entries(event: str, payload):
    if event == "log":
        kind = f"[{payload.kind}] " if payload.kind else ""
        print(f"  {payload.severity.value.upper():7} {kind}{payload.message}")


async def _serve_web(gateway: PodGateway, settings, quiet: bool = False):
    import uvicorn
    from web_server import create_app

    config = uvicorn.Config(
        create_app(gateway), host=settings.web_host, port=settings.web_port,
        log_level="warning" if quiet else "info",
        log_config=None if quiet else uvicorn.config.LOGGING_CONFIG)
    server = uvicorn.Server(config)
    await server.serve()


def _run_web_only(settings):
    """Run gateway with the web API only (no TUI)."""
    gateway = PodGateway(settings)

    async def startup_and_serve():
        if not await gateway.connect():
            print("  Pod not reachable. Web server starting anyway (POST /api/connect to retry)...")
        await _serve_web(gateway, settings)

    print("\n" + "=" * 50)
    print("  Pod Telemetry Gateway - Web Only Mode")
    print("=" * 50)
    print(f"  API:       http://{settings.web_host}:{settings.web_port}/api/state")
    print(f"  WebSocket: ws://{settings.web_host}:{settings.web_port}/ws")
    print()

    with IoThread() as io_thread:
        try:
            io_thread.submit(startup_and_serve()).result()
        except KeyboardInterrupt:
            print("\nShutting down...")
        finally:
            try:
                io_thread.submit(gateway.disconnect()).result(timeout=3.0)
            except Exception as e:
                logger.warning("Disconnect on shutdown failed: %s", e)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nGoodbye!")
