"""Typer CLI entrypoint for sysapbridge.

Commands:
  setup      — interactive hub configuration
  run        — run the bridge in the foreground
  status     — show session state (state file + running bridge)
  send       — send an actuator command, e.g. ``send switch ABB700D12345 ch0000 on``
  set        — raw datapoint write, e.g. ``set ABB700D12345 ch0000 idp0000 x``
  refresh    — ask the hub for a full state refresh
  actuators  — list known actuators
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import APP_DIR, CONFIG_FILE, SNAPSHOT_FILE, Config, load_config, load_state, save_config
from .runner import run_bridge
from .store import StateStore

app = typer.Typer(
    name="sysapbridge",
    help="Bridge actuator commands to a Busch-Jaeger System Access Point.",
    add_completion=False,
)
console = Console()


# ---------------------------------------------------------------------------
# HTTP client for the running bridge
# ---------------------------------------------------------------------------


class BridgeUnreachable(RuntimeError):
    pass


def _api(
    method: str, path: str, params: dict[str, Any] | None = None
) -> tuple[int, dict[str, Any]]:
    config = load_config()
    query = urllib.parse.urlencode({k: v for k, v in (params or {}).items() if v is not None})
    url = f"http://{config.http_host}:{config.http_port}{path}" + (f"?{query}" if query else "")
    request = urllib.request.Request(url, method=method)
    try:
        with urllib.request.urlopen(request, timeout=5) as resp:  # noqa: S310
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read() or b"{}")
    except (urllib.error.URLError, OSError) as exc:
        raise BridgeUnreachable(f"Could not reach sysapbridge at {url}: {exc}") from exc


def _call(method: str, path: str, params: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
    try:
        return _api(method, path, params)
    except BridgeUnreachable as exc:
        console.print(
            f"[red]{exc}[/red]\n[dim]Is the bridge running? Start it with "
            "[bold]sysapbridge run[/bold].[/dim]"
        )
        raise typer.Exit(1)


def _report(status_code: int, body: dict[str, Any]) -> None:
    message = body.get("message") or body.get("detail") or body
    if 200 <= status_code < 300 and body.get("ok", True):
        console.print(f"[green]{message}[/green]")
    else:
        console.print(f"[red]{message}[/red]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# setup / run
# ---------------------------------------------------------------------------


@app.command()
def setup(
    hub_url: str = typer.Option(
        None, "--hub-url", "-u", help="SysAP WebSocket URL (e.g. ws://192.168.1.10:5280/xmpp-websocket)"
    ),
    jid: str = typer.Option(None, "--jid", "-j", help="XMPP user JID on the SysAP"),
    http_port: int = typer.Option(None, "--port", "-p", help="Local HTTP server port"),
) -> None:
    """Configure the hub connection and local HTTP port."""
    console.print("[bold cyan]sysapbridge setup[/bold cyan]")
    existing = load_config()

    if hub_url is None:
        hub_url = typer.prompt("SysAP WebSocket URL", default=existing.hub_url)
    if jid is None:
        jid = typer.prompt("User JID", default=existing.jid)
    password = typer.prompt(
        "Password", default=existing.password or "", hide_input=True, show_default=False
    )

    config = existing.model_copy(
        update={
            "hub_url": hub_url,
            "jid": jid,
            "password": password,
            "http_port": http_port or existing.http_port,
        }
    )
    save_config(config)
    console.print(f"[green]Config saved to[/green] {CONFIG_FILE}")
    console.print(f"  hub_url  : [bold]{config.hub_url}[/bold]")
    console.print(f"  jid      : [bold]{config.jid}/{config.resource}[/bold]")
    console.print(f"  http_port: [bold]{config.http_port}[/bold]")


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """Run the bridge in the foreground until interrupted."""
    if not CONFIG_FILE.exists():
        console.print("[red]Not configured. Run [bold]sysapbridge setup[/bold] first.[/red]")
        raise typer.Exit(1)
    config: Config = load_config()
    asyncio.run(run_bridge(config, foreground=True, verbose=verbose))


# ---------------------------------------------------------------------------
# status / actuators
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show hub session status."""
    state = load_state()
    config = load_config()
    try:
        _, live = _api("GET", "/status")
    except BridgeUnreachable:
        live = {}

    table = Table(title="sysapbridge status", show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")

    table.add_row("Bridge running", "[green]yes[/green]" if live else "[red]no[/red]")
    table.add_row("Session", live.get("session", "—"))
    table.add_row(
        "Hub connected", "[green]yes[/green]" if state.hub_connected else "[red]no[/red]"
    )
    table.add_row("Subscribed", "[green]yes[/green]" if state.subscribed else "[red]no[/red]")
    table.add_row("Last connected", state.last_connected or "—")
    table.add_row("Hub URL", state.hub_url or config.hub_url)
    table.add_row("Bound JID", live.get("jid") or "—")
    table.add_row("Actuators", str(live.get("actuators", "—")))
    table.add_row("Pending pulse stops", str(live.get("pending_stops", "—")))
    table.add_row("App directory", str(APP_DIR))

    console.print(table)


@app.command()
def actuators() -> None:
    """List known actuators (from the running bridge, else the last snapshot)."""
    try:
        _, body = _api("GET", "/actuators")
        data = body.get("actuators", {})
        source = "live"
    except BridgeUnreachable:
        data = StateStore.load(SNAPSHOT_FILE).snapshot().model_dump(mode="json")["actuators"]
        source = f"snapshot {SNAPSHOT_FILE}"

    if not data:
        console.print("[dim]No actuators known yet.[/dim]")
        return

    table = Table(title=f"Actuators ({source})", show_header=True)
    table.add_column("Serial", style="bold")
    table.add_column("Device")
    table.add_column("Name")
    table.add_column("Channels")

    for serial, actuator in sorted(data.items()):
        channels = ", ".join(sorted(actuator.get("channels", {}))) or "[dim]—[/dim]"
        device = actuator.get("device_id") or "—"
        if actuator.get("serial_number"):
            device += f" → {actuator['serial_number']}"
        table.add_row(serial, device, actuator.get("type_name", ""), channels)

    console.print(table)


# ---------------------------------------------------------------------------
# send / set / refresh
# ---------------------------------------------------------------------------


@app.command()
def send(
    type: str = typer.Argument(..., help="switch, switchgroup, dimmer, shutter/blind, shuttergroup, scene, thermostat"),
    serial: str = typer.Argument(..., help="Actuator serial number"),
    channel: str = typer.Argument(..., help="Channel, e.g. ch0000"),
    action: str = typer.Argument(..., help="on, off, toggle, up, down, stop, set, …"),
    value: Optional[float] = typer.Option(None, "--value", "-V", help="Value for 'set' actions"),
) -> None:
    """Send an actuator command through the running bridge."""
    path = "/commands/" + "/".join(urllib.parse.quote(p, safe="") for p in (type, serial, channel, action))
    _report(*_call("POST", path, {"value": value}))


@app.command("set")
def set_datapoint(
    serial: str = typer.Argument(..., help="Actuator serial number"),
    channel: str = typer.Argument(..., help="Channel, e.g. ch0000"),
    datapoint: str = typer.Argument(..., help="Datapoint, e.g. idp0000"),
    value: str = typer.Argument(..., help="Value or marker: x, x-0, x-1, p-0, p-1, +0.5, -0.5"),
) -> None:
    """Write a datapoint directly."""
    path = "/datapoints/" + "/".join(urllib.parse.quote(p, safe="") for p in (serial, channel, datapoint))
    _report(*_call("POST", path, {"value": value}))


@app.command()
def refresh() -> None:
    """Ask the hub for a full state refresh."""
    _report(*_call("POST", "/refresh"))


if __name__ == "__main__":
    app()
