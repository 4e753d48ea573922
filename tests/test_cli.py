"""Tests for the sysapbridge CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from sysapbridge import cli
from sysapbridge import config as config_module

runner = CliRunner()


class FakeApi:
    def __init__(self, status_code: int = 200, body: dict | None = None) -> None:
        self.status_code = status_code
        self.body = body if body is not None else {"ok": True, "message": "done"}
        self.calls = []

    def __call__(self, method, path, params=None):
        self.calls.append((method, path, params))
        return self.status_code, self.body


@pytest.fixture(autouse=True)
def isolated(app_dir, monkeypatch):
    monkeypatch.setattr(cli, "CONFIG_FILE", app_dir / "config.json")
    monkeypatch.setattr(cli, "SNAPSHOT_FILE", app_dir / "actuators.json")
    return app_dir


def test_send(monkeypatch):
    api = FakeApi(body={"ok": True, "message": "set channel ch0000 of switch X"})
    monkeypatch.setattr(cli, "_api", api)

    result = runner.invoke(cli.app, ["send", "switch", "ABB700D12345", "ch0000", "on"])

    assert result.exit_code == 0
    assert "set channel ch0000 of switch X" in result.output
    assert api.calls == [
        ("POST", "/commands/switch/ABB700D12345/ch0000/on", {"value": None})
    ]


def test_send_with_value(monkeypatch):
    api = FakeApi()
    monkeypatch.setattr(cli, "_api", api)

    result = runner.invoke(
        cli.app, ["send", "dimmer", "ABB700D22222", "ch0000", "set", "--value", "40"]
    )

    assert result.exit_code == 0
    assert api.calls[0][2] == {"value": 40.0}


def test_send_rejected(monkeypatch):
    monkeypatch.setattr(
        cli, "_api", FakeApi(404, {"ok": False, "kind": "unknown_actuator", "detail": "nope", "message": "nope"})
    )

    result = runner.invoke(cli.app, ["send", "switch", "X", "ch0000", "on"])

    assert result.exit_code == 1
    assert "nope" in result.output


def test_set_raw(monkeypatch):
    api = FakeApi()
    monkeypatch.setattr(cli, "_api", api)

    result = runner.invoke(cli.app, ["set", "ABB700D33333", "ch0000", "idp0000", "p-1"])

    assert result.exit_code == 0
    assert api.calls == [("POST", "/datapoints/ABB700D33333/ch0000/idp0000", {"value": "p-1"})]


def unreachable(*args, **kwargs):
    raise cli.BridgeUnreachable("Could not reach sysapbridge")


def test_bridge_not_running(monkeypatch):
    monkeypatch.setattr(cli, "_api", unreachable)

    result = runner.invoke(cli.app, ["refresh"])

    assert result.exit_code == 1
    assert "Is the bridge running?" in result.output


def test_status_offline(monkeypatch):
    monkeypatch.setattr(cli, "_api", unreachable)
    config_module.mark_connected("ws://hub")

    result = runner.invoke(cli.app, ["status"])

    assert result.exit_code == 0
    assert "Bridge running" in result.output
    assert "ws://hub" in result.output


def test_actuators_from_snapshot(monkeypatch, store, isolated):
    monkeypatch.setattr(cli, "_api", unreachable)
    store.save(isolated / "actuators.json")

    result = runner.invoke(cli.app, ["actuators"])

    assert result.exit_code == 0
    assert "ABB700D12345" in result.output
    assert "snapshot" in result.output


def test_setup_saves_config(isolated):
    result = runner.invoke(
        cli.app,
        ["setup", "--hub-url", "ws://10.0.0.5:5280/xmpp-websocket", "--jid", "installer@busch-jaeger.de"],
        input="secret\n",
    )

    assert result.exit_code == 0
    saved = config_module.load_config()
    assert saved.hub_url == "ws://10.0.0.5:5280/xmpp-websocket"
    assert saved.password == "secret"


def test_run_requires_setup():
    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == 1
    assert "Not configured" in result.output
