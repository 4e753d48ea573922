"""Pytest configuration and shared fixtures for sysapbridge tests."""

from __future__ import annotations

import asyncio
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import pytest
from websockets.exceptions import ConnectionClosedOK

from sysapbridge import config as config_module
from sysapbridge import stanzas
from sysapbridge.commands import CommandEngine
from sysapbridge.dispatcher import Dispatcher
from sysapbridge.models import Actuator, Channel
from sysapbridge.store import StateStore

SWITCH = "ABB700D12345"
DIMMER = "ABB700D22222"
SHUTTER = "ABB700D33333"
THERMOSTAT = "ABB700D44444"
SWITCHGROUP = "ABB700D55555"
SHUTTERGROUP = "ABB700D66666"
SCENE = "FFFF48010001"
CH = "ch0000"


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def _actuator(device_id: str, type_name: str, values: dict, **extra) -> Actuator:
    return Actuator(
        device_id=device_id,
        type_name=type_name,
        channels={CH: Channel(datapoints=dict(values))},
        **extra,
    )


@pytest.fixture
def store():
    """A store holding one actuator of every command type."""
    return StateStore(
        {
            SWITCH: _actuator("B002", "Schaltaktor 4-fach", {"idp0000": 0, "odp0000": 1}),
            DIMMER: _actuator("101C", "Dimmaktor 4-fach", {"idp0000": 0, "odp0000": 0}),
            SHUTTER: _actuator(
                "B001", "Jalousieaktor 4-fach", {"odp0000": 0, "pm0006": 50}
            ),
            THERMOSTAT: _actuator(
                "9004", "Raumtemperaturregler", {"odp0006": 1, "odp0002": 20.5}
            ),
            SWITCHGROUP: _actuator("4000", "Gruppe Licht", {"odp0002": 0}),
            SHUTTERGROUP: _actuator("4001", "Gruppe Jalousien", {}),
            SCENE: _actuator("4800", "Szene Abend", {}, serial_number=SWITCH),
        }
    )


# ---------------------------------------------------------------------------
# Sender and scheduler doubles
# ---------------------------------------------------------------------------


def rpc_strings(element: ET.Element) -> list[str]:
    """The ``<string>`` params of an RPC call, in order."""
    return [node.text or "" for node in element.iter() if stanzas.local_name(node) == "string"]


class RecordingSender:
    """Stands in for ``Session.send``."""

    def __init__(self) -> None:
        self.sent: list[ET.Element] = []

    def __call__(self, element: ET.Element) -> None:
        self.sent.append(element)

    @property
    def writes(self) -> list[tuple[str, str]]:
        """``(address, value)`` of every setDatapoint call sent so far."""
        result = []
        for element in self.sent:
            method = next(
                (n for n in element.iter() if stanzas.local_name(n) == "methodName"), None
            )
            if method is not None and method.text == stanzas.SET_DATAPOINT:
                address, value = rpc_strings(element)
                result.append((address, value))
        return result


class _Handle:
    def __init__(self, delay, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Records scheduled callbacks; ``fire()`` runs the live ones."""

    def __init__(self) -> None:
        self.handles: list[_Handle] = []

    def __call__(self, delay, callback):
        handle = _Handle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> list[_Handle]:
        return [h for h in self.handles if not h.cancelled]

    def fire(self) -> None:
        for handle in self.live:
            handle.cancelled = True
            handle.callback()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def dispatcher(store, sender, scheduler):
    return Dispatcher(store, sender, schedule=scheduler)


@pytest.fixture
def engine(store, dispatcher):
    return CommandEngine(store, dispatcher)


# ---------------------------------------------------------------------------
# Hub frames
# ---------------------------------------------------------------------------


def project_xml(serial: str, channel: str, values: dict, *, device_id: str | None = None,
                name: str | None = None) -> str:
    """A minimal ``<project>`` document for one device and channel."""
    attrs = f'serialNumber="{serial}"'
    if device_id:
        attrs += f' deviceId="{device_id}"'
    attribute = f'<attribute name="displayName">{name}</attribute>' if name else ""
    points = "".join(
        f'<dataPoint i="{key}"><value>{value}</value></dataPoint>'
        for key, value in values.items()
        if not key.startswith("pm")
    )
    params = "".join(
        f'<parameter i="{key}"><value>{value}</value></parameter>'
        for key, value in values.items()
        if key.startswith("pm")
    )
    return (
        f"<project><devices><device {attrs}>{attribute}<channels>"
        f'<channel i="{channel}"><outputs>{points}</outputs>'
        f"<parameters>{params}</parameters></channel>"
        f"</channels></device></devices></project>"
    )


@pytest.fixture
def make_update():
    def _make(project: str, *, sender: str = stanzas.HUB_JID) -> ET.Element:
        return stanzas.from_xml(
            f'<message xmlns="jabber:client" type="headline" from="{sender}" '
            f'to="installer@busch-jaeger.de/sysapbridge">'
            f'<event xmlns="http://jabber.org/protocol/pubsub#event">'
            f'<items node="{stanzas.UPDATE_NODE}"><item>'
            f'<update xmlns="{stanzas.UPDATE_NODE}"><data>{escape(project)}</data></update>'
            f"</item></items></event></message>"
        )

    return _make


@pytest.fixture
def make_result():
    def _make(payload: str = "", *, iq_id: str = "abc123") -> ET.Element:
        return stanzas.from_xml(
            f'<iq xmlns="jabber:client" type="result" from="{stanzas.RPC_JID}" id="{iq_id}">'
            f'<query xmlns="jabber:iq:rpc"><methodResponse><params><param>'
            f"<value><string>{escape(payload)}</string></value>"
            f"</param></params></methodResponse></query></iq>"
        )

    return _make


@pytest.fixture
def make_fault():
    def _make(message: str, *, iq_id: str = "abc123") -> ET.Element:
        return stanzas.from_xml(
            f'<iq xmlns="jabber:client" type="result" from="{stanzas.RPC_JID}" id="{iq_id}">'
            f'<query xmlns="jabber:iq:rpc"><methodResponse><fault><value><struct>'
            f"<member><name>faultCode</name><value><int>4</int></value></member>"
            f"<member><name>faultString</name><value><string>{message}</string></value></member>"
            f"</struct></value></fault></methodResponse></query></iq>"
        )

    return _make


HUB_PRESENCE = f'<presence xmlns="jabber:client" from="{stanzas.RPC_JID}" to="installer@busch-jaeger.de/sysapbridge"/>'


# ---------------------------------------------------------------------------
# WebSocket double
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Scripted WebSocket: ``feed()`` queues inbound frames, ``sent`` records outbound."""

    def __init__(self, frames=()) -> None:
        self.sent: list[str] = []
        self._inbound: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.feed(frame)

    def feed(self, raw: str) -> None:
        self._inbound.put_nowait(raw)

    def hang_up(self) -> None:
        self._inbound.put_nowait(None)

    async def send(self, raw: str) -> None:
        self.sent.append(raw)

    async def recv(self) -> str:
        raw = await self._inbound.get()
        if raw is None:
            raise ConnectionClosedOK(None, None)
        return raw

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            raw = await self._inbound.get()
            if raw is None:
                return
            yield raw

    @property
    def sent_elements(self) -> list[ET.Element]:
        return [stanzas.from_xml(raw) for raw in self.sent]


# ---------------------------------------------------------------------------
# Config files
# ---------------------------------------------------------------------------


@pytest.fixture
def app_dir(tmp_path, monkeypatch):
    """Point every config/state file at a temporary directory."""
    monkeypatch.setattr(config_module, "APP_DIR", tmp_path)
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(config_module, "STATE_FILE", tmp_path / "state.json")
    monkeypatch.setattr(config_module, "SNAPSHOT_FILE", tmp_path / "actuators.json")
    return tmp_path
