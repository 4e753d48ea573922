"""In-memory actuator state, kept current from hub frames.

The store is owned by the event loop: inbound frame handling writes to it and
the dispatcher reads from it, all on the same thread, so no locking is done.

Hub payloads are ``<project>`` documents::

    <project>
      <devices>
        <device serialNumber="ABB700D12345" deviceId="B002">
          <attribute name="displayName">Schaltaktor 4-fach</attribute>
          <channels>
            <channel i="ch0000">
              <inputs><dataPoint i="idp0000"><value>0</value></dataPoint></inputs>
              <outputs><dataPoint i="odp0000"><value>1</value></dataPoint></outputs>
              <parameters><parameter i="pm0006"><value>50</value></parameter></parameters>
            </channel>
          </channels>
        </device>
      </devices>
    </project>

Values of known actuators are merged in.  A device not yet in the store is
only added when the document names its ``deviceId``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from xml.etree import ElementTree as ET

from pydantic import BaseModel, Field

from . import stanzas
from .models import Actuator, Channel, DatapointValue, parse_value

logger = logging.getLogger(__name__)

_VALUE_TAGS = ("dataPoint", "parameter")


class Snapshot(BaseModel):
    """On-disk form of the store."""

    actuators: dict[str, Actuator] = Field(default_factory=dict)


class StateStore:
    """Actuators keyed by serial number."""

    def __init__(self, actuators: dict[str, Actuator] | None = None) -> None:
        self._actuators: dict[str, Actuator] = dict(actuators or {})

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get(self, scope: str = "actuators") -> dict[str, Actuator]:
        if scope != "actuators":
            raise KeyError(f"unknown store scope: {scope}")
        return self._actuators

    def actuator(self, serial: str) -> Actuator | None:
        return self._actuators.get(serial)

    def datapoint(self, serial: str, channel: str, key: str) -> DatapointValue | None:
        actuator = self._actuators.get(serial)
        if actuator is None:
            return None
        ch = actuator.channels.get(channel)
        if ch is None:
            return None
        return ch.datapoints.get(key)

    def __contains__(self, serial: object) -> bool:
        return serial in self._actuators

    def __len__(self) -> int:
        return len(self._actuators)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def upsert(self, serial: str, actuator: Actuator) -> None:
        self._actuators[serial] = actuator

    def set_datapoint(
        self, serial: str, channel: str, key: str, value: DatapointValue
    ) -> bool:
        """Store one value.  Returns True if it changed."""
        actuator = self._actuators.setdefault(serial, Actuator())
        ch = actuator.channels.setdefault(channel, Channel())
        if ch.datapoints.get(key) == value:
            return False
        ch.datapoints[key] = value
        return True

    def apply_update(self, frame: ET.Element) -> int:
        """Merge an update notification.  Returns the number of changed values."""
        changed = 0
        for project in stanzas.update_projects(frame):
            changed += self.merge_project(project)
        logger.debug("update applied: %d value(s) changed", changed)
        return changed

    def apply_response(self, frame: ET.Element) -> int:
        """Merge an RPC result.  Results without a project document are ignored."""
        fault = stanzas.rpc_fault(frame)
        if fault is not None:
            logger.warning("RPC call %s failed: %s", frame.get("id"), fault)
            return 0
        project = stanzas.response_project(frame)
        if project is None:
            logger.debug("RPC result %s carries no project data", frame.get("id"))
            return 0
        changed = self.merge_project(project)
        logger.info(
            "response applied: %d actuator(s) known, %d value(s) changed",
            len(self._actuators),
            changed,
        )
        return changed

    def merge_project(self, project: ET.Element) -> int:
        changed = 0
        for device in project.iter():
            if stanzas.local_name(device) != "device":
                continue
            serial = device.get("serialNumber")
            if not serial:
                continue
            actuator = self._merge_device(serial, device)
            if actuator is None:
                logger.debug("skipping values for unknown device %s", serial)
                continue
            for channel in device.iter():
                if stanzas.local_name(channel) != "channel" or not channel.get("i"):
                    continue
                changed += self._merge_channel(serial, channel.get("i"), channel)
        return changed

    def _merge_device(self, serial: str, device: ET.Element) -> Actuator | None:
        actuator = self._actuators.get(serial)
        device_id = device.get("deviceId")
        if actuator is None:
            if not device_id:
                return None
            actuator = Actuator(device_id=device_id)
            self._actuators[serial] = actuator
        elif device_id:
            actuator.device_id = device_id

        for attribute in stanzas.children(device, "attribute"):
            if attribute.get("name") == "displayName" and attribute.text:
                actuator.type_name = attribute.text.strip()
        return actuator

    def _merge_channel(self, serial: str, channel_id: str, channel: ET.Element) -> int:
        changed = 0
        for node in channel.iter():
            if stanzas.local_name(node) not in _VALUE_TAGS or not node.get("i"):
                continue
            value = stanzas.find_path(node, ("value",))
            if value is None or value.text is None:
                continue
            if self.set_datapoint(serial, channel_id, node.get("i"), parse_value(value.text.strip())):
                changed += 1
        return changed

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        return Snapshot(actuators=self._actuators)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.snapshot().model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> StateStore:
        if not path.exists():
            return cls()
        snapshot = Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
        logger.info("Loaded %d actuator(s) from %s", len(snapshot.actuators), path)
        return cls(snapshot.actuators)
