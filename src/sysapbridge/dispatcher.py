"""Resolve value specs against live state and send datapoint writes.

All reads happen when ``dispatch()`` is called and are not atomic with the
hub applying the write: two toggles issued before the first update comes
back compute the same value, so the second one is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol
from xml.etree import ElementTree as ET

from . import stanzas
from .models import DatapointValue, DatapointWrite, as_number
from .store import StateStore
from .values import UP, Delta, Fixed, Given, MovementToggle, Pulse, Toggle, ValueSpec

logger = logging.getLogger(__name__)

THERMOSTAT_DEVICE_ID = "9004"
REFERENCE_TEMPERATURE = 21.0

STOP_DATAPOINT = "idp0001"
MOVEMENT_STATUS = "odp0000"
THERMOSTAT_SWITCH_STATUS = "odp0006"
SET_POINT_STATUS = "odp0002"
MOTOR_DELAY = "pm0006"

# odp0000: 0/1 stationary, 2 moving up, 3 moving down
MOVING_UP = 2
MOVING_DOWN = 3

PULSE_BASE_DELAY = 0.2  # seconds, plus the device motor delay


class DispatchError(ValueError):
    """The state needed to resolve a value spec is not available."""


class Cancellable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


def _call_later(delay: float, callback: Callable[[], None]) -> Cancellable:
    return asyncio.get_running_loop().call_later(delay, callback)


class Dispatcher:
    """Turns ``(serial, channel, datapoint, spec)`` into one RPC write.

    ``send`` receives the finished stanza and must not block; the session's
    ``send`` queues it.  ``schedule`` arms the delayed stop of a pulse and
    defaults to ``loop.call_later``.
    """

    def __init__(
        self,
        store: StateStore,
        send: Callable[[ET.Element], None],
        *,
        schedule: Scheduler | None = None,
    ) -> None:
        self._store = store
        self._send = send
        self._schedule = schedule or _call_later
        self._pending: dict[tuple[str, str], Cancellable] = {}

    @property
    def pending_stops(self) -> list[tuple[str, str]]:
        return list(self._pending)

    def dispatch(
        self,
        serial: str,
        channel: str,
        datapoint: str,
        spec: ValueSpec,
        value: DatapointValue | None = None,
    ) -> DatapointWrite:
        match spec:
            case Fixed():
                resolved: DatapointValue = spec.value
            case Given():
                resolved = self._given(spec, value)
            case Toggle():
                resolved = self._toggled(serial, channel, datapoint)
            case MovementToggle():
                datapoint, resolved = self._movement(serial, channel, datapoint, spec.direction)
            case Pulse():
                resolved = spec.direction
                self._arm_stop(serial, channel)
            case Delta():
                resolved = self._shifted(serial, channel, spec.amount)
            case _:
                raise TypeError(f"unsupported value spec: {spec!r}")

        write = DatapointWrite(serial=serial, channel=channel, datapoint=datapoint, value=resolved)
        self.write(write)
        return write

    def write(self, write: DatapointWrite) -> None:
        """Send an already resolved write."""
        self._send(stanzas.build_set_datapoint(write))
        logger.debug("set actuator: %s", write)

    def cancel_pending(self) -> int:
        """Cancel every armed pulse stop.  Returns how many were pending."""
        count = len(self._pending)
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        return count

    # ------------------------------------------------------------------
    # Spec resolution
    # ------------------------------------------------------------------

    def _given(self, spec: Given, value: DatapointValue | None) -> DatapointValue:
        number = as_number(value)
        if number is None:
            raise DispatchError(f"a numeric value is required, got {value!r}")
        if not spec.offset:
            return value if isinstance(value, (int, float)) else number
        return number + spec.offset

    def _toggled(self, serial: str, channel: str, datapoint: str) -> int:
        actuator = self._store.actuator(serial)
        if actuator is None:
            raise DispatchError(f'actuator "{serial}" not found')
        if actuator.device_id == THERMOSTAT_DEVICE_ID:
            look = THERMOSTAT_SWITCH_STATUS
        else:
            # idpNNNN and odpNNNN share their number
            look = "o" + datapoint[1:]
        current = as_number(self._store.datapoint(serial, channel, look))
        return 0 if current == 1 else 1

    def _movement(
        self, serial: str, channel: str, datapoint: str, direction: int
    ) -> tuple[str, DatapointValue]:
        status = as_number(self._store.datapoint(serial, channel, MOVEMENT_STATUS))
        opposite = MOVING_DOWN if direction == UP else MOVING_UP
        if status == opposite:
            logger.debug(
                "%s/%s is moving the other way, stopping instead", serial, channel
            )
            return STOP_DATAPOINT, 1
        return datapoint, direction

    def _shifted(self, serial: str, channel: str, amount: float) -> float:
        current = as_number(self._store.datapoint(serial, channel, SET_POINT_STATUS))
        if current is None:
            raise DispatchError(
                f"no current set point ({SET_POINT_STATUS}) for {serial}/{channel}"
            )
        # the thermostat takes its set point relative to the reference temperature
        return current + amount - REFERENCE_TEMPERATURE

    # ------------------------------------------------------------------
    # Pulse stop timers
    # ------------------------------------------------------------------

    def _motor_delay(self, serial: str, channel: str) -> float:
        raw = self._store.datapoint(serial, channel, MOTOR_DELAY)
        delay = as_number(raw)
        if delay is None:
            logger.warning(
                "no motor delay (%s) for %s/%s, assuming 0 ms", MOTOR_DELAY, serial, channel
            )
            return 0.0
        return delay / 1000.0

    def _arm_stop(self, serial: str, channel: str) -> None:
        key = (serial, channel)
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.cancel()
            logger.debug("re-armed pulse stop for %s/%s", serial, channel)
        delay = PULSE_BASE_DELAY + self._motor_delay(serial, channel)
        self._pending[key] = self._schedule(delay, lambda: self._fire_stop(key))

    def _fire_stop(self, key: tuple[str, str]) -> None:
        self._pending.pop(key, None)
        serial, channel = key
        self.write(DatapointWrite(serial=serial, channel=channel, datapoint=STOP_DATAPOINT, value=1))
