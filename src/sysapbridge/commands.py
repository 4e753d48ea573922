"""Command table and resolution of human-facing actuator commands.

``CommandEngine.resolve("switch", "ABB700D12345", "ch0000", "on")`` checks the
request against the table and the store, then hands the action's
``(datapoint, spec)`` to the dispatcher.  Business-rule failures are returned
as :class:`CommandError` and logged; they are never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from .dispatcher import DispatchError, Dispatcher
from .models import CommandError, CommandOk, CommandResult, DatapointValue
from .store import StateStore
from .values import DOWN, UP, Delta, Fixed, Given, MovementToggle, Pulse, Toggle, ValueSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Action:
    datapoint: str
    spec: ValueSpec


@dataclass(frozen=True)
class CommandType:
    actions: Mapping[str, Action]
    # Hardware codes accepted for physical actuators.  Groups and scenes are
    # virtual bus endpoints and are only checked for existence.
    device_ids: frozenset[str] | None = None


def _type(actions: dict[str, Action], device_ids: tuple[str, ...] | None = None) -> CommandType:
    return CommandType(
        actions=MappingProxyType(actions),
        device_ids=frozenset(device_ids) if device_ids is not None else None,
    )


COMMANDS: Mapping[str, CommandType] = MappingProxyType(
    {
        "switch": _type(
            {
                "on": Action("idp0000", Fixed(1)),
                "off": Action("idp0000", Fixed(0)),
                "toggle": Action("idp0000", Toggle()),
            },
            (
                "B002",  # switch actuator 4-gang, 16 A, DIN rail
                "100E",  # sensor/switch actuator 2/1-gang
            ),
        ),
        "switchgroup": _type(
            {
                "on": Action("odp0002", Fixed(1)),
                "off": Action("odp0002", Fixed(0)),
                "toggle": Action("odp0002", Toggle()),
            }
        ),
        "dimmer": _type(
            {
                "on": Action("idp0000", Fixed(1)),
                "off": Action("idp0000", Fixed(0)),
                "toggle": Action("idp0000", Toggle()),
                # relative dimming: 9 dims up by 100 %, 1 dims down, 0 stops
                "up": Action("idp0001", Fixed(9)),
                "down": Action("idp0001", Fixed(1)),
                "stop": Action("idp0001", Fixed(0)),
                "set": Action("idp0002", Given()),
            },
            ("101C",),  # dimmer actuator 4-gang
        ),
        "shutter": _type(
            {
                "up": Action("idp0000", Fixed(UP)),
                "down": Action("idp0000", Fixed(DOWN)),
                "toggle-up": Action("idp0000", MovementToggle(UP)),
                "toggle-down": Action("idp0000", MovementToggle(DOWN)),
                "pulse-up": Action("idp0000", Pulse(UP)),
                "pulse-down": Action("idp0000", Pulse(DOWN)),
                "stop": Action("idp0001", Fixed(1)),
            },
            (
                "B001",  # blind actuator 4-gang, DIN rail
                "1013",  # sensor/blind actuator 1/1-gang
            ),
        ),
        "shuttergroup": _type(
            {
                "up": Action("odp0003", Fixed(0)),
                "down": Action("odp0003", Fixed(1)),
                "stop": Action("odp0004", Fixed(1)),
            }
        ),
        "scene": _type({"set": Action("odp0000", Fixed(1))}),
        "thermostat": _type(
            {
                "toggle": Action("idp000B", Toggle()),
                # set points are sent relative to 21 °C
                "set": Action("idp0007", Given(offset=-21.0)),
                "up": Action("idp0007", Delta(0.5)),
                "down": Action("idp0007", Delta(-0.5)),
                "on": Action("idp000B", Fixed(1)),
                "off": Action("idp000B", Fixed(0)),
                "eco-on": Action("idp0009", Fixed(1)),
                "eco-off": Action("idp0009", Fixed(0)),
            }
        ),
    }
)

# same hardware, different public vocabulary
TYPE_ALIASES: Mapping[str, str] = MappingProxyType({"blind": "shutter"})


class CommandEngine:
    """Validates and resolves actuator commands.

    ``is_connected`` reports whether writes can reach the hub; a command
    that passes validation while it returns False is rejected with
    ``hub_unavailable`` and nothing is dispatched.
    """

    def __init__(
        self,
        store: StateStore,
        dispatcher: Dispatcher,
        commands: Mapping[str, CommandType] = COMMANDS,
        *,
        is_connected: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._commands = commands
        self._is_connected = is_connected

    def resolve(
        self,
        type: str,
        serial: str,
        channel: str,
        action: str,
        value: DatapointValue | None = None,
    ) -> CommandResult:
        type = TYPE_ALIASES.get(type, type)

        command = self._commands.get(type)
        if command is None:
            return self._fail("unknown_type", f'unknown command: "{type}"')
        entry = command.actions.get(action)
        if entry is None:
            return self._fail(
                "unknown_action", f'unknown action "{action}" for type "{type}"'
            )
        actuator = self._store.actuator(serial)
        if actuator is None:
            return self._fail("unknown_actuator", f'actuator "{serial}" not found')
        if command.device_ids is not None and actuator.device_id not in command.device_ids:
            return self._fail(
                "type_mismatch",
                f'actuator "{serial}" ({actuator.type_name}) is not of type "{type}"',
            )

        target = serial
        if type == "scene":
            # scenes fire through the output datapoint of their physical actuator
            if not actuator.serial_number:
                return self._fail(
                    "state_unavailable",
                    f'scene "{serial}" ({actuator.type_name}) has no owning actuator',
                )
            target = actuator.serial_number

        if isinstance(entry.spec, Given) and value is None:
            return self._fail(
                "missing_value", f'action "{action}" for type "{type}" needs a value'
            )

        if self._is_connected is not None and not self._is_connected():
            return self._fail(
                "hub_unavailable",
                f'cannot {action} {type} "{serial}" on {channel}: hub is not connected',
            )

        try:
            write = self._dispatcher.dispatch(target, channel, entry.datapoint, entry.spec, value)
        except DispatchError as exc:
            return self._fail(
                "state_unavailable",
                f'cannot {action} {type} "{serial}" on {channel}: {exc}',
            )

        result = CommandOk(
            type=type,
            serial=serial,
            channel=channel,
            action=action,
            type_name=actuator.type_name,
            write=write,
        )
        logger.info("%s", result.message)
        return result

    def _fail(self, kind: str, detail: str) -> CommandError:
        logger.error("command rejected: %s", detail)
        return CommandError(kind=kind, detail=detail)
