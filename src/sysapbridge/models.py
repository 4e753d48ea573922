"""Pydantic models shared across the bridge."""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, Field

DatapointValue = Union[int, float, str]


class Channel(BaseModel):
    """One numbered sub-unit of an actuator and its datapoint values.

    Keys are ``idpNNNN`` (inputs, written to command the device), ``odpNNNN``
    (outputs, reported state) and ``pmNNNN`` (device parameters).
    """

    datapoints: dict[str, DatapointValue] = Field(default_factory=dict)


class Actuator(BaseModel):
    """An addressable endpoint on the hub.

    ``serial_number`` is only set on virtual scene entries, where it names the
    physical actuator owning the scene's trigger datapoint.
    """

    device_id: str = ""
    type_name: str = ""
    serial_number: str | None = None
    channels: dict[str, Channel] = Field(default_factory=dict)


def parse_value(raw: str) -> DatapointValue:
    """Convert hub text to ``int`` or ``float`` where it is numeric."""
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def as_number(value: DatapointValue | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except ValueError:
        return None


def format_value(value: DatapointValue) -> str:
    """Render a datapoint value the way the hub expects it (always a string)."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class DatapointWrite(BaseModel):
    """A fully resolved ``serial/channel/datapoint = value`` write."""

    serial: str
    channel: str
    datapoint: str
    value: DatapointValue

    @property
    def address(self) -> str:
        return f"{self.serial}/{self.channel}/{self.datapoint}"

    def __str__(self) -> str:
        return f"{self.address}: {format_value(self.value)}"


ErrorKind = Literal[
    "unknown_type",
    "unknown_action",
    "unknown_actuator",
    "type_mismatch",
    "missing_value",
    "state_unavailable",
    "hub_unavailable",
]


class CommandOk(BaseModel):
    ok: Literal[True] = True
    type: str
    serial: str
    channel: str
    action: str
    type_name: str = ""
    write: DatapointWrite

    @property
    def message(self) -> str:
        return (
            f"set channel {self.channel} of {self.type} {self.write.serial} "
            f"({self.type_name}) to {self.action}: {self.write}"
        )


class CommandError(BaseModel):
    ok: Literal[False] = False
    kind: ErrorKind
    detail: str

    @property
    def message(self) -> str:
        return self.detail


CommandResult = Union[CommandOk, CommandError]
