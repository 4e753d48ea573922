"""Value specifications an action resolves to before it is sent.

A spec is either a plain value or a symbolic marker that the dispatcher
resolves against live datapoint state:

  Fixed(v)            write ``v`` as is
  Given(offset)       write the caller-supplied value plus ``offset``
  Toggle()            write the complement of the matching output datapoint
  MovementToggle(d)   move in direction ``d`` (0 up, 1 down), or stop if the
                      shutter is already moving the other way
  Pulse(d)            move in direction ``d`` and stop again shortly after
  Delta(a)            shift the thermostat set point by ``a`` degrees

``parse_spec`` understands the compact string markers used on the wire-level
raw write surface: ``x``, ``x-0``/``x-1``, ``p-0``/``p-1``, ``+0.5``/``-0.5``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .models import DatapointValue, parse_value

UP = 0
DOWN = 1


@dataclass(frozen=True)
class Fixed:
    value: DatapointValue


@dataclass(frozen=True)
class Given:
    offset: float = 0.0


@dataclass(frozen=True)
class Toggle:
    pass


@dataclass(frozen=True)
class MovementToggle:
    direction: int


@dataclass(frozen=True)
class Pulse:
    direction: int


@dataclass(frozen=True)
class Delta:
    amount: float


ValueSpec = Union[Fixed, Given, Toggle, MovementToggle, Pulse, Delta]


def _direction(raw: str) -> int:
    if raw not in ("0", "1"):
        raise ValueError(f"invalid direction {raw!r}, expected 0 (up) or 1 (down)")
    return int(raw)


def parse_spec(raw: str) -> ValueSpec:
    """Turn a string marker into a ValueSpec.

    Anything that is not a recognised marker is a literal; numeric literals
    are converted to ``int`` or ``float``.
    """
    raw = raw.strip()
    if raw == "x":
        return Toggle()
    if raw.startswith("x-"):
        return MovementToggle(_direction(raw[2:]))
    if raw.startswith("p-"):
        return Pulse(_direction(raw[2:]))
    if raw[:1] in ("+", "-") and len(raw) > 1:
        try:
            magnitude = float(raw[1:])
        except ValueError:
            return Fixed(raw)
        return Delta(-magnitude if raw[0] == "-" else magnitude)
    return Fixed(parse_value(raw))
