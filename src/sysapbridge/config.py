"""Config and state file management for sysapbridge.

Files live under ~/.sysapbridge/ (or ``$SYSAPBRIDGE_HOME``):
  config.json     — hub credentials and local settings
  state.json      — runtime state updated by the running bridge
  actuators.json  — last known actuator snapshot (see store.py)
  logs/           — rotating log files
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

APP_DIR = Path(os.environ.get("SYSAPBRIDGE_HOME", Path.home() / ".sysapbridge"))
CONFIG_FILE = APP_DIR / "config.json"
STATE_FILE = APP_DIR / "state.json"
SNAPSHOT_FILE = APP_DIR / "actuators.json"


class Config(BaseModel):
    hub_url: str = "ws://sysap.local:5280/xmpp-websocket"
    jid: str = "installer@busch-jaeger.de"
    resource: str = "sysapbridge"
    password: str = ""
    sasl_mechanism: Literal["DIGEST-MD5", "PLAIN"] = "DIGEST-MD5"
    keepalive_interval: float = Field(default=10.0, gt=0)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=60.0, gt=0)
    http_host: str = "127.0.0.1"
    http_port: int = 18090
    log_dir: str = ""
    log_levels: dict[str, str] = Field(default_factory=dict)

    @property
    def domain(self) -> str:
        return self.jid.partition("@")[2] or self.jid

    @property
    def username(self) -> str:
        return self.jid.partition("@")[0]


class State(BaseModel):
    hub_connected: bool = False
    subscribed: bool = False
    last_connected: Optional[str] = None  # ISO 8601
    hub_url: Optional[str] = None


def ensure_app_dir() -> Path:
    APP_DIR.mkdir(parents=True, exist_ok=True)
    return APP_DIR


def resolve_log_dir(config: Config) -> Path:
    return Path(config.log_dir) if config.log_dir else APP_DIR / "logs"


def load_config() -> Config:
    ensure_app_dir()
    if CONFIG_FILE.exists():
        return Config.model_validate_json(CONFIG_FILE.read_text(encoding="utf-8"))
    return Config()


def save_config(config: Config) -> None:
    ensure_app_dir()
    CONFIG_FILE.write_text(config.model_dump_json(indent=2), encoding="utf-8")


def load_state() -> State:
    ensure_app_dir()
    if STATE_FILE.exists():
        try:
            return State.model_validate_json(STATE_FILE.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning("Ignoring unreadable state file %s: %s", STATE_FILE, exc)
    return State()


def save_state(state: State) -> None:
    ensure_app_dir()
    STATE_FILE.write_text(state.model_dump_json(indent=2), encoding="utf-8")


def mark_connected(hub_url: str) -> None:
    state = load_state()
    state.hub_connected = True
    state.subscribed = False
    state.last_connected = datetime.now(timezone.utc).isoformat()
    state.hub_url = hub_url
    save_state(state)


def mark_subscribed() -> None:
    state = load_state()
    state.subscribed = True
    save_state(state)


def mark_disconnected() -> None:
    state = load_state()
    state.hub_connected = False
    state.subscribed = False
    save_state(state)
