from __future__ import annotations

import os
import string
from dataclasses import dataclass
from typing import Optional, Tuple

# Session constants
CAPACITY = 10
MIN_CAPACITY = 5  # don, two mafia, sheriff and at least one civilian
CONNECT_TIMEOUT = 10.0
PROTO_VERSION = 1

# Discoverable identifiers: 6 upper-case alphanumerics, e.g. "ABC123"
CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits

# Wire framing
MAX_FRAME_BYTES = 1 << 20

DEFAULT_BIND = "127.0.0.1"
DEFAULT_DIRECTORY_PORT = 5099


def parse_address(text: str, default_port: int = DEFAULT_DIRECTORY_PORT) -> Tuple[str, int]:
    host, sep, port = text.strip().rpartition(":")
    if not sep:
        return text.strip(), default_port
    return host or DEFAULT_BIND, int(port)


@dataclass(frozen=True)
class Settings:
    capacity: int = CAPACITY
    connect_timeout: float = CONNECT_TIMEOUT
    directory: Tuple[str, int] = (DEFAULT_BIND, DEFAULT_DIRECTORY_PORT)
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.capacity < MIN_CAPACITY:
            raise ValueError(f"capacity must be at least {MIN_CAPACITY}, got {self.capacity}")
        if self.connect_timeout <= 0:
            raise ValueError("connect timeout must be positive")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get("MAFIA_CAPACITY"):
            kwargs["capacity"] = int(env["MAFIA_CAPACITY"])
        if env.get("MAFIA_CONNECT_TIMEOUT"):
            kwargs["connect_timeout"] = float(env["MAFIA_CONNECT_TIMEOUT"])
        if env.get("MAFIA_DIRECTORY"):
            kwargs["directory"] = parse_address(env["MAFIA_DIRECTORY"])
        if env.get("MAFIA_LOG_LEVEL"):
            kwargs["log_level"] = env["MAFIA_LOG_LEVEL"].upper()
        return cls(**kwargs)
