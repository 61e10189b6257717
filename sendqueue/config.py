from dataclasses import dataclass, fields
from typing import Dict

DEFAULT_CONFIG = {
    "batch_size": "50",             # queue items claimed per cycle
    "stuck_timeout": "5",           # minutes before an InProcess item counts as stuck
    "retry_limit": "4",             # reclaims before an item is marked Failed
    "throttle_batch_delay": "0",    # seconds to wait after each non-empty batch
    "delivery_command": "",         # shell command run per recipient; empty = dry run
    "command_timeout": "20",        # seconds
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INT_KEYS = ("batch_size", "stuck_timeout", "retry_limit", "throttle_batch_delay", "command_timeout")


@dataclass(frozen=True)
class Settings:
    """
    Typed view of the config table.

    A stuck_timeout of 0 makes the reclaimer treat every InProcess item as
    stuck, including ones claimed a moment ago by a running cycle. That is
    a misconfiguration, not something the scheduler guards against.
    """
    batch_size: int = 50
    stuck_timeout: int = 5
    retry_limit: int = 4
    throttle_batch_delay: int = 0
    delivery_command: str = ""
    command_timeout: int = 20

    @classmethod
    def from_mapping(cls, cfg: Dict[str, str]) -> "Settings":
        values = {}
        for f in fields(cls):
            raw = cfg.get(f.name, DEFAULT_CONFIG[f.name])
            if f.name in INT_KEYS:
                values[f.name] = validate_value(f.name, raw)
            else:
                values[f.name] = (raw or "").strip()
        return cls(**values)


def validate_value(key: str, value) -> int:
    try:
        n = int(str(value).strip())
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {value!r}")
    if n < 0:
        raise ValueError(f"{key} must be >= 0, got {n}")
    if key == "batch_size" and n < 1:
        raise ValueError("batch_size must be >= 1")
    return n
