"""Device settings kept in ``config.json`` next to the queue database.

Only two things live here: which job server this tablet talks to and when
the replay loop last finished a drain. Everything else is compiled into
``core.settings``.
"""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from core.log import get_logger
from core.settings import CONFIG_PATH
from datetime_utils import parse_rfc3339, to_rfc3339_utc, utc_now


logger = get_logger("config")


@dataclass
class DeviceConfig:
    server_url: Optional[str] = None
    last_drain_at: Optional[datetime] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "DeviceConfig":
        url = data.get("server_url")
        drained = data.get("last_drain_at")
        return cls(
            server_url=url.rstrip("/") if isinstance(url, str) and url.strip() else None,
            last_drain_at=parse_rfc3339(drained) if isinstance(drained, str) else None,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "server_url": self.server_url,
            "last_drain_at": to_rfc3339_utc(self.last_drain_at),
        }


def load_config(path: Optional[Path] = None) -> DeviceConfig:
    target = path or CONFIG_PATH
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return DeviceConfig()
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", target, exc)
        return DeviceConfig()
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: expected an object", target)
        return DeviceConfig()
    return DeviceConfig.from_json(data)


def save_config(config: DeviceConfig, path: Optional[Path] = None) -> None:
    """Write atomically: a crash mid-write leaves the previous file intact."""

    target = path or CONFIG_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(config.to_json(), fh, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def record_drain(path: Optional[Path] = None, when: Optional[datetime] = None) -> DeviceConfig:
    cfg = load_config(path)
    cfg.last_drain_at = when or utc_now()
    save_config(cfg, path)
    return cfg


def resolve_server_url(default: str, path: Optional[Path] = None) -> str:
    return load_config(path).server_url or default


__all__ = ["DeviceConfig", "load_config", "record_drain", "resolve_server_url", "save_config"]
