"""Stable identifier for this installation, sent with every replay."""
from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional

from core.settings import DEVICE_ID_PATH


def _read_existing(path: Path) -> Optional[str]:
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def _write_value(path: Path, value: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def get_device_id(path: Optional[Path] = None) -> str:
    target = path or DEVICE_ID_PATH
    existing = _read_existing(target)
    if existing:
        return existing

    new_id = uuid.uuid4().hex.upper()
    try:
        _write_value(target, new_id)
    except OSError:
        # Unpersisted: the next start generates another one.
        return new_id
    return new_id


__all__ = ["get_device_id"]
