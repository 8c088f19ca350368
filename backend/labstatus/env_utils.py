"""Environment helpers with optional Docker secret file support."""

from __future__ import annotations

from pathlib import Path
import os


def get_env(name: str, default: str = "") -> str:
    """Resolve an environment value, falling back to the file named by ``NAME_FILE``."""
    value = os.getenv(name)
    if value:
        return value.strip()

    file_path = (os.getenv(f"{name}_FILE") or "").strip()
    if not file_path:
        return default
    try:
        secret = Path(file_path).read_text(encoding="utf-8").strip()
    except OSError:
        return default
    return secret or default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)
