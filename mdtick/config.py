"""Environment settings and the persisted default root directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".mdtick.cfg"
DEFAULT_LOG_LEVEL = "WARNING"


def config_file_path() -> Path:
    return Path.home() / CONFIG_FILE_NAME


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid MDTICK_PORT value: %r", raw)
        return 0
    if port < 0 or port > 65535:
        logger.warning("Ignoring out-of-range MDTICK_PORT value: %d", port)
        return 0
    return port


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from ``MDTICK_*`` environment variables."""

    # 0 asks the OS for an ephemeral port.
    port: int = 0
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        port_text = env.get("MDTICK_PORT", "").strip()
        log_level = env.get("MDTICK_LOG_LEVEL", "").strip().upper() or DEFAULT_LOG_LEVEL
        return cls(
            port=_parse_port(port_text) if port_text else 0,
            log_level=log_level,
        )


def load_default_root(cfg_path: Path | None = None) -> Path:
    """Resolve the browse root when no CLI path is provided."""
    fallback = Path.home()
    cfg_path = cfg_path or config_file_path()
    try:
        if not cfg_path.exists():
            return fallback
        raw = cfg_path.read_text(encoding="utf-8").strip()
        if not raw:
            return fallback
        candidate = Path(raw).expanduser()
        if candidate.is_dir():
            return candidate.resolve()
    except Exception:
        logger.debug("Could not read %s", cfg_path, exc_info=True)
        return fallback
    return fallback


def save_default_root(root: Path, cfg_path: Path | None = None) -> bool:
    cfg_path = cfg_path or config_file_path()
    try:
        cfg_path.write_text(str(root.resolve()) + "\n", encoding="utf-8")
    except Exception:
        logger.warning("Could not persist default root to %s", cfg_path, exc_info=True)
        return False
    return True
