import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "marketplace.sqlite3")
DEFAULT_TIMEOUT_SECONDS = 10.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    gateway: str = "sqlite"
    db_path: str = DEFAULT_DB_PATH
    gateway_url: str = ""
    gateway_key: str = ""
    gateway_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    discard_stale_fetches: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        gateway = os.getenv("MARKETPLACE_GATEWAY", "sqlite").strip().lower() or "sqlite"
        if gateway not in {"sqlite", "rest"}:
            raise ValueError("Invalid MARKETPLACE_GATEWAY. Allowed: sqlite, rest")
        return cls(
            gateway=gateway,
            db_path=os.getenv("MARKETPLACE_DB_PATH", "").strip() or DEFAULT_DB_PATH,
            gateway_url=os.getenv("MARKETPLACE_GATEWAY_URL", "").strip(),
            gateway_key=os.getenv("MARKETPLACE_GATEWAY_KEY", "").strip(),
            gateway_timeout_seconds=_env_float("MARKETPLACE_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
            discard_stale_fetches=_env_bool("MARKETPLACE_DISCARD_STALE_FETCHES", True),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def setup_logging(level: str = "INFO") -> None:
    """Attach a console handler to the root logger unless one is already configured."""
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
