# shared/logutil.py
from datetime import datetime, UTC
from typing import Dict, Any, Optional
import os

STATUS_EMOJI = {
    "INFO": "ℹ️",
    "WARN": "⚠️",
    "ERROR": "❌",
    "DEBUG": "🔍",
    "OK": "✅",
}

# lower number = more severe
LOG_LEVELS = {
    "ERROR": 0,
    "WARN": 1,
    "WARNING": 1,
    "INFO": 2,
    "OK": 2,
    "DEBUG": 3,
}

LEVEL_NAMES = {0: "ERROR", 1: "WARN", 2: "INFO", 3: "DEBUG"}


class LogUtil:
    """
    Two-phase service logger.

      - Bootstrap phase: level from the LOG_LEVEL env var
      - Configured phase: level from the loaded Truth config

    Components get a scoped child via ``child("reconcile")`` so lines read
    ``[ts][copylink:reconcile][INFO]``. Children share the parent's level.

    Extra keyword arguments are appended as ``key=value`` pairs.
    Logging must NEVER raise.
    """

    def __init__(self, service_name: str, component: Optional[str] = None, parent: "LogUtil" = None):
        self.service_name = service_name
        self.component = component
        self._parent = parent

        env_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self._level = LOG_LEVELS.get(env_level, LOG_LEVELS["INFO"])
        self._configured = False

    # -------------------------------------------------
    # Level handling
    # -------------------------------------------------

    @property
    def log_level(self) -> int:
        if self._parent is not None:
            return self._parent.log_level
        return self._level

    @property
    def debug_enabled(self) -> bool:
        return self.log_level >= LOG_LEVELS["DEBUG"]

    def configure_from_config(self, config: Dict[str, Any]) -> None:
        if self._parent is not None or self._configured:
            return

        try:
            cfg_level = str(config.get("LOG_LEVEL", "")).upper()
            if cfg_level in LOG_LEVELS:
                self._level = LOG_LEVELS[cfg_level]
            self._configured = True

            self.info(
                f"[LOG CONFIGURED] level={LEVEL_NAMES[self._level]}",
                emoji="🧪" if self.debug_enabled else "🔊",
            )
        except Exception:
            # Logging must never break the process
            pass

    def child(self, component: str) -> "LogUtil":
        """Return a logger scoped to one component of this service."""
        return LogUtil(self.service_name, component=component, parent=self)

    # -------------------------------------------------
    # Formatting
    # -------------------------------------------------

    def _source(self) -> str:
        if self.component:
            return f"{self.service_name}:{self.component}"
        return self.service_name

    def _stamp(self, level: str, message: str, emoji: str, fields: Dict[str, Any]) -> str:
        now = datetime.now(UTC).isoformat(timespec="seconds")
        symbol = emoji or STATUS_EMOJI.get(level, "")
        line = f"[{now}][{self._source()}][{level}]{symbol} {message}"
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line

    def _emit(self, level: str, message: str, emoji: str, fields: Dict[str, Any]):
        try:
            if LOG_LEVELS.get(level, LOG_LEVELS["INFO"]) > self.log_level:
                return
            print(self._stamp(level, message, emoji, fields), flush=True)
        except Exception:
            # Absolute last line of defense
            pass

    # -------------------------------------------------
    # Public API
    # -------------------------------------------------

    def info(self, message: str, emoji: str = STATUS_EMOJI["INFO"], **fields):
        self._emit("INFO", message, emoji, fields)

    def ok(self, message: str, emoji: str = STATUS_EMOJI["OK"], **fields):
        self._emit("OK", message, emoji, fields)

    def warn(self, message: str, emoji: str = STATUS_EMOJI["WARN"], **fields):
        self._emit("WARN", message, emoji, fields)

    def warning(self, message: str, emoji: str = STATUS_EMOJI["WARN"], **fields):
        # Alias for compatibility with standard logging APIs
        self.warn(message, emoji, **fields)

    def error(self, message: str, emoji: str = STATUS_EMOJI["ERROR"], **fields):
        self._emit("ERROR", message, emoji, fields)

    def debug(self, message: str, emoji: str = STATUS_EMOJI["DEBUG"], **fields):
        self._emit("DEBUG", message, emoji, fields)
