from __future__ import annotations

import logging
import re
from collections import deque
from contextvars import ContextVar
from pathlib import Path
from typing import Deque, Dict, Optional

# Below DEBUG; used for messages relayed from the trace port.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Context: target driven by the current task
_CURRENT_TARGET: ContextVar[Optional[str]] = ContextVar("_CURRENT_TARGET", default=None)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_target(name: str) -> str:
    safe = _UNSAFE.sub("_", str(name)).strip("._")
    return safe or "target"


def level_for(*, debug: bool, trace: bool) -> int:
    if trace:
        return TRACE
    if debug:
        return logging.DEBUG
    return logging.INFO


class _TargetFilter(logging.Filter):
    """
    Filter that only lets through records for the currently-bound target
    (via the ContextVar) or records logged under the target-specific logger.
    """

    __slots__ = ("target",)

    def __init__(self, target: str) -> None:
        super().__init__()
        self.target = str(target)

    def filter(self, record: logging.LogRecord) -> bool:
        current = _CURRENT_TARGET.get()
        if current == self.target:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"target.{self.target}")


def _close_handler(root: logging.Logger, h: logging.Handler) -> None:
    root.removeHandler(h)
    h.flush()
    h.close()


class LoggingExtension:
    """
    Logging plugin/extension.

    Responsibilities:
      - Installs a console handler (single, shared).
      - Optionally writes a session log and per-target log files under `log_dir`,
        keeping at most `max_open_target_logs` file handles open at a time (LRU).
    """

    __slots__ = (
        "log_dir",
        "global_level",
        "per_target_level",
        "max_open",
        "_target_handlers",
        "_lru",
        "_session_handler",
        "_console_handler",
    )

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        *,
        global_level: int = logging.INFO,
        per_target_level: Optional[int] = None,
        max_open_target_logs: int = 64,
        enable_session_log: bool = False,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.global_level = int(global_level)
        self.per_target_level = int(
            per_target_level if per_target_level is not None else global_level
        )
        self.max_open: int = max(4, int(max_open_target_logs))
        self._target_handlers: Dict[str, logging.Handler] = {}
        self._lru: Deque[str] = deque()  # target order, most-recent at the right
        self._session_handler: Optional[logging.Handler] = None
        self._console_handler: Optional[logging.Handler] = None

        self._install_console(self.global_level)

        if enable_session_log and self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            sh = logging.FileHandler(self.log_dir / "session.log", mode="a", encoding="utf-8")
            sh.setLevel(self.global_level)
            sh.setFormatter(self._file_formatter())
            logging.getLogger().addHandler(sh)
            self._session_handler = sh

        # Root permissive; handler levels do the filtering
        logging.getLogger().setLevel(TRACE)

    @staticmethod
    def _file_formatter() -> logging.Formatter:
        return logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        """
        Install a single console handler for the root logger, replacing any
        existing plain StreamHandler. Keeps console logging deterministic.
        """
        root = logging.getLogger()
        for h in list(root.handlers):
            if isinstance(h, logging.StreamHandler) and not isinstance(
                h, logging.FileHandler
            ):
                root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)
        self._console_handler = ch

    # ---------------- LRU helpers ----------------

    def _touch(self, target: str) -> None:
        try:
            self._lru.remove(target)
        except ValueError:
            pass
        self._lru.append(target)

    def _evict_if_needed(self) -> None:
        """Evict least-recently-used target file handlers beyond `self.max_open`."""
        root = logging.getLogger()
        while len(self._target_handlers) > self.max_open:
            old = self._lru.popleft()
            h = self._target_handlers.pop(old, None)
            if h is not None:
                _close_handler(root, h)

    # ---------------- Target logger ----------------

    def get_target_logger(self, target: str) -> logging.Logger:
        """
        Return the logger for one target ("target.{name}"). When a log directory is
        configured its records also go to <log_dir>/<name>.log.
        """
        if self.log_dir is not None:
            if target not in self._target_handlers:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                path = self.log_dir / f"{sanitize_target(target)}.log"
                fh = logging.FileHandler(path, mode="a", encoding="utf-8")
                fh.setLevel(self.per_target_level)
                fh.addFilter(_TargetFilter(target))
                fh.setFormatter(self._file_formatter())
                logging.getLogger().addHandler(fh)
                self._target_handlers[target] = fh
                self._touch(target)
                self._evict_if_needed()
            else:
                self._touch(target)

        tlog = logging.getLogger(f"target.{target}")
        tlog.setLevel(TRACE)
        tlog.propagate = True
        return tlog

    # ---------------- Context helpers ----------------

    def set_target_context(self, target: str):
        """Bind current target context to this task. Returns token to reset."""
        return _CURRENT_TARGET.set(str(target))

    def reset_target_context(self, token) -> None:
        _CURRENT_TARGET.reset(token)

    # ---------------- Close per target ----------------

    def close_target(self, target: str) -> None:
        h = self._target_handlers.pop(target, None)
        if h is not None:
            _close_handler(logging.getLogger(), h)
        try:
            self._lru.remove(target)
        except ValueError:
            pass

    @property
    def open_target_logs(self) -> int:
        return len(self._target_handlers)

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        """
        Close all target handlers and the session handler. Console handler remains.
        """
        root = logging.getLogger()
        for fh in list(self._target_handlers.values()):
            _close_handler(root, fh)
        self._target_handlers.clear()
        self._lru.clear()

        if self._session_handler is not None:
            _close_handler(root, self._session_handler)
            self._session_handler = None


__all__ = [
    "TRACE",
    "LoggingExtension",
    "level_for",
    "sanitize_target",
]
