# SPDX-License-Identifier: LGPL-3.0-or-later
import threading


class FakeLogger:
    """Records (level, rendered message); safe to share between worker threads."""

    def __init__(self):
        self.records = []
        self._lock = threading.Lock()

    def _log(self, level, msg, args):
        try:
            text = str(msg) % args if args else str(msg)
        except (TypeError, ValueError):
            text = str(msg)
        with self._lock:
            self.records.append((level, text))

    def debug(self, msg, *a, **k): self._log("debug", msg, a)
    def info(self, msg, *a, **k): self._log("info", msg, a)
    def warning(self, msg, *a, **k): self._log("warning", msg, a)
    def error(self, msg, *a, **k): self._log("error", msg, a)

    def log(self, level, msg, *a, **k):
        self._log(str(level), msg, a)

    def isEnabledFor(self, _lvl):
        return False

    def messages(self, level=None):
        return [m for lv, m in self.records if level is None or lv == level]
