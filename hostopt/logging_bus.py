from __future__ import annotations

import os
import queue
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

SEVERITY_RANK: Dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}


@dataclass
class LogRecord:
    ts: float
    source: str
    severity: str
    message: str
    details: Optional[dict] = None

    def render(self) -> str:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.ts))
        line = f"[{stamp}] [{self.severity.upper()}] {self.source}: {self.message}"
        if self.details:
            line += f" -> {self.details}"
        return line

    @property
    def is_problem(self) -> bool:
        return SEVERITY_RANK.get(self.severity, 20) >= SEVERITY_RANK["warning"]


class LogBus:
    """
    Single writer for everything the optimizer reports. The mutator, the
    guardian thread and the reaper thread all publish here; one background
    thread prints each record and appends it to the run log plus a log named
    after its source (``memory-guardian.log``, ``mutator.log``...), so lines
    never interleave.
    """

    def __init__(self, log_path: Path, service_dir: Path, *, threshold: str = "info") -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        service_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = log_path
        self._service_dir = service_dir
        self._threshold = SEVERITY_RANK.get(threshold.lower(), SEVERITY_RANK["info"])
        self._queue: queue.Queue[Optional[LogRecord]] = queue.Queue()
        self._thread = threading.Thread(target=self._drain, name="log-bus", daemon=True)
        self._thread.start()

    @classmethod
    def from_env(cls) -> "LogBus":
        return cls(
            Path(os.getenv("HOSTOPT_LOG_PATH", "logs/host-optimizer.log")),
            Path(os.getenv("HOSTOPT_LOG_SERVICE_DIR", "logs/services")),
            threshold=os.getenv("HOSTOPT_LOG_LEVEL", "info"),
        )

    def publish(self, source: str, message: str, *, severity: str = "info", details: Optional[dict] = None) -> None:
        severity = severity.lower()
        if SEVERITY_RANK.get(severity, SEVERITY_RANK["info"]) < self._threshold:
            return
        self._queue.put(LogRecord(time.time(), source, severity, message, details))

    def flush(self, timeout: float = 2.0) -> None:
        deadline = time.time() + timeout
        while self._queue.unfinished_tasks and time.time() < deadline:
            time.sleep(0.01)

    def stop(self, timeout: float = 2.0) -> None:
        self._queue.put(None)
        self._thread.join(timeout=timeout)

    def _drain(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                line = record.render()
                print(line, file=sys.stderr if record.is_problem else sys.stdout, flush=True)
                self._append(self._log_path, line)
                self._append(self._service_dir / f"{self._file_stem(record.source)}.log", line)
            finally:
                self._queue.task_done()

    @staticmethod
    def _file_stem(source: str) -> str:
        return "".join(ch.lower() if ch.isalnum() else "-" for ch in source).strip("-") or "misc"

    @staticmethod
    def _append(path: Path, line: str) -> None:
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            print(f"[log-bus] cannot write {path}: {exc}", file=sys.stderr, flush=True)


_GLOBAL_BUS = LogBus.from_env()


def log_message(source: str, message: str, *, severity: str = "info", details: Optional[dict] = None) -> None:
    _GLOBAL_BUS.publish(source, message, severity=severity, details=details)


def flush_logs(timeout: float = 2.0) -> None:
    _GLOBAL_BUS.flush(timeout=timeout)
