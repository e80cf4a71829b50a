from __future__ import annotations

import sys
import time
from typing import Any, Dict, Optional


def _fallback_log(source: str, message: str, severity: str, details: Optional[Dict[str, Any]]) -> None:
    """Lightweight stderr/stdout logger used when the bus cannot write its log files."""
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
    payload = f"[{stamp}] [{severity.upper()}] {source}: {message}"
    if details:
        payload += f" -> {details}"
    print(payload, file=sys.stderr if severity.lower() in {"error", "warning"} else sys.stdout, flush=True)


try:  # pragma: no cover - the bus opens files under logs/ at import time
    from hostopt.logging_bus import log_message as _bus_log_message
except OSError:  # pragma: no cover - read-only working directory
    _bus_log_message = None  # type: ignore[assignment]


def log_message(source: str, message: str, *, severity: str = "info", details: Optional[Dict[str, Any]] = None) -> None:
    """
    Proxy that prefers the shared logging bus but falls back to a synchronous
    printer when the bus could not open its log files (read-only cwd during
    early boot from the guardian timer, for example).
    """
    if _bus_log_message is not None:
        _bus_log_message(source, message, severity=severity, details=details)
        return
    _fallback_log(source, message, severity, details)


def flush_logs(timeout: float = 2.0) -> None:
    """Block until queued bus records are written (used before the CLI exits)."""
    if _bus_log_message is None:
        return
    from hostopt.logging_bus import flush_logs as _bus_flush

    _bus_flush(timeout=timeout)
