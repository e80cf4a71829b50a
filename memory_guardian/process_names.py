from __future__ import annotations

from typing import Optional

from setproctitle import setproctitle


def set_process_name(name: Optional[str]) -> None:
    """Rename the current process so `ps`/`top` show which tier is running."""

    if not name:
        return
    try:
        setproctitle(str(name))
    except OSError:
        return
