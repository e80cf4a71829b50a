from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List

from dotenv import dotenv_values, find_dotenv, load_dotenv

_LOADED_FLAG = "HOSTOPT_ENV_LOADED"


class EnvLoader:
    """Robust .env loader you can import anywhere."""

    @staticmethod
    def load() -> None:
        if os.environ.get(_LOADED_FLAG) == "1":
            return

        loaded = False

        # 1) try an auto-discovered .env in current working dir
        path = find_dotenv(usecwd=True)
        if path:
            try:
                load_dotenv(path, override=False)
                loaded = True
            except OSError:
                pass

        # 2) common fallbacks
        cands: List[Path] = []
        for p in (
            Path.cwd() / ".env",
            Path(sys.argv[0]).resolve().parent / ".env" if sys.argv and sys.argv[0] else None,
            Path(__file__).resolve().parents[1] / ".env",
            Path("/etc/host-optimizer/env"),
        ):
            if p:
                cands.append(p)

        if not loaded:
            for p in cands:
                try:
                    if p.is_file():
                        for k, v in (dotenv_values(p) or {}).items():
                            os.environ.setdefault(k, v or "")
                        loaded = True
                        break
                except OSError:
                    continue

        os.environ[_LOADED_FLAG] = "1"
