from __future__ import annotations

import json
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostopt.errors import BackupError
from hostopt.logging_utils import log_message

LOG_SOURCE = "backups"


class BackupStore:
    """
    Timestamped copies of configuration files under
    ``<backup_root>/<hostname>/``. Existing backups are never overwritten and
    never pruned; every call files a fresh name.
    """

    def __init__(self, backup_root: Path, hostname: str) -> None:
        self.host_dir = Path(backup_root) / (hostname or "localhost")

    def _fresh_path(self, stem: str, suffix: str) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        candidate = self.host_dir / f"{stem}.{stamp}{suffix}"
        counter = 1
        while candidate.exists():
            candidate = self.host_dir / f"{stem}.{stamp}-{counter}{suffix}"
            counter += 1
        return candidate

    def snapshot(self, source: Path, target: str) -> Optional[Path]:
        """
        Copy ``source`` (the resolved path of host ``target``) into the store.
        Returns None when there was nothing to back up.
        """
        if not source.exists():
            return None
        stem = target.strip("/").replace("/", "_") or "root"
        try:
            self.host_dir.mkdir(parents=True, exist_ok=True)
            destination = self._fresh_path(stem, ".bak")
            # O_EXCL keeps two runs in the same microsecond from sharing a name
            fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as out, source.open("rb") as src:
                shutil.copyfileobj(src, out)
            shutil.copystat(source, destination)
        except OSError as exc:
            raise BackupError("unable to back up before writing", target=target, cause=exc) from exc
        if destination.read_bytes() != source.read_bytes():
            raise BackupError("backup copy does not match the original", target=target)
        log_message(LOG_SOURCE, f"backed up {target}", details={"backup": str(destination)})
        return destination

    def backups_for(self, target: str) -> List[Path]:
        stem = target.strip("/").replace("/", "_") or "root"
        if not self.host_dir.exists():
            return []
        return sorted(self.host_dir.glob(f"{stem}.*.bak"))

    # ------------------------------------------------------------------ manifests
    def write_manifest(self, entries: List[Dict[str, Any]], meta: Optional[Dict[str, Any]] = None) -> Path:
        self.host_dir.mkdir(parents=True, exist_ok=True)
        path = self._fresh_path("manifest", ".json")
        payload = {"created": time.time(), "meta": meta or {}, "mutations": entries}
        path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        return path

    def latest_manifest(self) -> Optional[Path]:
        if not self.host_dir.exists():
            return None
        manifests = sorted(self.host_dir.glob("manifest.*.json"))
        return manifests[-1] if manifests else None

    @staticmethod
    def read_manifest(path: Path) -> Dict[str, Any]:
        return json.loads(Path(path).read_text(encoding="utf-8"))
