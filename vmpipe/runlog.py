"""Per-run, per-stage log files for vmpipe."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from vmpipe.models import ExecutionRecord, Stage
from vmpipe.utils import ensure_directory, utc_now


class RunLog:
    """Append-only stage logs under ``<run_dir>/logs``.

    Text lines are prefixed with a UTC timestamp; Execution Records are
    written as one JSON object per line so they can be replayed later.
    """

    def __init__(self, run_dir: Path) -> None:
        self.log_dir = run_dir / "logs"
        ensure_directory(self.log_dir)
        self._handles: Dict[Stage, TextIO] = {}
        self._lock = threading.Lock()

    def path_for(self, stage: Stage) -> Path:
        return self.log_dir / f"{stage.value}.log"

    def _handle(self, stage: Stage) -> TextIO:
        handle = self._handles.get(stage)
        if handle is None:
            handle = open(self.path_for(stage), "a", encoding="utf-8")
            self._handles[stage] = handle
        return handle

    def write(self, stage: Stage, message: str) -> None:
        with self._lock:
            handle = self._handle(stage)
            handle.write(f"{utc_now()} {message}\n")
            handle.flush()

    def write_record(self, stage: Stage, record: ExecutionRecord, extra: Optional[Dict[str, Any]] = None) -> None:
        payload = record.to_dict()
        if extra:
            payload.update(extra)
        with self._lock:
            handle = self._handle(stage)
            handle.write(json.dumps(payload, sort_keys=False, default=str) + "\n")
            handle.flush()

    def files(self, stage: Optional[Stage] = None) -> List[Path]:
        if stage is not None:
            path = self.path_for(stage)
            return [path] if path.exists() else []
        return sorted(p for p in self.log_dir.glob("*.log") if p.is_file())

    def close(self) -> None:
        with self._lock:
            for handle in self._handles.values():
                handle.close()
            self._handles.clear()
