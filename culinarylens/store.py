"""Persistent record of perception and synthesis runs."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List
import json
import time
import uuid
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

RUN_KINDS = ("perception", "synthesis")


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class RunStore:
    """One JSON document per run under ``<data_dir>/runs/<id>/run.json``.

    Runs record what happened. They are never read back as a cache for
    remote results.
    """
    data_dir: Path

    def _runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def _latest_path(self, kind: str | None = None) -> Path:
        if kind:
            return self.data_dir / "latest" / f"{kind}.json"
        return self.data_dir / "latest.json"

    def create_run(self, kind: str, meta: Dict[str, Any] | None = None) -> str:
        if kind not in RUN_KINDS:
            raise ValueError(f"unknown run kind: {kind}")
        run_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        payload = {
            "id": run_id,
            "kind": kind,
            "created_at": _now(),
            "status": "running",
            "meta": meta or {},
            "events": [],
        }
        self._write_run(run_id, payload)
        return run_id

    def append_event(self, run_id: str, event: Dict[str, Any]) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run.setdefault("events", []).append({"timestamp": _now(), **event})
            return run
        self._locked_update(run_id, _update)

    def finalize_run(self, run_id: str, result: Dict[str, Any]) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = "complete"
            run["completed_at"] = _now()
            run["result"] = result
            return run
        run = self._locked_update(run_id, _update)
        if not run:
            return
        text = json.dumps(run, indent=2)
        for path in (self._latest_path(), self._latest_path(run.get("kind"))):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text)

    def fail_run(self, run_id: str, error: str) -> None:
        def _update(run: Dict[str, Any]) -> Dict[str, Any]:
            run["status"] = "failed"
            run["error"] = error
            run["completed_at"] = _now()
            return run
        self._locked_update(run_id, _update)

    def get_run(self, run_id: str) -> Dict[str, Any] | None:
        return self._read(self._runs_dir() / run_id / "run.json")

    def latest(self, kind: str | None = None) -> Dict[str, Any] | None:
        return self._read(self._latest_path(kind))

    def list_runs(self, limit: int = 20, kind: str | None = None) -> List[Dict[str, Any]]:
        runs: List[Dict[str, Any]] = []
        if not self._runs_dir().exists():
            return runs
        for run_dir in sorted(self._runs_dir().iterdir(), reverse=True):
            if len(runs) >= limit:
                break
            run = self._read(run_dir / "run.json")
            if run is None or (kind and run.get("kind") != kind):
                continue
            runs.append(run)
        return runs

    @staticmethod
    def _read(path: Path) -> Dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError):
            return None

    def _write_run(self, run_id: str, payload: Dict[str, Any]) -> None:
        run_dir = self._runs_dir() / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / "run.json").write_text(json.dumps(payload, indent=2))

    def _locked_update(
        self,
        run_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any] | None:
        path = self._runs_dir() / run_id / "run.json"
        if not path.exists():
            return None
        if fcntl is None:
            run = self.get_run(run_id)
            if not run:
                return None
            updated = updater(run)
            self._write_run(run_id, updated)
            return updated
        with path.open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                handle.seek(0)
                data = handle.read()
                if not data.strip():
                    return None
                updated = updater(json.loads(data))
                handle.seek(0)
                handle.truncate()
                handle.write(json.dumps(updated, indent=2))
                return updated
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
