from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskwarden.anomaly import AnomalyRule
from taskwarden.errors import StateConflictError, StateStoreError
from taskwarden.models import TERMINAL_SESSION_STATUSES, ExecutionSession, Task
from taskwarden.status import SupervisionStatus


class StateStore:
    """JSON documents under a state directory, one file per namespace.

    Each file holds an envelope ``{schema_version, revision, updated_at, data}``.
    Writers hold an exclusive lock file and bump the revision, so a stale
    ``expected_revision`` is detected instead of silently overwritten.
    """

    NAMESPACES = {"tasks", "supervision"}
    SCHEMA_VERSION = 1

    def __init__(self, directory: Path) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.directory / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.directory / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        content = path.read_text(encoding="utf-8").strip()
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State file {path} is not valid JSON: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, temp_path = tempfile.mkstemp(prefix=f".{namespace}-", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_path, self._file(namespace))
        except OSError as exc:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StateStoreError(f"Could not write {namespace} state: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateConflictError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            revision = current_revision + 1
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": revision,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )
        return revision

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateConflictError as exc:
                last_error = exc
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def load_tasks(self) -> list[Task]:
        payload = self.get_json("tasks", default={"tasks": []})
        items = payload.get("tasks", []) if isinstance(payload, dict) else []
        try:
            return [Task.from_dict(item) for item in items if isinstance(item, dict)]
        except ValueError as exc:
            raise StateStoreError(f"Stored task is invalid: {exc}") from exc

    def revision(self, namespace: str) -> int:
        return int(self.get_envelope(namespace)["revision"])

    def save_tasks(self, tasks: list[Task], expected_revision: int | None = None) -> None:
        self.set_json(
            "tasks",
            {"tasks": [task.to_dict() for task in tasks]},
            expected_revision=expected_revision,
        )

    def load_supervision(self) -> dict[str, Any]:
        payload = self.get_json("supervision", default={})
        return payload if isinstance(payload, dict) else {}

    def load_sessions(self) -> list[ExecutionSession]:
        items = self.load_supervision().get("sessions", [])
        try:
            return [ExecutionSession.from_dict(item) for item in items if isinstance(item, dict)]
        except (KeyError, ValueError) as exc:
            raise StateStoreError(f"Stored session is invalid: {exc}") from exc

    def load_status(self) -> SupervisionStatus | None:
        payload = self.load_supervision().get("status")
        return SupervisionStatus.from_dict(payload) if isinstance(payload, dict) else None

    def load_rules(self) -> list[AnomalyRule] | None:
        items = self.load_supervision().get("anomaly_rules")
        if not isinstance(items, list):
            return None
        return [AnomalyRule.from_dict(item) for item in items if isinstance(item, dict)]

    def save_supervision(
        self,
        *,
        sessions: list[ExecutionSession] | None = None,
        status: SupervisionStatus | None = None,
        config: dict[str, Any] | None = None,
        rules: list[AnomalyRule] | None = None,
    ) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            if sessions is not None:
                result["sessions"] = _merge_sessions(result.get("sessions", []), sessions)
            if status is not None:
                result["status"] = status.to_dict()
            if config is not None:
                result["config"] = config
            if rules is not None:
                result["anomaly_rules"] = [rule.to_dict() for rule in rules]
            return result

        self.update_json("supervision", _updater, default={})


def _merge_sessions(stored: Any, sessions: list[ExecutionSession]) -> list[dict[str, Any]]:
    """Overlay ``sessions`` on the stored records.

    A record that already reached a terminal status on disk is never replaced by a
    different status, and records only present on disk are kept.
    """
    existing = {
        item["session_id"]: item
        for item in (stored if isinstance(stored, list) else [])
        if isinstance(item, dict) and "session_id" in item
    }
    merged: list[dict[str, Any]] = []
    for session in sessions:
        current = existing.pop(session.session_id, None)
        if (
            current is not None
            and current.get("status") in TERMINAL_SESSION_STATUSES
            and current.get("status") != session.status
        ):
            merged.append(current)
        else:
            merged.append(session.to_dict())
    merged.extend(existing.values())
    return merged
