"""Bounded, persisted log of voice errors with frequency reporting."""

from __future__ import annotations

import json
import logging
import platform
import secrets
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx

from models import ErrorKind, VoiceError

logger = logging.getLogger(__name__)

NO_CODE = "NO_CODE"
REPORT_TIMEOUT_S = 6.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_id(prefix: str) -> str:
    return f"{prefix}_{_now_ms()}_{secrets.token_hex(5)[:9]}"


@dataclass
class ErrorLogEntry:
    id: str
    timestamp: int
    error: VoiceError
    status: str
    retry_count: int = 0
    connection_attempts: int = 0
    platform: str = ""
    session_id: str = ""
    user_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error"]["kind"] = self.error.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorLogEntry":
        err = data["error"]
        return cls(
            id=str(data["id"]),
            timestamp=int(data["timestamp"]),
            error=VoiceError(
                kind=ErrorKind(err["kind"]),
                message=str(err.get("message", "")),
                code=err.get("code"),
            ),
            status=str(data.get("status", "")),
            retry_count=int(data.get("retry_count", 0)),
            connection_attempts=int(data.get("connection_attempts", 0)),
            platform=str(data.get("platform", "")),
            session_id=str(data.get("session_id", "")),
            user_id=data.get("user_id"),
            context=dict(data.get("context") or {}),
        )


@dataclass
class ErrorReport:
    error_kind: str
    error_code: Optional[str]
    message: str
    frequency: int
    last_occurrence: int
    affected_users: int
    severity: str


def severity_for(frequency: int, affected_users: int) -> str:
    if frequency >= 50 or affected_users >= 10:
        return "critical"
    if frequency >= 20 or affected_users >= 5:
        return "high"
    if frequency >= 10 or affected_users >= 2:
        return "medium"
    return "low"


class VoiceErrorLogger:
    """Keeps the most recent ``max_logs`` errors, optionally persisted to ``path``.

    With ``enable_reporting`` set, every logged error re-evaluates the error
    groups and posts each group that reached ``report_threshold`` to
    ``report_url``.
    """

    def __init__(
        self,
        path: Path | None = None,
        session_id: str | None = None,
        user_id: str | None = None,
        max_logs: int = 100,
        report_threshold: int = 5,
        enable_reporting: bool = False,
        report_url: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._path = path
        self.session_id = session_id or _random_id("session")
        self.user_id = user_id
        self._max_logs = max_logs
        self._report_threshold = report_threshold
        self._enable_reporting = enable_reporting
        self._report_url = report_url
        self._http_client = http_client
        self._logs: list[ErrorLogEntry] = []
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def log_error(
        self,
        error: VoiceError,
        status: str,
        retry_count: int = 0,
        connection_attempts: int = 0,
        context: dict[str, Any] | None = None,
    ) -> ErrorLogEntry:
        entry = ErrorLogEntry(
            id=_random_id("error"),
            timestamp=_now_ms(),
            error=error,
            status=str(getattr(status, "value", status)),
            retry_count=retry_count,
            connection_attempts=connection_attempts,
            platform=platform.platform(),
            session_id=self.session_id,
            user_id=self.user_id,
            context=dict(context or {}),
        )
        self._logs.append(entry)
        del self._logs[: max(0, len(self._logs) - self._max_logs)]

        if self._enable_reporting:
            self._check_and_report()
        self._persist()
        return entry

    def get_logs(self) -> list[ErrorLogEntry]:
        return list(self._logs)

    def get_logs_by_session(self, session_id: str) -> list[ErrorLogEntry]:
        return [log for log in self._logs if log.session_id == session_id]

    def get_logs_by_user(self, user_id: str) -> list[ErrorLogEntry]:
        return [log for log in self._logs if log.user_id == user_id]

    def get_logs_by_time_range(self, start_ms: int, end_ms: int) -> list[ErrorLogEntry]:
        return [log for log in self._logs if start_ms <= log.timestamp <= end_ms]

    def error_report(self) -> list[ErrorReport]:
        groups: dict[tuple[str, str], dict[str, Any]] = {}
        for log in self._logs:
            key = (log.error.kind.value, log.error.code or NO_CODE)
            group = groups.setdefault(key, {"count": 0, "last": 0, "users": set()})
            group["count"] += 1
            group["last"] = max(group["last"], log.timestamp)
            if log.user_id:
                group["users"].add(log.user_id)

        reports = [
            ErrorReport(
                error_kind=kind,
                error_code=None if code == NO_CODE else code,
                message=f"Error occurred {group['count']} times",
                frequency=group["count"],
                last_occurrence=group["last"],
                affected_users=len(group["users"]),
                severity=severity_for(group["count"], len(group["users"])),
            )
            for (kind, code), group in groups.items()
        ]
        reports.sort(key=lambda report: report.frequency, reverse=True)
        return reports

    def error_stats(self) -> dict[str, Any]:
        by_kind: dict[str, int] = {}
        by_code: dict[str, int] = {}
        total_retries = 0
        for log in self._logs:
            kind = log.error.kind.value
            code = log.error.code or NO_CODE
            by_kind[kind] = by_kind.get(kind, 0) + 1
            by_code[code] = by_code.get(code, 0) + 1
            total_retries += log.retry_count

        most_common = max(by_kind, key=by_kind.__getitem__) if by_kind else "unknown"
        return {
            "total_errors": len(self._logs),
            "errors_by_kind": by_kind,
            "errors_by_code": by_code,
            "average_retries": total_retries / len(self._logs) if self._logs else 0,
            "most_common_error": most_common,
        }

    def clear_logs(self) -> None:
        self._logs = []
        self._persist()

    def export_logs(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "timestamp": _now_ms(),
                "logs": [log.to_dict() for log in self._logs],
            },
            ensure_ascii=False,
            indent=2,
        )

    def import_logs(self, json_text: str) -> int:
        """Append logs from an :meth:`export_logs` document; returns how many were added."""
        try:
            data = json.loads(json_text)
        except json.JSONDecodeError:
            logger.error("Failed to import voice error logs: invalid JSON")
            return 0
        imported = self._parse_entries(data)
        self._logs.extend(imported)
        self._persist()
        return len(imported)

    def load_persisted_logs(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.exception("Failed to load persisted voice error logs")
            return
        self._logs = self._parse_entries(data)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _parse_entries(self, data: Any) -> list[ErrorLogEntry]:
        if not isinstance(data, dict) or not isinstance(data.get("logs"), list):
            return []
        entries = []
        for raw in data["logs"]:
            try:
                entries.append(ErrorLogEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed voice error log entry")
        return entries

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {"logs": [log.to_dict() for log in self._logs], "timestamp": _now_ms()}
        try:
            self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError:
            logger.exception("Failed to persist voice error logs to %s", self._path)

    def _check_and_report(self) -> None:
        if not self._report_url:
            return
        for report in self.error_report():
            if report.frequency >= self._report_threshold:
                self._send_report(report)

    def _send_report(self, report: ErrorReport) -> bool:
        body = {
            **asdict(report),
            "session_id": self.session_id,
            "user_id": self.user_id,
            "timestamp": _now_ms(),
        }
        try:
            if self._http_client is not None:
                response = self._http_client.post(self._report_url, json=body)
            else:
                with httpx.Client(timeout=REPORT_TIMEOUT_S) as client:
                    response = client.post(self._report_url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Failed to send voice error report: %s", exc)
            return False
        return response.is_success
