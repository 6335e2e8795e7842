"""Structured JSON logger for the export job and the trigger server.

Every event is one JSON object per line on stdout, mirrored to ``JSON_LOG_FILE``
when set. Loggers made with :meth:`JsonLogger.bind` add fields such as the
mailbox being scanned and write through the parent's sink, so closing the
parent ends the whole family. Fields named ``code`` are always masked.
"""
from __future__ import annotations

import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, TextIO

__all__ = ["JsonLogger", "get_logger", "log_event", "timed_event", "new_run_id", "mask_code"]

MASKED_FIELDS = frozenset({"code"})


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S%f")


def mask_code(code: str | None) -> str:
    """Hide all but the last two characters of a one-time code."""

    if not code:
        return ""
    if len(code) <= 2:
        return "*" * len(code)
    return "*" * (len(code) - 2) + code[-2:]


def _default_log_file_path() -> str | None:
    from ach_exporter.config import get_config

    raw = get_config().json_log_file.strip()
    return raw or None


class _Sink:
    def __init__(self, stream: TextIO, path: str | None) -> None:
        self.stream = stream
        self.path = path
        self.handle = open(path, "a", encoding="utf-8") if path else None
        self.closed = False

    def write(self, line: str) -> None:
        if self.closed:
            return
        self.stream.write(line + "\n")
        self.stream.flush()
        if self.handle:
            self.handle.write(line + "\n")
            self.handle.flush()

    def close(self) -> None:
        self.closed = True
        if self.handle:
            self.handle.close()
            self.handle = None


def _resolve_path(raw_path: str | None) -> str | None:
    if not raw_path:
        return None
    path = Path(raw_path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


_AUTO = object()


class JsonLogger:
    """Emit newline-delimited JSON events."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        stream: TextIO | None = None,
        *,
        log_file_path: str | None | object = _AUTO,
    ):
        self.run_id = run_id or new_run_id()
        if log_file_path is _AUTO:
            log_file_path = _default_log_file_path()
        self._sink = _Sink(stream or sys.stdout, _resolve_path(log_file_path))  # type: ignore[arg-type]
        self._owns_sink = True
        self.context: Dict[str, Any] = {"run_id": self.run_id}
        self.summary: Any = None

    @property
    def log_file_path(self) -> str | None:
        return self._sink.path

    @property
    def closed(self) -> bool:
        return self._sink.closed

    def bind(self, **fields: Any) -> "JsonLogger":
        child = object.__new__(JsonLogger)
        child.run_id = self.run_id
        child._sink = self._sink
        child._owns_sink = False
        child.context = {**self.context, **fields}
        child.summary = self.summary
        return child

    def attach_summary(self, summary: Any) -> None:
        self.summary = summary

    def info(self, *, phase: str, status: str = "ok", message: str = "", **fields: Any) -> None:
        if self.closed:
            return
        payload = {"phase": phase, "status": status, "message": message, **fields}
        for name in MASKED_FIELDS.intersection(payload):
            payload[name] = mask_code(str(payload[name]))
        if self.summary is not None:
            try:
                self.summary.record_log_event({**self.context, **payload})
            except Exception:
                pass
        event = {**self.context, **payload}
        event.setdefault("ts", datetime.now(timezone.utc).isoformat())
        self._sink.write(json.dumps(event, default=str, ensure_ascii=False))

    def close(self) -> None:
        if self._owns_sink and not self.closed:
            self._sink.close()

    def __del__(self) -> None:  # pragma: no cover
        try:
            self.close()
        except Exception:
            pass


def get_logger(run_id: Optional[str] = None) -> JsonLogger:
    return JsonLogger(run_id=run_id)


def log_event(*, logger: JsonLogger, phase: str, status: str = "ok", message: str = "", **extras: Any) -> None:
    logger.info(phase=phase, status=status, message=message, **extras)


@contextmanager
def timed_event(*, logger: JsonLogger, phase: str, message: str = "", **fields: Any) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    except Exception as exc:
        logger.info(
            phase=phase,
            status="error",
            message=f"{message} failed: {exc}",
            duration_ms=int((time.perf_counter() - start) * 1000),
            exc_type=type(exc).__name__,
            **fields,
        )
        raise
    logger.info(
        phase=phase,
        message=message,
        duration_ms=int((time.perf_counter() - start) * 1000),
        **fields,
    )
