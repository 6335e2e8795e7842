import io
import json

from ach_exporter.json_logger import JsonLogger, log_event, mask_code, timed_event


class RecordingSummary:
    def __init__(self) -> None:
        self.events = []

    def record_log_event(self, payload) -> None:
        self.events.append(payload)


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_events_are_json_lines_with_run_id() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)

    log_event(logger=logger, phase="mfa", message="2FA code found", mailbox="INBOX")

    (event,) = _lines(stream)
    assert event["run_id"] == "run-1"
    assert event["phase"] == "mfa"
    assert event["status"] == "ok"
    assert event["mailbox"] == "INBOX"
    assert "ts" in event


def test_bound_logger_shares_summary_and_context() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-2", stream=stream, log_file_path=None)
    summary = RecordingSummary()
    logger.attach_summary(summary)

    child = logger.bind(mailbox="INBOX")
    log_event(logger=child, phase="mfa", status="warn", message="Mailbox search failed")
    child.close()
    log_event(logger=logger, phase="mfa", message="still open")

    first, second = _lines(stream)
    assert first["mailbox"] == "INBOX"
    assert first["status"] == "warn"
    assert "mailbox" not in second
    assert summary.events[0]["mailbox"] == "INBOX"
    assert summary.events[0]["message"] == "Mailbox search failed"


def test_closing_parent_silences_bound_loggers() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-5", stream=stream, log_file_path=None)
    child = logger.bind(mailbox="INBOX")

    logger.close()
    log_event(logger=child, phase="mfa", message="dropped")

    assert child.closed is True
    assert stream.getvalue() == ""


def test_code_fields_are_masked_in_every_event() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-6", stream=stream, log_file_path=None)

    log_event(logger=logger, phase="mfa", message="submitting", code="482913")

    (event,) = _lines(stream)
    assert event["code"] == "****13"
    assert "482913" not in stream.getvalue()


def test_file_sink_receives_the_same_lines(tmp_path) -> None:
    stream = io.StringIO()
    path = tmp_path / "logs" / "run.jsonl"
    logger = JsonLogger(run_id="run-3", stream=stream, log_file_path=str(path))

    log_event(logger=logger, phase="init", message="starting")
    logger.close()
    log_event(logger=logger, phase="init", message="ignored after close")

    assert path.read_text(encoding="utf-8") == stream.getvalue()
    assert len(_lines(stream)) == 1


def test_timed_event_logs_failure_and_reraises() -> None:
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-4", stream=stream, log_file_path=None)

    try:
        with timed_event(logger=logger, phase="login", message="portal login"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    (event,) = _lines(stream)
    assert event["status"] == "error"
    assert event["exc_type"] == "RuntimeError"
    assert "duration_ms" in event


def test_mask_code_keeps_last_two_digits() -> None:
    assert mask_code("482913") == "****13"
    assert mask_code("12") == "**"
    assert mask_code(None) == ""
