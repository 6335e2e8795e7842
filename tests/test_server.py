import asyncio
import io
import time
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from ach_exporter.json_logger import JsonLogger
from ach_exporter.pipeline import JobOutcome, PrerequisiteError
from ach_exporter.server import JobState, create_app

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _logger() -> JsonLogger:
    return JsonLogger(run_id="server-test", stream=io.StringIO(), log_file_path=None)


def _outcome(**overrides) -> JobOutcome:
    values = {"run_id": "r1", "status": "ok", "started_at": NOW, "finished_at": NOW}
    values.update(overrides)
    return JobOutcome(**values)


def _wait_until(client: TestClient, predicate, path: str = "/status") -> dict:
    body = client.get(path).json()
    for _ in range(200):
        if predicate(body):
            return body
        time.sleep(0.01)
        body = client.get(path).json()
    raise AssertionError(f"condition not met; last body: {body}")


def test_health_reports_idle_state(make_config) -> None:
    app = create_app(config=make_config(), runner=lambda: None, logger=_logger())

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "running": False, "last_run": None, "last_error": None}


def test_run_records_last_outcome(make_config) -> None:
    async def runner() -> JobOutcome:
        return _outcome(status="error", failure_kind="code_timeout", error="2FA code not found")

    app = create_app(config=make_config(), runner=runner, logger=_logger())

    with TestClient(app) as client:
        response = client.post("/run")
        assert response.status_code == 202
        assert response.json()["accepted"] is True
        body = _wait_until(client, lambda data: data["last_run"] is not None, "/last")

    assert body["running"] is False
    assert body["last_run"]["failure_kind"] == "code_timeout"
    assert body["last_error"] == "2FA code not found"


def test_second_run_while_busy_is_acknowledged_and_cancel_stops_it(make_config) -> None:
    async def runner() -> JobOutcome:
        await asyncio.sleep(3600)
        return _outcome()

    state = JobState()
    app = create_app(config=make_config(), runner=runner, state=state, logger=_logger())

    with TestClient(app) as client:
        assert client.post("/run").status_code == 202
        busy = client.post("/run")
        assert busy.status_code == 200
        assert busy.json() == {"ok": True, "message": "already running"}

        cancelled = client.post("/cancel")
        assert cancelled.status_code == 202
        assert cancelled.json() == {"ok": True, "cancelled": True}
        body = _wait_until(client, lambda data: not data["running"])

    assert body["last_run"]["failure_kind"] == "cancelled"


def test_cancel_without_running_job_conflicts(make_config) -> None:
    app = create_app(config=make_config(), runner=lambda: None, logger=_logger())

    with TestClient(app) as client:
        response = client.post("/cancel")

    assert response.status_code == 409
    assert response.json()["cancelled"] is False


def test_prerequisite_failure_is_reported_in_status(make_config) -> None:
    async def runner() -> JobOutcome:
        raise PrerequisiteError(["IMAP_USER and IMAP_PASS are required for 2FA code retrieval"])

    app = create_app(config=make_config(), runner=runner, logger=_logger())

    with TestClient(app) as client:
        client.post("/run")
        body = _wait_until(client, lambda data: data["last_run"] is not None)

    assert body["last_run"]["failure_kind"] == "prerequisites"
    assert "IMAP_USER" in body["last_error"]


def test_api_key_is_required_when_configured(make_config) -> None:
    async def runner() -> JobOutcome:
        return _outcome()

    app = create_app(config=make_config(JOB_API_KEY="s3cret"), runner=runner, logger=_logger())

    with TestClient(app) as client:
        denied = client.post("/run")
        wrong = client.post("/run", headers={"X-API-Key": "nope"})
        allowed = client.post("/run", headers={"X-API-Key": "s3cret"})
        status = client.get("/status")

    assert denied.status_code == 401
    assert denied.json() == {"ok": False, "error": "unauthorized"}
    assert wrong.status_code == 401
    assert allowed.status_code == 202
    assert status.status_code == 200


def test_unknown_route_returns_json_404(make_config) -> None:
    app = create_app(config=make_config(), runner=lambda: None, logger=_logger())

    with TestClient(app) as client:
        response = client.get("/nope")

    assert response.status_code == 404
    assert response.json() == {"ok": False, "error": "not found"}
