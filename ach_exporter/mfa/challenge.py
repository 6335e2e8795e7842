"""2FA challenge submission cycle.

The cycle moves through ``AWAITING_CODE -> SUBMITTING -> VERIFYING`` and ends
``CLEARED`` or, when the portal keeps rejecting codes, ``FAILED``. Between
rejected attempts it asks the portal to resend and excludes the rejected
message from the next poll, so a stale code is never submitted twice from the
same email.
"""

from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, FrozenSet, List, Protocol, Set

from ach_exporter.json_logger import JsonLogger, log_event, mask_code
from ach_exporter.mfa.models import ChallengeResult, CodeMatch, MessageRef, SubmissionAttempt
from ach_exporter.mfa.poller import CodeTimeoutError

__all__ = [
    "ChallengeDriver",
    "ChallengeFailed",
    "ChallengeState",
    "complete_challenge",
]

CodeAcquirer = Callable[[FrozenSet[MessageRef]], Awaitable[CodeMatch]]


class ChallengeDriver(Protocol):
    async def is_challenge_present(self) -> bool: ...

    async def submit_code(self, code: str) -> None: ...

    async def wait_until_cleared(self, timeout_ms: int) -> bool: ...

    async def request_resend(self) -> bool: ...

    async def error_hint(self) -> str | None: ...


class ChallengeState(str, Enum):
    AWAITING_CODE = "awaiting_code"
    SUBMITTING = "submitting"
    VERIFYING = "verifying"
    RESENDING = "resending"
    CLEARED = "cleared"
    FAILED = "failed"


class ChallengeFailed(RuntimeError):
    """The challenge could not be cleared.

    ``kind`` is ``"code_timeout"`` when no email arrived in time and
    ``"code_rejected"`` when the portal refused every submitted code.
    """

    def __init__(self, kind: str, hint: str | None, attempts: List[SubmissionAttempt]) -> None:
        detail = f": {hint}" if hint else ""
        super().__init__(f"2FA challenge failed ({kind}) after {len(attempts)} submission(s){detail}")
        self.kind = kind
        self.hint = hint
        self.attempts = attempts


async def _error_hint(driver: ChallengeDriver, logger: JsonLogger) -> str | None:
    try:
        return await driver.error_hint()
    except Exception as exc:
        log_event(logger=logger, phase="mfa", status="warn", message="Could not read 2FA error hint", error=str(exc))
        return None


async def _request_resend(driver: ChallengeDriver, logger: JsonLogger) -> bool:
    try:
        return bool(await driver.request_resend())
    except Exception as exc:
        log_event(logger=logger, phase="mfa", status="warn", message="2FA resend request failed", error=str(exc))
        return False


def _transition(logger: JsonLogger, state: ChallengeState, attempt: int, **extras: object) -> None:
    log_event(logger=logger, phase="mfa", message="2FA challenge state", state=state.value, attempt=attempt, **extras)


async def complete_challenge(
    driver: ChallengeDriver,
    acquire_code: CodeAcquirer,
    *,
    max_attempts: int,
    clear_timeout_ms: int,
    logger: JsonLogger,
) -> ChallengeResult:
    """Drive the challenge to completion or raise :class:`ChallengeFailed`."""

    attempts: List[SubmissionAttempt] = []
    rejected: Set[MessageRef] = set()
    last_hint: str | None = None

    for attempt_number in range(1, max(1, max_attempts) + 1):
        _transition(logger, ChallengeState.AWAITING_CODE, attempt_number, excluded=len(rejected))
        try:
            match = await acquire_code(frozenset(rejected))
        except CodeTimeoutError as exc:
            _transition(logger, ChallengeState.FAILED, attempt_number, kind=exc.kind)
            raise ChallengeFailed(exc.kind, exc.hint, attempts) from exc

        _transition(logger, ChallengeState.SUBMITTING, attempt_number, **match.describe())
        if not await driver.is_challenge_present():
            _transition(logger, ChallengeState.CLEARED, attempt_number, submitted=False)
            return ChallengeResult(cleared=True, attempts=attempts)
        await driver.submit_code(match.code)

        _transition(logger, ChallengeState.VERIFYING, attempt_number)
        cleared = await driver.wait_until_cleared(clear_timeout_ms)
        if cleared:
            attempts.append(SubmissionAttempt(attempt_number, mask_code(match.code), cleared=True))
            _transition(logger, ChallengeState.CLEARED, attempt_number)
            return ChallengeResult(cleared=True, attempts=attempts)

        last_hint = await _error_hint(driver, logger)
        attempts.append(SubmissionAttempt(attempt_number, mask_code(match.code), cleared=False, error_hint=last_hint))
        rejected.add(match.ref)
        log_event(
            logger=logger,
            phase="mfa",
            status="warn",
            message="2FA code rejected",
            attempt=attempt_number,
            hint=last_hint,
            **match.describe(),
        )

        if attempt_number < max_attempts:
            _transition(logger, ChallengeState.RESENDING, attempt_number)
            resent = await _request_resend(driver, logger)
            log_event(logger=logger, phase="mfa", message="2FA resend requested", attempt=attempt_number, resent=resent)

    _transition(logger, ChallengeState.FAILED, len(attempts), kind="code_rejected")
    raise ChallengeFailed("code_rejected", last_hint, attempts)
