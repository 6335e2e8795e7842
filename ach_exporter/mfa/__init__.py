"""2FA code acquisition: extract, scan, poll and submit."""

from typing import Any

__all__ = [
    "ChallengeFailed",
    "CodeTimeoutError",
    "complete_challenge",
    "extract",
    "find_code",
    "wait_for_code",
]


def __getattr__(name: str) -> Any:
    if name in {"ChallengeFailed", "complete_challenge"}:
        from ach_exporter.mfa import challenge

        return getattr(challenge, name)
    if name in {"CodeTimeoutError", "wait_for_code"}:
        from ach_exporter.mfa import poller

        return getattr(poller, name)
    if name == "extract":
        from ach_exporter.mfa.extractor import extract as _extract

        return _extract
    if name == "find_code":
        from ach_exporter.mfa.orchestrator import find_code as _find_code

        return _find_code
    raise AttributeError(name)
