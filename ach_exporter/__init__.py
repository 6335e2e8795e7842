"""Elevate portal Net ACH export job with email-delivered 2FA."""

from typing import Any

__all__ = ["run_net_ach_once"]


def __getattr__(name: str) -> Any:
    if name == "run_net_ach_once":
        from ach_exporter.pipeline import run_net_ach_once as _run_net_ach_once

        return _run_net_ach_once
    raise AttributeError(name)
