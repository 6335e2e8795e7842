# File: ach_exporter/portal/page_selectors.py
"""CSS selectors for the Elevate portal.

Defaults cover the current portal markup. A JSON file (``SELECTORS_FILE``)
with the same group/key layout overrides individual entries; a list value is
joined into one comma-separated selector.
"""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

Selectors = Dict[str, Dict[str, str]]

# Login form
LOGIN_USERNAME = "input[placeholder='Username'], input[name*='user' i], input[id*='user' i]"
LOGIN_PASSWORD = "input[type='password']"
LOGIN_SUBMIT = "button:has-text('Login'), input[type='submit']"

# 2FA challenge
TWOFA_CODE_INPUT = "input[placeholder='Passcode'], input[autocomplete='one-time-code']"
TWOFA_DIGIT_INPUTS = "input[maxlength='1'][inputmode='numeric']"
TWOFA_GUESS = (
    "input[autocomplete='one-time-code'], "
    "input[name*='code' i], "
    "input[id*='code' i], "
    "input[aria-label*='code' i]"
)
TWOFA_SUBMIT = (
    "button:has-text('Verify code'), "
    "button:has-text('Verify'), "
    "button:has-text('Continue'), "
    "input[type='submit']"
)
TWOFA_RESEND = (
    "a:has-text('Resend'), "
    "button:has-text('Resend'), "
    "a:has-text('Send new code'), "
    "button:has-text('Send new code')"
)
TWOFA_ERROR = ".validation-summary-errors, .alert-danger, .field-validation-error, [role='alert']"

# Reporting navigation
QUERY_MENU = "a:has-text('Query System'), button:has-text('Query System')"
ADVANCED_LINK = "a[href='/Reporting/ReportSelect.aspx'], a:has-text('Advanced Reporting')"
NET_ACH_LINK = "a:has-text('Net ACH Details')"

# Net ACH report form
MID_INPUT = "input[placeholder='Search by MID/Name']"
MID_RESULTS_CONTAINER = "#MID-catmultiselect-resultbox"
MID_RESULT_ITEM = "#MID-catmultiselect-resultbox .catMSResultList li"
MID_CHIP = ".catMSValueList li"
START_DATE = "#fileDateStart"
END_DATE = "#fileDateEnd"
LOAD_BUTTON = "#load, button:has-text('Load report')"

# Results and export
RESULTS_PANEL = "div.portlet:has(.portlet-title .caption:has-text('REPORT RESULTS'))"
RESULTS_TABLE = ".tableScrollWrap table, .tableScrollWrap .table, table"
EXPORT_BUTTON = (
    "button.btn.green.export, "
    "a.btn.green.export, "
    "button:has-text('Export'), "
    "a:has-text('Export'), "
    "button:has(i.fa-table), "
    "a:has(i.fa-table), "
    "ul.inline-dropdown a:has-text('Export')"
)

DEFAULT_SELECTORS: Selectors = {
    "login": {
        "username": LOGIN_USERNAME,
        "password": LOGIN_PASSWORD,
        "submit": LOGIN_SUBMIT,
    },
    "twofa": {
        "code_input": TWOFA_CODE_INPUT,
        "digit_inputs": TWOFA_DIGIT_INPUTS,
        "guess": TWOFA_GUESS,
        "submit": TWOFA_SUBMIT,
        "resend": TWOFA_RESEND,
        "error": TWOFA_ERROR,
    },
    "reporting": {
        "query_menu": QUERY_MENU,
        "advanced_link": ADVANCED_LINK,
        "net_ach_button": NET_ACH_LINK,
        "mid_input": MID_INPUT,
        "mid_results_container": MID_RESULTS_CONTAINER,
        "mid_result_item": MID_RESULT_ITEM,
        "mid_chip": MID_CHIP,
        "run_button": LOAD_BUTTON,
        "results_panel": RESULTS_PANEL,
        "results_table": RESULTS_TABLE,
        "export_button": EXPORT_BUTTON,
    },
    "ach": {
        "start_date": START_DATE,
        "end_date": END_DATE,
    },
}


def _coerce_selector(value: Any, *, where: str) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return ", ".join(item.strip() for item in value if item.strip())
    raise ValueError(f"Selector {where} must be a string or a list of strings")


def merge_selectors(overrides: Dict[str, Any]) -> Selectors:
    """Overlay ``overrides`` on the defaults. Empty strings disable an entry."""

    merged = deepcopy(DEFAULT_SELECTORS)
    for group, entries in overrides.items():
        if not isinstance(entries, dict):
            raise ValueError(f"Selector group {group!r} must be an object")
        if group not in merged:
            logger.warning("unknown selector group ignored", extra={"group": group})
            continue
        for key, value in entries.items():
            merged[group][key] = _coerce_selector(value, where=f"{group}.{key}")
    return merged


def load_selectors(path: Path | None = None) -> Selectors:
    if path is None:
        return deepcopy(DEFAULT_SELECTORS)
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Selectors file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Selectors file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Selectors file must contain a JSON object: {path}")
    return merge_selectors(raw)
