"""Merchant list loading.

Two layouts are accepted::

    {"merchant_ids": ["840100065415", ...]}

    [{"Merchant ID": "840100065415", "DBA Name": "Acme"}, "840100065416", ...]

Object keys are matched case-insensitively. Duplicate ids keep their first
occurrence.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List

ID_KEYS = ("merchant id", "merchant_id", "mid", "id")
NAME_KEYS = ("dba name", "name", "merchant name")


class MerchantsFileError(ValueError):
    """Raised when the merchants file is missing or has an unsupported layout."""


@dataclass(frozen=True)
class Merchant:
    id: str
    name: str | None = None


def _pick(item: dict[str, Any], keys: Iterable[str]) -> str | None:
    lowered = {str(key).strip().lower(): value for key, value in item.items()}
    for key in keys:
        value = lowered.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _dedupe(merchants: Iterable[Merchant]) -> List[Merchant]:
    seen: set[str] = set()
    ordered: List[Merchant] = []
    for merchant in merchants:
        if merchant.id in seen:
            continue
        seen.add(merchant.id)
        ordered.append(merchant)
    return ordered


def parse_merchants(raw: Any) -> List[Merchant]:
    if isinstance(raw, dict) and isinstance(raw.get("merchant_ids"), list):
        return _dedupe(Merchant(id=str(value).strip()) for value in raw["merchant_ids"] if str(value).strip())

    if isinstance(raw, list):
        merchants: List[Merchant] = []
        for item in raw:
            if item is None:
                continue
            if isinstance(item, (str, int)):
                if str(item).strip():
                    merchants.append(Merchant(id=str(item).strip()))
                continue
            if isinstance(item, dict):
                merchant_id = _pick(item, ID_KEYS)
                if merchant_id:
                    merchants.append(Merchant(id=merchant_id, name=_pick(item, NAME_KEYS)))
        return _dedupe(merchants)

    raise MerchantsFileError(
        "Unsupported merchants structure: expected {\"merchant_ids\": [...]} or an array of id/name objects"
    )


def load_merchants(path: Path) -> List[Merchant]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise MerchantsFileError(f"Missing merchants file: {path}") from exc
    except json.JSONDecodeError as exc:
        raise MerchantsFileError(f"Merchants file is not valid JSON: {path}: {exc}") from exc
    return parse_merchants(raw)
