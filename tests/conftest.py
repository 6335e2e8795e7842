import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from ach_exporter.config import Config  # noqa: E402


def base_env(tmp_path: Path) -> dict[str, str]:
    return {
        "ELEVATE_USERNAME": "ops-user",
        "ELEVATE_PASSWORD": "portal-secret",
        "IMAP_HOST": "imap.example.com",
        "IMAP_USER": "ops@example.com",
        "IMAP_PASS": "app-password",
        "IMAP_MAILBOXES": "INBOX,[Gmail]/All Mail",
        "MERCHANTS_FILE": str(tmp_path / "merchants.json"),
        "OUTPUT_DIR": str(tmp_path / "reports"),
        "ERROR_DIR": str(tmp_path / "error_shots"),
        "HEADLESS": "true",
        "DATE_TZ": "America/New_York",
        "EMAIL_ENABLED": "false",
    }


@pytest.fixture
def make_config(tmp_path):
    merchants_file = tmp_path / "merchants.json"
    merchants_file.write_text(json.dumps({"merchant_ids": ["840100065415", "840100065416"]}), encoding="utf-8")

    def _make(**overrides: str) -> Config:
        env = base_env(tmp_path)
        env.update(overrides)
        return Config.from_env(env)

    return _make
