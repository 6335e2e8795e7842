from pathlib import Path

import pytest

from ach_exporter.config import PROJECT_ROOT, Config, ConfigError, default_code_regex


def test_defaults_for_a_minimal_environment() -> None:
    config = Config.from_env({"HEADLESS": "true"})

    assert config.portal_base == "https://portal.elevateqs.com"
    assert config.imap.host == "imap.gmail.com"
    assert config.imap.port == 993
    assert config.imap.secure is True
    assert config.imap.mailboxes == ("INBOX",)
    assert config.mfa.subject_filter == "Elevate MFA Code"
    assert config.mfa.lookback_minutes == 60
    assert config.mfa.code_length == 6
    assert config.mfa.code_regex == default_code_regex(6)
    assert config.mfa.max_wait_seconds == 90
    assert config.mfa.poll_interval_seconds == 3
    assert config.date_tz == "America/New_York"
    assert config.date_mode == "yesterday"
    assert config.require_all_mids is True
    assert config.merchants_file == PROJECT_ROOT / "merchants.json"
    assert config.job_port == 3889


def test_mailbox_list_and_alternate_mailbox() -> None:
    config = Config.from_env({"IMAP_MAILBOXES": "INBOX, Verification", "IMAP_ALT_MAILBOX": "[Gmail]/All Mail"})

    assert config.imap.mailboxes == ("INBOX", "Verification", "[Gmail]/All Mail")


def test_alternate_mailbox_is_not_duplicated() -> None:
    config = Config.from_env({"IMAP_MAILBOX": "INBOX", "IMAP_ALT_MAILBOX": "INBOX"})

    assert config.imap.mailboxes == ("INBOX",)


def test_millisecond_settings_are_converted_to_seconds() -> None:
    config = Config.from_env(
        {
            "MFA_MAX_WAIT_MS": "10000",
            "IMAP_POLL_MS": "2500",
            "IMAP_TIME_SKEW_MS": "30000",
            "IMAP_CONN_TIMEOUT_MS": "5000",
        }
    )

    assert config.mfa.max_wait_seconds == 10
    assert config.mfa.poll_interval_seconds == 2.5
    assert config.mfa.skew_seconds == 30
    assert config.imap.connect_timeout_s == 5


def test_code_length_changes_default_pattern() -> None:
    config = Config.from_env({"IMAP_CODE_LENGTH": "8"})

    assert config.mfa.code_regex == default_code_regex(8)


@pytest.mark.parametrize(
    "env",
    [
        {"IMAP_CODE_LENGTH": "3"},
        {"IMAP_CODE_LENGTH": "9"},
        {"IMAP_CODE_REGEX": "(unclosed"},
        {"IMAP_PORT": "imap"},
        {"IMAP_SECURE": "maybe"},
        {"IMAP_TLS_MIN_VERSION": "SSLv3"},
        {"DATE_MODE": "tomorrow"},
        {"DATE_FORMAT": "DMY"},
        {"ELEVATE_BASE": "portal.elevateqs.com"},
        {"IMAP_LOOKBACK_MINUTES": "0"},
    ],
)
def test_malformed_values_raise_config_error(env) -> None:
    with pytest.raises(ConfigError):
        Config.from_env(env)


def test_blank_values_fall_back_to_defaults() -> None:
    config = Config.from_env({"IMAP_PORT": "  ", "IMAP_SUBJECT_FILTER": ""})

    assert config.imap.port == 993
    assert config.mfa.subject_filter == "Elevate MFA Code"


def test_smtp_settings_inherit_from_imap() -> None:
    config = Config.from_env({"IMAP_HOST": "imap.example.com", "IMAP_USER": "ops@example.com", "IMAP_PASS": "pw"})

    assert config.smtp.host == "smtp.example.com"
    assert config.smtp.username == "ops@example.com"
    assert config.smtp.password == "pw"
    assert config.smtp.sender == "ops@example.com"


def test_relative_paths_resolve_from_project_root(tmp_path: Path) -> None:
    config = Config.from_env({"OUTPUT_DIR": "exports", "ERROR_DIR": str(tmp_path / "shots")})

    assert config.output_dir == PROJECT_ROOT / "exports"
    assert config.error_dir == tmp_path / "shots"


def test_prerequisite_errors_list_missing_credentials() -> None:
    errors = Config.from_env({"IMAP_MAILBOXES": ""}).prerequisite_errors()

    assert "ELEVATE_USERNAME and ELEVATE_PASSWORD are required" in errors
    assert any(message.startswith("IMAP_USER and IMAP_PASS") for message in errors)


def test_complete_environment_has_no_prerequisite_errors(make_config) -> None:
    assert make_config().prerequisite_errors() == []
