"""Tests for provider configuration parsing and loading."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from supermail.config import (
    GmailConfig,
    ImapConfig,
    MicrosoftConfig,
    load_provider_config,
    parse_provider_config,
)
from supermail.errors import ErrorCode, SuperMailError


def _clear_supermail_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("SUPERMAIL_"):
            monkeypatch.delenv(key, raising=False)


def test_parse_gmail_config() -> None:
    config = parse_provider_config({"type": "gmail", "client_id": "id", "client_secret": "secret"})
    assert isinstance(config, GmailConfig)
    assert config.user_id == "me"
    assert config.scopes == ["https://mail.google.com/"]


def test_parse_imap_config_defaults() -> None:
    config = parse_provider_config({
        "type": "imap",
        "imap": {"host": "imap.example.com", "username": "u", "password": "p"},
        "smtp": {"host": "smtp.example.com"},
    })
    assert isinstance(config, ImapConfig)
    assert config.imap.port == 993
    assert config.imap.mailbox == "INBOX"
    assert config.smtp.port == 465
    assert config.smtp.use_ssl is True


@pytest.mark.parametrize("alias, expected", [
    ("label-organized", GmailConfig),
    ("folder-native", MicrosoftConfig),
])
def test_backend_aliases(alias: str, expected: type) -> None:
    raw = {"type": alias, "client_id": "id", "client_secret": "secret", "access_token": "token"}
    assert isinstance(parse_provider_config(raw), expected)


def test_unknown_type_is_operation_failed() -> None:
    with pytest.raises(SuperMailError) as exc_info:
        parse_provider_config({"type": "pop3"})
    assert exc_info.value.code is ErrorCode.OPERATION_FAILED
    assert "pop3" in exc_info.value.message


def test_missing_type_is_operation_failed() -> None:
    with pytest.raises(SuperMailError) as exc_info:
        parse_provider_config({"client_id": "id"})
    assert exc_info.value.code is ErrorCode.OPERATION_FAILED


def test_invalid_fields_are_invalid_input() -> None:
    with pytest.raises(SuperMailError) as exc_info:
        parse_provider_config({"type": "gmail", "client_id": "id"})
    assert exc_info.value.code is ErrorCode.INVALID_INPUT
    assert exc_info.value.provider == "gmail"


class TestMicrosoftConfig:
    def test_access_token_is_enough(self) -> None:
        assert MicrosoftConfig(client_id="id", access_token="token").client_secret is None

    def test_client_credentials_need_mailbox(self) -> None:
        with pytest.raises(ValueError):
            MicrosoftConfig(client_id="id", client_secret="secret", tenant_id="tenant")

    def test_client_credentials(self) -> None:
        config = MicrosoftConfig(client_id="id", client_secret="s", tenant_id="t", user_email="me@example.com")
        assert config.user_email == "me@example.com"


class TestLoadProviderConfig:
    def test_from_environment(self, monkeypatch) -> None:
        _clear_supermail_env(monkeypatch)
        monkeypatch.setenv("SUPERMAIL_TYPE", "imap")
        monkeypatch.setenv("SUPERMAIL_IMAP__HOST", "imap.example.com")
        monkeypatch.setenv("SUPERMAIL_IMAP__USERNAME", "me@example.com")
        monkeypatch.setenv("SUPERMAIL_IMAP__PASSWORD", "secret")
        monkeypatch.setenv("SUPERMAIL_IMAP__PORT", "143")
        monkeypatch.setenv("SUPERMAIL_SMTP__HOST", "smtp.example.com")

        config = load_provider_config()

        assert isinstance(config, ImapConfig)
        assert config.imap.host == "imap.example.com"
        assert config.imap.port == 143
        assert config.smtp.host == "smtp.example.com"

    def test_from_dotenv_file(self, monkeypatch, tmp_path: Path) -> None:
        _clear_supermail_env(monkeypatch)
        env_file = tmp_path / ".env"
        env_file.write_text(
            "SUPERMAIL_TYPE=gmail\n"
            "SUPERMAIL_CLIENT_ID=file-id\n"
            "SUPERMAIL_CLIENT_SECRET=file-secret\n"
            "SUPERMAIL_SCOPES=scope-a,scope-b\n"
        )

        config = load_provider_config(env_file)

        assert isinstance(config, GmailConfig)
        assert config.client_id == "file-id"
        assert config.scopes == ["scope-a", "scope-b"]

    def test_environment_overrides_file(self, monkeypatch, tmp_path: Path) -> None:
        _clear_supermail_env(monkeypatch)
        env_file = tmp_path / ".env"
        env_file.write_text("SUPERMAIL_TYPE=gmail\nSUPERMAIL_CLIENT_ID=file-id\nSUPERMAIL_CLIENT_SECRET=s\n")
        monkeypatch.setenv("SUPERMAIL_CLIENT_ID", "env-id")

        assert load_provider_config(env_file).client_id == "env-id"

    def test_keyword_overrides_win(self, monkeypatch) -> None:
        _clear_supermail_env(monkeypatch)
        config = load_provider_config(type="microsoft", client_id="id", access_token="token")
        assert isinstance(config, MicrosoftConfig)
