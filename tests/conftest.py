"""Shared pytest fixtures."""

import smtplib

import pytest

from supermail.config import GmailConfig, ImapConfig, ImapSettings, MicrosoftConfig, SmtpSettings
from supermail.providers import GmailProvider, IMAPProvider, MicrosoftProvider
from tests.fakes.gmail import FakeGmailService
from tests.fakes.graph import FakeGraph
from tests.fakes.imap import FakeIMAPConnection, FakeSMTP


@pytest.fixture
def gmail_config() -> GmailConfig:
    return GmailConfig(
        client_id="client-id",
        client_secret="client-secret",
        access_token="access-token",
        refresh_token="refresh-token",
    )


@pytest.fixture
def gmail_service() -> FakeGmailService:
    return FakeGmailService()


@pytest.fixture
def gmail(gmail_config, gmail_service) -> GmailProvider:
    provider = GmailProvider(gmail_config)
    provider._service = gmail_service  # pylint: disable=protected-access
    return provider


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def microsoft_config() -> MicrosoftConfig:
    return MicrosoftConfig(client_id="client-id", access_token="access-token")


@pytest.fixture
def microsoft(microsoft_config, graph) -> MicrosoftProvider:
    return MicrosoftProvider(microsoft_config, transport=graph.transport)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        imap=ImapSettings(host="imap.example.com", username="me@example.com", password="secret"),
        smtp=SmtpSettings(host="smtp.example.com", username="me@example.com", password="secret"),
    )


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.reset()
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    yield FakeSMTP
    FakeSMTP.reset()


@pytest.fixture
def imap_connection() -> FakeIMAPConnection:
    return FakeIMAPConnection()


@pytest.fixture
def imap(imap_config, imap_connection, fake_smtp) -> IMAPProvider:
    provider = IMAPProvider(imap_config)
    provider._connection = imap_connection  # pylint: disable=protected-access
    return provider
