"""
Provider configuration models and loader.

A configuration record names exactly one backend through its ``type`` field;
the facade dispatches on it once, at construction.
"""

import logging
import os
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ErrorCode, SuperMailError
from .models import ProviderType

logger = logging.getLogger(__name__)

ENV_PREFIX = "SUPERMAIL_"

# Abstract backend names accepted as aliases for the concrete provider types
TYPE_ALIASES: Dict[str, str] = {
    'label-organized': ProviderType.GMAIL.value,
    'folder-native': ProviderType.MICROSOFT.value,
    'direct-protocol': ProviderType.IMAP.value,
}


class GmailConfig(BaseModel):
    """OAuth client and token for the Gmail API."""
    type: Literal['gmail'] = 'gmail'
    client_id: str
    client_secret: str
    redirect_uri: Optional[str] = Field(default=None, description="Redirect URI registered for the OAuth client")
    access_token: Optional[str] = None
    refresh_token: Optional[str] = Field(default=None, description="Without it the access token cannot be refreshed")
    token_uri: str = "https://oauth2.googleapis.com/token"
    scopes: List[str] = Field(default_factory=lambda: ['https://mail.google.com/'])
    user_id: str = "me"


class MicrosoftConfig(BaseModel):
    """
    Microsoft Graph credentials.

    Either a delegated ``access_token`` (mailbox addressed as ``/me``) or the
    client credentials needed for an app-only token, in which case
    ``user_email`` selects the mailbox.
    """
    type: Literal['microsoft'] = 'microsoft'
    client_id: str
    client_secret: Optional[str] = None
    tenant_id: Optional[str] = None
    access_token: Optional[str] = None
    user_email: Optional[str] = None

    @model_validator(mode='after')
    def _check_credentials(self) -> 'MicrosoftConfig':
        if self.access_token:
            return self
        missing = [
            name for name in ('client_secret', 'tenant_id', 'user_email')
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                "Microsoft config needs access_token or client credentials; missing: " + ", ".join(missing)
            )
        return self


class ImapSettings(BaseModel):
    """Settings for the IMAP read session."""
    host: str
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str
    password: str
    use_ssl: bool = True
    mailbox: str = Field(default="INBOX", description="Mailbox that message ids refer to")


class SmtpSettings(BaseModel):
    """Settings for the SMTP submission session."""
    host: str
    port: int = Field(default=465, description="SMTP port, 465 for SSL or 587 for STARTTLS")
    username: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = True
    use_tls: bool = Field(default=False, description="Issue STARTTLS on a plain connection")
    from_address: Optional[str] = None
    timeout: float = 30.0


class ImapConfig(BaseModel):
    type: Literal['imap'] = 'imap'
    imap: ImapSettings
    smtp: SmtpSettings


ProviderConfig = Annotated[
    Union[GmailConfig, MicrosoftConfig, ImapConfig],
    Field(discriminator='type'),
]

_PROVIDER_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(ProviderConfig)


class LoggingSettings(BaseModel):
    """Logging preferences."""
    level: str = "INFO"
    structured: bool = False


def parse_provider_config(raw: Mapping[str, Any]) -> Union[GmailConfig, MicrosoftConfig, ImapConfig]:
    """
    Validate a mapping into one of the provider config models.

    Raises:
        SuperMailError: OPERATION_FAILED for an unknown ``type``,
            INVALID_INPUT when the fields do not validate
    """
    data = dict(raw)
    provider_type = data.get('type')
    if isinstance(provider_type, ProviderType):
        provider_type = provider_type.value
    if isinstance(provider_type, str):
        provider_type = TYPE_ALIASES.get(provider_type, provider_type)

    if provider_type not in {p.value for p in ProviderType}:
        raise SuperMailError(
            ErrorCode.OPERATION_FAILED,
            f"Unsupported provider type: {raw.get('type')!r}"
        )
    data['type'] = provider_type

    try:
        return _PROVIDER_CONFIG_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        raise SuperMailError(
            ErrorCode.INVALID_INPUT,
            f"Invalid {provider_type} configuration: {e}",
            provider_type,
            e
        ) from e


def _normalize_key(raw_key: str) -> List[str]:
    """SUPERMAIL_IMAP__HOST -> ['imap', 'host']"""
    trimmed = raw_key[len(ENV_PREFIX):]
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _collect_env_values(env_file: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Merge SUPERMAIL_* values from an optional dotenv file and the environment."""
    file_values: Dict[str, Any] = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }
        else:
            logger.warning(f"Env file not found: {env_path}")

    env_values = {key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)}

    collected: Dict[str, Any] = {}
    for key, value in {**file_values, **env_values}.items():
        path = _normalize_key(key)
        if not path or value is None or value == "":
            continue
        if key.endswith("SCOPES"):
            value = [scope for scope in value.split(",") if scope]
        cursor = collected
        for segment in path[:-1]:
            cursor = cursor.setdefault(segment, {})
        cursor[path[-1]] = value
    return collected


def load_provider_config(
    env_file: Optional[Union[str, Path]] = None,
    **overrides: Any
) -> Union[GmailConfig, MicrosoftConfig, ImapConfig]:
    """
    Build a provider config from SUPERMAIL_* variables.

    Example variables::

        SUPERMAIL_TYPE=imap
        SUPERMAIL_IMAP__HOST=imap.example.com
        SUPERMAIL_SMTP__HOST=smtp.example.com

    Args:
        env_file: Optional dotenv file; process environment wins over it
        **overrides: Top-level values applied last

    Returns:
        The validated provider config
    """
    collected = _collect_env_values(env_file)
    collected.update(overrides)
    return parse_provider_config(collected)


__all__ = [
    'GmailConfig',
    'MicrosoftConfig',
    'ImapSettings',
    'SmtpSettings',
    'ImapConfig',
    'ProviderConfig',
    'LoggingSettings',
    'TYPE_ALIASES',
    'parse_provider_config',
    'load_provider_config',
]
