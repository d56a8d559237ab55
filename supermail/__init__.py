"""
SuperMail - one async interface over Gmail, Microsoft 365 and IMAP/SMTP.
"""

from .client import SuperMail
from .config import (
    GmailConfig,
    ImapConfig,
    ImapSettings,
    LoggingSettings,
    MicrosoftConfig,
    SmtpSettings,
    load_provider_config,
    parse_provider_config,
)
from .errors import (
    AuthenticationError,
    ErrorCode,
    NotFoundError,
    RateLimitError,
    SuperMailError,
    ValidationError,
    normalize_error,
)
from .logging import configure_logging
from .models import (
    AddLabelsOptions,
    AttachmentReference,
    BatchOperation,
    BatchOperationOptions,
    EmailAddress,
    EmailAttachment,
    EmailFolder,
    EmailLabel,
    EmailMessage,
    LabelType,
    ListEmailsOptions,
    ListEmailsResponse,
    MoveEmailOptions,
    ProviderType,
    RemoveLabelsOptions,
    SendEmailOptions,
)
from .providers import EmailProvider, GmailProvider, IMAPProvider, MicrosoftProvider

__version__ = "0.1.0"

__all__ = [
    'SuperMail',
    'EmailProvider',
    'GmailProvider',
    'MicrosoftProvider',
    'IMAPProvider',
    'GmailConfig',
    'MicrosoftConfig',
    'ImapConfig',
    'ImapSettings',
    'SmtpSettings',
    'LoggingSettings',
    'load_provider_config',
    'parse_provider_config',
    'configure_logging',
    'ErrorCode',
    'SuperMailError',
    'AuthenticationError',
    'RateLimitError',
    'NotFoundError',
    'ValidationError',
    'normalize_error',
    'ProviderType',
    'LabelType',
    'BatchOperation',
    'EmailAddress',
    'AttachmentReference',
    'EmailAttachment',
    'EmailMessage',
    'SendEmailOptions',
    'ListEmailsOptions',
    'ListEmailsResponse',
    'EmailFolder',
    'EmailLabel',
    'MoveEmailOptions',
    'AddLabelsOptions',
    'RemoveLabelsOptions',
    'BatchOperationOptions',
]
