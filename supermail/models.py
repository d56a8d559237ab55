"""
Unified data model shared by all email providers.
"""

from typing import List, Optional, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ProviderType(str, Enum):
    """Supported email provider types."""
    GMAIL = "gmail"
    MICROSOFT = "microsoft"
    IMAP = "imap"


class LabelType(str, Enum):
    SYSTEM = "system"
    USER = "user"


class BatchOperation(str, Enum):
    """Operations accepted by ``batch_operation``."""
    DELETE = "delete"
    MARK_READ = "markRead"
    MARK_UNREAD = "markUnread"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class EmailAddress:
    """A mailbox address with optional display name."""
    email: str
    name: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>" if self.name else self.email


@dataclass(frozen=True)
class AttachmentReference:
    """
    Placeholder for attachment bytes that were not fetched.

    The id is backend-local and only meaningful to the provider that produced
    it (see ``EmailProvider.download_attachment``).
    """
    attachment_id: str


@dataclass
class EmailAttachment:
    """
    Represents an email attachment.

    ``content`` is either the materialized payload (bytes, or text that is
    encoded as UTF-8 when sending) or an AttachmentReference for providers that
    defer attachment downloads.
    """
    filename: str
    content: Union[bytes, str, AttachmentReference]
    content_type: str = "application/octet-stream"
    size: Optional[int] = None

    @property
    def is_materialized(self) -> bool:
        return not isinstance(self.content, AttachmentReference)

    def content_bytes(self) -> bytes:
        """Return the payload as bytes. Fails for unfetched attachments."""
        if isinstance(self.content, AttachmentReference):
            raise ValueError(f"Attachment '{self.filename}' has not been downloaded")
        if isinstance(self.content, str):
            return self.content.encode('utf-8')
        return self.content


@dataclass
class EmailMessage:
    """Standardized email message structure across all providers."""
    subject: str
    to: List[EmailAddress] = field(default_factory=list)
    body: str = ""

    # Optional fields
    id: Optional[str] = None
    from_: Optional[EmailAddress] = None
    cc: Optional[List[EmailAddress]] = None
    bcc: Optional[List[EmailAddress]] = None
    html_body: Optional[str] = None
    attachments: Optional[List[EmailAttachment]] = None
    date: Optional[datetime] = None
    is_read: Optional[bool] = None
    labels: Optional[List[str]] = None
    thread_id: Optional[str] = None
    folder_id: Optional[str] = None


@dataclass
class SendEmailOptions:
    subject: str
    to: List[EmailAddress]
    body: str
    cc: Optional[List[EmailAddress]] = None
    bcc: Optional[List[EmailAddress]] = None
    html_body: Optional[str] = None
    attachments: Optional[List[EmailAttachment]] = None
    reply_to: Optional[EmailAddress] = None


@dataclass
class ListEmailsOptions:
    """
    Filters for ``list_emails``.

    ``query`` uses the backend's own search grammar. ``page_token`` must be a
    ``next_page_token`` returned by a previous call, passed back verbatim.
    """
    max_results: Optional[int] = None
    page_token: Optional[str] = None
    label_ids: Optional[List[str]] = None
    query: Optional[str] = None
    unread_only: bool = False


@dataclass
class ListEmailsResponse:
    messages: List[EmailMessage] = field(default_factory=list)
    next_page_token: Optional[str] = None
    total_count: Optional[int] = None


@dataclass
class EmailFolder:
    """Represents an email folder/mailbox."""
    id: str
    name: str
    parent_id: Optional[str] = None
    unread_count: Optional[int] = None
    total_count: Optional[int] = None


@dataclass
class EmailLabel:
    """Represents a label, category or flag depending on the provider."""
    id: str
    name: str
    color: Optional[str] = None
    type: Optional[LabelType] = None


@dataclass
class MoveEmailOptions:
    email_id: str
    folder_id: str


@dataclass
class AddLabelsOptions:
    email_id: str
    label_ids: List[str]


@dataclass
class RemoveLabelsOptions:
    email_id: str
    label_ids: List[str]


@dataclass
class BatchOperationOptions:
    email_ids: List[str]
    operation: Union[BatchOperation, str]
    folder_id: Optional[str] = None
    label_ids: Optional[List[str]] = None


__all__ = [
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
