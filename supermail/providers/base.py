"""
Abstract base class for email providers.
Defines the interface that all email providers must implement.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from ..errors import ErrorCode, SuperMailError, ValidationError, normalize_error
from ..models import (
    AddLabelsOptions,
    BatchOperation,
    BatchOperationOptions,
    EmailFolder,
    EmailLabel,
    EmailMessage,
    ListEmailsOptions,
    ListEmailsResponse,
    MoveEmailOptions,
    ProviderType,
    RemoveLabelsOptions,
    SendEmailOptions,
)

logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])


def classify_errors(func: F) -> F:
    """
    Route any failure of a provider coroutine through ``normalize_error``.

    Applied to every public operation so that callers never see a raw
    backend exception.
    """
    @functools.wraps(func)
    async def wrapper(self: 'EmailProvider', *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except Exception as e:
            error = normalize_error(e, self.provider_type.value)
            if error is not e:
                logger.error(f"{self.provider_type.value} {func.__name__} failed: {error.code.value}: {error.message}")
                raise error from e
            raise
    return wrapper  # type: ignore[return-value]


def unsupported(provider: ProviderType, capability: str) -> SuperMailError:
    return SuperMailError(
        ErrorCode.OPERATION_FAILED,
        f"{provider.value} does not support {capability}",
        provider.value
    )


def validate_send_options(options: SendEmailOptions, require_recipients: bool = True) -> None:
    """
    Check send options before anything goes over the wire.

    Raises:
        SuperMailError: MISSING_REQUIRED_FIELD when there are no recipients
        ValidationError: when an address is malformed
    """
    if options.subject is None:
        raise SuperMailError(ErrorCode.MISSING_REQUIRED_FIELD, "subject is required")
    if require_recipients and not options.to:
        raise SuperMailError(ErrorCode.MISSING_REQUIRED_FIELD, "At least one recipient is required in 'to'")
    for field_name in ('to', 'cc', 'bcc'):
        for address in getattr(options, field_name) or []:
            if not address.email or '@' not in address.email:
                raise ValidationError(f"Invalid email address in '{field_name}': {address.email!r}", field=field_name)


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    All email providers (Gmail, Microsoft 365, IMAP) must implement this interface.
    Every operation either returns unified model objects or raises a
    SuperMailError; an operation a backend cannot perform fails with
    OPERATION_FAILED instead of silently doing nothing.
    """

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    # Messages ---------------------------------------------------------------

    @abstractmethod
    async def send_email(self, options: SendEmailOptions) -> EmailMessage:
        """
        Send a new email.

        Returns:
            The sent message. Providers that do not echo the sent message
            return a representation built from ``options``.
        """
        pass

    @abstractmethod
    async def list_emails(self, options: Optional[ListEmailsOptions] = None) -> ListEmailsResponse:
        pass

    @abstractmethod
    async def get_email(self, email_id: str) -> EmailMessage:
        pass

    @abstractmethod
    async def delete_email(self, email_id: str) -> None:
        """Permanently delete an email."""
        pass

    @abstractmethod
    async def mark_as_read(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_unread(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def reply_to_email(self, email_id: str, options: SendEmailOptions) -> EmailMessage:
        pass

    # Folders ----------------------------------------------------------------

    @abstractmethod
    async def list_folders(self) -> List[EmailFolder]:
        pass

    @abstractmethod
    async def get_folder(self, folder_id: str) -> EmailFolder:
        pass

    @abstractmethod
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> EmailFolder:
        pass

    @abstractmethod
    async def move_to_folder(self, options: MoveEmailOptions) -> None:
        pass

    # Labels -----------------------------------------------------------------

    @abstractmethod
    async def list_labels(self) -> List[EmailLabel]:
        pass

    @abstractmethod
    async def add_labels(self, options: AddLabelsOptions) -> None:
        pass

    @abstractmethod
    async def remove_labels(self, options: RemoveLabelsOptions) -> None:
        pass

    @abstractmethod
    async def create_label(self, name: str, color: Optional[str] = None) -> EmailLabel:
        """
        Create a label.

        Args:
            name: Label name
            color: Hex colour; mapped to the nearest colour the backend accepts
        """
        pass

    # Organisation -----------------------------------------------------------

    @abstractmethod
    async def archive_email(self, email_id: str) -> None:
        pass

    @abstractmethod
    async def trash_email(self, email_id: str) -> None:
        pass

    async def batch_operation(self, options: BatchOperationOptions) -> None:
        """
        Apply one operation to many emails.

        One call per email is issued concurrently. The first failure is
        raised; operations already completed for other emails are not rolled
        back and no partial result is reported.
        """
        try:
            operation = BatchOperation(options.operation)
        except ValueError:
            raise ValidationError(f"Unknown batch operation: {options.operation!r}", field='operation')

        handlers = {
            BatchOperation.DELETE: self.delete_email,
            BatchOperation.MARK_READ: self.mark_as_read,
            BatchOperation.MARK_UNREAD: self.mark_as_unread,
            BatchOperation.ARCHIVE: self.archive_email,
        }
        handler = handlers[operation]

        logger.debug(f"{self.provider_type.value} batch {operation.value} on {len(options.email_ids)} emails")
        # Each handler already classifies its own failure
        await asyncio.gather(*(handler(email_id) for email_id in options.email_ids))

    # Attachments / lifecycle --------------------------------------------------

    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """
        Download attachment content referenced by an AttachmentReference.

        Args:
            message_id: The message the attachment belongs to
            attachment_id: ``AttachmentReference.attachment_id``

        Returns:
            Attachment content as bytes
        """
        raise unsupported(self.provider_type, "attachment download")

    async def disconnect(self) -> None:
        """Release the backend session."""
        pass
