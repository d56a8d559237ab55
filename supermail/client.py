"""
SuperMail facade: one object exposing the capability set of whichever
provider its configuration names.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from .config import GmailConfig, ImapConfig, MicrosoftConfig, parse_provider_config
from .errors import ErrorCode, SuperMailError
from .models import (
    AddLabelsOptions,
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
from .providers import EmailProvider, GmailProvider, IMAPProvider, MicrosoftProvider

logger = logging.getLogger(__name__)

AnyConfig = Union[GmailConfig, MicrosoftConfig, ImapConfig]

_PROVIDERS: Dict[Type[Any], Type[EmailProvider]] = {
    GmailConfig: GmailProvider,
    MicrosoftConfig: MicrosoftProvider,
    ImapConfig: IMAPProvider,
}


class SuperMail:
    """
    Unified email client.

    The provider is chosen once, from the configuration, and every call is
    forwarded to it unchanged.

    Usage::

        async with SuperMail({'type': 'imap', 'imap': {...}, 'smtp': {...}}) as mail:
            inbox = await mail.list_emails(ListEmailsOptions(unread_only=True))
    """

    def __init__(self, config: Union[AnyConfig, Mapping[str, Any]], **provider_kwargs: Any):
        """
        Args:
            config: A provider config model, or a mapping with a ``type`` key
            **provider_kwargs: Passed to the provider constructor
                (e.g. ``transport`` for the Microsoft provider)

        Raises:
            SuperMailError: OPERATION_FAILED for an unsupported provider type,
                INVALID_INPUT for an invalid configuration
        """
        if isinstance(config, Mapping):
            config = parse_provider_config(config)

        provider_class = _PROVIDERS.get(type(config))
        if provider_class is None:
            raise SuperMailError(
                ErrorCode.OPERATION_FAILED,
                f"Unsupported provider type: {getattr(config, 'type', type(config).__name__)!r}"
            )
        self._provider = provider_class(config, **provider_kwargs)
        logger.debug(f"SuperMail using {self._provider.provider_type.value} provider")

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    @property
    def provider_type(self) -> ProviderType:
        return self._provider.provider_type

    async def __aenter__(self) -> 'SuperMail':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # Messages

    async def send_email(self, options: SendEmailOptions) -> EmailMessage:
        return await self._provider.send_email(options)

    async def list_emails(self, options: Optional[ListEmailsOptions] = None) -> ListEmailsResponse:
        return await self._provider.list_emails(options)

    async def get_email(self, email_id: str) -> EmailMessage:
        return await self._provider.get_email(email_id)

    async def delete_email(self, email_id: str) -> None:
        await self._provider.delete_email(email_id)

    async def mark_as_read(self, email_id: str) -> None:
        await self._provider.mark_as_read(email_id)

    async def mark_as_unread(self, email_id: str) -> None:
        await self._provider.mark_as_unread(email_id)

    async def reply_to_email(self, email_id: str, options: SendEmailOptions) -> EmailMessage:
        return await self._provider.reply_to_email(email_id, options)

    # Folders

    async def list_folders(self) -> List[EmailFolder]:
        return await self._provider.list_folders()

    async def get_folder(self, folder_id: str) -> EmailFolder:
        return await self._provider.get_folder(folder_id)

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> EmailFolder:
        return await self._provider.create_folder(name, parent_id)

    async def move_to_folder(self, options: MoveEmailOptions) -> None:
        await self._provider.move_to_folder(options)

    # Labels

    async def list_labels(self) -> List[EmailLabel]:
        return await self._provider.list_labels()

    async def add_labels(self, options: AddLabelsOptions) -> None:
        await self._provider.add_labels(options)

    async def remove_labels(self, options: RemoveLabelsOptions) -> None:
        await self._provider.remove_labels(options)

    async def create_label(self, name: str, color: Optional[str] = None) -> EmailLabel:
        return await self._provider.create_label(name, color)

    # Organisation

    async def archive_email(self, email_id: str) -> None:
        await self._provider.archive_email(email_id)

    async def trash_email(self, email_id: str) -> None:
        await self._provider.trash_email(email_id)

    async def batch_operation(self, options: BatchOperationOptions) -> None:
        await self._provider.batch_operation(options)

    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        return await self._provider.download_attachment(message_id, attachment_id)

    async def disconnect(self) -> None:
        await self._provider.disconnect()
