"""
Gmail email provider implementation.
Uses Google Gmail API for email access.

Gmail has no folders: system labels (INBOX, TRASH, SENT, ...) play that role
and user labels are the label concept proper.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import GmailConfig
from ..errors import (
    ErrorCode,
    SuperMailError,
    error_from_status,
    parse_retry_after,
    register_classifier,
)
from ..models import (
    AddLabelsOptions,
    AttachmentReference,
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
from .base import EmailProvider, classify_errors, validate_send_options
from .colors import nearest_color
from .mime import build_mime_message, parse_address, parse_address_list, reply_subject

logger = logging.getLogger(__name__)

INBOX_LABEL = 'INBOX'
UNREAD_LABEL = 'UNREAD'

# Gmail only accepts background/text colour pairs from its own palette
COLOR_PALETTE: Dict[str, Dict[str, str]] = {
    # Reds
    '#ff0000': {'backgroundColor': '#fb4c2f', 'textColor': '#ffffff'},
    '#fb4c2f': {'backgroundColor': '#fb4c2f', 'textColor': '#ffffff'},
    # Oranges
    '#ff8800': {'backgroundColor': '#ffc8af', 'textColor': '#ffffff'},
    '#ffc8af': {'backgroundColor': '#ffc8af', 'textColor': '#594c05'},
    # Yellows
    '#ffff00': {'backgroundColor': '#fad165', 'textColor': '#594c05'},
    '#fad165': {'backgroundColor': '#fad165', 'textColor': '#594c05'},
    # Greens
    '#00ff00': {'backgroundColor': '#16a765', 'textColor': '#ffffff'},
    '#16a765': {'backgroundColor': '#16a765', 'textColor': '#ffffff'},
    '#7bd148': {'backgroundColor': '#7bd148', 'textColor': '#594c05'},
    # Blues
    '#0000ff': {'backgroundColor': '#4986e7', 'textColor': '#ffffff'},
    '#4986e7': {'backgroundColor': '#4986e7', 'textColor': '#ffffff'},
    '#a4bdfc': {'backgroundColor': '#a4bdfc', 'textColor': '#594c05'},
    # Purples
    '#800080': {'backgroundColor': '#b99aff', 'textColor': '#ffffff'},
    '#b99aff': {'backgroundColor': '#b99aff', 'textColor': '#594c05'},
    # Pinks
    '#ff00ff': {'backgroundColor': '#f691b3', 'textColor': '#ffffff'},
    '#f691b3': {'backgroundColor': '#f691b3', 'textColor': '#ffffff'},
    # Grays
    '#808080': {'backgroundColor': '#cabdbf', 'textColor': '#594c05'},
    '#cabdbf': {'backgroundColor': '#cabdbf', 'textColor': '#594c05'},
}

DEFAULT_COLOR = {'backgroundColor': '#fb4c2f', 'textColor': '#ffffff'}

PALETTE_BACKGROUNDS = frozenset(c['backgroundColor'] for c in COLOR_PALETTE.values())


def convert_to_gmail_color(hex_color: Optional[str]) -> Dict[str, str]:
    """Map a hex colour to the nearest Gmail label colour pair."""
    return dict(nearest_color(hex_color, COLOR_PALETTE, DEFAULT_COLOR))


@register_classifier(ProviderType.GMAIL.value)
def classify_gmail_error(error: BaseException, provider: str) -> Optional[SuperMailError]:
    if isinstance(error, HttpError):
        retry_after = parse_retry_after(error.resp.get('retry-after'))
        return error_from_status(error.resp.status, provider, error, "Gmail", retry_after)
    if isinstance(error, RefreshError):
        return SuperMailError(
            ErrorCode.TOKEN_EXPIRED,
            f"Gmail access token expired and could not be refreshed: {error}",
            provider,
            error
        )
    if isinstance(error, (httplib2.ServerNotFoundError, TransportError)):
        return SuperMailError(ErrorCode.NETWORK_ERROR, f"Network error: {error}", provider, error)
    return None


class GmailProvider(EmailProvider):
    """
    Gmail email provider using Google API.

    Requires Google API packages:
    pip install google-api-python-client google-auth-httplib2
    """

    def __init__(self, config: GmailConfig):
        """
        Initialize Gmail provider.

        Args:
            config: OAuth client and tokens. Tokens are obtained outside this
                library; without a refresh token the access token is used
                until it expires.
        """
        self.config = config
        self.user_id = config.user_id
        self._credentials: Optional[Credentials] = None
        self._service = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    def _get_credentials(self) -> Credentials:
        if self._credentials is None:
            if not self.config.refresh_token:
                logger.info("Gmail config has no refresh token; access token cannot be refreshed")
            self._credentials = Credentials(
                token=self.config.access_token,
                refresh_token=self.config.refresh_token,
                token_uri=self.config.token_uri,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
                scopes=self.config.scopes,
            )
        return self._credentials

    def _get_service(self):
        """Get or create Gmail API service."""
        if self._service is None:
            self._service = build('gmail', 'v1', credentials=self._get_credentials(), cache_discovery=False)
        return self._service

    async def _execute(self, request) -> Dict[str, Any]:
        """
        Execute an API request in the default executor.

        httplib2.Http is not thread-safe, so every request gets its own
        authorized transport.
        """
        http = AuthorizedHttp(self._get_credentials(), http=httplib2.Http())
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: request.execute(http=http))
        return result or {}

    # Parsing ------------------------------------------------------------------

    @staticmethod
    def _decode_base64(data: str) -> bytes:
        """Decode base64url encoded data."""
        padding = 4 - len(data) % 4
        if padding != 4:
            data += '=' * padding
        try:
            return base64.urlsafe_b64decode(data)
        except (binascii.Error, ValueError):
            return b""

    @staticmethod
    def _get_header(headers: List[Dict], name: str) -> Optional[str]:
        """Get header value by name."""
        for header in headers:
            if header.get('name', '').lower() == name.lower():
                return header.get('value', '')
        return None

    def _extract_body(self, part: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        text = ""
        html = None
        mime_type = part.get('mimeType', '')
        data = part.get('body', {}).get('data')
        if part.get('filename'):
            return text, html
        if mime_type == 'text/plain' and data:
            text = self._decode_base64(data).decode('utf-8', errors='replace')
        elif mime_type == 'text/html' and data:
            html = self._decode_base64(data).decode('utf-8', errors='replace')
        for subpart in part.get('parts', []):
            sub_text, sub_html = self._extract_body(subpart)
            if sub_text and not text:
                text = sub_text
            if sub_html and not html:
                html = sub_html
        return text, html

    def _extract_attachments(self, payload: Dict[str, Any]) -> List[EmailAttachment]:
        attachments = []

        def walk(part: Dict[str, Any]):
            filename = part.get('filename')
            body = part.get('body', {})
            if filename:
                if body.get('attachmentId'):
                    # Gmail needs a separate call for attachment bytes
                    content = AttachmentReference(body['attachmentId'])
                else:
                    content = self._decode_base64(body.get('data', ''))
                attachments.append(EmailAttachment(
                    filename=filename,
                    content=content,
                    content_type=part.get('mimeType', 'application/octet-stream'),
                    size=body.get('size')
                ))
            for subpart in part.get('parts', []):
                walk(subpart)

        walk(payload)
        return attachments

    def _parse_email(self, msg: Dict[str, Any]) -> EmailMessage:
        """Parse Gmail API message to EmailMessage."""
        payload = msg.get('payload', {})
        headers = payload.get('headers', [])
        labels = msg.get('labelIds', [])

        body_text, body_html = self._extract_body(payload)

        date = None
        if msg.get('internalDate'):
            date = datetime.fromtimestamp(int(msg['internalDate']) / 1000, tz=timezone.utc)

        return EmailMessage(
            id=msg.get('id'),
            thread_id=msg.get('threadId'),
            subject=self._get_header(headers, 'Subject') or '',
            from_=parse_address(self._get_header(headers, 'From')),
            to=parse_address_list(self._get_header(headers, 'To')),
            cc=parse_address_list(self._get_header(headers, 'Cc')),
            bcc=parse_address_list(self._get_header(headers, 'Bcc')) or None,
            body=body_text or msg.get('snippet', ''),
            html_body=body_html,
            attachments=self._extract_attachments(payload),
            date=date,
            is_read=UNREAD_LABEL not in labels,
            labels=list(labels),
        )

    def _parse_label(self, label: Dict[str, Any]) -> EmailLabel:
        return EmailLabel(
            id=label['id'],
            name=label['name'],
            color=label.get('color', {}).get('backgroundColor'),
            type=LabelType.SYSTEM if label.get('type') == 'system' else LabelType.USER
        )

    @staticmethod
    def _parse_folder(label: Dict[str, Any]) -> EmailFolder:
        return EmailFolder(
            id=label['id'],
            name=label['name'],
            unread_count=label.get('messagesUnread'),
            total_count=label.get('messagesTotal')
        )

    @staticmethod
    def _build_query(options: ListEmailsOptions) -> Optional[str]:
        parts = []
        if options.query:
            parts.append(options.query)
        if options.unread_only:
            parts.append('is:unread')
        return ' '.join(parts) or None

    # Messages -------------------------------------------------------------------

    async def _send_raw(self, options: SendEmailOptions, mime, thread_id: Optional[str] = None) -> Dict[str, Any]:
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode('ascii')
        body: Dict[str, Any] = {'raw': raw}
        if thread_id:
            body['threadId'] = thread_id
        service = self._get_service()
        return await self._execute(service.users().messages().send(userId=self.user_id, body=body))

    @staticmethod
    def _sent_message(options: SendEmailOptions, response: Dict[str, Any], subject: str) -> EmailMessage:
        # The send response carries only ids, so the rest comes from the request
        return EmailMessage(
            id=response.get('id'),
            thread_id=response.get('threadId'),
            subject=subject,
            to=list(options.to),
            cc=options.cc,
            bcc=options.bcc,
            body=options.body,
            html_body=options.html_body,
            attachments=options.attachments,
            date=datetime.now(timezone.utc),
            labels=response.get('labelIds', []),
        )

    @classify_errors
    async def send_email(self, options: SendEmailOptions) -> EmailMessage:
        validate_send_options(options)
        mime = build_mime_message(options)
        response = await self._send_raw(options, mime)
        logger.info(f"Gmail message sent: {response.get('id')}")
        return self._sent_message(options, response, options.subject)

    @classify_errors
    async def list_emails(self, options: Optional[ListEmailsOptions] = None) -> ListEmailsResponse:
        options = options or ListEmailsOptions()
        service = self._get_service()

        params: Dict[str, Any] = {
            'userId': self.user_id,
            'maxResults': options.max_results or 100,
        }
        if options.page_token:
            params['pageToken'] = options.page_token
        if options.label_ids:
            params['labelIds'] = options.label_ids
        query = self._build_query(options)
        if query:
            params['q'] = query

        results = await self._execute(service.users().messages().list(**params))

        messages = []
        for msg_ref in results.get('messages', []):
            messages.append(await self.get_email(msg_ref['id']))

        return ListEmailsResponse(
            messages=messages,
            next_page_token=results.get('nextPageToken'),
            total_count=results.get('resultSizeEstimate')
        )

    async def _get_message(self, email_id: str) -> Dict[str, Any]:
        service = self._get_service()
        return await self._execute(
            service.users().messages().get(userId=self.user_id, id=email_id, format='full')
        )

    @classify_errors
    async def get_email(self, email_id: str) -> EmailMessage:
        return self._parse_email(await self._get_message(email_id))

    @classify_errors
    async def delete_email(self, email_id: str) -> None:
        service = self._get_service()
        await self._execute(service.users().messages().delete(userId=self.user_id, id=email_id))

    async def _modify(self, email_id: str, add: Optional[List[str]] = None, remove: Optional[List[str]] = None) -> None:
        body: Dict[str, List[str]] = {}
        if add:
            body['addLabelIds'] = list(add)
        if remove:
            body['removeLabelIds'] = list(remove)
        service = self._get_service()
        await self._execute(service.users().messages().modify(userId=self.user_id, id=email_id, body=body))

    @classify_errors
    async def mark_as_read(self, email_id: str) -> None:
        """Mark email as read by removing UNREAD label."""
        await self._modify(email_id, remove=[UNREAD_LABEL])

    @classify_errors
    async def mark_as_unread(self, email_id: str) -> None:
        await self._modify(email_id, add=[UNREAD_LABEL])

    @classify_errors
    async def reply_to_email(self, email_id: str, options: SendEmailOptions) -> EmailMessage:
        """
        Reply within the original conversation.

        The reply is sent with the original threadId and threading headers so
        Gmail groups it with the original. Without explicit recipients the
        reply goes to the original sender.
        """
        validate_send_options(options, require_recipients=False)
        original_raw = await self._get_message(email_id)
        original = self._parse_email(original_raw)
        headers = original_raw.get('payload', {}).get('headers', [])

        recipients = list(options.to)
        if not recipients:
            reply_to = parse_address(self._get_header(headers, 'Reply-To')) or original.from_
            if reply_to is None:
                raise SuperMailError(
                    ErrorCode.MISSING_REQUIRED_FIELD,
                    "Original message has no sender to reply to",
                    self.provider_type.value
                )
            recipients = [reply_to]

        subject = reply_subject(original.subject)
        reply_options = SendEmailOptions(
            subject=subject,
            to=recipients,
            body=options.body,
            cc=options.cc,
            bcc=options.bcc,
            html_body=options.html_body,
            attachments=options.attachments,
            reply_to=options.reply_to,
        )
        mime = build_mime_message(
            reply_options,
            in_reply_to=self._get_header(headers, 'Message-ID'),
            references=self._get_header(headers, 'References'),
        )
        response = await self._send_raw(reply_options, mime, thread_id=original.thread_id)
        logger.info(f"Gmail reply to {email_id} sent: {response.get('id')}")
        return self._sent_message(reply_options, response, subject)

    # Folders (system labels) ---------------------------------------------------

    async def _list_raw_labels(self) -> List[Dict[str, Any]]:
        service = self._get_service()
        results = await self._execute(service.users().labels().list(userId=self.user_id))
        return results.get('labels', [])

    @classify_errors
    async def list_folders(self) -> List[EmailFolder]:
        """Get the system labels, which Gmail uses in place of folders."""
        labels = await self._list_raw_labels()
        return [self._parse_folder(label) for label in labels if label.get('type') == 'system']

    @classify_errors
    async def get_folder(self, folder_id: str) -> EmailFolder:
        service = self._get_service()
        label = await self._execute(service.users().labels().get(userId=self.user_id, id=folder_id))
        return self._parse_folder(label)

    @classify_errors
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> EmailFolder:
        """
        Create a folder as a label.

        Gmail nests labels by name, so a parent produces ``Parent/name``.
        """
        service = self._get_service()
        if parent_id:
            parent = await self._execute(service.users().labels().get(userId=self.user_id, id=parent_id))
            name = f"{parent['name']}/{name}"

        label = await self._execute(service.users().labels().create(
            userId=self.user_id,
            body={
                'name': name,
                'labelListVisibility': 'labelShow',
                'messageListVisibility': 'show',
            }
        ))
        folder = self._parse_folder(label)
        folder.parent_id = parent_id
        return folder

    @classify_errors
    async def move_to_folder(self, options: MoveEmailOptions) -> None:
        await self._modify(options.email_id, add=[options.folder_id])

    # Labels -------------------------------------------------------------------

    @classify_errors
    async def list_labels(self) -> List[EmailLabel]:
        return [self._parse_label(label) for label in await self._list_raw_labels()]

    @classify_errors
    async def add_labels(self, options: AddLabelsOptions) -> None:
        await self._modify(options.email_id, add=options.label_ids)

    @classify_errors
    async def remove_labels(self, options: RemoveLabelsOptions) -> None:
        await self._modify(options.email_id, remove=options.label_ids)

    @classify_errors
    async def create_label(self, name: str, color: Optional[str] = None) -> EmailLabel:
        body: Dict[str, Any] = {
            'name': name,
            'labelListVisibility': 'labelShow',
            'messageListVisibility': 'show',
        }
        if color:
            body['color'] = convert_to_gmail_color(color)

        service = self._get_service()
        label = await self._execute(service.users().labels().create(userId=self.user_id, body=body))
        created = self._parse_label(label)
        created.type = LabelType.USER
        return created

    # Organisation -----------------------------------------------------------------

    @classify_errors
    async def archive_email(self, email_id: str) -> None:
        """Archive by removing the INBOX label. Already archived mail is left as is."""
        await self._modify(email_id, remove=[INBOX_LABEL])

    @classify_errors
    async def trash_email(self, email_id: str) -> None:
        service = self._get_service()
        await self._execute(service.users().messages().trash(userId=self.user_id, id=email_id))

    @classify_errors
    async def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download email attachment."""
        service = self._get_service()
        attachment = await self._execute(
            service.users().messages().attachments().get(
                userId=self.user_id,
                messageId=message_id,
                id=attachment_id
            )
        )
        return self._decode_base64(attachment.get('data', ''))

    async def disconnect(self) -> None:
        """Disconnect from Gmail API."""
        self._service = None
        self._credentials = None
