"""
MIME and address helpers shared by the providers that speak raw RFC 822
(Gmail submits a raw message, IMAP/SMTP read and write them directly).
"""

import logging
from email import encoders, policy
from email.header import decode_header, make_header
from email.message import Message
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.parser import BytesParser
from email.utils import formataddr, formatdate, getaddresses, make_msgid, parseaddr, parsedate_to_datetime
from typing import Iterable, List, Optional, Tuple

from ..errors import ValidationError
from ..models import EmailAddress, EmailAttachment, EmailMessage, SendEmailOptions

logger = logging.getLogger(__name__)

REPLY_PREFIX = "Re: "


def format_address(address: EmailAddress) -> str:
    return formataddr((address.name, address.email)) if address.name else address.email


def format_address_list(addresses: Iterable[EmailAddress]) -> str:
    return ", ".join(format_address(a) for a in addresses)


def decode_header_value(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded words."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return value


def parse_address(header_value: Optional[str]) -> Optional[EmailAddress]:
    """
    Parse a single address header.

    Headers that do not parse degrade to ``EmailAddress(email=<raw value>)``.
    """
    if not header_value or not header_value.strip():
        return None
    name, address = parseaddr(header_value)
    if not address or '@' not in address:
        return EmailAddress(email=header_value.strip())
    name = decode_header_value(name)
    return EmailAddress(email=address, name=name or None)


def parse_address_list(header_value: Optional[str]) -> List[EmailAddress]:
    if not header_value or not header_value.strip():
        return []
    addresses = []
    for name, address in getaddresses([header_value]):
        if address and '@' in address:
            addresses.append(EmailAddress(email=address, name=decode_header_value(name) or None))
    if not addresses:
        return [EmailAddress(email=header_value.strip())]
    return addresses


def reply_subject(subject: Optional[str]) -> str:
    subject = subject or ""
    if subject.lower().startswith("re:"):
        return subject
    return f"{REPLY_PREFIX}{subject}"


def _attachment_part(attachment: EmailAttachment) -> MIMEBase:
    if not attachment.is_materialized:
        raise ValidationError(
            f"Attachment '{attachment.filename}' content has not been downloaded and cannot be sent",
            field='attachments'
        )
    maintype, _, subtype = (attachment.content_type or "application/octet-stream").partition('/')
    part = MIMEBase(maintype or 'application', subtype or 'octet-stream', name=attachment.filename)
    part.set_payload(attachment.content_bytes())
    encoders.encode_base64(part)
    part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
    return part


def build_mime_message(
    options: SendEmailOptions,
    sender: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    message_id: Optional[str] = None
) -> MIMEMultipart:
    """
    Build a complete message from send options.

    Text and HTML bodies go into a ``multipart/alternative`` part; when there
    are attachments that part is nested inside ``multipart/mixed`` and each
    attachment is base64 encoded.
    """
    alternative = MIMEMultipart('alternative')
    alternative.attach(MIMEText(options.body or "", 'plain', 'utf-8'))
    if options.html_body:
        alternative.attach(MIMEText(options.html_body, 'html', 'utf-8'))

    if options.attachments:
        msg = MIMEMultipart('mixed')
        msg.attach(alternative)
        for attachment in options.attachments:
            msg.attach(_attachment_part(attachment))
    else:
        msg = alternative

    if sender:
        msg['From'] = sender
    msg['To'] = format_address_list(options.to)
    if options.cc:
        msg['Cc'] = format_address_list(options.cc)
    if options.bcc:
        msg['Bcc'] = format_address_list(options.bcc)
    if options.reply_to:
        msg['Reply-To'] = format_address(options.reply_to)
    msg['Subject'] = options.subject
    msg['Date'] = formatdate(localtime=True)
    if message_id:
        msg['Message-ID'] = message_id
    if in_reply_to:
        msg['In-Reply-To'] = in_reply_to
        msg['References'] = f"{references} {in_reply_to}" if references else in_reply_to
    return msg


def new_message_id(sender: Optional[str] = None) -> str:
    domain = None
    if sender and '@' in sender:
        domain = parseaddr(sender)[1].rpartition('@')[2] or None
    return make_msgid(domain=domain)


def _get_bodies(msg: Message) -> Tuple[str, Optional[str]]:
    """Return (text, html) bodies, skipping attachment parts."""
    text_chunks: List[str] = []
    html_chunks: List[str] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == 'attachment':
            continue
        content_type = part.get_content_type()
        if content_type not in ('text/plain', 'text/html'):
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        charset = part.get_content_charset() or 'utf-8'
        try:
            content = payload.decode(charset, errors='replace')
        except LookupError:
            content = payload.decode('utf-8', errors='replace')
        if content_type == 'text/plain':
            text_chunks.append(content)
        else:
            html_chunks.append(content)

    text = "\n\n".join(text_chunks)
    html = "\n".join(html_chunks) or None
    return text, html


def _get_attachments(msg: Message) -> List[EmailAttachment]:
    attachments = []
    if not msg.is_multipart():
        return attachments
    for i, part in enumerate(msg.walk()):
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if part.get_content_disposition() != 'attachment' and not filename:
            continue
        payload = part.get_payload(decode=True) or b""
        attachments.append(EmailAttachment(
            filename=decode_header_value(filename) if filename else f"attachment_{i}",
            content=payload,
            content_type=part.get_content_type(),
            size=len(payload)
        ))
    return attachments


def parse_raw_message(raw: bytes) -> Tuple[EmailMessage, Message]:
    """
    Parse RFC 822 bytes into an EmailMessage.

    Returns:
        The unified message (without id) and the parsed stdlib message, for
        callers that need other headers such as Message-ID.
    """
    msg = BytesParser(policy=policy.compat32).parsebytes(raw)

    date = None
    date_header = msg.get('Date')
    if date_header:
        try:
            date = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Date header: {date_header}")

    text, html = _get_bodies(msg)
    attachments = _get_attachments(msg)

    return EmailMessage(
        subject=decode_header_value(msg.get('Subject')),
        from_=parse_address(msg.get('From')),
        to=parse_address_list(msg.get('To')),
        cc=parse_address_list(msg.get('Cc')),
        bcc=parse_address_list(msg.get('Bcc')) or None,
        body=text,
        html_body=html,
        attachments=attachments,
        date=date,
    ), msg
