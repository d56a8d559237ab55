"""Fake IMAP connection and SMTP server for the IMAP provider tests."""

from __future__ import annotations

import imaplib
import itertools
import re
import smtplib
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Set, Tuple

_PARENS = re.compile(r'\(([^)]*)\)')


def raw_message(subject: str, sender: str = 'Alice <alice@example.com>', body: str = 'Body text',
                message_id: Optional[str] = None) -> bytes:
    msg = MIMEText(body, 'plain', 'utf-8')
    msg['Subject'] = subject
    msg['From'] = sender
    msg['To'] = 'me@example.com'
    msg['Date'] = 'Thu, 01 Jan 2026 10:00:00 +0000'
    msg['Message-ID'] = message_id or f'<{subject.lower().replace(" ", "-")}@example.com>'
    return msg.as_bytes()


def _unquote(name: str) -> str:
    return name[1:-1] if name.startswith('"') and name.endswith('"') else name


class FakeIMAPConnection:
    """
    Mailboxes are dicts of UID -> [flags, raw bytes].

    Only the commands the provider issues are implemented.
    """

    def __init__(self, mailboxes: Optional[List[str]] = None, delimiter: str = '/'):
        self.delimiter = delimiter
        self.mailboxes: Dict[str, Dict[int, List[Any]]] = {
            name: {} for name in (mailboxes or ['INBOX', 'Archive', 'Trash'])
        }
        self.uids = itertools.count(1)
        self.selected: Optional[str] = None
        self.commands: List[Tuple[str, ...]] = []
        self.login_error: Optional[Exception] = None
        self.logged_out = False
        self.fail_expunge = False
        # Raised by select and uid once set, like a dead socket
        self.broken: Optional[Exception] = None

    def add(self, mailbox: str, raw: bytes, flags: Optional[Set[str]] = None) -> str:
        uid = next(self.uids)
        self.mailboxes[mailbox][uid] = [set(flags or ()), raw]
        return str(uid)

    # Session ----------------------------------------------------------------------

    def login(self, user, password):
        self.commands.append(('LOGIN', user))
        if self.login_error is not None:
            raise self.login_error
        return 'OK', [b'Logged in']

    def shutdown(self):
        self.commands.append(('SHUTDOWN',))

    def logout(self):
        self.logged_out = True
        return 'BYE', [b'Logging out']

    def select(self, mailbox='INBOX', readonly=False):
        if self.broken is not None:
            raise self.broken
        name = _unquote(mailbox)
        self.commands.append(('SELECT', name))
        if name not in self.mailboxes:
            return 'NO', [b'[NONEXISTENT] Unknown Mailbox']
        self.selected = name
        return 'OK', [str(len(self.mailboxes[name])).encode()]

    def list(self, directory='""', pattern='*'):
        lines = [
            f'(\\HasNoChildren) "{self.delimiter}" "{name}"'.encode()
            for name in self.mailboxes
        ]
        return 'OK', lines

    def status(self, mailbox, names):
        name = _unquote(mailbox)
        if name not in self.mailboxes:
            return 'NO', [b'[NONEXISTENT] Unknown Mailbox']
        messages = self.mailboxes[name]
        unseen = sum(1 for flags, _ in messages.values() if '\\Seen' not in flags)
        return 'OK', [f'"{name}" (MESSAGES {len(messages)} UNSEEN {unseen})'.encode()]

    def create(self, mailbox):
        name = _unquote(mailbox)
        if name in self.mailboxes:
            return 'NO', [b'[ALREADYEXISTS] Mailbox exists']
        self.mailboxes[name] = {}
        return 'OK', [b'Create completed']

    def expunge(self):
        self.commands.append(('EXPUNGE',))
        if self.fail_expunge:
            return 'NO', [b'Expunge failed']
        box = self.mailboxes[self.selected]
        for uid in [uid for uid, (flags, _) in box.items() if '\\Deleted' in flags]:
            del box[uid]
        return 'OK', [None]

    # UID commands -----------------------------------------------------------------

    def uid(self, command, *args):
        if self.broken is not None:
            raise self.broken
        self.commands.append(('UID', command) + tuple(str(a) for a in args))
        box = self.mailboxes[self.selected]
        if command == 'SEARCH':
            return 'OK', [' '.join(str(uid) for uid in self._search(box, list(args))).encode()]
        if command == 'FETCH':
            data: List[Any] = []
            for seq, uid in enumerate(int(u) for u in args[0].split(',')):
                if uid not in box:
                    continue
                flags, raw = box[uid]
                header = f'{seq + 1} (UID {uid} FLAGS ({" ".join(sorted(flags))}) BODY[] {{{len(raw)}}}'
                data.append((header.encode(), raw))
                data.append(b')')
            return 'OK', data or [None]
        if command == 'STORE':
            uid, action, flag_list = int(args[0]), args[1], args[2]
            if uid in box:
                flags = set(_PARENS.search(flag_list).group(1).split())
                if action.startswith('+'):
                    box[uid][0] |= flags
                else:
                    box[uid][0] -= flags
            return 'OK', [None]
        if command == 'MOVE':
            uid, target = int(args[0]), _unquote(args[1])
            if target not in self.mailboxes:
                return 'NO', [b'[TRYCREATE] Mailbox does not exist']
            if uid in box:
                self.mailboxes[target][next(self.uids)] = box.pop(uid)
            return 'OK', [None]
        raise AssertionError(f"Unexpected IMAP command {command}")

    @staticmethod
    def _search(box: Dict[int, List[Any]], criteria: List[Any]) -> List[int]:
        found = sorted(box)
        i = 0
        while i < len(criteria):
            key = criteria[i]
            if key == 'ALL':
                pass
            elif key == 'UNSEEN':
                found = [u for u in found if '\\Seen' not in box[u][0]]
            elif key == 'SEEN':
                found = [u for u in found if '\\Seen' in box[u][0]]
            elif key == 'FLAGGED':
                found = [u for u in found if '\\Flagged' in box[u][0]]
            elif key == 'SUBJECT':
                i += 1
                needle = _unquote(criteria[i]).lower()
                found = [u for u in found if needle in box[u][1].decode('utf-8', errors='replace').lower()]
            elif key == 'KEYWORD':
                i += 1
                found = [u for u in found if criteria[i] in box[u][0]]
            i += 1
        return found


class FakeSMTP:
    """Records what would have been submitted."""

    sent: List[Dict[str, Any]] = []
    login_error: Optional[Exception] = None
    sendmail_error: Optional[Exception] = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        if FakeSMTP.login_error is not None:
            raise FakeSMTP.login_error

    def sendmail(self, from_addr, to_addrs, msg):
        if FakeSMTP.sendmail_error is not None:
            raise FakeSMTP.sendmail_error
        FakeSMTP.sent.append({'from': from_addr, 'to': list(to_addrs), 'msg': msg, 'tls': self.started_tls})

    @classmethod
    def reset(cls):
        cls.sent = []
        cls.login_error = None
        cls.sendmail_error = None


def auth_failure() -> imaplib.IMAP4.error:
    return imaplib.IMAP4.error('[AUTHENTICATIONFAILED] Invalid credentials (Failure)')


def smtp_auth_failure() -> smtplib.SMTPAuthenticationError:
    return smtplib.SMTPAuthenticationError(535, b'5.7.8 Username and Password not accepted')
