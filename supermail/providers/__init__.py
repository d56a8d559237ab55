"""
Email providers for different email services.

Importing a provider module registers its error classifier.
"""

from .base import EmailProvider
from .gmail import GmailProvider
from .imap import IMAPProvider
from .microsoft import MicrosoftProvider

__all__ = [
    'EmailProvider',
    'GmailProvider',
    'IMAPProvider',
    'MicrosoftProvider',
]
