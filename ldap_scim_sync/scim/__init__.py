"""SCIM 2.0 target directory client."""

from .base import SCIMTransport, SCIMError, SCIMAuthenticationError
from .client import SCIMDirectory

__all__ = ['SCIMTransport', 'SCIMError', 'SCIMAuthenticationError', 'SCIMDirectory']
