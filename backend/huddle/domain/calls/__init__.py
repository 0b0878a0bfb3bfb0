"""Call rooms domain exports."""

from .credentials import CredentialIssuer
from .service import CallService

__all__ = ["CallService", "CredentialIssuer"]
