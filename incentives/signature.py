import logging
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


class SignatureRequester(Protocol):
    def request_signature(self, email: str, name: str, amount: Decimal, details: str) -> str:
        """Ask the e-sign provider to collect a signature; returns the provider's handle."""
        ...


class LoggingSignatureRequester:
    """Development stand-in that only logs the request and hands back a local handle."""

    def request_signature(self, email: str, name: str, amount: Decimal, details: str) -> str:
        handle = f"local-{uuid4().hex[:12]}"
        logger.info("Signature requested from %s <%s> for %s (%s): %s", name, email, amount, details, handle)
        return handle
