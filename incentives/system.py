import logging
from datetime import datetime
from typing import Callable, Optional

from .access_control import AccessControlService
from .credit_requests import CreditRequestService
from .directory import DirectoryService
from .events import AuditTrail, NotificationInbox, Notifier
from .models import utcnow
from .redemptions import RedemptionService
from .reports import ReportService
from .settings import Settings, get_settings
from .signature import LoggingSignatureRequester, SignatureRequester
from .store import DocumentStore
from .wallet import WalletService

logger = logging.getLogger(__name__)

SIGNATURE_PROVIDERS = {
    "logging": LoggingSignatureRequester,
}


def build_signature_requester(settings: Settings) -> SignatureRequester:
    provider = settings.signature_provider.strip().lower()
    try:
        return SIGNATURE_PROVIDERS[provider]()
    except KeyError:
        raise ValueError(f"Unknown signature provider: {settings.signature_provider}") from None


class IncentiveSystem:
    """Wires every service onto one store handle.

    The store is opened on construction and closed by ``shutdown`` (or on
    leaving a ``with`` block).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        signature: Optional[SignatureRequester] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store or DocumentStore()
        if not self.store.is_open:
            self.store.open()

        self.signature = signature or build_signature_requester(self.settings)
        self.notifier = Notifier(self.store, clock)
        self.audit = AuditTrail(self.store, self.settings, clock)
        self.inbox = NotificationInbox(self.store, self.settings, clock)
        self.wallet = WalletService(self.store, clock)
        self.directory = DirectoryService(self.store, self.audit, clock)
        self.credit_requests = CreditRequestService(
            self.store, self.wallet, self.notifier, self.audit, self.signature, clock,
        )
        self.redemptions = RedemptionService(self.store, self.wallet, self.notifier, self.audit, clock)
        self.access_control = AccessControlService(self.store, self.audit, clock)
        self.reports = ReportService(self.store, self.wallet, self.settings, clock)
        logger.info("Incentive system started (%s)", self.settings.environment)

    def shutdown(self) -> None:
        self.store.close()
        logger.info("Incentive system stopped")

    def __enter__(self) -> "IncentiveSystem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
