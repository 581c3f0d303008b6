from typing import List, Optional


class LedgerError(Exception):
    """Base class for serial ledger failures."""

    retryable = False


class MalformedEvent(LedgerError):
    """A webhook payload is missing required fields or carries invalid values."""

    def __init__(self, topic: str, fields: Optional[List[str]] = None, message: Optional[str] = None):
        self.topic = topic
        self.fields = list(fields or [])
        detail = message or f"malformed {topic} payload"
        if self.fields:
            detail = f"{detail}: {', '.join(self.fields)}"
        super().__init__(detail)


class OrderNotFound(LedgerError):
    def __init__(self, external_order_id: str, shop_domain: Optional[str] = None):
        self.external_order_id = external_order_id
        self.shop_domain = shop_domain
        super().__init__(f"order not found: {external_order_id}")


class PersistenceFailure(LedgerError):
    """Storage failed; the webhook should be redelivered."""

    retryable = True


class SerialNotFound(LedgerError):
    pass


class SerialConflict(LedgerError):
    pass
