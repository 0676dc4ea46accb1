"""Domain errors raised by the send, quota and session layers."""


class FlowdeskError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class QuotaError(FlowdeskError):
    pass


class NoActiveSubscriptionError(QuotaError):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No active subscription for tenant {tenant_id}")


class QuotaExhaustedError(QuotaError):
    def __init__(self, tenant_id: str, remaining: int, requested: int):
        self.tenant_id = tenant_id
        self.remaining = remaining
        self.requested = requested
        super().__init__(f"Quota exhausted: {requested} unit(s) requested, {remaining} remaining")


class MalformedPayloadError(FlowdeskError):
    pass


class SessionNotReadyError(FlowdeskError):
    def __init__(self, tenant_id: str, recycled: bool = False):
        self.tenant_id = tenant_id
        self.recycled = recycled
        reason = "client recycled" if recycled else "session not ready"
        super().__init__(f"{reason}, retry later (tenant {tenant_id})")


class TransportError(FlowdeskError):
    def __init__(self, message: str, session_lost: bool = False):
        self.session_lost = session_lost
        super().__init__(message)


class DeliveryError(FlowdeskError):
    """A send failed after `consumed` units were already transmitted and billed."""

    def __init__(self, message: str, consumed: int = 0, cause: Exception | None = None):
        self.consumed = consumed
        self.cause = cause
        super().__init__(message)


class OtpError(FlowdeskError):
    def __init__(self, message: str, code: str = "invalid"):
        self.code = code
        super().__init__(message)
