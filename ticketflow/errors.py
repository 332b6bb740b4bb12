class TicketflowError(Exception):
    pass


class AuthenticationFailure(TicketflowError):
    """The notification could not be authenticated. Nothing was touched."""


class InvalidSignature(AuthenticationFailure):
    pass


class MalformedNotification(TicketflowError):
    """Authenticated, but structurally unusable. Retrying cannot fix it."""


class UnknownOrder(TicketflowError):
    def __init__(self, order_id: str):
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id


class StorageFailure(TicketflowError):
    pass


class TicketSigningError(TicketflowError):
    pass


class InvalidQrPayload(TicketflowError):
    pass


class PaymentProviderError(TicketflowError):
    pass


class SettlementInProgress(TicketflowError):
    """The order is claimed but has no tickets yet and the claim is still
    within its lease. The notification must be redelivered later."""

    def __init__(self, order_id: str):
        super().__init__(f"settlement of order {order_id} in progress")
        self.order_id = order_id
