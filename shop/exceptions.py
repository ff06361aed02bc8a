class TransitionError(Exception):
    """The requested command is not valid for the order's current state."""


class PaymentGatewayError(Exception):
    """The payment gateway could not be reached or refused the request."""

    def __init__(self, message, response=None):
        super().__init__(message)
        self.response = response or {}


class InvalidSignature(Exception):
    """An inbound payment callback failed signature verification."""
