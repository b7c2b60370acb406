class FibError(Exception):
    """A call to the FIB API failed."""

    def __init__(self, message: str, status_code: int = None, body: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(FibError):
    pass


class PaymentCreationError(FibError):
    pass


class PaymentStatusError(FibError):
    pass


class PaymentCancellationError(FibError):
    pass


class RefundError(FibError):
    pass


class PaymentError(Exception):
    """A local payment operation was rejected."""


class PaymentNotFound(PaymentError):
    pass


class PaymentConflict(PaymentError):
    pass


class InvalidAmount(PaymentError):
    pass
