class InvoiceError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(InvoiceError):
    status_code = 400


class NotFoundError(InvoiceError):
    status_code = 404


class InvoiceNumberError(InvoiceError):
    # Number allocation failed or collided with an existing invoice
    status_code = 409
