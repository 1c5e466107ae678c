"""Custom exceptions for PawnSys."""


class PawnSysError(Exception):
    """Base exception for all PawnSys errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(PawnSysError):
    """Raised when input is malformed or out of range."""

    def __init__(self, message: str, field: str = None, details: dict = None):
        details = dict(details or {})
        if field:
            details['field'] = field
        super().__init__(message, details)
        self.field = field


class PledgeStatusError(ValidationError):
    """Raised when an operation is not allowed in the pledge's current status."""

    def __init__(self, pledge_id: str, status: str, action: str):
        details = {
            'pledge_id': pledge_id,
            'status': status,
            'action': action
        }
        message = f"Cannot {action} pledge '{pledge_id}' (status: {status})"
        super().__init__(message, details=details)
        self.pledge_id = pledge_id
        self.status = status


class VerificationRequiredError(PawnSysError):
    """Raised when a redemption is attempted without IC and item checks."""

    def __init__(self, missing: list, pledge_id: str = None):
        details = {'missing': list(missing)}
        if pledge_id:
            details['pledge_id'] = pledge_id
        message = f"Verification required: {', '.join(missing)}"
        super().__init__(message, details)
        self.missing = list(missing)


class InsufficientPaymentError(PawnSysError):
    """Raised when the amount received does not cover the amount payable."""

    def __init__(self, required: float, received: float, pledge_id: str = None):
        details = {
            'required': required,
            'received': received
        }
        if pledge_id:
            details['pledge_id'] = pledge_id

        message = f"Insufficient payment: required {required:.2f}, received {received:.2f}"
        super().__init__(message, details)
        self.required = required
        self.received = received


class NotFoundError(PawnSysError):
    """Raised when a referenced record does not exist in storage."""
    pass


class PledgeNotFoundError(NotFoundError):
    """Raised when a pledge cannot be found."""

    def __init__(self, pledge_id: str):
        super().__init__(f"Pledge '{pledge_id}' not found", {'pledge_id': pledge_id})


class CustomerNotFoundError(NotFoundError):
    """Raised when a customer cannot be found."""

    def __init__(self, customer_id: str = None, ic_number: str = None):
        details = {}
        if customer_id:
            details['customer_id'] = customer_id
        if ic_number:
            details['ic_number'] = ic_number

        message = "Customer not found"
        if customer_id:
            message = f"Customer '{customer_id}' not found"
        elif ic_number:
            message = f"Customer with IC {ic_number} not found"

        super().__init__(message, details)


class RackNotFoundError(NotFoundError):
    """Raised when a storage rack cannot be found."""

    def __init__(self, rack_id: str):
        super().__init__(f"Rack '{rack_id}' not found", {'rack_id': rack_id})


class StorageError(PawnSysError):
    """Raised when a storage transaction fails to complete."""
    pass
