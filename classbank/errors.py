"""
Domain errors raised by the classbank engines.

Engines raise these instead of returning error tuples. The application
factory registers a single handler that renders any EconomyError as a JSON
error response using the status code and details carried by the exception.
"""

from decimal import Decimal


class EconomyError(Exception):
    """Base class for every business-rule failure."""

    status_code = 400
    code = 'economy_error'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'status': 'error', 'code': self.code, 'message': self.message}
        for key, value in self.details.items():
            if isinstance(value, Decimal):
                value = int(value) if value == value.to_integral_value() else float(value)
            payload[key] = value
        return payload


class ValidationError(EconomyError):
    """Bad input shape or range. Always reported, never retried."""

    code = 'validation_error'

    def __init__(self, message, field=None):
        details = {'field': field} if field else {}
        super().__init__(message, **details)


class InsufficientFunds(EconomyError):
    code = 'insufficient_funds'

    def __init__(self, required, available, holder=None, message=None):
        self.required = required
        self.available = available
        self.holder = holder
        if message is None:
            message = f"Insufficient funds: required {required}, available {available}."
        super().__init__(message, required=required, available=available, holder=holder)


class PaymentBelowInterest(EconomyError):
    """A loan payment too small to cover the interest due this week."""

    code = 'payment_below_interest'

    def __init__(self, minimum_payment):
        self.minimum_payment = minimum_payment
        super().__init__(
            f"Payment must be at least {minimum_payment} to cover this week's interest.",
            minimum_payment=minimum_payment,
        )


class NotFound(EconomyError):
    status_code = 404
    code = 'not_found'

    def __init__(self, resource, message=None):
        super().__init__(message or f"{resource.capitalize()} not found.", resource=resource)


class Conflict(EconomyError):
    status_code = 409
    code = 'conflict'


class SeatUnavailable(Conflict):
    code = 'seat_unavailable'

    def __init__(self, seat_number):
        super().__init__(f"Seat {seat_number} is no longer available.", seat_number=seat_number)


class DependencyFailure(EconomyError):
    """Missing entity or account row: the tenant's data setup is inconsistent."""

    status_code = 500
    code = 'dependency_failure'

    def __init__(self, dependency, message=None):
        super().__init__(message or f"Required {dependency} is missing.", dependency=dependency)
