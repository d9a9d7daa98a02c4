from django.utils.translation import gettext as _


class BookingError(Exception):
    """Base error for booking operations, carries a stable API code."""

    code = "booking_error"
    status = 400

    def __init__(self, message=None):
        super().__init__(message or self.default_message())

    def default_message(self):
        return _("The booking request could not be completed.")

    @property
    def message(self):
        return str(self)


class InvalidInput(BookingError):
    code = "invalid_input"
    status = 400

    def default_message(self):
        return _("Invalid booking request.")


class NotFound(BookingError):
    code = "not_found"
    status = 404

    def default_message(self):
        return _("Trip not found.")


class CapacityExceeded(BookingError):
    code = "capacity_exceeded"
    status = 409

    def __init__(self, available=None, message=None):
        self.available = available
        super().__init__(message)

    def default_message(self):
        if self.available is None:
            return _("Not enough spots left on this trip.")
        return _("Not enough spots left on this trip (%(available)d available).") % {
            "available": self.available,
        }


class Unauthorized(BookingError):
    code = "unauthorized"
    status = 403

    def default_message(self):
        return _("You are not allowed to do that.")


class ConcurrencyConflict(BookingError):
    code = "concurrency_conflict"
    status = 503

    def default_message(self):
        return _("The trip is busy right now. Please try again.")
