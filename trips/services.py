"""Write path for bookings.

Every customer booking goes through :func:`create_booking`, which checks the
trip's remaining seats and inserts the booking in one transaction while the
trip row is locked. Cancellation is a single guarded delete.
"""

import time
import uuid

import structlog
from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.db.models import Sum

from .exceptions import CapacityExceeded, ConcurrencyConflict, InvalidInput, NotFound
from .models import Booking, Trip

logger = structlog.get_logger(__name__)

# Raised by the PostgreSQL capacity trigger (migration 0002)
STORE_CAPACITY_ERROR = "capacity_exceeded"


def _parse_uuid(value, label):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise InvalidInput(f"Invalid {label}.") from None


def _validate_booking_input(trip_id, name, phone, num_people):
    trip_uuid = _parse_uuid(trip_id, "trip id")
    if isinstance(num_people, bool) or not isinstance(num_people, int):
        raise InvalidInput("Number of people must be a whole number.")
    if num_people <= 0:
        raise InvalidInput("Number of people must be at least 1.")
    name = (name or "").strip()
    phone = (phone or "").strip()
    if not name:
        raise InvalidInput("Name is required.")
    if not phone:
        raise InvalidInput("Phone number is required.")
    return trip_uuid, name, phone


def booked_seats(trip_id):
    """Total seats currently booked on a trip."""
    total = Booking.objects.filter(trip_id=trip_id).aggregate(total=Sum("num_people"))["total"]
    return total or 0


def _reserve(trip_id, name, phone, num_people):
    with transaction.atomic():
        try:
            # Holds the trip row until commit; concurrent bookings on the
            # same trip queue here
            trip = Trip.objects.select_for_update().get(pk=trip_id)
        except Trip.DoesNotExist:
            raise NotFound() from None

        booked = booked_seats(trip.pk)
        if booked + num_people > trip.max_capacity:
            raise CapacityExceeded(available=trip.max_capacity - booked)

        return Booking.objects.create(
            trip=trip,
            name=name,
            phone=phone,
            num_people=num_people,
        )


def create_booking(trip_id, name, phone, num_people):
    """Reserve ``num_people`` seats on a trip.

    Raises InvalidInput, NotFound or CapacityExceeded. Transient store
    conflicts are retried; ConcurrencyConflict is raised once retries run out.
    """
    trip_id, name, phone = _validate_booking_input(trip_id, name, phone, num_people)

    max_attempts = max(1, settings.BOOKING_MAX_RETRIES)
    for attempt in range(1, max_attempts + 1):
        try:
            booking = _reserve(trip_id, name, phone, num_people)
        except CapacityExceeded as exc:
            logger.info(
                "booking.capacity_exceeded",
                trip_id=str(trip_id),
                requested=num_people,
                available=exc.available,
            )
            raise
        except IntegrityError as exc:
            if STORE_CAPACITY_ERROR not in str(exc):
                raise
            logger.info("booking.capacity_exceeded", trip_id=str(trip_id), requested=num_people, source="trigger")
            raise CapacityExceeded() from exc
        except OperationalError as exc:
            logger.warning(
                "booking.retry",
                trip_id=str(trip_id),
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )
            if attempt == max_attempts:
                raise ConcurrencyConflict() from exc
            time.sleep(settings.BOOKING_RETRY_BACKOFF * attempt)
        else:
            logger.info(
                "booking.created",
                booking_id=str(booking.pk),
                trip_id=str(trip_id),
                num_people=num_people,
            )
            return booking


def cancel_booking(booking_id, phone):
    """Delete a booking if ``phone`` exactly matches the one it was made with.

    ``phone`` is compared as given, without normalization. Returns False
    both for a wrong phone and for a booking that no longer exists, so
    callers cannot probe for other customers' bookings.
    """
    try:
        booking_uuid = uuid.UUID(str(booking_id))
    except (TypeError, ValueError, AttributeError):
        return False
    if not phone:
        return False

    with transaction.atomic():
        deleted, _per_model = Booking.objects.filter(pk=booking_uuid, phone=phone).delete()

    cancelled = deleted > 0
    logger.info("booking.cancelled" if cancelled else "booking.cancel_rejected", booking_id=str(booking_uuid))
    return cancelled
