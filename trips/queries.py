from dataclasses import dataclass
from datetime import date, datetime, time
import uuid

from django.db.models import IntegerField, Sum
from django.db.models.functions import Coalesce

from .models import Booking, Trip


@dataclass(frozen=True)
class TripAvailability:
    trip: Trip
    booked: int
    spots_left: int

    def as_dict(self):
        return {
            "id": str(self.trip.id),
            "date": self.trip.date.isoformat(),
            "departure_time": self.trip.departure_time.strftime("%H:%M"),
            "departure_location": self.trip.departure_location,
            "max_capacity": self.trip.max_capacity,
            "booked": self.booked,
            "spots_left": self.spots_left,
        }


@dataclass(frozen=True)
class BookingLookup:
    id: uuid.UUID
    trip_id: uuid.UUID
    name: str
    phone: str
    num_people: int
    created_at: datetime
    trip_date: date
    trip_time: time
    trip_location: str

    def as_dict(self):
        return {
            "id": str(self.id),
            "trip_id": str(self.trip_id),
            "name": self.name,
            "phone": self.phone,
            "num_people": self.num_people,
            "created_at": self.created_at.isoformat(),
            "trip_date": self.trip_date.isoformat(),
            "trip_time": self.trip_time.strftime("%H:%M"),
            "trip_location": self.trip_location,
        }


def get_trips_with_availability(on_date):
    """Trips departing on ``on_date`` with booked seats and seats left.

    Each trip's sum is taken in the same statement as its capacity. The
    numbers are advisory; create_booking makes the real check.
    """
    trips = (
        Trip.objects.filter(date=on_date)
        .annotate(booked=Coalesce(Sum("bookings__num_people"), 0, output_field=IntegerField()))
        .order_by("departure_time")
    )
    return [
        TripAvailability(trip=trip, booked=trip.booked, spots_left=trip.max_capacity - trip.booked)
        for trip in trips
    ]


def get_my_bookings(phone):
    """All bookings made with exactly ``phone``, earliest trip first."""
    if not phone:
        return []

    bookings = (
        Booking.objects.select_related("trip")
        .filter(phone=phone)
        .order_by("trip__date", "trip__departure_time")
    )
    return [
        BookingLookup(
            id=booking.id,
            trip_id=booking.trip_id,
            name=booking.name,
            phone=booking.phone,
            num_people=booking.num_people,
            created_at=booking.created_at,
            trip_date=booking.trip.date,
            trip_time=booking.trip.departure_time,
            trip_location=booking.trip.departure_location,
        )
        for booking in bookings
    ]
