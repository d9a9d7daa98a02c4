import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models


def departure_location_choices():
    return [(location, location) for location in settings.DEPARTURE_LOCATIONS]


class Trip(models.Model):
    # A scheduled departure (date + time) from one of the configured ports
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    date = models.DateField(db_index=True)
    departure_time = models.TimeField()
    departure_location = models.CharField(max_length=80)
    max_capacity = models.PositiveIntegerField()

    class Meta:
        ordering = ("date", "departure_time")
        constraints = [
            models.CheckConstraint(
                condition=models.Q(max_capacity__gt=0),
                name="trip_max_capacity_positive",
            ),
        ]

    def clean(self):
        # The port list is configuration, not schema
        if self.departure_location and self.departure_location not in settings.DEPARTURE_LOCATIONS:
            raise ValidationError(
                {"departure_location": "Unknown departure location."}
            )
        if self.max_capacity is not None and self.max_capacity <= 0:
            raise ValidationError(
                {"max_capacity": "Capacity must be at least one seat."}
            )
        if not self._state.adding and self.max_capacity is not None:
            booked = self.bookings.aggregate(total=models.Sum("num_people"))["total"] or 0
            if self.max_capacity < booked:
                raise ValidationError(
                    {"max_capacity": f"Capacity cannot be below the {booked} seats already booked."}
                )

    def __str__(self):
        return f"{self.date} {self.departure_time:%H:%M} from {self.departure_location}"


class Booking(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    trip = models.ForeignKey(Trip, on_delete=models.CASCADE, related_name="bookings")
    name = models.CharField(max_length=120)
    phone = models.CharField(max_length=32, db_index=True)
    num_people = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.CheckConstraint(
                condition=models.Q(num_people__gt=0),
                name="booking_num_people_positive",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.phone}) x{self.num_people} - {self.trip}"
