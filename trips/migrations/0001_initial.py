import uuid

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Trip",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("date", models.DateField(db_index=True)),
                ("departure_time", models.TimeField()),
                ("departure_location", models.CharField(max_length=80)),
                ("max_capacity", models.PositiveIntegerField()),
            ],
            options={
                "ordering": ("date", "departure_time"),
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(max_capacity__gt=0),
                        name="trip_max_capacity_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Booking",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=120)),
                ("phone", models.CharField(db_index=True, max_length=32)),
                ("num_people", models.PositiveIntegerField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "trip",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bookings",
                        to="trips.trip",
                    ),
                ),
            ],
            options={
                "ordering": ("-created_at",),
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(num_people__gt=0),
                        name="booking_num_people_positive",
                    ),
                ],
            },
        ),
    ]
