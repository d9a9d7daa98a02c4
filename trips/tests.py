from datetime import date, time
import json
import threading
from unittest.mock import patch
import uuid

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db import IntegrityError, OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings

from . import services
from .exceptions import CapacityExceeded, ConcurrencyConflict, InvalidInput, NotFound
from .models import Booking, Trip
from .queries import get_my_bookings, get_trips_with_availability

PHONE = "+46700000000"


class TripFixtures:
    def _create_trip(self, on_date=date(2024, 6, 1), at=time(10, 0), location="Byxelkrok", capacity=10):
        return Trip.objects.create(
            date=on_date,
            departure_time=at,
            departure_location=location,
            max_capacity=capacity,
        )

    def _book(self, trip, num_people=1, phone=PHONE, name="Test Passenger"):
        return services.create_booking(trip.id, name, phone, num_people)


class CreateBookingTests(TripFixtures, TestCase):
    def setUp(self):
        self.trip = self._create_trip()

    def test_fills_trip_to_capacity_and_rejects_overflow(self):
        self._book(self.trip, 7)
        self.assertEqual(get_trips_with_availability(self.trip.date)[0].spots_left, 3)

        with self.assertRaises(CapacityExceeded) as ctx:
            self._book(self.trip, 5)
        self.assertEqual(ctx.exception.available, 3)
        self.assertIn("3 available", ctx.exception.message)
        self.assertEqual(Booking.objects.count(), 1)

        self._book(self.trip, 3)
        self.assertEqual(get_trips_with_availability(self.trip.date)[0].spots_left, 0)

    def test_booking_persists_customer_fields(self):
        booking = self._book(self.trip, 2, name="  Anna  ")
        booking.refresh_from_db()
        self.assertEqual(booking.trip_id, self.trip.id)
        self.assertEqual(booking.name, "Anna")
        self.assertEqual(booking.phone, PHONE)
        self.assertEqual(booking.num_people, 2)
        self.assertIsNotNone(booking.created_at)

    def test_rejects_non_positive_num_people(self):
        for num_people in (0, -1):
            with self.assertRaises(InvalidInput):
                self._book(self.trip, num_people)
        self.assertEqual(Booking.objects.count(), 0)

    def test_rejects_non_integer_num_people(self):
        for num_people in ("3", 2.5, True, None):
            with self.assertRaises(InvalidInput):
                self._book(self.trip, num_people)

    def test_rejects_blank_name_or_phone(self):
        with self.assertRaises(InvalidInput):
            services.create_booking(self.trip.id, "", PHONE, 1)
        with self.assertRaises(InvalidInput):
            services.create_booking(self.trip.id, "Anna", "   ", 1)

    def test_unknown_trip_is_not_found(self):
        with self.assertRaises(NotFound):
            services.create_booking(uuid.uuid4(), "Anna", PHONE, 1)

    def test_malformed_trip_id_is_invalid(self):
        with self.assertRaises(InvalidInput):
            services.create_booking("not-a-uuid", "Anna", PHONE, 1)

    def test_accepts_trip_id_as_string(self):
        booking = services.create_booking(str(self.trip.id), "Anna", PHONE, 1)
        self.assertEqual(booking.trip_id, self.trip.id)

    @override_settings(BOOKING_RETRY_BACKOFF=0)
    def test_transient_conflict_is_retried(self):
        real_reserve = services._reserve
        attempts = []

        def flaky(*args):
            attempts.append(args)
            if len(attempts) == 1:
                raise OperationalError("database is locked")
            return real_reserve(*args)

        with patch("trips.services._reserve", side_effect=flaky):
            booking = self._book(self.trip, 2)

        self.assertEqual(len(attempts), 2)
        self.assertTrue(Booking.objects.filter(pk=booking.pk).exists())

    @override_settings(BOOKING_RETRY_BACKOFF=0, BOOKING_MAX_RETRIES=3)
    def test_exhausted_retries_surface_concurrency_conflict(self):
        with patch("trips.services._reserve", side_effect=OperationalError("database is locked")) as reserve:
            with self.assertRaises(ConcurrencyConflict):
                self._book(self.trip, 1)
        self.assertEqual(reserve.call_count, 3)
        self.assertEqual(Booking.objects.count(), 0)

    def test_store_capacity_trigger_maps_to_capacity_exceeded(self):
        error = IntegrityError('capacity_exceeded\nCONTEXT: PL/pgSQL function trips_check_capacity()')
        with patch("trips.services._reserve", side_effect=error):
            with self.assertRaises(CapacityExceeded):
                self._book(self.trip, 1)

    def test_other_integrity_errors_propagate(self):
        with patch("trips.services._reserve", side_effect=IntegrityError("FOREIGN KEY constraint failed")):
            with self.assertRaises(IntegrityError):
                self._book(self.trip, 1)


class CancelBookingTests(TripFixtures, TestCase):
    def setUp(self):
        self.trip = self._create_trip()
        self.booking = self._book(self.trip, 2)

    def test_cancel_is_idempotent(self):
        self.assertTrue(services.cancel_booking(self.booking.id, PHONE))
        self.assertFalse(Booking.objects.filter(pk=self.booking.pk).exists())
        self.assertFalse(services.cancel_booking(self.booking.id, PHONE))

    def test_mismatched_phone_never_deletes(self):
        self.assertFalse(services.cancel_booking(self.booking.id, "+46700000001"))
        self.assertTrue(Booking.objects.filter(pk=self.booking.pk).exists())

    def test_unknown_or_malformed_id_returns_false(self):
        self.assertFalse(services.cancel_booking(uuid.uuid4(), PHONE))
        self.assertFalse(services.cancel_booking("nope", PHONE))
        self.assertFalse(services.cancel_booking(self.booking.id, ""))

    def test_phone_must_match_exactly(self):
        self.assertFalse(services.cancel_booking(self.booking.id, f" {PHONE} "))
        self.assertEqual(get_my_bookings(f" {PHONE} "), [])
        self.assertTrue(Booking.objects.filter(pk=self.booking.pk).exists())

    def test_cancel_frees_seats(self):
        self._book(self.trip, 8)
        with self.assertRaises(CapacityExceeded):
            self._book(self.trip, 1)
        services.cancel_booking(self.booking.id, PHONE)
        self._book(self.trip, 2)
        self.assertEqual(get_trips_with_availability(self.trip.date)[0].spots_left, 0)


class AvailabilityQueryTests(TripFixtures, TestCase):
    def test_empty_trip_has_full_capacity(self):
        trip = self._create_trip(capacity=12)
        rows = get_trips_with_availability(trip.date)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].trip, trip)
        self.assertEqual(rows[0].booked, 0)
        self.assertEqual(rows[0].spots_left, 12)

    def test_reflects_booking_immediately(self):
        trip = self._create_trip(capacity=12)
        self._book(trip, 4)
        self._book(trip, 1, phone="+46700000001")
        row = get_trips_with_availability(trip.date)[0]
        self.assertEqual(row.booked, 5)
        self.assertEqual(row.spots_left, 7)

    def test_orders_by_departure_time_and_filters_date(self):
        late = self._create_trip(at=time(15, 30))
        early = self._create_trip(at=time(8, 15), location="Oskarshamn")
        self._create_trip(on_date=date(2024, 6, 2))
        rows = get_trips_with_availability(date(2024, 6, 1))
        self.assertEqual([row.trip.id for row in rows], [early.id, late.id])

    def test_no_trips_on_date(self):
        self.assertEqual(get_trips_with_availability(date(2030, 1, 1)), [])

    def test_as_dict(self):
        trip = self._create_trip()
        self._book(trip, 3)
        data = get_trips_with_availability(trip.date)[0].as_dict()
        self.assertEqual(data["id"], str(trip.id))
        self.assertEqual(data["departure_time"], "10:00")
        self.assertEqual(data["booked"], 3)
        self.assertEqual(data["spots_left"], 7)


class LookupQueryTests(TripFixtures, TestCase):
    def test_joins_trip_and_orders_by_date_then_time(self):
        later_day = self._create_trip(on_date=date(2024, 6, 3), at=time(9, 0))
        same_day_late = self._create_trip(at=time(16, 0), location="Oskarshamn")
        same_day_early = self._create_trip(at=time(7, 45))
        for trip in (later_day, same_day_late, same_day_early):
            self._book(trip, 1)
        self._book(same_day_early, 2, phone="+46700000001")

        rows = get_my_bookings(PHONE)
        self.assertEqual(
            [row.trip_id for row in rows],
            [same_day_early.id, same_day_late.id, later_day.id],
        )
        self.assertEqual(rows[1].trip_location, "Oskarshamn")
        self.assertEqual(rows[1].trip_time, time(16, 0))
        self.assertEqual(rows[2].trip_date, date(2024, 6, 3))
        self.assertTrue(all(row.phone == PHONE for row in rows))

    def test_unknown_phone_returns_empty(self):
        self.assertEqual(get_my_bookings("+46799999999"), [])
        self.assertEqual(get_my_bookings(""), [])

    def test_deleting_trip_cascades_to_bookings(self):
        trip = self._create_trip()
        kept = self._create_trip(at=time(12, 0))
        self._book(trip, 2)
        self._book(kept, 1)

        trip.delete()

        self.assertFalse(Booking.objects.filter(trip_id=trip.id).exists())
        self.assertEqual([row.trip_id for row in get_my_bookings(PHONE)], [kept.id])


class TripModelTests(TripFixtures, TestCase):
    def test_unknown_departure_location_is_rejected(self):
        trip = Trip(date=date(2024, 6, 1), departure_time=time(10, 0), departure_location="Visby", max_capacity=5)
        with self.assertRaises(ValidationError):
            trip.full_clean()

    @override_settings(DEPARTURE_LOCATIONS=["Byxelkrok", "Oskarshamn", "Visby"])
    def test_departure_locations_come_from_settings(self):
        trip = Trip(date=date(2024, 6, 1), departure_time=time(10, 0), departure_location="Visby", max_capacity=5)
        trip.full_clean()

    def test_zero_capacity_is_rejected(self):
        trip = Trip(date=date(2024, 6, 1), departure_time=time(10, 0), departure_location="Byxelkrok", max_capacity=0)
        with self.assertRaises(ValidationError):
            trip.full_clean()

    def test_capacity_below_booked_seats_is_rejected(self):
        trip = self._create_trip(capacity=10)
        self._book(trip, 7)
        trip.max_capacity = 2
        with self.assertRaises(ValidationError):
            trip.full_clean()


class BookingApiTests(TripFixtures, TestCase):
    def setUp(self):
        self.trip = self._create_trip()

    def _post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type="application/json")

    def _create_staff(self):
        return User.objects.create_user(username="ops", password="SafePass123!", is_staff=True)

    def test_create_booking(self):
        response = self._post(
            "/api/bookings/",
            {"trip_id": str(self.trip.id), "name": "Anna", "phone": PHONE, "num_people": 7},
        )
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["trip_id"], str(self.trip.id))
        self.assertEqual(data["num_people"], 7)
        self.assertEqual(Booking.objects.count(), 1)

    def test_create_booking_over_capacity(self):
        self._book(self.trip, 7)
        response = self._post(
            "/api/bookings/",
            {"trip_id": str(self.trip.id), "name": "Anna", "phone": PHONE, "num_people": 5},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "capacity_exceeded")
        self.assertEqual(Booking.objects.count(), 1)

    def test_create_booking_rejects_bad_input(self):
        response = self._post(
            "/api/bookings/",
            {"trip_id": str(self.trip.id), "name": "Anna", "phone": PHONE, "num_people": 0},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_input")

        response = self.client.post("/api/bookings/", data="{not json", content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_create_booking_unknown_trip(self):
        response = self._post(
            "/api/bookings/",
            {"trip_id": str(uuid.uuid4()), "name": "Anna", "phone": PHONE, "num_people": 1},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_availability_endpoint(self):
        self._book(self.trip, 4)
        response = self.client.get("/api/trips/availability/?date=2024-06-01")
        self.assertEqual(response.status_code, 200)
        trips = response.json()["trips"]
        self.assertEqual(len(trips), 1)
        self.assertEqual(trips[0]["booked"], 4)
        self.assertEqual(trips[0]["spots_left"], 6)

    def test_availability_requires_valid_date(self):
        response = self.client.get("/api/trips/availability/?date=June")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_input")

    def test_trip_list_and_detail_are_public(self):
        response = self.client.get("/api/trips/?date=2024-06-01")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["trips"][0]["id"], str(self.trip.id))

        response = self.client.get(f"/api/trips/{self.trip.id}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["max_capacity"], 10)

        response = self.client.get(f"/api/trips/{uuid.uuid4()}/")
        self.assertEqual(response.status_code, 404)

    def test_lookup_and_cancel_by_phone(self):
        booking = self._book(self.trip, 2)

        response = self._post("/api/bookings/lookup/", {"phone": PHONE})
        self.assertEqual(response.status_code, 200)
        rows = response.json()["bookings"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["id"], str(booking.id))
        self.assertEqual(rows[0]["trip_location"], "Byxelkrok")

        response = self._post(f"/api/bookings/{booking.id}/cancel/", {"phone": "+46700000001"})
        self.assertEqual(response.json(), {"cancelled": False})

        response = self._post(f"/api/bookings/{booking.id}/cancel/", {"phone": PHONE})
        self.assertEqual(response.json(), {"cancelled": True})

        response = self._post(f"/api/bookings/{booking.id}/cancel/", {"phone": PHONE})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"cancelled": False})

    def test_lookup_requires_phone(self):
        response = self._post("/api/bookings/lookup/", {})
        self.assertEqual(response.status_code, 400)

    def test_raw_booking_rows_require_staff(self):
        booking = self._book(self.trip, 1)

        response = self.client.get("/api/bookings/")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "unauthorized")

        response = self.client.delete(f"/api/bookings/{booking.id}/")
        self.assertEqual(response.status_code, 403)
        self.assertTrue(Booking.objects.filter(pk=booking.pk).exists())

    def test_staff_can_read_and_delete_raw_bookings(self):
        booking = self._book(self.trip, 1)
        self.client.force_login(self._create_staff())

        response = self.client.get(f"/api/bookings/?trip={self.trip.id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.json()["bookings"]], [str(booking.id)])

        response = self.client.delete(f"/api/bookings/{booking.id}/")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Booking.objects.filter(pk=booking.pk).exists())

        response = self.client.delete(f"/api/bookings/{booking.id}/")
        self.assertEqual(response.status_code, 404)

    def test_raw_booking_filter_rejects_malformed_trip_id(self):
        self.client.force_login(self._create_staff())
        response = self.client.get("/api/bookings/?trip=not-a-uuid")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_input")
        self.assertTrue(response.json()["error"].startswith("trip:"))

    def test_healthz(self):
        response = self.client.get("/healthz/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")


class TripAdminTests(TripFixtures, TestCase):
    def setUp(self):
        self.admin_user = User.objects.create_superuser(username="admin", email="admin@example.com", password="SafePass123!")
        self.client.force_login(self.admin_user)

    def test_trip_changelist_shows_availability(self):
        trip = self._create_trip(capacity=4)
        self._book(trip, 4)
        self._create_trip(at=time(14, 0))

        response = self.client.get("/admin/trips/trip/?availability=full")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(list(response.context["cl"].result_list), [trip])

    def test_duplicate_one_week_later(self):
        trip = self._create_trip()
        response = self.client.post(
            "/admin/trips/trip/",
            data={"action": "duplicate_one_week_later", "_selected_action": [str(trip.pk)]},
        )
        self.assertEqual(response.status_code, 302)
        copy = Trip.objects.get(date=date(2024, 6, 8))
        self.assertEqual(copy.departure_time, trip.departure_time)
        self.assertEqual(copy.max_capacity, trip.max_capacity)

    def test_admin_cannot_add_bookings_directly(self):
        response = self.client.get("/admin/trips/booking/add/")
        self.assertEqual(response.status_code, 403)

    def test_admin_rejects_unknown_departure_location(self):
        response = self.client.post(
            "/admin/trips/trip/add/",
            data={
                "date": "2024-06-01",
                "departure_time": "10:00",
                "departure_location": "Visby",
                "max_capacity": 10,
                "bookings-TOTAL_FORMS": 0,
                "bookings-INITIAL_FORMS": 0,
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Trip.objects.exists())

    def test_capacity_is_read_only_after_creation(self):
        trip = self._create_trip(capacity=10)
        booking = self._book(trip, 7)

        response = self.client.post(
            f"/admin/trips/trip/{trip.pk}/change/",
            data={
                "date": "2024-06-01",
                "departure_time": "10:00",
                "departure_location": "Byxelkrok",
                "max_capacity": 2,
                "bookings-TOTAL_FORMS": 1,
                "bookings-INITIAL_FORMS": 1,
                "bookings-0-id": str(booking.pk),
                "bookings-0-trip": str(trip.pk),
            },
        )
        self.assertEqual(response.status_code, 302)

        trip.refresh_from_db()
        self.assertEqual(trip.max_capacity, 10)
        row = get_trips_with_availability(trip.date)[0]
        self.assertLessEqual(row.booked, trip.max_capacity)
        self.assertEqual(row.spots_left, 3)

    def test_change_form_shows_capacity_without_input(self):
        trip = self._create_trip(capacity=10)
        response = self.client.get(f"/admin/trips/trip/{trip.pk}/change/")
        self.assertEqual(response.status_code, 200)
        self.assertNotIn("max_capacity", response.context["adminform"].form.fields)


class ConcurrentBookingTests(TripFixtures, TransactionTestCase):
    def _book_in_threads(self, trip, workers):
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def worker(index):
            try:
                barrier.wait()
                try:
                    services.create_booking(trip.id, f"Passenger {index}", f"+4670000{index:04d}", 1)
                    outcome = "booked"
                except CapacityExceeded:
                    outcome = "full"
                except ConcurrencyConflict:
                    outcome = "conflict"
                with lock:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_concurrent_bookings_never_exceed_capacity(self):
        trip = self._create_trip(capacity=5)

        outcomes = self._book_in_threads(trip, workers=12)

        self.assertEqual(outcomes.count("booked"), 5)
        self.assertEqual(outcomes.count("full"), 7)
        self.assertEqual(Booking.objects.filter(trip=trip).count(), 5)
        self.assertEqual(get_trips_with_availability(trip.date)[0].spots_left, 0)
