import json

import structlog
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import queries, services
from .exceptions import BookingError, InvalidInput, NotFound, Unauthorized
from .forms import AvailabilityForm, BookingFilterForm, BookingForm, PhoneForm, first_error
from .models import Booking, Trip

logger = structlog.get_logger(__name__)


def _error_response(exc):
    return JsonResponse({"error": exc.message, "code": exc.code}, status=exc.status)


def _json_payload(request):
    try:
        payload = json.loads(request.body.decode("utf-8") or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInput("Invalid payload.") from None
    if not isinstance(payload, dict):
        raise InvalidInput("Invalid payload.")
    return payload


def _require_staff(request):
    if not (request.user.is_authenticated and request.user.is_staff):
        raise Unauthorized()


def _trip_payload(trip):
    return {
        "id": str(trip.id),
        "date": trip.date.isoformat(),
        "departure_time": trip.departure_time.strftime("%H:%M"),
        "departure_location": trip.departure_location,
        "max_capacity": trip.max_capacity,
    }


def _booking_payload(booking):
    return {
        "id": str(booking.id),
        "trip_id": str(booking.trip_id),
        "name": booking.name,
        "phone": booking.phone,
        "num_people": booking.num_people,
        "created_at": booking.created_at.isoformat(),
    }


@require_GET
def healthz(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as exc:
        logger.error("healthz.fail", error=str(exc))
        return JsonResponse({"status": "unhealthy"}, status=503)
    return JsonResponse({"status": "healthy", "database": "connected"})


@require_GET
def trips_api(request):
    trips = Trip.objects.all()
    if request.GET.get("date"):
        form = AvailabilityForm(request.GET)
        if not form.is_valid():
            return _error_response(InvalidInput(first_error(form)))
        trips = trips.filter(date=form.cleaned_data["date"])
    else:
        trips = trips.filter(date__gte=timezone.localdate())
    return JsonResponse({"trips": [_trip_payload(trip) for trip in trips]})


@require_GET
def trip_detail_api(request, trip_id):
    trip = Trip.objects.filter(id=trip_id).first()
    if trip is None:
        return _error_response(NotFound())
    return JsonResponse(_trip_payload(trip))


@require_GET
def availability_api(request):
    form = AvailabilityForm(request.GET)
    if not form.is_valid():
        return _error_response(InvalidInput(first_error(form)))

    rows = queries.get_trips_with_availability(form.cleaned_data["date"])
    return JsonResponse(
        {
            "date": form.cleaned_data["date"].isoformat(),
            "trips": [row.as_dict() for row in rows],
        }
    )


@csrf_exempt
@require_http_methods(["GET", "POST"])
def bookings_api(request):
    try:
        if request.method == "GET":
            # Raw booking rows are for administrators only
            _require_staff(request)
            filter_form = BookingFilterForm(request.GET)
            if not filter_form.is_valid():
                raise InvalidInput(first_error(filter_form))
            bookings = Booking.objects.all()
            if filter_form.cleaned_data["trip"]:
                bookings = bookings.filter(trip_id=filter_form.cleaned_data["trip"])
            return JsonResponse({"bookings": [_booking_payload(b) for b in bookings]})

        form = BookingForm(_json_payload(request))
        if not form.is_valid():
            raise InvalidInput(first_error(form))
        booking = services.create_booking(
            trip_id=form.cleaned_data["trip_id"],
            name=form.cleaned_data["name"],
            phone=form.cleaned_data["phone"],
            num_people=form.cleaned_data["num_people"],
        )
    except BookingError as exc:
        return _error_response(exc)

    return JsonResponse(_booking_payload(booking), status=201)


@csrf_exempt
@require_http_methods(["DELETE"])
def booking_detail_api(request, booking_id):
    try:
        _require_staff(request)
    except Unauthorized as exc:
        return _error_response(exc)

    deleted, _per_model = Booking.objects.filter(pk=booking_id).delete()
    if not deleted:
        return _error_response(NotFound("Booking not found."))
    logger.info("booking.deleted_by_admin", booking_id=str(booking_id), user=request.user.username)
    return JsonResponse({"deleted": True})


@csrf_exempt
@require_POST
def booking_lookup_api(request):
    try:
        form = PhoneForm(_json_payload(request))
        if not form.is_valid():
            raise InvalidInput(first_error(form))
    except BookingError as exc:
        return _error_response(exc)

    rows = queries.get_my_bookings(form.cleaned_data["phone"])
    return JsonResponse({"bookings": [row.as_dict() for row in rows]})


@csrf_exempt
@require_POST
def booking_cancel_api(request, booking_id):
    try:
        form = PhoneForm(_json_payload(request))
        if not form.is_valid():
            raise InvalidInput(first_error(form))
    except BookingError as exc:
        return _error_response(exc)

    cancelled = services.cancel_booking(booking_id, form.cleaned_data["phone"])
    return JsonResponse({"cancelled": cancelled})
