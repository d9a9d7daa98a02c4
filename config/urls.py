from django.contrib import admin
from django.urls import path
from trips.views import (
    availability_api,
    booking_cancel_api,
    booking_detail_api,
    booking_lookup_api,
    bookings_api,
    healthz,
    trip_detail_api,
    trips_api,
)

urlpatterns = [
    path("admin/", admin.site.urls),
    path("healthz/", healthz),
    path("api/trips/", trips_api),
    path("api/trips/availability/", availability_api),
    path("api/trips/<uuid:trip_id>/", trip_detail_api),
    path("api/bookings/", bookings_api),
    path("api/bookings/lookup/", booking_lookup_api),
    path("api/bookings/<uuid:booking_id>/", booking_detail_api),
    path("api/bookings/<uuid:booking_id>/cancel/", booking_cancel_api),
]
