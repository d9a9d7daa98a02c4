from datetime import timedelta

from django.contrib import admin
from django.db.models import F, IntegerField, Sum
from django.db.models.functions import Coalesce

from .forms import TripAdminForm
from .models import Booking, Trip

admin.site.site_header = "Boat Trips Admin"
admin.site.site_title = "Boat Trips Admin"
admin.site.index_title = "Departures and bookings"


class TripAvailabilityFilter(admin.SimpleListFilter):
    title = "availability"
    parameter_name = "availability"

    def lookups(self, request, model_admin):
        return (
            ("open", "Seats left"),
            ("full", "Full"),
        )

    def queryset(self, request, queryset):
        value = self.value()
        if value == "open":
            return queryset.filter(booked_seats__lt=F("max_capacity"))
        if value == "full":
            return queryset.filter(booked_seats__gte=F("max_capacity"))
        return queryset


class BookingInline(admin.TabularInline):
    model = Booking
    extra = 0
    fields = ("name", "phone", "num_people", "created_at")
    readonly_fields = ("name", "phone", "num_people", "created_at")
    show_change_link = True

    # Customer bookings go through the booking service; admins may only remove them here
    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Trip)
class TripAdmin(admin.ModelAdmin):
    form = TripAdminForm
    list_display = (
        "date",
        "departure_time",
        "departure_location",
        "max_capacity",
        "booked",
        "spots_left",
    )
    list_filter = (TripAvailabilityFilter, "departure_location", "date")
    search_fields = ("departure_location",)
    list_per_page = 25
    inlines = (BookingInline,)
    actions = ("duplicate_one_week_later",)

    # Capacity is fixed once a trip exists
    def get_readonly_fields(self, request, obj=None):
        if obj is not None:
            return ("max_capacity",)
        return ()

    def get_queryset(self, request):
        return (
            super()
            .get_queryset(request)
            .annotate(booked_seats=Coalesce(Sum("bookings__num_people"), 0, output_field=IntegerField()))
        )

    @admin.display(description="Booked", ordering="booked_seats")
    def booked(self, obj):
        return obj.booked_seats

    @admin.display(description="Spots left")
    def spots_left(self, obj):
        return obj.max_capacity - obj.booked_seats

    @admin.action(description="Duplicate selected trips +7 days")
    def duplicate_one_week_later(self, request, queryset):
        count = 0
        for trip in queryset:
            Trip.objects.create(
                date=trip.date + timedelta(days=7),
                departure_time=trip.departure_time,
                departure_location=trip.departure_location,
                max_capacity=trip.max_capacity,
            )
            count += 1
        self.message_user(request, f"Created {count} duplicated trips.")


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "phone",
        "num_people",
        "trip",
        "created_at",
    )
    list_filter = ("trip__departure_location", "trip__date", "created_at")
    search_fields = ("name", "phone")
    readonly_fields = ("trip", "name", "phone", "num_people", "created_at")
    list_select_related = ("trip",)

    # Bookings are never edited in place and only created through the service
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
