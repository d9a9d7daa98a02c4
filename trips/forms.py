from django import forms

from .models import Trip, departure_location_choices


class BookingForm(forms.Form):
    trip_id = forms.UUIDField()
    name = forms.CharField(max_length=120)
    phone = forms.CharField(max_length=32)
    num_people = forms.IntegerField(min_value=1)


class BookingFilterForm(forms.Form):
    trip = forms.UUIDField(required=False)


class PhoneForm(forms.Form):
    phone = forms.CharField(max_length=32)


class AvailabilityForm(forms.Form):
    date = forms.DateField(input_formats=["%Y-%m-%d"])


class TripAdminForm(forms.ModelForm):
    departure_location = forms.ChoiceField(choices=departure_location_choices)

    class Meta:
        model = Trip
        fields = ("date", "departure_time", "departure_location", "max_capacity")
        widgets = {
            "max_capacity": forms.NumberInput(attrs={"min": 1}),
        }


def first_error(form):
    """Flatten a bound form's errors into one message for JSON responses."""
    field, errors = next(iter(form.errors.items()), (None, None))
    if field is None:
        return "Invalid request."
    if field == "__all__":
        return errors[0]
    return f"{field}: {errors[0]}"
