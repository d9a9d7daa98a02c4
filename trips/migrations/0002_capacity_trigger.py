from django.db import migrations

CAPACITY_ERROR_PREFIX = "capacity_exceeded"

CREATE_TRIGGER = f"""
CREATE OR REPLACE FUNCTION trips_check_capacity()
RETURNS TRIGGER AS $$
BEGIN
  IF (
    SELECT COALESCE(SUM(num_people), 0) + NEW.num_people
    FROM trips_booking
    WHERE trip_id = NEW.trip_id
  ) > (
    SELECT max_capacity FROM trips_trip WHERE id = NEW.trip_id
  ) THEN
    RAISE EXCEPTION '{CAPACITY_ERROR_PREFIX}'
      USING ERRCODE = 'check_violation';
  END IF;
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE TRIGGER trips_enforce_capacity
BEFORE INSERT ON trips_booking
FOR EACH ROW
EXECUTE FUNCTION trips_check_capacity();
"""

DROP_TRIGGER = """
DROP TRIGGER IF EXISTS trips_enforce_capacity ON trips_booking;
DROP FUNCTION IF EXISTS trips_check_capacity();
"""


def install_capacity_trigger(apps, schema_editor):
    # Store-side gate; SQLite relies on BEGIN IMMEDIATE instead
    if schema_editor.connection.vendor != "postgresql":
        return
    schema_editor.execute(CREATE_TRIGGER)


def remove_capacity_trigger(apps, schema_editor):
    if schema_editor.connection.vendor != "postgresql":
        return
    schema_editor.execute(DROP_TRIGGER)


class Migration(migrations.Migration):
    dependencies = [
        ("trips", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(install_capacity_trigger, remove_capacity_trigger),
    ]
