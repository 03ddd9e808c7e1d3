# backend/plate_history/filters.py
"""
Compiles client filter and sort specs into SQLAlchemy clauses.

Every filterable field is registered once in FILTER_REGISTRY as a small
filter object that validates its own input and builds its own condition.
Inputs a field cannot use are skipped, never raised: unknown ids, empty
strings, values outside an enum, non-boolean flags, non-numeric bounds.
"""

from collections.abc import Mapping
from datetime import datetime, time, timedelta, timezone

from pydantic import ValidationError
from sqlalchemy import and_

from . import models
from .schemas import DateRange, FilterSpec, NumericRange, SortSpec
from .units import percent_to_fraction


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _escape_like(value):
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def start_of_day(value):
    """Midnight of the value's calendar day, as an aware datetime.

    Plain dates and naive datetimes are read as UTC.
    """
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


class FieldFilter:
    # True when several specs with the same id combine into one condition
    mergeable = False

    def __init__(self, column):
        self.column = column

    def parse(self, value):
        """Return the usable form of value, or None to skip it."""
        return value

    def merge(self, current, incoming):
        return incoming

    def condition(self, parsed):
        raise NotImplementedError


class ContainsFilter(FieldFilter):
    """Case-insensitive substring match."""

    def parse(self, value):
        if isinstance(value, str) and value:
            return value
        return None

    def condition(self, parsed):
        return self.column.ilike(f"%{_escape_like(parsed)}%", escape="\\")


class ChoiceFilter(FieldFilter):
    """Exact match, optionally restricted to the members of an enum."""

    def __init__(self, column, choices=None):
        super().__init__(column)
        self.choices = choices

    def parse(self, value):
        if not isinstance(value, str) or not value:
            return None
        if self.choices is None:
            return value
        try:
            return self.choices(value)
        except ValueError:
            return None

    def condition(self, parsed):
        return self.column == parsed


class BooleanFilter(FieldFilter):
    def parse(self, value):
        return value if isinstance(value, bool) else None

    def condition(self, parsed):
        return self.column == parsed


class RangeFilter(FieldFilter):
    """Inclusive numeric range; min and max may arrive in separate specs."""

    mergeable = True

    def __init__(self, column, scale=None):
        super().__init__(column)
        self.scale = scale

    def parse(self, value):
        if isinstance(value, NumericRange):
            low, high = value.min, value.max
        elif isinstance(value, Mapping):
            low, high = value.get("min"), value.get("max")
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            low, high = value
        else:
            return None
        low = low if _is_number(low) else None
        high = high if _is_number(high) else None
        if low is None and high is None:
            return None
        return low, high

    def merge(self, current, incoming):
        if current is None:
            return incoming
        low = incoming[0] if incoming[0] is not None else current[0]
        high = incoming[1] if incoming[1] is not None else current[1]
        return low, high

    def condition(self, parsed):
        low, high = parsed
        if self.scale is not None:
            low = self.scale(low) if low is not None else None
            high = self.scale(high) if high is not None else None
        conditions = []
        if low is not None:
            conditions.append(self.column >= low)
        if high is not None:
            conditions.append(self.column <= high)
        return and_(*conditions)


class DateRangeFilter(FieldFilter):
    """Whole-day range: from the start of `from` up to, not including, the day after `to`."""

    def parse(self, value):
        if isinstance(value, Mapping):
            try:
                value = DateRange.model_validate(value)
            except ValidationError:
                return None
        if not isinstance(value, DateRange):
            return None
        if value.from_ is None and value.to is None:
            return None
        return value.from_, value.to

    def condition(self, parsed):
        low, high = parsed
        conditions = []
        if low is not None:
            conditions.append(self.column >= start_of_day(low).astimezone(timezone.utc))
        if high is not None:
            next_day = start_of_day(high) + timedelta(days=1)
            conditions.append(self.column < next_day.astimezone(timezone.utc))
        return and_(*conditions)


FILTER_REGISTRY = {
    "plateNumber": ContainsFilter(models.DetectedPlateResult.plate_number),
    "normalizedPlate": ContainsFilter(models.DetectedPlateResult.normalized_plate),
    "provinceName": ContainsFilter(models.DetectedPlateResult.province_name),
    "ocrEngine": ChoiceFilter(models.DetectedPlateResult.ocr_engine_used),
    "typeVehicle": ChoiceFilter(models.DetectedPlateResult.type_vehicle, models.VehicleCategory),
    "source": ChoiceFilter(models.Detection.source, models.DetectionSource),
    "isValidFormat": BooleanFilter(models.DetectedPlateResult.is_valid_format),
    "confidence": RangeFilter(models.DetectedPlateResult.confidence_detection, scale=percent_to_fraction),
    "processTime": RangeFilter(models.Detection.process_time_ms),
    "date": DateRangeFilter(models.Detection.detection_time),
}

SORT_REGISTRY = {
    "plateNumber": models.DetectedPlateResult.plate_number,
    "confidence": models.DetectedPlateResult.confidence_detection,
    "date": models.Detection.detection_time,
    "provinceName": models.DetectedPlateResult.province_name,
    "isValidFormat": models.DetectedPlateResult.is_valid_format,
    "ocrEngine": models.DetectedPlateResult.ocr_engine_used,
    "normalizedPlate": models.DetectedPlateResult.normalized_plate,
    "source": models.Detection.source,
    "processTime": models.Detection.process_time_ms,
}


def _as_spec(spec, model):
    """The spec as `model`, or None when it is malformed."""
    if isinstance(spec, model):
        return spec
    if isinstance(spec, Mapping):
        try:
            return model.model_validate(spec)
        except ValidationError:
            return None
    return None


def compile_filters(specs):
    """AND of every usable filter spec, or None when nothing applies."""
    conditions = []
    merged = {}

    for spec in specs:
        spec = _as_spec(spec, FilterSpec)
        if spec is None:
            continue
        field = FILTER_REGISTRY.get(spec.id)
        if field is None:
            continue
        parsed = field.parse(spec.value)
        if parsed is None:
            continue
        if field.mergeable:
            merged[spec.id] = field.merge(merged.get(spec.id), parsed)
        else:
            conditions.append(field.condition(parsed))

    for field_id, parsed in merged.items():
        conditions.append(FILTER_REGISTRY[field_id].condition(parsed))

    if not conditions:
        return None
    return and_(*conditions)


def default_ordering():
    return models.Detection.detection_time.desc()


def compile_sort(specs):
    """One ORDER BY term per spec; unknown ids fall back to newest first."""
    specs = [_as_spec(spec, SortSpec) for spec in specs]
    if not specs:
        return [default_ordering()]

    ordering = []
    for spec in specs:
        column = SORT_REGISTRY.get(spec.id) if spec is not None else None
        if column is None:
            ordering.append(default_ordering())
        else:
            ordering.append(column.desc() if spec.desc else column.asc())
    return ordering
