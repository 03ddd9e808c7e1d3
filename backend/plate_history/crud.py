# backend/plate_history/crud.py

import logging
import math

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .exceptions import HistoryReadError, IngestionError
from .filters import compile_filters, compile_sort

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------------------------------------

def _round_process_time(value):
    """Nearest whole millisecond (halves round up), or None when not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(math.floor(value + 0.5))


def _vehicle_category(value):
    try:
        return models.VehicleCategory(value)
    except ValueError:
        return None


def _dialect_insert(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING, or None when the backend has none."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        return None
    return dialect_insert


def _select_plate_ids(db: Session, plate_numbers):
    fetched = db.execute(
        select(models.LicensePlate.id, models.LicensePlate.plate_number)
        .where(models.LicensePlate.plate_number.in_(plate_numbers))
    ).all()
    return {row.plate_number: row.id for row in fetched}


def upsert_license_plates(db: Session, plate_numbers):
    """Ensure a license_plates row exists for every number; returns {plate_number: id}."""
    if not plate_numbers:
        return {}

    dialect_insert = _dialect_insert(db)
    now = models.utcnow()
    if dialect_insert is not None:
        stmt = dialect_insert(models.LicensePlate).values(
            [{"plate_number": pn, "created_at": now, "updated_at": now} for pn in plate_numbers]
        ).on_conflict_do_nothing(index_elements=[models.LicensePlate.plate_number])
        db.execute(stmt)
    else:
        # Insert only the missing numbers; the unique constraint still guards races
        existing = _select_plate_ids(db, plate_numbers)
        missing = [pn for pn in plate_numbers if pn not in existing]
        if missing:
            db.execute(
                insert(models.LicensePlate),
                [{"plate_number": pn, "created_at": now, "updated_at": now} for pn in missing],
            )

    # Re-read so rows created by a concurrent writer resolve too
    return _select_plate_ids(db, plate_numbers)


def _build_result_row(detection_id, det: schemas.PlateDetection, plate_ids):
    analysis = det.plate_analysis
    plate_number = det.plate_number
    license_plate_id = plate_ids.get(plate_number) if plate_number else None

    row = {
        "detection_id": detection_id,
        "license_plate_id": license_plate_id,
        "plate_number": plate_number,
        "confidence_detection": det.confidence_detection,
        "bounding_box": list(det.bounding_box),
        "ocr_engine_used": det.ocr_engine_used,
        "normalized_plate": None,
        "province_code": None,
        "province_name": None,
        "plate_type": None,
        "detected_color": None,
        "is_valid_format": None,
        "format_description": None,
        "type_vehicle": None,
    }

    if analysis is not None:
        type_info = analysis.plate_type_info
        row.update(
            normalized_plate=analysis.normalized,
            province_code=analysis.province_code,
            province_name=analysis.province_name,
            plate_type=analysis.plate_type,
            detected_color=analysis.detected_color,
            is_valid_format=analysis.is_valid_format,
            format_description=analysis.format_description,
            type_vehicle=_vehicle_category(type_info.category) if type_info and type_info.category else None,
        )
    return row


def insert_detection_and_results(
    db: Session,
    response: schemas.RecognitionResponse,
    source: models.DetectionSource,
    original_identifier: str,
):
    """
    Stores one recognition response: a detection row, the distinct plate numbers
    and one result row per detected plate, all in a single transaction.

    Returns the stored detection with its results, or None when the response has
    no detections (nothing is written in that case).
    """
    if response is None or not response.detections:
        logger.info("No detections to save for %s", original_identifier)
        return None

    now = models.utcnow()
    try:
        # 1. Detection
        detection = models.Detection(
            source=source,
            image_url=original_identifier,
            processed_image_url=response.processed_image_url,
            detection_time=now,
            process_time_ms=_round_process_time(response.processing_time_ms),
            created_at=now,
            updated_at=now,
        )
        db.add(detection)
        db.flush()
        detection_id = detection.id

        # 2. Plates, deduplicated across the response
        plate_numbers = sorted({
            det.plate_number for det in response.detections
            if det.plate_number and det.plate_number.strip()
        })
        plate_ids = upsert_license_plates(db, plate_numbers)

        # 3. Per-plate results
        rows = [_build_result_row(detection_id, det, plate_ids) for det in response.detections]
        for row in rows:
            row["created_at"] = now
            row["updated_at"] = now
        db.execute(insert(models.DetectedPlateResult), rows)

        db.commit()
    except Exception as exc:
        # Driver errors (e.g. OverflowError) are not SQLAlchemyErrors
        db.rollback()
        logger.exception("Failed to save detection for %s", original_identifier)
        raise IngestionError("Failed to save detection result") from exc

    logger.info("Saved detection %s from %s with %d plate result(s)", detection_id, source, len(rows))

    # Read back what a history query would see
    db.expire_all()
    try:
        return db.execute(
            select(models.Detection)
            .options(selectinload(models.Detection.detected_plates))
            .where(models.Detection.id == detection_id)
        ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Saved detection %s could not be read back", detection_id)
        raise IngestionError(f"Detection {detection_id} was saved but could not be read back") from exc


# ------------------------------------------------------------------------------------------------
# History
# ------------------------------------------------------------------------------------------------

def _join_history(stmt):
    # Outer joins: a result row is never dropped for a missing parent
    return (
        stmt.outerjoin(models.Detection, models.DetectedPlateResult.detection_id == models.Detection.id)
        .outerjoin(models.LicensePlate, models.DetectedPlateResult.license_plate_id == models.LicensePlate.id)
    )


def _history_row(result, detection, license_plate):
    data = schemas.DetectedPlateResult.model_validate(result).model_dump()
    return schemas.HistoryRow(
        **data,
        detection=schemas.Detection.model_validate(detection) if detection is not None else None,
        license_plate=schemas.LicensePlate.model_validate(license_plate) if license_plate is not None else None,
    )


def fetch_detection_history(db: Session, pagination: schemas.PaginationState, sorting, filters):
    """One page of plate results plus the total number of rows matching the same filters."""
    where_condition = compile_filters(filters)
    order_by = compile_sort(sorting)

    page_query = _join_history(
        select(models.DetectedPlateResult, models.Detection, models.LicensePlate)
        .select_from(models.DetectedPlateResult)
    )
    count_query = _join_history(select(func.count()).select_from(models.DetectedPlateResult))

    if where_condition is not None:
        page_query = page_query.where(where_condition)
        count_query = count_query.where(where_condition)

    page_query = (
        page_query.order_by(*order_by)
        .limit(pagination.page_size)
        .offset(pagination.page_index * pagination.page_size)
    )

    try:
        rows = db.execute(page_query).all()
        total_count = db.execute(count_query).scalar_one()
    except SQLAlchemyError as exc:
        logger.exception("Error fetching detection history")
        raise HistoryReadError("Failed to fetch detection history from database") from exc

    return schemas.HistoryPage(
        rows=[_history_row(*row) for row in rows],
        total_row_count=total_count or 0,
    )


def get_filter_options(db: Session):
    """Distinct values currently stored for the enumerable filter columns."""
    result = models.DetectedPlateResult
    engines_query = (
        select(result.ocr_engine_used).distinct()
        .where(result.ocr_engine_used.is_not(None), result.ocr_engine_used != "")
        .order_by(result.ocr_engine_used.asc())
    )
    types_query = (
        select(result.type_vehicle).distinct()
        .where(result.type_vehicle.is_not(None))
        .order_by(result.type_vehicle.asc())
    )
    sources_query = (
        select(models.Detection.source).distinct()
        .where(models.Detection.source.is_not(None))
        .order_by(models.Detection.source.asc())
    )

    try:
        engines = db.execute(engines_query).scalars().all()
        vehicle_types = db.execute(types_query).scalars().all()
        sources = db.execute(sources_query).scalars().all()
    except SQLAlchemyError as exc:
        logger.exception("Error fetching filter options")
        raise HistoryReadError("Failed to fetch filter options from database") from exc

    return schemas.FilterOptions(
        ocr_engines=list(engines),
        vehicle_types=[t.value for t in vehicle_types],
        sources=[s.value for s in sources],
    )
