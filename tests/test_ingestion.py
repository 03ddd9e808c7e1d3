import pytest
from sqlalchemy import delete, event, select
from sqlalchemy.exc import OperationalError

from plate_history import crud, models
from plate_history.exceptions import IngestionError

from factories import count_rows, make_detection, make_response


def _ingest(db, response, source=models.DetectionSource.UPLOAD, identifier="car.jpg"):
    return crud.insert_detection_and_results(db, response, source, identifier)


def test_empty_response_writes_nothing(db):
    assert _ingest(db, make_response()) is None
    assert count_rows(db, models.Detection) == 0
    assert count_rows(db, models.LicensePlate) == 0
    assert count_rows(db, models.DetectedPlateResult) == 0


def test_none_response_is_a_noop(db):
    assert _ingest(db, None) is None
    assert count_rows(db, models.Detection) == 0


def test_ingest_creates_one_detection_and_one_result_per_plate(db):
    response = make_response(
        make_detection("ABC123"),
        make_detection("XYZ789", confidence=0.75),
        make_detection("ABC123", confidence=0.6),
    )

    detection = _ingest(db, response, models.DetectionSource.API, "https://example.com/car.jpg")

    assert detection is not None
    assert detection.source == models.DetectionSource.API
    assert detection.image_url == "https://example.com/car.jpg"
    assert detection.processed_image_url == "/processed/1.jpg"
    assert len(detection.detected_plates) == 3
    assert count_rows(db, models.Detection) == 1
    assert count_rows(db, models.DetectedPlateResult) == 3
    assert count_rows(db, models.LicensePlate) == 2

    plates = dict(db.execute(select(models.LicensePlate.plate_number, models.LicensePlate.id)).all())
    by_number = {}
    for result in detection.detected_plates:
        by_number.setdefault(result.plate_number, set()).add(result.license_plate_id)
    assert by_number == {"ABC123": {plates["ABC123"]}, "XYZ789": {plates["XYZ789"]}}


def test_result_fields_copied_from_analysis(db):
    detection = _ingest(db, make_response(make_detection("AB-1234", confidence=0.87, category="truck")))

    result = detection.detected_plates[0]
    assert result.plate_number == "AB-1234"
    assert result.normalized_plate == "AB1234"
    assert result.confidence_detection == pytest.approx(0.87)
    assert result.bounding_box == [10, 20, 110, 60]
    assert result.ocr_engine_used == "paddleocr"
    assert result.type_vehicle == models.VehicleCategory.TRUCK
    assert result.province_code == "10"
    assert result.province_name == "Bangkok"
    assert result.plate_type == "private"
    assert result.detected_color == "white"
    assert result.is_valid_format is True
    assert result.format_description == "2 letters + 4 digits"


def test_missing_analysis_leaves_analysis_fields_null(db):
    detection = _ingest(db, make_response(make_detection("ABC123", analysis=False)))

    result = detection.detected_plates[0]
    assert result.normalized_plate is None
    assert result.province_name is None
    assert result.type_vehicle is None
    assert result.is_valid_format is None
    assert result.license_plate_id is not None


def test_unrecognised_vehicle_category_is_dropped(db):
    detection = _ingest(db, make_response(make_detection("ABC123", category="spaceship")))

    assert detection.detected_plates[0].type_vehicle is None


def test_empty_plate_number_gets_no_license_plate(db):
    detection = _ingest(db, make_response(make_detection(""), make_detection("   ")))

    assert [r.license_plate_id for r in detection.detected_plates] == [None, None]
    assert count_rows(db, models.LicensePlate) == 0
    assert count_rows(db, models.DetectedPlateResult) == 2


@pytest.mark.parametrize(
    "raw, stored",
    [(123.4, 123), (12.5, 13), (99, 99), (None, None), ("fast", None), (float("nan"), None), (True, None)],
)
def test_processing_time_rounded_to_milliseconds(db, raw, stored):
    detection = _ingest(db, make_response(make_detection(), processing_time_ms=raw))

    assert detection.process_time_ms == stored


def test_same_response_twice_reuses_license_plate(db):
    response = make_response(make_detection("ABC123"))

    first = _ingest(db, response)
    second = _ingest(db, response)

    assert first.id != second.id
    assert count_rows(db, models.Detection) == 2
    assert count_rows(db, models.DetectedPlateResult) == 2
    assert count_rows(db, models.LicensePlate) == 1
    assert first.detected_plates[0].license_plate_id == second.detected_plates[0].license_plate_id


def test_existing_plate_is_not_duplicated(db):
    db.add(models.LicensePlate(plate_number="ABC123"))
    db.commit()
    existing_id = db.execute(select(models.LicensePlate.id)).scalar_one()

    detection = _ingest(db, make_response(make_detection("ABC123"), make_detection("NEW001")))

    assert count_rows(db, models.LicensePlate) == 2
    assert detection.detected_plates[0].license_plate_id == existing_id


def test_plate_numbers_are_case_sensitive(db):
    _ingest(db, make_response(make_detection("abc123"), make_detection("ABC123")))

    assert count_rows(db, models.LicensePlate) == 2


def test_storage_failure_rolls_back_everything(db, engine):
    _ingest(db, make_response(make_detection("OLD001")))

    def fail_on_results_insert(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("INSERT INTO DETECTED_PLATE_RESULTS"):
            raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(engine, "before_cursor_execute", fail_on_results_insert)
    try:
        with pytest.raises(IngestionError) as excinfo:
            _ingest(db, make_response(make_detection("NEW001"), make_detection("OLD001")))
    finally:
        event.remove(engine, "before_cursor_execute", fail_on_results_insert)

    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert count_rows(db, models.Detection) == 1
    assert count_rows(db, models.DetectedPlateResult) == 1
    assert db.execute(select(models.LicensePlate.plate_number)).scalars().all() == ["OLD001"]


def test_deleting_detection_cascades_to_results(db):
    detection = _ingest(db, make_response(make_detection("ABC123"), make_detection("XYZ789")))

    db.delete(detection)
    db.commit()

    assert count_rows(db, models.DetectedPlateResult) == 0
    assert count_rows(db, models.LicensePlate) == 2


def test_deleting_license_plate_unlinks_results(db):
    _ingest(db, make_response(make_detection("ABC123")))

    db.execute(delete(models.LicensePlate))
    db.commit()

    result = db.execute(select(models.DetectedPlateResult)).scalar_one()
    assert result.license_plate_id is None


def test_driver_overflow_is_reported_as_ingestion_error(db):
    # SQLite rejects integers wider than 64 bits with a bare OverflowError
    with pytest.raises(IngestionError):
        _ingest(db, make_response(make_detection("BIG001"), processing_time_ms=1e20))

    assert count_rows(db, models.Detection) == 0
    assert count_rows(db, models.LicensePlate) == 0
    assert count_rows(db, models.DetectedPlateResult) == 0

    detection = _ingest(db, make_response(make_detection("BIG001")))
    assert detection.process_time_ms == 123


def test_backend_without_on_conflict_inserts_only_missing_plates(db, monkeypatch):
    monkeypatch.setattr(crud, "_dialect_insert", lambda session: None)

    first = _ingest(db, make_response(make_detection("ABC123")))
    second = _ingest(db, make_response(make_detection("ABC123"), make_detection("XYZ789")))

    assert count_rows(db, models.LicensePlate) == 2
    assert second.detected_plates[0].license_plate_id == first.detected_plates[0].license_plate_id
    assert second.detected_plates[1].license_plate_id is not None


def test_failed_read_back_is_reported_as_ingestion_error(db, engine):
    def fail_on_detection_select(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT DETECTIONS."):
            raise OperationalError(statement, parameters, Exception("database is locked"))

    event.listen(engine, "before_cursor_execute", fail_on_detection_select)
    try:
        with pytest.raises(IngestionError, match="could not be read back"):
            _ingest(db, make_response(make_detection("ABC123")))
    finally:
        event.remove(engine, "before_cursor_execute", fail_on_detection_select)

    # The write itself was committed
    assert count_rows(db, models.Detection) == 1
    assert count_rows(db, models.DetectedPlateResult) == 1
