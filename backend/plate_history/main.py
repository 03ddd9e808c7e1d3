import logging
from datetime import date, datetime
from typing import Optional, Union
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Depends, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from starlette.responses import JSONResponse

from . import config, crud, database, models, schemas
from .exceptions import HistoryReadError, IngestionError, RecognitionAPIError, RecognitionUnavailableError
from .recognition import RecognitionClient

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Plate History API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    database.init_db()
    logger.info("Database tables created.")


@app.get("/")
def read_root():
    return {"message": "Welcome to the Plate History API"}


def build_history_request(
    page_index: int = 0,
    page_size: int = 10,
    sort_id: Optional[str] = None,
    sort_desc: Optional[bool] = None,
    **filter_params,
):
    """Turns flat query parameters into (pagination, sorting, filters).

    `*Min`/`*Max` pairs become one range spec and `dateFrom`/`dateTo` one date spec.
    """
    pagination = schemas.PaginationState(page_index=page_index, page_size=page_size)

    sorting = []
    if sort_id:
        # Newest first unless told otherwise
        descending = sort_desc if sort_desc is not None else sort_id == "date"
        sorting.append(schemas.SortSpec(id=sort_id, desc=descending))

    filters = []
    ranges = {}
    date_range = {}
    for key, value in filter_params.items():
        if value is None:
            continue
        if key in ("date_from", "date_to"):
            date_range["from" if key == "date_from" else "to"] = value
        elif key.endswith("_min") or key.endswith("_max"):
            field_id, bound = key.rsplit("_", 1)
            ranges.setdefault(field_id, {})[bound] = value
        else:
            filters.append(schemas.FilterSpec(id=_camel(key), value=value))

    for field_id, bounds in ranges.items():
        filters.append(schemas.FilterSpec(id=_camel(field_id), value=schemas.NumericRange(**bounds)))
    if date_range:
        filters.append(schemas.FilterSpec(id="date", value=schemas.DateRange(**date_range)))

    return pagination, sorting, filters


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@app.get("/history", response_model=schemas.HistoryPage)
def get_history(
    page_index: int = Query(0, alias="pageIndex", ge=0),
    page_size: int = Query(10, alias="pageSize", ge=1, le=100),
    sort_id: Optional[str] = Query(None, alias="sortId"),
    sort_desc: Optional[bool] = Query(None, alias="sortDesc"),
    plate_number: Optional[str] = Query(None, alias="plateNumber"),
    normalized_plate: Optional[str] = Query(None, alias="normalizedPlate"),
    province_name: Optional[str] = Query(None, alias="provinceName"),
    ocr_engine: Optional[str] = Query(None, alias="ocrEngine"),
    type_vehicle: Optional[str] = Query(None, alias="typeVehicle"),
    source: Optional[str] = Query(None),
    is_valid_format: Optional[bool] = Query(None, alias="isValidFormat"),
    confidence_min: Optional[float] = Query(None, alias="confidenceMin", ge=0, le=100),
    confidence_max: Optional[float] = Query(None, alias="confidenceMax", ge=0, le=100),
    process_time_min: Optional[int] = Query(None, alias="processTimeMin", ge=0),
    process_time_max: Optional[int] = Query(None, alias="processTimeMax", ge=0),
    date_from: Optional[Union[datetime, date]] = Query(None, alias="dateFrom"),
    date_to: Optional[Union[datetime, date]] = Query(None, alias="dateTo"),
    db: Session = Depends(database.get_db),
):
    pagination, sorting, filters = build_history_request(
        page_index=page_index,
        page_size=page_size,
        sort_id=sort_id,
        sort_desc=sort_desc,
        plate_number=plate_number,
        normalized_plate=normalized_plate,
        province_name=province_name,
        ocr_engine=ocr_engine,
        type_vehicle=type_vehicle,
        source=source,
        is_valid_format=is_valid_format,
        confidence_min=confidence_min,
        confidence_max=confidence_max,
        process_time_min=process_time_min,
        process_time_max=process_time_max,
        date_from=date_from,
        date_to=date_to,
    )
    try:
        return crud.fetch_detection_history(db, pagination, sorting, filters)
    except HistoryReadError as e:
        raise HTTPException(status_code=500, detail="Failed to fetch detection history") from e


@app.get("/history/options", response_model=schemas.FilterOptions)
def get_history_options(db: Session = Depends(database.get_db)):
    try:
        return crud.get_filter_options(db)
    except HistoryReadError as e:
        raise HTTPException(status_code=500, detail="Failed to fetch filter options") from e


def save_recognition_result(db, response, source, identifier):
    """Stores a recognition result and echoes it back with the stored detection.

    A failed save is reported in `error` without hiding the recognition itself.
    """
    result = schemas.SaveResult(**response.model_dump())
    if not response.detections:
        return result

    logger.info("Saving detection from %s: %s", source.value, identifier)
    try:
        detection = crud.insert_detection_and_results(db, response, source, identifier)
    except IngestionError as e:
        logger.error("Error saving detection after successful recognition: %s", e)
        message = f"DB save failed: {e}"
        result.error = f"{result.error}. {message}" if result.error else message
        return result

    if detection is not None:
        result.detection = schemas.DetectionWithResults.model_validate(detection)
    return result


def get_recognition_client():
    return RecognitionClient()


def _upstream_error_response(error, passthrough):
    status_code = error.status_code if error.status_code in passthrough else 500
    content = error.body if error.body is not None else {"error": str(error)}
    return JSONResponse(status_code=status_code, content=content)


@app.post("/detections", response_model=schemas.SaveResult)
def save_detection(
    response: schemas.RecognitionResponse,
    source: models.DetectionSource = Query(models.DetectionSource.API),
    identifier: str = Query(..., min_length=1),
    db: Session = Depends(database.get_db),
):
    return save_recognition_result(db, response, source, identifier)


@app.post("/process-image", response_model=schemas.SaveResult)
def process_image(
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(database.get_db),
    recognition: RecognitionClient = Depends(get_recognition_client),
):
    if file is None:
        raise HTTPException(status_code=400, detail='Invalid file upload. "file" field is missing or not a file.')
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=415, detail="Unsupported file type. Only image files are accepted.")

    filename = file.filename or "upload"
    logger.info("Received file: %s, type: %s", filename, file.content_type)
    try:
        response = recognition.process_image(filename, file.file.read(), file.content_type)
    except RecognitionUnavailableError as e:
        logger.error("%s", e)
        raise HTTPException(status_code=502, detail="Could not connect to the backend processing service.") from e
    except RecognitionAPIError as e:
        return _upstream_error_response(e, passthrough=(413, 415, 422))

    return save_recognition_result(db, response, models.DetectionSource.UPLOAD, filename)


@app.post("/process-image-url", response_model=schemas.SaveResult)
def process_image_url(
    body: schemas.ImageUrlRequest,
    db: Session = Depends(database.get_db),
    recognition: RecognitionClient = Depends(get_recognition_client),
):
    if not body.url:
        raise HTTPException(status_code=400, detail='Missing "url" in request body.')
    parsed = urlparse(body.url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail="Invalid URL format.")

    logger.info("Processing image from URL: %s", body.url)
    try:
        response = recognition.process_image_url(body.url)
    except RecognitionUnavailableError as e:
        logger.error("%s", e)
        raise HTTPException(status_code=502, detail="Could not connect to the backend processing service.") from e
    except RecognitionAPIError as e:
        return _upstream_error_response(e, passthrough=(422,))

    return save_recognition_result(db, response, models.DetectionSource.API, body.url)


def run():
    uvicorn.run("plate_history.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
