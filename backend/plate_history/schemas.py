# backend/plate_history/schemas.py

from datetime import date, datetime
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, computed_field
from pydantic.alias_generators import to_camel

from .models import DetectionSource, VehicleCategory
from .units import fraction_to_percent


# ---------------------------------------------------------------------------
# Recognition service payload (snake_case, as the service sends it)
# ---------------------------------------------------------------------------

class PlateTypeInfo(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None


class PlateAnalysis(BaseModel):
    original: Optional[str] = None
    normalized: Optional[str] = None
    province_code: Optional[str] = None
    province_name: Optional[str] = None
    serial: Optional[str] = None
    number: Optional[str] = None
    plate_type: Optional[str] = None
    plate_type_info: Optional[PlateTypeInfo] = None
    detected_color: Optional[str] = None
    is_valid_format: Optional[bool] = None
    format_description: Optional[str] = None


class PlateDetection(BaseModel):
    plate_number: str
    confidence_detection: float
    bounding_box: Tuple[float, float, float, float]
    plate_analysis: Optional[PlateAnalysis] = None
    ocr_engine_used: Optional[str] = None


class RecognitionResponse(BaseModel):
    detections: List[PlateDetection] = Field(default_factory=list)
    processed_image_url: Optional[str] = None
    # Left untyped: anything that is not a finite number is stored as NULL
    processing_time_ms: Optional[Any] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# History query structures
# ---------------------------------------------------------------------------

class PaginationState(BaseModel):
    page_index: int = Field(0, ge=0)
    page_size: int = Field(10, ge=1, le=100)


class SortSpec(BaseModel):
    id: str
    desc: bool = False


class FilterSpec(BaseModel):
    id: str
    value: Any = None


class NumericRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None


class DateRange(BaseModel):
    from_: Optional[Union[datetime, date]] = Field(None, alias="from")
    to: Optional[Union[datetime, date]] = None

    class Config:
        populate_by_name = True


# ---------------------------------------------------------------------------
# API output (camelCase)
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel


class LicensePlate(CamelModel):
    id: int
    plate_number: str
    created_at: datetime
    updated_at: datetime


class Detection(CamelModel):
    id: int
    source: Optional[DetectionSource] = None
    image_url: str
    processed_image_url: Optional[str] = None
    detection_time: datetime
    process_time_ms: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class DetectedPlateResult(CamelModel):
    id: int
    detection_id: int
    license_plate_id: Optional[int] = None
    plate_number: str
    normalized_plate: Optional[str] = None
    confidence_detection: float
    bounding_box: List[float]
    ocr_engine_used: Optional[str] = None
    type_vehicle: Optional[VehicleCategory] = None
    province_code: Optional[str] = None
    province_name: Optional[str] = None
    plate_type: Optional[str] = None
    detected_color: Optional[str] = None
    is_valid_format: Optional[bool] = None
    format_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DetectionWithResults(Detection):
    detected_plates: List[DetectedPlateResult] = Field(default_factory=list)


class HistoryRow(DetectedPlateResult):
    detection: Optional[Detection] = None
    license_plate: Optional[LicensePlate] = None

    @computed_field(alias="confidencePercent")
    @property
    def confidence_percent(self) -> float:
        return fraction_to_percent(self.confidence_detection)


class HistoryPage(CamelModel):
    rows: List[HistoryRow]
    total_row_count: int


class FilterOptions(CamelModel):
    ocr_engines: List[str]
    vehicle_types: List[str]
    sources: List[str]


class SaveResult(RecognitionResponse):
    """Recognition response echoed back with the stored detection (or None)."""
    detection: Optional[DetectionWithResults] = None


class ImageUrlRequest(BaseModel):
    url: Optional[str] = None
