# backend/plate_history/models.py

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    return datetime.now(timezone.utc)


class DetectionSource(str, enum.Enum):
    UPLOAD = "upload"
    CAMERA = "camera"
    IMPORT = "import"
    API = "api"


class VehicleCategory(str, enum.Enum):
    CAR = "car"
    TRUCK = "truck"
    MOTORCYCLE = "motorcycle"
    BUS = "bus"
    SPECIAL = "special"
    OTHER = "other"


def _enum_column_type(enum_cls, name):
    # Stored as plain lowercase strings so DISTINCT/ORDER BY are lexical everywhere
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class LicensePlate(Base):
    __tablename__ = "license_plates"

    id = Column(Integer, primary_key=True, index=True)
    plate_number = Column(String(20), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    detection_results = relationship("DetectedPlateResult", back_populates="license_plate")


class Detection(Base):
    __tablename__ = "detections"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(_enum_column_type(DetectionSource, "detection_source"), default=DetectionSource.UPLOAD)
    image_url = Column(Text, nullable=False)
    processed_image_url = Column(Text)
    detection_time = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    process_time_ms = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    detected_plates = relationship(
        "DetectedPlateResult",
        back_populates="detection",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DetectedPlateResult.id",
    )


class DetectedPlateResult(Base):
    __tablename__ = "detected_plate_results"

    id = Column(Integer, primary_key=True, index=True)
    detection_id = Column(Integer, ForeignKey("detections.id", ondelete="CASCADE"), nullable=False, index=True)
    license_plate_id = Column(Integer, ForeignKey("license_plates.id", ondelete="SET NULL"), index=True)

    plate_number = Column(String(20), nullable=False, index=True)
    normalized_plate = Column(String(20))

    confidence_detection = Column(Float, nullable=False)
    bounding_box = Column(JSON, nullable=False)  # [x1, y1, x2, y2]
    ocr_engine_used = Column(String(50))
    type_vehicle = Column(_enum_column_type(VehicleCategory, "vehicle_category"))
    province_code = Column(String(10))
    province_name = Column(String(100))
    plate_type = Column(String(50))
    detected_color = Column(String(30))
    is_valid_format = Column(Boolean)
    format_description = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    detection = relationship("Detection", back_populates="detected_plates")
    license_plate = relationship("LicensePlate", back_populates="detection_results")
