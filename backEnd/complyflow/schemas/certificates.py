"""Typed certificate records, one shape per certificate type.

Tier adapters produce loosely structured field maps. parse_certificate_fields
turns those into one of the records below, discriminated by certificate_type,
so validation rules can reference fields that are known to exist.
"""

import logging
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ..errors import DataError

logger = logging.getLogger(__name__)

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%Y/%m/%d",
)


def parse_date(value: Any) -> Optional[date]:
    """Parse the date formats commonly printed on UK certificates.

    Returns None for blanks and for text that is not a recognizable date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    logger.debug(f"Unrecognized date value: {text!r}")
    return None


class Defect(BaseModel):
    """A defect or remedial action listed on a certificate."""

    description: str = Field(..., description="Defect as written on the certificate")
    code: Optional[str] = Field(default=None, description="Classification code, e.g. C2 or ID")
    priority: Optional[str] = Field(
        default=None, description="IMMEDIATE, URGENT, PRIORITY, ROUTINE or ADVISORY"
    )
    location: Optional[str] = Field(default=None)


class CertificateRecordBase(BaseModel):
    """Fields shared by every certificate type."""

    model_config = ConfigDict(extra="ignore")

    certificate_number: Optional[str] = Field(default=None)
    property_address: Optional[str] = Field(default=None)
    uprn: Optional[str] = Field(default=None, description="Unique Property Reference Number")
    issue_date: Optional[date] = Field(default=None)
    expiry_date: Optional[date] = Field(default=None)
    next_inspection_date: Optional[date] = Field(default=None)
    outcome: Optional[str] = Field(default=None, description="Outcome text as printed")
    engineer_name: Optional[str] = Field(default=None)
    engineer_registration: Optional[str] = Field(
        default=None, description="Gas Safe / NICEIC / other registration number"
    )
    contractor_name: Optional[str] = Field(default=None)
    defects: List[Defect] = Field(default_factory=list)

    @field_validator("issue_date", "expiry_date", "next_inspection_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Optional[date]:
        return parse_date(value)

    @field_validator("uprn", "certificate_number", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class GasAppliance(BaseModel):
    location: Optional[str] = None
    appliance_type: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    safe: Optional[bool] = Field(default=None, description="Safe to use")
    landlord_owned: Optional[bool] = None


class GasSafetyRecord(CertificateRecordBase):
    """Landlord Gas Safety Record (CP12)."""

    certificate_type: Literal["GAS_SAFETY"] = "GAS_SAFETY"
    appliances: List[GasAppliance] = Field(default_factory=list)


class ElectricalObservation(BaseModel):
    code: Literal["C1", "C2", "C3", "FI"]
    description: Optional[str] = None
    location: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def _normalize_code(cls, value: Any) -> Any:
        return str(value).strip().upper() if value is not None else value


class ElectricalRecord(CertificateRecordBase):
    """Electrical Installation Condition Report."""

    certificate_type: Literal["EICR"] = "EICR"
    observations: List[ElectricalObservation] = Field(default_factory=list)
    circuits_tested: Optional[int] = None


class FireRiskRecord(CertificateRecordBase):
    """Fire Risk Assessment."""

    certificate_type: Literal["FRA"] = "FRA"
    risk_level: Optional[str] = Field(
        default=None, description="Trivial, Tolerable, Moderate, Substantial or Intolerable"
    )
    significant_findings: List[str] = Field(default_factory=list)


class AsbestosMaterial(BaseModel):
    location: Optional[str] = None
    material: Optional[str] = None
    risk: Optional[str] = Field(default=None, description="Low, Medium or High")
    presumed: bool = False


class AsbestosRecord(CertificateRecordBase):
    """Asbestos management or refurbishment survey."""

    certificate_type: Literal["ASBESTOS"] = "ASBESTOS"
    survey_type: Optional[str] = None
    materials: List[AsbestosMaterial] = Field(default_factory=list)


class GenericCertificateRecord(CertificateRecordBase):
    """EPC, legionella, lift inspections and anything else."""

    certificate_type: Literal["EPC", "LEGIONELLA", "LIFT", "OTHER"] = "OTHER"
    energy_rating: Optional[str] = Field(default=None, description="EPC band A-G")


CertificateRecord = Annotated[
    Union[GasSafetyRecord, ElectricalRecord, FireRiskRecord, AsbestosRecord, GenericCertificateRecord],
    Field(discriminator="certificate_type"),
]

_RECORD_ADAPTER = TypeAdapter(CertificateRecord)

RECORD_TYPES: Dict[str, Type[CertificateRecordBase]] = {
    "GAS_SAFETY": GasSafetyRecord,
    "EICR": ElectricalRecord,
    "FRA": FireRiskRecord,
    "ASBESTOS": AsbestosRecord,
    "EPC": GenericCertificateRecord,
    "LEGIONELLA": GenericCertificateRecord,
    "LIFT": GenericCertificateRecord,
    "OTHER": GenericCertificateRecord,
}


def normalize_certificate_type(cert_type: str) -> str:
    cert_type = (cert_type or "").strip().upper()
    return cert_type if cert_type in RECORD_TYPES else "OTHER"


def record_class_for(cert_type: str) -> Type[CertificateRecordBase]:
    return RECORD_TYPES[normalize_certificate_type(cert_type)]


def parse_certificate_fields(cert_type: str, fields: Dict[str, Any]) -> CertificateRecordBase:
    """
    Build the typed record for a certificate type from extracted fields.

    Args:
        cert_type: Certificate type code (GAS_SAFETY, EICR, ...)
        fields: Field map produced by a tier adapter

    Returns:
        The matching certificate record

    Raises:
        DataError: If the fields cannot form a valid record
    """
    payload = {k: v for k, v in fields.items() if v is not None}
    payload["certificate_type"] = normalize_certificate_type(cert_type)
    try:
        return _RECORD_ADAPTER.validate_python(payload)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise DataError(f"Invalid {payload['certificate_type']} fields: {location}: {first['msg']}", field=location) from e


def field_paths(cert_type: str) -> List[str]:
    """
    List field paths valid for a certificate type.

    List-of-object fields contribute "parent.child" paths, which rules use
    with ARRAY_ANY_MATCH.
    """
    cls = record_class_for(cert_type)
    paths: List[str] = []
    for name, info in cls.model_fields.items():
        paths.append(name)
        annotation = info.annotation
        args = getattr(annotation, "__args__", ())
        if getattr(annotation, "__origin__", None) in (list, List) and args:
            item_type = args[0]
            if isinstance(item_type, type) and issubclass(item_type, BaseModel):
                paths.extend(f"{name}.{child}" for child in item_type.model_fields)
    return paths
