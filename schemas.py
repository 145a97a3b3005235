"""
Database Schemas for the Plantation Record Keeper

Each Pydantic model represents a collection in MongoDB. The collection
name is the lowercase of the class name (e.g., PlantLot -> "plantlot").
The remaining models are request bodies for the HTTP API.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

HEALTH_STATUSES = ("excellent", "good", "fair", "poor", "critical", "dead")

Category = Literal["tree", "shrub", "herb", "vine", "grass", "other"]
Climate = Literal["tropical", "subtropical", "temperate", "arid", "mediterranean", "continental"]
SoilType = Literal["clay", "sandy", "loam", "silt", "peat", "chalk"]
Requirement = Literal["low", "medium", "high"]
SunRequirement = Literal["full-sun", "partial-sun", "shade"]
HealthStatus = Literal["excellent", "good", "fair", "poor", "critical", "dead"]
Moisture = Literal["dry", "moist", "wet", "waterlogged"]
Role = Literal["manager", "field", "analyst"]
QualityGrade = Literal["A", "B", "C", "rejected"]
QRFormat = Literal["base64", "png"]
QRMode = Literal["full", "reference"]

CODE_PATTERN = r"^[A-Z0-9_-]+$"
PHOTO_URL_PATTERN = r"(?i)^https?://.+\.(jpg|jpeg|png|webp|gif)$"
EMAIL_PATTERN = r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.\w{2,}$"


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _upper_code(value):
    return value.strip().upper() if isinstance(value, str) else value


class Actor(BaseModel):
    """Authenticated caller, as resolved from a bearer token"""
    id: str
    role: Role
    name: Optional[str] = None


# ---------------- Species ----------------
class PlantSpecies(BaseModel):
    """Crop type definition carrying the growth thresholds
    Collection: plantspecies
    """
    name: str = Field(..., min_length=1, max_length=100, description="Unique species name")
    code: str = Field(..., min_length=1, max_length=10, pattern=CODE_PATTERN,
                      description="Unique short code, uppercase letters, digits, - and _")
    min_height: float = Field(..., ge=0, description="Minimum harvestable height in centimeters")
    harvest_days: int = Field(..., ge=1, description="Days from planting until harvest")
    description: Optional[str] = Field(None, max_length=500)
    category: Category = Field("other", description="Taxonomy bucket")
    climate: Optional[Climate] = None
    soil_type: List[SoilType] = Field(default_factory=list)
    water_requirement: Requirement = "medium"
    sun_requirement: SunRequirement = "full-sun"
    max_height: Optional[float] = Field(None, ge=0)
    max_diameter: Optional[float] = Field(None, ge=0)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return _upper_code(v)

    @model_validator(mode="after")
    def check_max_height(self):
        if self.max_height is not None and self.max_height < self.min_height:
            raise ValueError("Maximum height must be greater than or equal to minimum height")
        return self


class PlantSpeciesUpdate(BaseModel):
    """Descriptive fields of a species; name, code and growth thresholds are fixed"""
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[Category] = None
    climate: Optional[Climate] = None
    soil_type: Optional[List[SoilType]] = None
    water_requirement: Optional[Requirement] = None
    sun_requirement: Optional[SunRequirement] = None
    max_height: Optional[float] = Field(None, ge=0)
    max_diameter: Optional[float] = Field(None, ge=0)

    @field_validator("category", "soil_type", "water_requirement", "sun_requirement")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


# ---------------- Lots ----------------
class Nutrients(BaseModel):
    nitrogen: Optional[float] = Field(None, ge=0)
    phosphorus: Optional[float] = Field(None, ge=0)
    potassium: Optional[float] = Field(None, ge=0)


class SoilCondition(BaseModel):
    ph: Optional[float] = Field(None, ge=0, le=14)
    moisture: Optional[Moisture] = None
    nutrients: Optional[Nutrients] = None


class PhotoIn(BaseModel):
    url: str = Field(..., pattern=PHOTO_URL_PATTERN,
                     description="Image URL ending in jpg, jpeg, png, webp or gif")
    caption: Optional[str] = Field(None, max_length=200)


class PlantLot(BaseModel):
    """One planted batch of a species
    Collection: plantlot
    """
    lot_id: str = Field(..., min_length=1, max_length=20, pattern=CODE_PATTERN,
                        description="Unique lot code")
    species_id: str = Field(..., description="Referenced PlantSpecies _id as string")
    planted_date: datetime = Field(..., description="When the lot was planted (UTC)")
    zone: str = Field(..., min_length=1, max_length=50)
    location_id: str = Field(..., min_length=1, max_length=50)
    current_height: float = Field(..., ge=0, description="Height in centimeters")
    diameter: float = Field(..., ge=0, description="Diameter in centimeters")
    health_status: HealthStatus = "good"
    plant_count: int = Field(1, ge=1, description="Number of plants in the lot")
    photos: List[PhotoIn] = Field(default_factory=list)
    soil_condition: Optional[SoilCondition] = None
    notes: Optional[str] = Field(None, max_length=1000)
    assigned_to: Optional[str] = Field(None, description="Referenced User _id as string")

    @field_validator("lot_id", mode="before")
    @classmethod
    def normalize_lot_id(cls, v):
        return _upper_code(v)

    @field_validator("zone", "location_id", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("planted_date")
    @classmethod
    def not_in_future(cls, v: datetime):
        v = _as_utc_naive(v)
        if v > datetime.now(timezone.utc).replace(tzinfo=None):
            raise ValueError("Planted date cannot be in the future")
        return v


class PlantLotUpdate(BaseModel):
    current_height: Optional[float] = Field(None, ge=0)
    diameter: Optional[float] = Field(None, ge=0)
    health_status: Optional[HealthStatus] = None
    photos: Optional[List[PhotoIn]] = None
    notes: Optional[str] = Field(None, max_length=1000)
    zone: Optional[str] = Field(None, min_length=1, max_length=50)
    location_id: Optional[str] = Field(None, min_length=1, max_length=50)
    assigned_to: Optional[str] = None
    soil_condition: Optional[SoilCondition] = None
    last_watered: Optional[datetime] = None
    last_fertilized: Optional[datetime] = None
    last_pruned: Optional[datetime] = None

    @field_validator("zone", "location_id", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("zone", "location_id")
    @classmethod
    def not_null(cls, v):
        # Optional only so the field can be omitted; an explicit null is rejected
        if v is None:
            raise ValueError("Field cannot be empty")
        return v

    @field_validator("last_watered", "last_fertilized", "last_pruned")
    @classmethod
    def utc_dates(cls, v):
        return _as_utc_naive(v) if v is not None else v


class GrowthMeasurementIn(BaseModel):
    height: float = Field(..., ge=0)
    diameter: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class HealthObservationIn(BaseModel):
    status: HealthStatus
    symptoms: List[str] = Field(default_factory=list)
    treatment: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class HarvestIn(BaseModel):
    quantity: float = Field(..., ge=0)
    unit: str = Field(..., min_length=1, max_length=20, description="e.g. kg, crates, units")
    quality: QualityGrade


# ---------------- QR ----------------
class BatchQRRequest(BaseModel):
    lot_ids: List[str] = Field(..., min_length=1, max_length=50,
                               description="Lot codes, at most 50 per call")
    format: QRFormat = "base64"
    size: int = Field(200, ge=64, le=1024)
    mode: QRMode = "full"


# ---------------- Users ----------------
class User(BaseModel):
    """Registered account
    Collection: user
    """
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6, max_length=72)
    role: Role = "field"

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("password")
    @classmethod
    def fits_bcrypt(cls, v: str):
        # bcrypt only looks at the first 72 bytes
        if len(v.encode("utf-8")) > 72:
            raise ValueError("Password cannot exceed 72 bytes")
        return v


class LoginIn(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=254, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=72)
