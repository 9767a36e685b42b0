"""
Database Schemas for the RentBase rental marketplace

Each Pydantic model represents a collection in MongoDB. The collection name
is the lowercase of the class name (e.g., User -> "user"). References to
other records are stored as the referenced document's _id string.

Request models further down are the typed inputs of each operation; they
check shape and enums at the HTTP boundary, business rules are enforced by
the ledgers themselves.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

# -----------------------------
# Enumerations
# -----------------------------

Role = Literal["renter", "landlord", "admin"]
VerificationStatus = Literal["pending", "approved", "rejected"]
IdDocumentType = Literal["aadhaar", "pan", "passport", "driving_license", "voter_id"]

PropertyType = Literal[
    "Luxury Apartment",
    "Modern Villa",
    "Premium Residence",
    "Urban Home",
    "Garden Estate",
    "Coastal Villa",
    "Modern Apartment",
    "Luxury Penthouse",
    "Studio Apartment",
    "Duplex",
]
ApprovalStatus = Literal["pending", "approved", "rejected", "under_review"]
PropertyStatus = Literal["available", "rented", "maintenance", "unlisted"]
ProofDocumentType = Literal["sale_deed", "registry", "agreement", "power_of_attorney", "other"]
Furnishing = Literal["unfurnished", "semi-furnished", "fully-furnished"]
AreaUnit = Literal["sqft", "sqm"]

BookingStatus = Literal["pending", "confirmed", "cancelled", "completed", "rejected"]
ACTIVE_BOOKING_STATUSES = ("pending", "confirmed")
PaymentStatus = Literal["pending", "partial", "completed", "refunded", "failed"]
PaymentMethod = Literal["card", "upi", "netbanking", "wallet", "cash"]

# -----------------------------
# Caller identity
# -----------------------------


class Identity(BaseModel):
    """The resolved caller every core operation acts on behalf of."""

    id: str
    role: Role
    is_verified: bool = False
    is_active: bool = True
    is_blocked: bool = False
    verification_status: VerificationStatus = "pending"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# -----------------------------
# Core domain models
# -----------------------------


class IdProof(BaseModel):
    document_type: Optional[IdDocumentType] = None
    document_number: Optional[str] = None
    document_base64: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class User(BaseModel):
    name: str = Field(..., max_length=50)
    email: EmailStr
    password_hash: str
    phone: str
    role: Role = "renter"
    avatar: str = "https://ui-avatars.com/api/?name=User&background=2563eb&color=fff"
    address: Optional[str] = None
    id_proof: IdProof = Field(default_factory=IdProof)
    is_verified: bool = False
    verification_status: VerificationStatus = "pending"
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    favorites: List[str] = []
    is_active: bool = True
    is_blocked: bool = False
    block_reason: Optional[str] = None


class PropertyProof(BaseModel):
    document_type: Optional[ProofDocumentType] = None
    document_number: Optional[str] = None
    document_base64: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class PropertyDocuments(BaseModel):
    property_proof: Optional[PropertyProof] = None


class Property(BaseModel):
    owner_id: str = Field(..., description="User _id of owner as string")
    name: str = Field(..., max_length=100)
    description: str = Field("", max_length=2000)
    price: float = Field(..., ge=0)
    location: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    type: PropertyType
    bedrooms: int = Field(1, ge=0)
    bathrooms: int = Field(1, ge=0)
    area: float = Field(0, ge=0)
    area_unit: AreaUnit = "sqft"
    documents: PropertyDocuments = Field(default_factory=PropertyDocuments)
    approval_status: ApprovalStatus = "pending"
    is_approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    status: PropertyStatus = "available"
    image: str = ""
    amenities: List[str] = []
    furnishing: Furnishing = "unfurnished"
    parking: bool = False
    pet_friendly: bool = False
    favorited_by: List[str] = []
    views: int = 0


class PropertySync(BaseModel):
    """Property status a booking transition still owes the property ledger."""

    status: PropertyStatus
    applied: bool = False


class Booking(BaseModel):
    booking_reference: str
    property_id: str
    renter_id: str
    landlord_id: str
    check_in_date: datetime
    check_out_date: datetime
    duration: int = Field(..., ge=1, description="Duration in months")
    monthly_rent: float = Field(..., ge=0)
    security_deposit: float = Field(..., ge=0)
    total_amount: float = 0
    payment_status: PaymentStatus = "pending"
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    paid_amount: float = 0
    payment_date: Optional[datetime] = None
    booking_status: BookingStatus = "pending"
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    number_of_occupants: int = Field(1, ge=1)
    special_requests: str = Field("", max_length=500)
    property_sync: Optional[PropertySync] = None

    @model_validator(mode="after")
    def _recompute_total(self):
        # total is derived, never accepted from the caller
        self.total_amount = self.monthly_rent * self.duration + self.security_deposit
        return self


# -----------------------------
# Operation inputs
# -----------------------------


class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    phone: str
    user_type: Role = "renter"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UploadIdRequest(BaseModel):
    document_type: IdDocumentType
    document_number: str
    document_base64: str


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class PropertyProofIn(BaseModel):
    document_type: ProofDocumentType
    document_number: Optional[str] = None
    document_base64: Optional[str] = None


class PropertyCreate(BaseModel):
    name: str
    description: str = ""
    price: float
    location: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    type: PropertyType
    bedrooms: int = 1
    bathrooms: int = 1
    area: float = 0
    area_unit: AreaUnit = "sqft"
    image: str = ""
    amenities: List[str] = []
    furnishing: Furnishing = "unfurnished"
    parking: bool = False
    pet_friendly: bool = False
    property_proof: Optional[PropertyProofIn] = None


class PropertyUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    location: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    type: Optional[PropertyType] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    area: Optional[float] = None
    area_unit: Optional[AreaUnit] = None
    image: Optional[str] = None
    amenities: Optional[List[str]] = None
    furnishing: Optional[Furnishing] = None
    parking: Optional[bool] = None
    pet_friendly: Optional[bool] = None
    status: Optional[Literal["available", "maintenance", "unlisted"]] = None


class SearchFilters(BaseModel):
    zipcode: Optional[str] = None
    city: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    bedrooms: Optional[int] = None
    type: Optional[str] = None


class BookingCreate(BaseModel):
    property_id: str
    check_in_date: datetime
    duration: int
    number_of_occupants: int = 1
    special_requests: str = ""


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: float
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
