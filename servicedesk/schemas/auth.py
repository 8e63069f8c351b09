from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List


class LocationInput(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None


class OutletInput(BaseModel):
    outlet_name: str
    address: str
    location: Optional[LocationInput] = None


class RegisterRequest(BaseModel):
    # Presence of required fields is checked by the store so a missing one is a 400, not a 422
    name: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    outlets: Optional[List[OutletInput]] = None


class LoginRequest(BaseModel):
    """Either email/password (registered user) or admin_username/admin_password (allow-listed admin)."""

    email: Optional[str] = None
    password: Optional[str] = None
    admin_username: Optional[str] = None
    admin_password: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    address: Optional[str] = None
    location: Optional[LocationInput] = None
    outlets: Optional[List[OutletInput]] = None


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(min_length=6)


class UserProfile(BaseModel):
    id: str
    name: str
    company_name: str
    email: str
    phone: str
    address: Optional[str] = None
    location: LocationInput
    outlets: List[dict] = []
    role: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserProfile
