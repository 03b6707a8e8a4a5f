from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None


class AuthSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user: Identity


class RoleAssignment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    role: str
    created_at: Optional[datetime] = None


class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None


class Equipment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    owner_id: Optional[str] = None
    title: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    rate: Optional[float] = None
    status: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Booking(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    equipment_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: date
    end_date: date
    status: str
    total_amount: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    equipment: Optional[Equipment] = None
    profiles: Optional[Profile] = None

    @property
    def renter_email(self) -> Optional[str]:
        return self.profiles.email if self.profiles else None
