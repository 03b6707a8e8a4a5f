from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SignInRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


class SignUpRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    roles: List[str] = []


class RoleSwitchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str


class BookingDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approve", "reject"]


class CreateBookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: str
    startDate: date
    endDate: date


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0)
    status: Optional[str] = None
    imageUrl: Optional[str] = None
