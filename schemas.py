"""
Database Schemas for the food donation service

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Donation -> "donation"
- Chat -> "chat"
"""

from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

ROLE_RESTAURANT = "restaurant"
ROLE_NGO = "ngo"

Role = Literal["restaurant", "ngo"]
PreferredOption = Literal["NGO Pickup", "Restaurant Delivery"]
DonationStatus = Literal["Available", "Requested", "Accepted", "Completed", "Expired"]


class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, description="Human readable address")


class User(BaseModel):
    name: str = Field(..., description="Restaurant or NGO name")
    email: EmailStr = Field(..., description="Unique email address")
    role: Role = Field(..., description="Role: restaurant or ngo")
    password_hash: Optional[str] = Field(None, description="BCrypt hash, absent for Google-only accounts")
    phone: Optional[str] = None
    location: Optional[Location] = None
    avatar: Optional[str] = None
    googleId: Optional[str] = Field(None, description="Google subject id when signed up through Google")
    createdAt: Optional[datetime] = None


class Rejection(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ngo: ObjectId
    requestedAt: Optional[datetime] = None
    rejectedAt: datetime


class Donation(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    foodType: str = Field(..., description="Alphabetic food name, e.g. Rice")
    quantity: str = Field(..., description="Number with optional unit, e.g. 5kg")
    expiryTime: datetime
    pickupLocation: str
    preferredOption: PreferredOption = "NGO Pickup"
    status: DonationStatus = "Available"
    restaurant: ObjectId = Field(..., description="Owning restaurant user _id")
    requestedBy: Optional[ObjectId] = Field(None, description="Requesting NGO user _id")
    requestedAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)
    ratedAt: Optional[datetime] = None
    rejections: List[Rejection] = []
    createdAt: datetime
    updatedAt: datetime


class ChatMessage(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sender: ObjectId
    message: str = Field(..., min_length=1, max_length=1000)
    timestamp: datetime


class Chat(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    restaurant: ObjectId
    ngo: ObjectId
    donation: Optional[ObjectId] = Field(None, description="Donation that opened the conversation")
    messages: List[ChatMessage] = []
    lastReadByRestaurant: Optional[datetime] = None
    lastReadByNGO: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime


class ContactMessage(BaseModel):
    name: str
    email: str
    message: str
    createdAt: datetime
