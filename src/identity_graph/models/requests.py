"""
Request models for the Identity API

Fields are typed Any: every value goes through the normalization layer,
which maps unusable input to None.
"""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AliasRequest(BaseModel):
    """
    Stitch anonymous sessions to a user.

    - userId is required
    - at least one of email / phone is required
    - anonymousId (the current session) is linked even with no history
    """
    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "userId": "user_12345",
                "email": "user@example.com",
                "phone": "+1 (555) 123-4567",
                "anonymousId": "anon_9f8e7d",
            }
        },
    )

    userId: Any = Field(None, description="Canonical user id of the authenticated account")
    email: Any = Field(None, description="Email address (deterministic key)")
    phone: Any = Field(None, description="Phone number in any rendering; compared on digits")
    anonymousId: Any = Field(None, description="Anonymous id of the current session")


class IdentityDeletionRequest(BaseModel):
    """GDPR deletion seed; at least one identifier is required"""
    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "email": "user@example.com",
            }
        },
    )

    userId: Any = None
    email: Any = None
    phone: Any = None
    anonymousId: Any = None

    def seed(self) -> dict:
        return {
            'userId': self.userId,
            'email': self.email,
            'phone': self.phone,
            'anonymousId': self.anonymousId,
        }
