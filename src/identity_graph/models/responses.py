"""
Response models for the Identity API
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str


class IngestionResponse(BaseModel):
    ok: bool = True
    inserted: int = Field(..., ge=0, description="Event rows written")


class AliasResponse(BaseModel):
    ok: bool = True
    userId: str
    mergedAnonymousIds: List[str]
    mergedCount: int = Field(..., ge=0)
    insertedRows: int = Field(..., ge=0)


class IdentityProfileModel(BaseModel):
    canonicalUserId: str
    anonymousIds: List[str]
    emails: List[str]
    phones: List[str]
    deviceFingerprints: List[str]
    matchMethods: List[str]
    edgeCount: int
    lastSeen: Optional[str]


class ProfileResponse(BaseModel):
    ok: bool = True
    profile: IdentityProfileModel


class ResolveResponse(BaseModel):
    ok: bool = True
    anonymousId: str
    canonicalUserId: Optional[str]
    confidence: float = Field(..., ge=0, le=1)
    method: str


class DeletionResponse(BaseModel):
    ok: bool = True
    mutationQueued: bool
    identifierCount: int
    note: str
