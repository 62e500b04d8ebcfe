from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

from app.schemas.scheduler import Channel


class ChannelCapability(BaseModel):
    can_view: bool = False
    can_manage: bool = False


class AuthorizationProfile(BaseModel):
    principal_id: str
    capabilities: Dict[Channel, ChannelCapability] = Field(default_factory=dict)
    revision: int = 0


class CapabilityGrant(BaseModel):
    capabilities: Dict[Channel, ChannelCapability] = Field(default_factory=dict)


class PermissionsSummary(BaseModel):
    principal_id: str
    elevated: bool
    channels: Dict[Channel, ChannelCapability]
    manageable_channels: List[Channel] = Field(default_factory=list)
    viewable_channels: List[Channel] = Field(default_factory=list)
