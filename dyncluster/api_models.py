from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class NodeRequest(BaseModel):
    server_version: str = Field(..., description="Server version to run, e.g. 6.5.1")
    name: str = Field("", description="Node name (dns-safe); generated when empty")


class AllocateRequest(BaseModel):
    nodes: list[NodeRequest] = Field(..., min_length=1, max_length=50)
    ttl_s: int | None = Field(None, ge=1, description="Seconds until the cluster expires")


class RefreshRequest(BaseModel):
    ttl_s: int | None = Field(None, ge=1, description="New lifetime in seconds, counted from now")


class NodeOut(BaseModel):
    container_id: str
    name: str
    initial_server_version: str
    ipv4_address: str


class ClusterOut(BaseModel):
    id: str
    owner: str
    creator: str
    timeout: datetime
    nodes: list[NodeOut]
