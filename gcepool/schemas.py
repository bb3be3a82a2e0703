from pydantic import BaseModel, Field, ConfigDict
from typing import Dict, List, Optional

class VirtualMachine(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    hostname: Optional[str] = None
    template: Optional[str] = None
    poolname: Optional[str] = None
    boottime: Optional[str] = None
    status: Optional[str] = None
    zone: Optional[str] = None
    machine_type: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    label_fingerprint: Optional[str] = None
    ip: Optional[str] = None

class PoolMember(BaseModel):
    name: str

class VMCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=63)

class DiskCreate(BaseModel):
    size: int = Field(..., ge=1)

class SnapshotCreate(BaseModel):
    name: str = Field(..., min_length=1)

class LabelsUpdate(BaseModel):
    labels: Dict[str, str]

class PurgeRequest(BaseModel):
    allow_list: Optional[List[str]] = None

class VMReady(BaseModel):
    name: str
    ready: bool
