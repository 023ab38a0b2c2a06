import pydantic
from datetime import datetime
from typing import Optional

from engine.scheduler.types import PipelineStatus


# --- Operators ---
class Operator(pydantic.BaseModel):
    """
    Whoever holds a valid token. The token subject is the name recorded
    on every approval decision.
    """
    name: str


class TokenData(pydantic.BaseModel):
    name: Optional[str] = None


class Token(pydantic.BaseModel):
    access_token: str
    token_type: str = "bearer"


# --- Runs ---
class RunCreate(pydantic.BaseModel):
    definition_path: str
    version: Optional[str] = None
    branch: Optional[str] = None
    environment: Optional[str] = None
    revision: Optional[str] = None


class RunStarted(pydantic.BaseModel):
    run_id: str
    status: PipelineStatus = PipelineStatus.PENDING
    message: str = "Run successfully started."


class RunSummary(pydantic.BaseModel):
    run_id: str
    pipeline: str
    version: str
    branch: Optional[str] = None
    status: PipelineStatus
    updated_at: datetime


# --- Approvals ---
class ApprovalDecision(pydantic.BaseModel):
    approve: bool = True
    reason: Optional[str] = None
