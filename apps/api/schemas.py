"""
Connector-facing payloads and group rule shapes.

Connectors may return plain dicts or these models; the engine validates every
response through them before acting on it.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional, Union


PropertyValue = Union[str, int, float, bool, None]


class GroupRule(BaseModel):
    key: str
    op: str
    match: Optional[Any] = None
    # Only for relative date ops ("within the last 7 days")
    relative_match_number: Optional[float] = None
    relative_match_unit: Optional[Literal["minutes", "hours", "days", "weeks", "months", "years"]] = None
    relative_match_direction: Literal["subtract", "add"] = "subtract"

    model_config = ConfigDict(extra="forbid")


class ExportedProfile(BaseModel):
    """What a destination connector receives for one profile."""
    export_id: str
    profile_id: str
    old_profile_properties: Dict[str, Any] = Field(default_factory=dict)
    new_profile_properties: Dict[str, Any] = Field(default_factory=dict)
    old_groups: List[str] = Field(default_factory=list)
    new_groups: List[str] = Field(default_factory=list)
    to_delete: bool = False


class ErrorWithProfileId(BaseModel):
    profile_id: str
    message: str = "export failed"
    error_level: Literal["error", "info"] = "error"


class ProcessExports(BaseModel):
    """Asynchronous completion token: poll again after `process_delay` seconds."""
    remote_key: str
    profile_ids: List[str]
    process_delay: int = Field(default=60, ge=0)


class ExportProfilesResponse(BaseModel):
    success: bool
    retry_delay: Optional[int] = Field(default=None, ge=0)
    errors: List[ErrorWithProfileId] = Field(default_factory=list)
    process_exports: Optional[ProcessExports] = None


class ExportProfileResponse(BaseModel):
    success: bool
    retry_delay: Optional[int] = Field(default=None, ge=0)
    error: Optional[str] = None


class ProfilesPage(BaseModel):
    """One incremental import page."""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    next_high_water_mark: Dict[str, Any] = Field(default_factory=dict)
    imports_count: int = 0


class DispatchSummary(BaseModel):
    destination_id: str
    completed: List[str] = Field(default_factory=list)
    retrying: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    processing: List[str] = Field(default_factory=list)
    export_processor_id: Optional[str] = None
