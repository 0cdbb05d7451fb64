from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ToolConditionValue = Literal["excellent", "good", "needs_repair", "under_maintenance", "retired"]


class AvailabilityUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isAvailable: bool


class ConditionUpdateDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition: ToolConditionValue


class MaintenanceRecordDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: str
    loanID: Optional[str] = None
    newCondition: ToolConditionValue
    notes: Optional[str] = None
    repairCost: Optional[float] = Field(default=None, ge=0)
    nextServiceDate: Optional[date] = None
