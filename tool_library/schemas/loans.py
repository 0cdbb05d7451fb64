from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


LoanStatusValue = Literal["pending", "approved", "rejected", "active", "returned", "overdue"]


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: Optional[str] = None
    hardwareSampleID: Optional[str] = None
    purpose: Optional[str] = None


class LoanTransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: LoanStatusValue
    expectedStatus: Optional[LoanStatusValue] = None


class LoanFeedbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = None
