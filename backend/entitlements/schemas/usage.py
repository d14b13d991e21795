"""Usage metering Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field

from entitlements.schemas.results import OperationResult


class ChargeTokensRequest(BaseModel):
    amount: int = Field(ge=0)


class TokenChargeResult(OperationResult):
    tokens_used: int | None = None
    token_limit: int | None = None  # None = unlimited
    tokens_remaining: int | None = None


class PaperAccessRequest(BaseModel):
    paper_id: str = Field(min_length=1, max_length=255)


class PaperAccessResult(OperationResult):
    paper_id: str
    newly_counted: bool = False
    papers_used: int | None = None
    papers_limit: int | None = None


class StudyPlanQuotaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    limit: int | None  # None = unlimited
    used: int
    remaining: int | None
    can_create: bool


class StudyPlanQuotaResult(OperationResult):
    quota: StudyPlanQuotaResponse | None = None


class CreateStudyPlanRequest(BaseModel):
    subject_id: str = Field(min_length=1, max_length=255)
    grade_id: str | None = None
    name: str = Field(default="", max_length=255)


class StudyPlanResult(OperationResult):
    plan_id: str | None = None
    quota: StudyPlanQuotaResponse | None = None
