"""Submission, retry, regeneration and callback schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.services.steps.chain import EVENT_REQUIRED_FIELDS

StepStatusValue = Literal["pending", "completed", "failed", "not_requested"]


class CamelModel(BaseModel):
    """Accepts both the camelCase wire names and the Python field names."""

    model_config = ConfigDict(populate_by_name=True)


class EventDetails(CamelModel):
    """Event fields consumed by the optional funnel and landing-page steps."""

    event_name: str | None = Field(default=None, alias="eventName", max_length=500)
    event_dates: str | None = Field(default=None, alias="eventDates", max_length=500)
    event_location: str | None = Field(default=None, alias="eventLocation", max_length=500)
    unique_selling_points: str | None = Field(default=None, alias="uniqueSellingPoints")
    ticket_tiers: str | None = Field(default=None, alias="ticketTiers")
    speakers: str | None = None
    key_transformations: str | None = Field(default=None, alias="keyTransformations")
    testimonials: str | None = None
    lead_capture_strategy: str | None = Field(default=None, alias="leadCaptureStrategy")

    def missing_required(self) -> list[str]:
        data = self.model_dump(by_alias=True)
        return [
            key
            for key in EVENT_REQUIRED_FIELDS
            if not isinstance(data.get(key), str) or not data[key].strip()
        ]

    def to_inputs(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SubmissionCreateRequest(EventDetails):
    """Schema for creating a submission."""

    target_market: str = Field(alias="targetMarket", min_length=1, max_length=2000)
    product: str = Field(min_length=1, max_length=2000)
    generate_landing_page: bool = Field(default=False, alias="generateLandingPage")
    user_id: str | None = Field(default=None, alias="userId", max_length=32)
    timestamp: str | None = None

    @model_validator(mode="after")
    def _require_event_details(self) -> "SubmissionCreateRequest":
        if self.generate_landing_page:
            missing = self.missing_required()
            if missing:
                raise ValueError(
                    "Event details are required when generateLandingPage is set: "
                    + ", ".join(missing)
                )
        return self

    def to_inputs(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"user_id"})


class SubmissionCreateResponse(BaseModel):
    id: str
    message: str


class SubmissionResponse(BaseModel):
    """Full submission record as returned to readers."""

    id: str
    userId: str | None = None
    kind: str
    title: str | None = None
    inputs: dict[str, Any]
    output: str | None = None
    components: dict[str, Any]
    webhookResponse: str | None = None
    status: str
    createdAt: datetime | None = None
    updatedAt: datetime | None = None
    completedAt: datetime | None = None


class SubmissionIdRequest(CamelModel):
    submission_id: str = Field(alias="submissionId", min_length=1)


class RetryResponse(BaseModel):
    message: str
    submissionId: str
    componentStatus: dict[str, StepStatusValue]
    startAtStep: str | None = None
    explanations: dict[str, str] = Field(default_factory=dict)


class RegenerateRequest(CamelModel):
    submission_id: str = Field(alias="submissionId", min_length=1)
    component: str = Field(min_length=1)


class RegenerateResponse(BaseModel):
    success: bool
    status: str
    component: str
    overallStatus: str
    cascadedComponent: str | None = None


class CallbackPayload(BaseModel):
    """Body pushed by the generation service.

    Fields are optional here so missing ones produce the callback's own 400
    instead of a generic validation error.
    """

    model_config = ConfigDict(extra="allow")

    submissionId: str | None = None
    step: str | None = None
    payload: Any = None
    status: str | None = None
    timestamp: str | None = None


class CallbackResponse(BaseModel):
    ok: bool
    submissionId: str
    step: str
    componentStatus: str
    overallStatus: str


class LandingPageRequest(EventDetails):
    """Event details submitted for an existing submission."""

    @model_validator(mode="after")
    def _require_event_details(self) -> "LandingPageRequest":
        missing = self.missing_required()
        if missing:
            raise ValueError("Missing required event fields: " + ", ".join(missing))
        return self


class StatusCounts(BaseModel):
    pending: int
    completed: int
    failed: int


class SubmissionStatusReport(BaseModel):
    submissionId: str
    overallStatus: str
    componentStatus: dict[str, StepStatusValue]
    statusCounts: StatusCounts
    hasData: dict[str, bool]
    createdAt: datetime | None = None
    updatedAt: datetime | None = None
    recommendation: str


class StaleSubmission(BaseModel):
    id: str
    age: int
    action: str


class StaleSweepResponse(BaseModel):
    checked: int
    updated: int
    submissions: list[StaleSubmission]


class FixStatusResponse(BaseModel):
    success: bool
    submissionId: str
    updates: list[str]
    componentStatus: dict[str, StepStatusValue]
    overallStatus: str
