"""Static definition of the five-step generation chain.

The chain is strictly linear::

    audienceArchitect -> contentCompass -> messageMultiplier -> eventFunnel -> landingPage

The two trailing steps are optional: they only run when the user asked for a
landing page and the submission carries the event details they need.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from app.core.exceptions import StepNotFoundError

StepName = Literal[
    "audienceArchitect",
    "contentCompass",
    "messageMultiplier",
    "eventFunnel",
    "landingPage",
]
StepStatus = Literal["pending", "completed", "failed", "not_requested"]
OverallStatus = Literal["pending", "completed", "failed"]
StepOutcome = Literal["completed", "failed"]

STATUS_PENDING: StepStatus = "pending"
STATUS_COMPLETED: StepStatus = "completed"
STATUS_FAILED: StepStatus = "failed"
STATUS_NOT_REQUESTED: StepStatus = "not_requested"
STEP_STATUSES: frozenset[str] = frozenset(
    {STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED, STATUS_NOT_REQUESTED}
)

COMPONENT_STATUS_KEY = "componentStatus"
COMPONENT_WARNINGS_KEY = "componentWarnings"

EVENT_REQUIRED_FIELDS: tuple[str, ...] = (
    "eventName",
    "eventDates",
    "eventLocation",
    "uniqueSellingPoints",
    "ticketTiers",
)
EVENT_OPTIONAL_FIELDS: tuple[str, ...] = (
    "speakers",
    "keyTransformations",
    "testimonials",
    "leadCaptureStrategy",
)
BASE_INPUT_FIELDS: tuple[str, ...] = ("targetMarket", "product")


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """One stage of the chain."""

    name: StepName
    depends_on: StepName | None = None
    is_optional: bool = False
    marker_fields: tuple[str, ...] = ()
    # Generation webhooks for these steps also read kebab-case input keys
    kebab_case_inputs: bool = False
    # Request body is sent as {"payload": body}
    wrap_request_in_payload: bool = False


@dataclass(slots=True)
class StepInvocation:
    """Request sent to the generation service for one step."""

    step: StepName
    submission_id: str
    inputs: dict[str, Any]
    previous_output: dict[str, Any] | None = None


@dataclass(slots=True)
class StepResponse:
    """Generation service answer for one step."""

    status: StepOutcome
    payload: Any
    raw: Any = field(default=None, repr=False)


class StepInvoker(Protocol):
    """Anything able to run one step against the generation service."""

    async def invoke(self, invocation: StepInvocation) -> StepResponse: ...


CHAIN: tuple[StepDefinition, ...] = (
    StepDefinition(
        name="audienceArchitect",
        marker_fields=("icp", "segments", "demographics", "persona", "audience"),
        kebab_case_inputs=True,
    ),
    StepDefinition(
        name="contentCompass",
        depends_on="audienceArchitect",
        marker_fields=("topics", "channels", "pillars"),
    ),
    StepDefinition(
        name="messageMultiplier",
        depends_on="contentCompass",
        marker_fields=("milestone", "persona", "topics", "sub_topics"),
    ),
    StepDefinition(
        name="eventFunnel",
        depends_on="messageMultiplier",
        is_optional=True,
        marker_fields=("funnel", "stages", "touchpoints"),
    ),
    StepDefinition(
        name="landingPage",
        depends_on="eventFunnel",
        is_optional=True,
        marker_fields=("sections", "hero", "cta"),
        kebab_case_inputs=True,
        wrap_request_in_payload=True,
    ),
)

STEP_NAMES: tuple[StepName, ...] = tuple(step.name for step in CHAIN)
_STEPS_BY_NAME: dict[str, StepDefinition] = {step.name: step for step in CHAIN}


def is_known_step(step_name: object) -> bool:
    return isinstance(step_name, str) and step_name in _STEPS_BY_NAME


def get_step(step_name: str) -> StepDefinition:
    """Return the definition for ``step_name`` or raise StepNotFoundError."""
    step = _STEPS_BY_NAME.get(step_name)
    if step is None:
        raise StepNotFoundError(step_name, list(STEP_NAMES))
    return step


def step_index(step_name: str) -> int:
    return STEP_NAMES.index(get_step(step_name).name)


def steps_from(start_at: str | None = None) -> tuple[StepDefinition, ...]:
    """Steps in chain order starting at ``start_at`` (default: the first)."""
    if start_at is None:
        return CHAIN
    return CHAIN[step_index(start_at):]


def direct_dependents(step_name: str) -> tuple[StepDefinition, ...]:
    """Steps that consume ``step_name``'s output directly (one hop only)."""
    get_step(step_name)
    return tuple(step for step in CHAIN if step.depends_on == step_name)


def _filled(value: object) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


def has_event_details(inputs: Mapping[str, Any]) -> bool:
    """Whether every event field required by the optional steps is present."""
    return all(_filled(inputs.get(key)) for key in EVENT_REQUIRED_FIELDS)


def missing_event_fields(inputs: Mapping[str, Any]) -> list[str]:
    return [key for key in EVENT_REQUIRED_FIELDS if not _filled(inputs.get(key))]


def landing_page_requested(inputs: Mapping[str, Any]) -> bool:
    return bool(inputs.get("generateLandingPage"))


def initial_status_map(inputs: Mapping[str, Any]) -> dict[str, StepStatus]:
    """Seed status map for a new submission."""
    requested = landing_page_requested(inputs)
    return {
        step.name: (
            STATUS_NOT_REQUESTED if step.is_optional and not requested else STATUS_PENDING
        )
        for step in CHAIN
    }


def build_step_inputs(step: StepDefinition, inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Inputs sent to the generation service for ``step``.

    Every step gets the market and product; optional steps also receive the
    event details that are present.
    """
    payload: dict[str, Any] = {
        key: inputs[key] for key in BASE_INPUT_FIELDS if _filled(inputs.get(key))
    }
    if step.is_optional:
        for key in (*EVENT_REQUIRED_FIELDS, *EVENT_OPTIONAL_FIELDS):
            if _filled(inputs.get(key)):
                payload[key] = inputs[key]
    return payload


def build_previous_output(
    step: StepDefinition,
    components: Mapping[str, Any],
) -> dict[str, Any] | None:
    """Context from the immediately preceding step only."""
    if step.depends_on is None:
        return None
    previous = components.get(step.depends_on)
    if previous is None:
        return None
    return {step.depends_on: previous}


def build_invocation(
    step: StepDefinition,
    *,
    submission_id: str,
    inputs: Mapping[str, Any],
    components: Mapping[str, Any],
) -> StepInvocation:
    return StepInvocation(
        step=step.name,
        submission_id=submission_id,
        inputs=build_step_inputs(step, inputs),
        previous_output=build_previous_output(step, components),
    )
