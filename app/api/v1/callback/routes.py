"""Generation service callback endpoint."""

import logging

from fastapi import APIRouter, HTTPException, status

from app.core.exceptions import SubmissionNotFoundError, ValidationError
from app.dependencies import Callbacks
from app.schemas.submission import CallbackPayload, CallbackResponse
from app.services.callback_ingestor import CallbackRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/callback",
    response_model=CallbackResponse,
    summary="Ingest step result",
    description=(
        "Merge a step result pushed by the generation service. Repeated or out-of-order "
        "deliveries converge on the same record; callbacks never start the next step."
    ),
)
async def ingest_callback(body: CallbackPayload, ingestor: Callbacks) -> dict[str, object]:
    request = CallbackRequest(
        submission_id=body.submissionId,
        step=body.step,
        payload=body.payload,
        status=body.status,
        timestamp=body.timestamp,
    )
    try:
        ack = await ingestor.ingest(request)
    except ValidationError as e:
        logger.warning(
            "Callback rejected",
            extra={"submission_id": body.submissionId, "step": body.step, "error": e.message},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except SubmissionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
    return ack.to_response()
