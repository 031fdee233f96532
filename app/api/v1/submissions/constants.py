"""Constants for submission routes."""

SUBMISSION_NOT_FOUND_DETAIL = "Submission not found"
SUBMISSION_QUEUE_FULL_DETAIL = "Submission queue is full, try again shortly"
SUBMISSION_CREATED_MESSAGE = "Submission received. Generation is running in the background."
RETRY_STARTED_MESSAGE = "Retry initiated successfully. Processing will resume in the background."
RETRY_NOTHING_TO_DO_MESSAGE = "Nothing to retry. Every requested component is already completed."
LANDING_PAGE_QUEUED_MESSAGE = "Landing page generation queued."
QUEUE_FULL_REASON = "queue_full"
