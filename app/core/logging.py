"""Centralized logging configuration with JSON-formatted extras."""

import json
import logging
import sys

_STANDARD_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class JSONExtrasFormatter(logging.Formatter):
    """Readable log line followed by the record's extras as JSON.

    Output format:
        2024-01-15 10:30:45 | INFO     | app.services.pipeline_orchestrator | Step completed {"submission_id": "c1..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        timestamp = self.formatTime(record, self.datefmt)
        line = f"{timestamp} | {record.levelname:<8} | {record.name} | {record.message}"

        extras = self.extract_extras(record)
        if extras:
            try:
                line = f"{line} {json.dumps(extras, default=str, ensure_ascii=False)}"
            except (TypeError, ValueError):
                pass

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"

        return line

    @staticmethod
    def extract_extras(record: logging.LogRecord) -> dict[str, object]:
        """Return the non-standard attributes attached via ``extra=``."""
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
        }


def setup_logging(*, debug: bool = False) -> None:
    """Configure the 'app' logger with console output and JSON extras."""
    logger = logging.getLogger("app")
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)

    # Called by both the API lifespan and the worker entrypoint
    if logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONExtrasFormatter(datefmt="%Y-%m-%d %H:%M:%S"))

    logger.addHandler(handler)
    logger.propagate = False
