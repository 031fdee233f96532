"""Recover a step's canonical content object from wrapped generation output.

Generation webhooks wrap their answer in zero or more envelopes: a
one-element array, an assistant ``{"role", "content"}`` message, a
``{"payload": ...}`` object or a ``{"content": ...}`` object. Each level is
matched against a fixed, ordered list of envelope kinds; unwrapping stops as
soon as the current value carries one of the step's marker fields, or after
``MAX_UNWRAP_DEPTH`` levels.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from app.core.exceptions import AmbiguousPayloadError
from app.services.steps.chain import get_step

logger = logging.getLogger(__name__)

EnvelopeKind = Literal["none", "array_of_one", "role_content", "payload", "content"]

MAX_UNWRAP_DEPTH = 5

_NO_MATCH = object()


@dataclass(frozen=True, slots=True)
class UnwrapResult:
    """Outcome of unwrapping one raw payload."""

    payload: Any
    envelopes: tuple[EnvelopeKind, ...]
    markers_found: bool

    @property
    def outer_envelope(self) -> EnvelopeKind:
        return self.envelopes[0] if self.envelopes else "none"


def _array_of_one(value: Any) -> Any:
    if isinstance(value, list) and len(value) == 1:
        return value[0]
    return _NO_MATCH


def _role_content(value: Any) -> Any:
    if isinstance(value, dict) and value.get("role") == "assistant" and value.get("content") is not None:
        return value["content"]
    return _NO_MATCH


def _payload_field(value: Any) -> Any:
    if isinstance(value, dict) and isinstance(value.get("payload"), dict):
        return value["payload"]
    return _NO_MATCH


def _content_field(value: Any) -> Any:
    if isinstance(value, dict) and isinstance(value.get("content"), dict):
        return value["content"]
    return _NO_MATCH


# Priority order matters: the first matching envelope wins at each level.
_ENVELOPE_MATCHERS: tuple[tuple[EnvelopeKind, Callable[[Any], Any]], ...] = (
    ("array_of_one", _array_of_one),
    ("role_content", _role_content),
    ("payload", _payload_field),
    ("content", _content_field),
)


def has_markers(value: Any, marker_fields: tuple[str, ...]) -> bool:
    """True when ``value`` is an object with at least one populated marker field."""
    if not isinstance(value, dict):
        return False
    for key in marker_fields:
        marker = value.get(key)
        if isinstance(marker, (dict, list, str)):
            if marker:
                return True
        elif marker is not None and marker is not False:
            return True
    return False


def _peel(value: Any) -> tuple[EnvelopeKind, Any] | None:
    for kind, matcher in _ENVELOPE_MATCHERS:
        inner = matcher(value)
        if inner is not _NO_MATCH:
            return kind, inner
    return None


def unwrap_payload(step_name: str, raw: Any) -> UnwrapResult:
    """Unwrap ``raw`` for ``step_name`` without raising on missing markers."""
    markers = get_step(step_name).marker_fields
    current = raw
    envelopes: list[EnvelopeKind] = []

    for _ in range(MAX_UNWRAP_DEPTH):
        if markers and has_markers(current, markers):
            break
        peeled = _peel(current)
        if peeled is None:
            break
        kind, current = peeled
        envelopes.append(kind)

    markers_found = has_markers(current, markers) if markers else True
    if envelopes:
        logger.debug(
            "Unwrapped step payload",
            extra={"step": step_name, "envelopes": envelopes, "markers_found": markers_found},
        )
    return UnwrapResult(payload=current, envelopes=tuple(envelopes), markers_found=markers_found)


def normalize_payload(step_name: str, raw: Any) -> Any:
    """Return the canonical content object for ``step_name``.

    Raises:
        AmbiguousPayloadError: no marker field was found at any depth. The
            deepest value reached is available on the exception.
    """
    result = unwrap_payload(step_name, raw)
    if not result.markers_found:
        raise AmbiguousPayloadError(step_name, result.payload, list(result.envelopes))
    return result.payload
