"""
errors.py — Domain error taxonomy for Itinerizer.

Every error carries the HTTP status it maps to; app.py registers a single
exception handler that renders them as { "error": "...", ...extra }, the same
response shape the viewer expects from HTTPException.

  ItineraryValidationError  422  schema / invariant failures (full violation list)
  ProposedChangeRejected    422  a model-proposed itinerary change failed validation
  SessionNotFound           404  unknown session id for *this* designer instance
  RecordNotFound            404  itinerary unknown or not visible to the caller
  UpstreamServiceError      401 / 502 / 503  LLM or import collaborator failure
  StorageCorruption         500  a persisted record could not be parsed at all
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldViolation:
    """One violated field. segment_id is set when the field belongs to a segment."""
    field:      str
    message:    str
    segment_id: str | None = None

    def to_dict(self) -> dict:
        d = {'field': self.field, 'message': self.message}
        if self.segment_id is not None:
            d['segmentId'] = self.segment_id
        return d


class ItinerizerError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> dict:
        """Additional JSON fields rendered next to 'error'."""
        return {}

    def headers(self) -> dict | None:
        return None


class ItineraryValidationError(ItinerizerError):
    status_code = 422

    def __init__(self, violations: list[FieldViolation], message: str = 'Itinerary failed validation'):
        super().__init__(message)
        self.violations = list(violations)

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]

    def extra(self) -> dict:
        return {'violations': [v.to_dict() for v in self.violations]}


class ProposedChangeRejected(ItineraryValidationError):
    """The assistant proposed an itinerary change that does not validate.

    The conversation turn is still recorded; only the change is refused.
    """

    def __init__(self, violations: list[FieldViolation], assistant_turn):
        super().__init__(violations, 'Proposed itinerary change was rejected')
        self.assistant_turn = assistant_turn

    def extra(self) -> dict:
        d = super().extra()
        d['message'] = self.assistant_turn.to_dict()
        return d


class SessionNotFound(ItinerizerError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f'Session {session_id} not found')
        self.session_id = session_id


class RecordNotFound(ItinerizerError):
    status_code = 404

    def __init__(self, itinerary_id: str):
        super().__init__(f'Itinerary {itinerary_id} not found')
        self.itinerary_id = itinerary_id


class UpstreamServiceError(ItinerizerError):
    """An external collaborator (LLM, import service) failed or timed out."""

    def __init__(self, message: str, *, retryable: bool, status_code: int | None = None,
                 retry_after: int | None = None):
        super().__init__(message)
        self.retryable   = retryable
        self.retry_after = retry_after
        if status_code is not None:
            self.status_code = status_code
        else:
            self.status_code = 503 if retryable else 502

    def extra(self) -> dict:
        return {'retryable': self.retryable}

    def headers(self) -> dict | None:
        if self.retry_after:
            return {'Retry-After': str(self.retry_after)}
        return None


class StorageCorruption(ItinerizerError):
    status_code = 500

    def __init__(self, record_id: str, reason: str):
        super().__init__(f'Stored itinerary {record_id} is corrupt')
        self.record_id = record_id
        self.reason    = reason
