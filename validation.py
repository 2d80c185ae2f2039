"""
validation.py — Schema validation for itinerary records.

validate_itinerary(raw) is pure: no I/O, no clock, no logging. It returns a
ValidationOutcome instead of raising so callers (the store, the designer, the
startup scan) can decide what a failure means for them.

All violations are reported in one pass: every bad segment and the
itinerary-level date order come back together, each segment violation tagged
with that segment's id so the viewer can point at the offending leg.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from pydantic import ValidationError

from errors import FieldViolation
from schemas import Itinerary, Segment


@dataclass(frozen=True)
class ValidationOutcome:
    itinerary:  Itinerary | None       = None
    violations: list[FieldViolation]   = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.itinerary is not None and not self.violations


def _format_loc(loc: tuple) -> str:
    if not loc:
        return '(root)'
    parts = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f'[{item}]')
        else:
            parts.append(('.' if parts else '') + str(item))
    return ''.join(parts)


def _segment_id_for(raw, loc: tuple) -> str | None:
    """Return the raw id of the segment a location points into, if any."""
    if len(loc) < 2 or loc[0] != 'segments' or not isinstance(loc[1], int):
        return None
    if not isinstance(raw, Mapping):
        return None
    segments = raw.get('segments')
    if not isinstance(segments, list) or loc[1] >= len(segments):
        return None
    seg = segments[loc[1]]
    if isinstance(seg, Mapping) and seg.get('id') is not None:
        return str(seg['id'])
    return None


def violations_from_errors(errors, raw=None, prefix: tuple = (), skip: tuple = ()) -> list[FieldViolation]:
    """Convert pydantic error dicts to FieldViolations; leading loc parts in skip are dropped."""
    out = []
    for err in errors:
        loc = tuple(err['loc'])
        if loc and loc[0] in skip:
            loc = loc[1:]
        loc = prefix + loc
        out.append(FieldViolation(
            field      = _format_loc(loc),
            message    = err['msg'],
            segment_id = _segment_id_for(raw, loc),
        ))
    return out


def violations_from(exc: ValidationError, raw=None, prefix: tuple = ()) -> list[FieldViolation]:
    return violations_from_errors(exc.errors(include_url=False), raw, prefix)


def validate_itinerary(raw) -> ValidationOutcome:
    """Validate a raw itinerary (mapping or Itinerary instance)."""
    if isinstance(raw, Itinerary):
        raw = raw.to_document()
    try:
        itinerary = Itinerary.model_validate(raw)
    except ValidationError as exc:
        return ValidationOutcome(violations=violations_from(exc, raw))
    return ValidationOutcome(itinerary=itinerary)


def validate_segment(raw) -> tuple[Segment | None, list[FieldViolation]]:
    """Validate a single segment outside of an itinerary."""
    try:
        return Segment.model_validate(raw), []
    except ValidationError as exc:
        seg_id = raw.get('id') if isinstance(raw, Mapping) else None
        return None, [
            FieldViolation(v.field, v.message, str(seg_id) if seg_id is not None else None)
            for v in violations_from(exc)
        ]
