"""
llm.py — The upstream LLM collaborator for the trip designer.

The designer only depends on the DesignerLLM protocol:
  complete(history, itinerary) -> LLMReply
  stream(history, itinerary)   -> async iterator of str deltas, then one LLMReply

AnthropicDesignerLLM implements it with AsyncAnthropic bound to the caller's
credential. Structural itinerary changes are requested by the model through
tools (update_itinerary, add_segment, update_segment, delete_segment); they come
back as ProposedChange objects and are applied, and validated, by the
orchestrator, never here.

SDK-level retries are disabled (max_retries=0): retry policy lives in
retry.with_retries so it is the same for every upstream collaborator.
"""

import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import anthropic
from anthropic import AsyncAnthropic

from errors import UpstreamServiceError
from schemas import Itinerary

logger = logging.getLogger(__name__)

DEFAULT_MODEL      = 'claude-haiku-4-5-20251001'
DEFAULT_MAX_TOKENS = 2048


@dataclass(frozen=True)
class ProposedChange:
    tool:      str     # one of the DESIGNER_TOOLS names
    arguments: dict


@dataclass(frozen=True)
class LLMReply:
    text:             str
    proposed_changes: tuple[ProposedChange, ...] = field(default_factory=tuple)


class DesignerLLM(Protocol):
    async def complete(self, history: Sequence, itinerary: Itinerary | None) -> LLMReply: ...

    def stream(self, history: Sequence, itinerary: Itinerary | None) -> AsyncIterator: ...


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

UPDATE_ITINERARY_TOOL = {
    'name': 'update_itinerary',
    'description': (
        'Update itinerary metadata: title, description, start/end dates and destinations. '
        'Use when the traveller states trip details such as "10 days in Portugal, January 3-12".'
    ),
    'input_schema': {
        'type': 'object',
        'properties': {
            'title':        {'type': 'string'},
            'description':  {'type': 'string'},
            'startDate':    {'type': 'string', 'description': 'YYYY-MM-DD'},
            'endDate':      {'type': 'string', 'description': 'YYYY-MM-DD'},
            'destinations': {'type': 'array', 'items': {'type': 'string'}},
        },
        'required': [],
    },
}

_SEGMENT_PROPERTIES = {
    'type':          {'type': 'string',
                      'enum': ['FLIGHT', 'HOTEL', 'MEETING', 'ACTIVITY', 'TRANSFER', 'CUSTOM']},
    'status':        {'type': 'string',
                      'enum': ['TENTATIVE', 'CONFIRMED', 'WAITLISTED', 'CANCELLED', 'COMPLETED']},
    'startDatetime': {'type': 'string', 'description': 'ISO 8601 with timezone'},
    'endDatetime':   {'type': 'string', 'description': 'ISO 8601 with timezone'},
    'title':         {'type': 'string'},
    'location':      {'type': 'string'},
    'notes':         {'type': 'string'},
}

ADD_SEGMENT_TOOL = {
    'name': 'add_segment',
    'description': 'Add one segment (flight, hotel stay, transfer, activity, meeting) to the itinerary.',
    'input_schema': {
        'type': 'object',
        'properties': _SEGMENT_PROPERTIES,
        'required': ['type', 'startDatetime', 'endDatetime'],
    },
}

UPDATE_SEGMENT_TOOL = {
    'name': 'update_segment',
    'description': (
        'Change fields of an existing segment, identified by its id. Only the fields given '
        'in updates change; use it to retime, confirm or annotate a booking.'
    ),
    'input_schema': {
        'type': 'object',
        'properties': {
            'segmentId': {'type': 'string'},
            'updates':   {'type': 'object', 'properties': _SEGMENT_PROPERTIES},
        },
        'required': ['segmentId', 'updates'],
    },
}

DELETE_SEGMENT_TOOL = {
    'name': 'delete_segment',
    'description': 'Remove a segment from the itinerary, identified by its id.',
    'input_schema': {
        'type': 'object',
        'properties': {'segmentId': {'type': 'string'}},
        'required': ['segmentId'],
    },
}

DESIGNER_TOOLS = [UPDATE_ITINERARY_TOOL, ADD_SEGMENT_TOOL, UPDATE_SEGMENT_TOOL, DELETE_SEGMENT_TOOL]


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

def translate_error(exc: Exception) -> UpstreamServiceError:
    """Map an Anthropic SDK exception onto UpstreamServiceError."""
    if isinstance(exc, anthropic.APIConnectionError):   # includes APITimeoutError
        return UpstreamServiceError(f'LLM service unreachable: {exc}', retryable=True)

    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status in (401, 403):
            return UpstreamServiceError(
                'The LLM service rejected the API credential. Check your API key.',
                retryable=False, status_code=401,
            )
        if status == 429:
            retry_after = None
            try:
                retry_after = int(exc.response.headers.get('retry-after', ''))
            except ValueError:
                pass
            return UpstreamServiceError('LLM rate limit exceeded', retryable=True,
                                        status_code=503, retry_after=retry_after or 60)
        if status >= 500:
            return UpstreamServiceError(f'LLM service error ({status})', retryable=True)
        return UpstreamServiceError(f'LLM request rejected ({status}): {exc.message}', retryable=False)

    return UpstreamServiceError(f'LLM call failed: {exc}', retryable=True)


# ---------------------------------------------------------------------------
# Anthropic implementation
# ---------------------------------------------------------------------------

def _system_prompt(itinerary: Itinerary | None) -> str:
    context = (
        json.dumps(itinerary.to_document(), indent=2)
        if itinerary is not None else
        'No itinerary loaded.'
    )
    return (
        'You are a trip designer helping a traveller plan an itinerary. '
        'When the traveller settles a structural detail (dates, destinations, a flight, '
        'a hotel stay, a transfer), call the matching tool; otherwise just answer. '
        'To change or remove an existing segment, refer to it by its id.\n\n'
        f'Current itinerary:\n{context}'
    )


def _messages(history: Sequence) -> list[dict]:
    return [{'role': t.role, 'content': t.content} for t in history]


def _reply_from(message) -> LLMReply:
    text    = ''.join(b.text for b in message.content if b.type == 'text')
    changes = tuple(
        ProposedChange(tool=b.name, arguments=dict(b.input))
        for b in message.content if b.type == 'tool_use'
    )
    return LLMReply(text=text, proposed_changes=changes)


class AnthropicDesignerLLM:
    def __init__(self, api_key: str, model: str = DEFAULT_MODEL,
                 max_tokens: int = DEFAULT_MAX_TOKENS, timeout: float = 60.0):
        self._client     = AsyncAnthropic(api_key=api_key, max_retries=0, timeout=timeout)
        self._model      = model
        self._max_tokens = max_tokens

    async def complete(self, history: Sequence, itinerary: Itinerary | None) -> LLMReply:
        try:
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=_system_prompt(itinerary),
                messages=_messages(history),
                tools=DESIGNER_TOOLS,
            )
        except anthropic.APIError as exc:
            raise translate_error(exc) from exc
        reply = _reply_from(message)
        logger.info('Designer LLM: %d char(s), %d proposed change(s), usage in=%s out=%s',
                    len(reply.text), len(reply.proposed_changes),
                    message.usage.input_tokens, message.usage.output_tokens)
        return reply

    async def stream(self, history: Sequence, itinerary: Itinerary | None):
        """Yield text deltas as they arrive, then the final LLMReply."""
        try:
            async with self._client.messages.stream(
                model=self._model,
                max_tokens=self._max_tokens,
                system=_system_prompt(itinerary),
                messages=_messages(history),
                tools=DESIGNER_TOOLS,
            ) as stream:
                async for text in stream.text_stream:
                    yield text
                final = await stream.get_final_message()
        except anthropic.APIError as exc:
            raise translate_error(exc) from exc
        yield _reply_from(final)

    async def aclose(self) -> None:
        await self._client.close()


def anthropic_llm_factory(model: str = DEFAULT_MODEL, max_tokens: int = DEFAULT_MAX_TOKENS):
    """Return a credential -> DesignerLLM factory for the credential cache."""
    def _make(credential: str) -> AnthropicDesignerLLM:
        return AnthropicDesignerLLM(api_key=credential, model=model, max_tokens=max_tokens)
    return _make
