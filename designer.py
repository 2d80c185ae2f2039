"""
designer.py — DesignerOrchestrator: the per-credential trip designer service.

One orchestrator exists per credential (see designer_cache.py) and owns one
SessionRegistry. A chat turn:

  1. take the session's lock (turns on one session never interleave)
  2. look the session up in *this* registry (SessionNotFound otherwise) and
     mark it active, so the idle sweep cannot remove it mid-turn
  3. call the LLM with the history + new user turn and the itinerary as context,
     retrying transient upstream failures a bounded number of times
  4. append the user and assistant turns together
  5. apply any proposed itinerary change through ItineraryStore.put, which
     validates it exactly like a direct API write

Nothing is appended until the LLM has answered in full. A failed or cancelled
call (client disconnect mid-stream) leaves the history as it was.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Literal

from starlette.concurrency import run_in_threadpool

from errors import (
    FieldViolation,
    ItineraryValidationError,
    ProposedChangeRejected,
    RecordNotFound,
    UpstreamServiceError,
)
from llm import DesignerLLM, LLMReply, ProposedChange
from retry import with_retries
from schemas import Itinerary
from sessions import ChatTurn, Session, SessionRegistry
from storage import ItineraryStore

logger = logging.getLogger(__name__)

_ITINERARY_FIELDS = ('title', 'description', 'startDate', 'endDate', 'destinations')
_SEGMENT_FIELDS   = ('type', 'status', 'startDatetime', 'endDatetime', 'title', 'location', 'notes')


@dataclass(frozen=True)
class DesignerReply:
    message:           ChatTurn
    itinerary_updated: bool
    itinerary:         Itinerary | None

    def to_dict(self) -> dict:
        return {
            'message':          self.message.to_dict(),
            'itineraryUpdated': self.itinerary_updated,
            'itinerary':        self.itinerary.to_document() if self.itinerary else None,
        }


@dataclass(frozen=True)
class StreamEvent:
    type: Literal['text', 'done']
    data: dict


def _segment_index(doc: dict, segment_id) -> int:
    for i, segment in enumerate(doc['segments']):
        if segment.get('id') == segment_id:
            return i
    raise ItineraryValidationError([
        FieldViolation('segmentId', f'The itinerary has no segment {segment_id!r}',
                       segment_id=str(segment_id)),
    ])


def apply_proposed_changes(itinerary: Itinerary, changes: Sequence[ProposedChange]) -> dict:
    """
    Merge model-proposed changes into a copy of the itinerary document.

    The result is raw and unvalidated; the caller must run it through the store.
    id and createdBy always come from the current record. A change naming a
    segment the itinerary does not have raises ItineraryValidationError.
    """
    doc = itinerary.to_document()
    for change in changes:
        args = change.arguments or {}
        if change.tool == 'update_itinerary':
            for key in _ITINERARY_FIELDS:
                if key in args:
                    doc[key] = args[key]
        elif change.tool == 'add_segment':
            segment = {k: args[k] for k in _SEGMENT_FIELDS if k in args}
            segment['id'] = str(uuid.uuid4())
            doc['segments'].append(segment)
        elif change.tool == 'update_segment':
            updates = args.get('updates')
            if not isinstance(updates, dict):
                updates = {}
            segment = doc['segments'][_segment_index(doc, args.get('segmentId'))]
            segment.update({k: updates[k] for k in _SEGMENT_FIELDS if k in updates})
        elif change.tool == 'delete_segment':
            del doc['segments'][_segment_index(doc, args.get('segmentId'))]
        else:
            logger.warning('Ignoring unknown designer tool call %r', change.tool)

    doc['id']        = itinerary.id
    doc['createdBy'] = itinerary.created_by
    return doc


def _fallback_text(reply: LLMReply) -> str:
    if reply.proposed_changes:
        return 'I have updated the itinerary.'
    return '(no response)'


class DesignerOrchestrator:
    def __init__(self, llm: DesignerLLM, store: ItineraryStore, sessions: SessionRegistry, *,
                 credential_id: str, max_retries: int = 2, retry_delay: float = 1.0):
        self.llm           = llm
        self.store         = store
        self.sessions      = sessions
        self.credential_id = credential_id     # fingerprint, safe to log
        self.max_retries   = max_retries
        self.retry_delay   = retry_delay

    # ── Session lifecycle ─────────────────────────────────────────────────────

    def start_session(self, itinerary_ref: str) -> str:
        return self.sessions.create(itinerary_ref)

    def get_session(self, session_id: str) -> Session:
        return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> None:
        self.sessions.delete(session_id)

    def stats(self) -> dict:
        return {
            'activeSessions':  len(self.sessions),
            'evictedSessions': self.sessions.evicted_total,
        }

    async def aclose(self) -> None:
        close = getattr(self.llm, 'aclose', None)
        if close is not None:
            await close()

    # ── Chat ──────────────────────────────────────────────────────────────────

    async def _load_itinerary(self, itinerary_ref: str) -> Itinerary | None:
        try:
            return await run_in_threadpool(self.store.get, itinerary_ref)
        except RecordNotFound:
            logger.warning('Designer[%s]: itinerary %s is gone; continuing without context',
                           self.credential_id, itinerary_ref)
            return None

    async def _apply(self, itinerary: Itinerary | None, reply: LLMReply,
                     assistant_turn: ChatTurn) -> Itinerary | None:
        if not reply.proposed_changes:
            return None
        if itinerary is None:
            logger.warning('Designer[%s]: dropping %d proposed change(s), no itinerary loaded',
                           self.credential_id, len(reply.proposed_changes))
            return None

        try:
            doc     = apply_proposed_changes(itinerary, reply.proposed_changes)
            updated = await run_in_threadpool(self.store.put, doc, expected_owner=itinerary.created_by)
        except ItineraryValidationError as exc:
            logger.warning('Designer[%s]: proposed change to %s rejected: %s',
                           self.credential_id, itinerary.id, exc.fields)
            raise ProposedChangeRejected(exc.violations, assistant_turn) from exc
        except RecordNotFound:
            logger.warning('Designer[%s]: itinerary %s was deleted during the turn; change dropped',
                           self.credential_id, itinerary.id)
            return None
        logger.info('Designer[%s]: applied %d change(s) to itinerary %s',
                    self.credential_id, len(reply.proposed_changes), itinerary.id)
        return updated

    async def _commit(self, session: Session, user_turn: ChatTurn, reply: LLMReply,
                      itinerary: Itinerary | None) -> DesignerReply:
        assistant_turn = ChatTurn('assistant', reply.text or _fallback_text(reply), self.sessions.now())
        self.sessions.extend(session.id, (user_turn, assistant_turn))
        updated = await self._apply(itinerary, reply, assistant_turn)
        return DesignerReply(
            message           = assistant_turn,
            itinerary_updated = updated is not None,
            itinerary         = updated or itinerary,
        )

    async def send_message(self, session_id: str, content: str) -> DesignerReply:
        self.sessions.get(session_id)   # fail fast; don't create a lock for unknown ids

        async with self.sessions.session_lock(session_id):
            session   = self.sessions.touch(session_id)
            user_turn = ChatTurn('user', content, self.sessions.now())
            itinerary = await self._load_itinerary(session.itinerary_ref)
            history   = session.history + (user_turn,)

            reply = await with_retries(
                lambda: self.llm.complete(history, itinerary),
                max_retries=self.max_retries,
                base_delay=self.retry_delay,
                label=f'Designer[{self.credential_id}]',
            )
            return await self._commit(session, user_turn, reply, itinerary)

    async def stream_message(self, session_id: str, content: str) -> AsyncIterator[StreamEvent]:
        """
        Stream the assistant's answer as text events, then one 'done' event.

        A transient upstream failure is retried only while nothing has been
        streamed yet; once text has reached the client, failures surface.
        """
        self.sessions.get(session_id)

        async with self.sessions.session_lock(session_id):
            session   = self.sessions.touch(session_id)
            user_turn = ChatTurn('user', content, self.sessions.now())
            itinerary = await self._load_itinerary(session.itinerary_ref)
            history   = session.history + (user_turn,)

            reply   = None
            attempt = 0
            while reply is None:
                emitted = False
                try:
                    async with aclosing(self.llm.stream(history, itinerary)) as upstream:
                        async for item in upstream:
                            if isinstance(item, LLMReply):
                                reply = item
                            else:
                                emitted = True
                                yield StreamEvent('text', {'content': item})
                except UpstreamServiceError as exc:
                    if emitted or not exc.retryable or attempt >= self.max_retries:
                        raise
                    delay = self.retry_delay * (2 ** attempt)
                    attempt += 1
                    logger.warning('Designer[%s]: stream retry %d/%d in %.1fs — %s',
                                   self.credential_id, attempt, self.max_retries, delay, exc)
                    await asyncio.sleep(delay)
                    continue
                if reply is None:
                    raise UpstreamServiceError('LLM stream ended without a final message',
                                               retryable=True)

            result = await self._commit(session, user_turn, reply, itinerary)

        yield StreamEvent('done', result.to_dict())
