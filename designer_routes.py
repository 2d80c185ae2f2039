"""
designer_routes.py — Trip designer and PDF import routers (FastAPI)

Designer routes resolve the caller's credential (X-Anthropic-API-Key) to one
DesignerOrchestrator through the CredentialServiceCache. Sessions live inside
that orchestrator, so a session id is only meaningful together with the
credential that created it.

  POST   /api/v1/designer/sessions                     — { itineraryId } → 201 { sessionId }
  GET    /api/v1/designer/sessions/{id}                — session details + history
  DELETE /api/v1/designer/sessions/{id}                — end a session
  POST   /api/v1/designer/sessions/{id}/messages       — one chat turn (JSON)
  POST   /api/v1/designer/sessions/{id}/messages/stream — one chat turn (SSE)
  GET    /api/v1/designer/stats                        — cache + session counters

  POST   /api/v1/agent/import/pdf                      — multipart PDF → new itinerary

SSE stream format:
  event: connected   data: {"sessionId": ...}
  event: text        data: {"content": "..."}          (repeated)
  event: done        data: {"message": ..., "itineraryUpdated": ..., "itinerary": ...}
  event: error       data: {"error": "...", ...}        (instead of done, on failure)
"""

import json
import logging
import uuid
from contextlib import aclosing

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from auth import require_credential, require_identity
from container import ServiceContainer, get_container
from designer import DesignerOrchestrator
from designer_cache import credential_fingerprint
from errors import ItinerizerError
from importer import MAX_PDF_BYTES
from itineraries import visible_itinerary
from schemas import MessageRequest, StartSessionRequest

logger = logging.getLogger(__name__)

designer_router = APIRouter(prefix='/api/v1/designer', tags=['designer'])
import_router   = APIRouter(prefix='/api/v1/agent', tags=['import'])


# ── Helpers ───────────────────────────────────────────────────────────────────

def _designer(
    credential: str = Depends(require_credential),
    container: ServiceContainer = Depends(get_container),
) -> DesignerOrchestrator:
    return container.designer_for(credential)


def _check_rate_limit(container: ServiceContainer, credential: str) -> None:
    fingerprint = credential_fingerprint(credential)
    allowed, retry_after = container.rate_limiter.check('designer_message', fingerprint)
    if not allowed:
        logger.warning('Rate limit hit: credential %s designer messages retry_after=%ds',
                       fingerprint, retry_after)
        raise HTTPException(
            status_code=429,
            detail=f'Too many requests. Please wait {retry_after} seconds before trying again.',
            headers={'Retry-After': str(retry_after)},
        )


def _sse(event: str, data: dict) -> str:
    return f'event: {event}\ndata: {json.dumps(data)}\n\n'


# ── Sessions ──────────────────────────────────────────────────────────────────

@designer_router.post('/sessions', status_code=201)
async def start_session(
    body: StartSessionRequest,
    identity: str = Depends(require_identity),
    designer: DesignerOrchestrator = Depends(_designer),
    container: ServiceContainer = Depends(get_container),
):
    itinerary  = await run_in_threadpool(visible_itinerary, container, body.itinerary_id, identity)
    session_id = designer.start_session(itinerary.id)
    logger.info('Designer[%s]: session %s started on itinerary %s by %s',
                designer.credential_id, session_id, itinerary.id, identity)
    return {'sessionId': session_id}


@designer_router.get('/sessions/{session_id}')
async def get_session(
    session_id: str,
    designer: DesignerOrchestrator = Depends(_designer),
):
    return {'session': designer.get_session(session_id).to_dict()}


@designer_router.delete('/sessions/{session_id}')
async def delete_session(
    session_id: str,
    designer: DesignerOrchestrator = Depends(_designer),
):
    designer.delete_session(session_id)
    return {'status': 'ok'}


# ── Chat ──────────────────────────────────────────────────────────────────────

@designer_router.post('/sessions/{session_id}/messages')
async def send_message(
    session_id: str,
    body: MessageRequest,
    credential: str = Depends(require_credential),
    designer: DesignerOrchestrator = Depends(_designer),
    container: ServiceContainer = Depends(get_container),
):
    designer.get_session(session_id)
    _check_rate_limit(container, credential)
    reply = await designer.send_message(session_id, body.message)
    return reply.to_dict()


@designer_router.post('/sessions/{session_id}/messages/stream')
async def stream_message(
    session_id: str,
    body: MessageRequest,
    request: Request,
    credential: str = Depends(require_credential),
    designer: DesignerOrchestrator = Depends(_designer),
    container: ServiceContainer = Depends(get_container),
):
    """
    Server-Sent Events variant of send_message.

    Unknown sessions and rate limits fail as plain HTTP errors before the
    stream opens. Once open, failures arrive as an 'error' event.
    """
    designer.get_session(session_id)
    _check_rate_limit(container, credential)

    async def _events():
        yield _sse('connected', {'sessionId': session_id})
        try:
            async with aclosing(designer.stream_message(session_id, body.message)) as events:
                async for event in events:
                    if await request.is_disconnected():
                        logger.info('Designer[%s]: client left session %s mid-stream',
                                    designer.credential_id, session_id)
                        return
                    yield _sse(event.type, event.data)
        except ItinerizerError as exc:
            logger.warning('Designer[%s]: stream for session %s failed: %s',
                           designer.credential_id, session_id, exc.message)
            yield _sse('error', {'error': exc.message, 'status': exc.status_code, **exc.extra()})

    return StreamingResponse(
        _events(),
        media_type='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )


@designer_router.get('/stats')
async def designer_stats(
    credential: str = Depends(require_credential),
    container: ServiceContainer = Depends(get_container),
):
    designer = container.designers.peek(credential)
    stats    = designer.stats() if designer else {'activeSessions': 0, 'evictedSessions': 0}
    return {
        'cachedDesigners':   len(container.designers),
        'evictedDesigners':  container.designers.evictions,
        **stats,
    }


# ── PDF import ────────────────────────────────────────────────────────────────

@import_router.post('/import/pdf', status_code=201)
async def import_pdf(
    file: UploadFile = File(...),
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    """POST /api/v1/agent/import/pdf — extract an itinerary from a PDF and store it."""
    if container.importer is None:
        raise HTTPException(status_code=503, detail='PDF import is not configured')
    if file.content_type != 'application/pdf':
        raise HTTPException(status_code=400, detail='File must be a PDF (application/pdf)')

    data = await file.read(MAX_PDF_BYTES + 1)
    if not data:
        raise HTTPException(status_code=400, detail='Uploaded file is empty')
    if len(data) > MAX_PDF_BYTES:
        raise HTTPException(status_code=413, detail='PDF exceeds the 50 MB limit')

    doc = await container.importer.import_pdf(file.filename or 'upload.pdf', data)
    doc['id']        = str(uuid.uuid4())
    doc['createdBy'] = identity

    itinerary = await run_in_threadpool(container.store.put, doc)
    logger.info('PDF import stored: id=%s from %s by %s', itinerary.id, file.filename, identity)
    return {'itinerary': itinerary.to_document()}
