"""
itineraries.py — Itinerary persistence router for Itinerizer (FastAPI)

Routes (all require an identity):
  GET    /api/v1/itineraries        — the caller's itineraries + excluded diagnostics
  POST   /api/v1/itineraries        — create; server assigns id and createdBy
  GET    /api/v1/itineraries/{id}   — one itinerary (owner only, unless cross-owner reads)
  PUT    /api/v1/itineraries/{id}   — full replace, re-validated (owner only)
  DELETE /api/v1/itineraries/{id}   — hard delete (owner only)

Another owner's itinerary is reported as 404, never 403, so its existence is
never revealed. Bodies are taken as raw JSON and validated by the store,
which returns every violated field at once. Replace and delete check
ownership inside the store, under the record lock.
"""

import logging
import uuid

from fastapi import APIRouter, Body, Depends, HTTPException, Response
from starlette.concurrency import run_in_threadpool

from auth import require_identity
from container import ServiceContainer, get_container
from errors import FieldViolation, ItineraryValidationError, RecordNotFound

logger = logging.getLogger(__name__)

itineraries_router = APIRouter(prefix='/api/v1/itineraries', tags=['itineraries'])


# ── Helpers ───────────────────────────────────────────────────────────────────

def _require_object(body) -> dict:
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail='Request body must be a JSON object')
    return dict(body)


def _owned_or_404(container: ServiceContainer, itinerary_id: str, identity: str) -> None:
    """Raise RecordNotFound unless identity owns the record."""
    if container.store.owner_of(itinerary_id) != identity:
        raise RecordNotFound(itinerary_id)


def visible_itinerary(container: ServiceContainer, itinerary_id: str, identity: str):
    if not container.settings.allow_cross_owner_reads:
        _owned_or_404(container, itinerary_id, identity)
    return container.store.get(itinerary_id)


# ── Routes ────────────────────────────────────────────────────────────────────

@itineraries_router.get('')
async def list_itineraries(
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    """GET /api/v1/itineraries — only the caller's records, plus what was excluded and why."""
    result = await run_in_threadpool(container.store.list_by_owner, identity)
    return {
        'itineraries': [i.to_document() for i in result.itineraries],
        'excluded':    [d.to_dict() for d in result.excluded],
    }


@itineraries_router.post('', status_code=201)
async def create_itinerary(
    body: dict = Body(...),
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    doc = _require_object(body)
    if doc.get('createdBy') is not None:
        raise ItineraryValidationError(
            [FieldViolation('createdBy', 'createdBy is assigned by the server and must not be sent')]
        )
    doc['id']        = str(uuid.uuid4())
    doc['createdBy'] = identity

    itinerary = await run_in_threadpool(container.store.put, doc)
    logger.info("Itinerary created via API: id=%s by %s", itinerary.id, identity)
    return {'itinerary': itinerary.to_document()}


@itineraries_router.get('/{itinerary_id}')
async def get_itinerary(
    itinerary_id: str,
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    itinerary = await run_in_threadpool(visible_itinerary, container, itinerary_id, identity)
    return {'itinerary': itinerary.to_document()}


@itineraries_router.put('/{itinerary_id}')
async def replace_itinerary(
    itinerary_id: str,
    body: dict = Body(...),
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    """PUT /api/v1/itineraries/{id} — full replace. id and createdBy cannot be changed."""
    doc = _require_object(body)
    if doc.get('createdBy') is not None and str(doc['createdBy']).strip().lower() != identity:
        raise ItineraryValidationError(
            [FieldViolation('createdBy', 'createdBy cannot be changed')]
        )

    doc['id']        = itinerary_id
    doc['createdBy'] = identity
    itinerary = await run_in_threadpool(container.store.put, doc, expected_owner=identity)
    logger.info("Itinerary replaced via API: id=%s by %s", itinerary.id, identity)
    return {'itinerary': itinerary.to_document()}


@itineraries_router.delete('/{itinerary_id}', status_code=204)
async def delete_itinerary(
    itinerary_id: str,
    identity: str = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    await run_in_threadpool(container.store.delete, itinerary_id, expected_owner=identity)
    logger.info("Itinerary deleted via API: id=%s by %s", itinerary_id, identity)
    return Response(status_code=204)
