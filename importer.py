"""
importer.py — Client for the PDF import collaborator.

The import service turns an uploaded itinerary PDF into an itinerary document.
This module only transports the file and maps transport failures onto
UpstreamServiceError; the route in designer_routes.py validates the result
through ItineraryStore.put like any other write.

  POST {IMPORT_SERVICE_URL}/import/pdf   multipart field 'file'
  → 200 { "itinerary": {...} }  (or the itinerary document itself)
"""

import logging

import httpx

from errors import UpstreamServiceError
from retry import with_retries

logger = logging.getLogger(__name__)

MAX_PDF_BYTES = 50 * 1024 * 1024


class PdfImportClient:
    def __init__(self, base_url: str, *, timeout: float = 120.0, max_retries: int = 2,
                 retry_delay: float = 1.0, http_client: httpx.AsyncClient | None = None):
        self.base_url    = base_url.rstrip('/')
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._owns_client = http_client is None
        self._client     = http_client or httpx.AsyncClient(
            timeout=timeout,
            headers={'User-Agent': 'Itinerizer/1.0'},
        )

    async def _post_once(self, filename: str, data: bytes) -> dict:
        try:
            resp = await self._client.post(
                f'{self.base_url}/import/pdf',
                files={'file': (filename, data, 'application/pdf')},
            )
        except httpx.TimeoutException as exc:
            raise UpstreamServiceError(f'Import service timed out: {exc}', retryable=True) from exc
        except httpx.HTTPError as exc:
            raise UpstreamServiceError(f'Import service unreachable: {exc}', retryable=True) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise UpstreamServiceError(f'Import service error ({resp.status_code})', retryable=True)
        if resp.status_code >= 400:
            raise UpstreamServiceError(
                f'Import service rejected the file ({resp.status_code}): {resp.text[:200]}',
                retryable=False,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamServiceError('Import service returned invalid JSON',
                                       retryable=False) from exc
        document = body.get('itinerary', body) if isinstance(body, dict) else None
        if not isinstance(document, dict):
            raise UpstreamServiceError('Import service returned no itinerary', retryable=False)
        return document

    async def import_pdf(self, filename: str, data: bytes) -> dict:
        """Return the raw (unvalidated) itinerary document extracted from the PDF."""
        logger.info("PDF import: %s (%d bytes)", filename, len(data))
        return await with_retries(
            lambda: self._post_once(filename, data),
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            label='PDF import',
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
