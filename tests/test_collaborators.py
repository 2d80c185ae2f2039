"""
Unit tests for the upstream collaborators and supporting pieces:
llm.translate_error, importer.PdfImportClient, retry.with_retries,
auth.RateLimiter and ServiceContainer (sweep, closing evicted designers).
"""
import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from auth import RateLimiter
from conftest import FakeDesignerLLM
from container import build_container
from errors import UpstreamServiceError
from importer import PdfImportClient
from llm import _reply_from, translate_error
from retry import with_retries

_REQ = httpx.Request('POST', 'https://api.anthropic.com/v1/messages')


def _status_error(cls, status, headers=None):
    return cls('upstream said no', response=httpx.Response(status, headers=headers, request=_REQ), body=None)


class TestTranslateError:
    def test_connection_error_is_retryable(self):
        err = translate_error(anthropic.APIConnectionError(request=_REQ))
        assert err.retryable
        assert err.status_code == 503

    def test_bad_credential_is_401_not_retryable(self):
        err = translate_error(_status_error(anthropic.AuthenticationError, 401))
        assert not err.retryable
        assert err.status_code == 401

    def test_rate_limit_carries_retry_after(self):
        err = translate_error(_status_error(anthropic.RateLimitError, 429, {'retry-after': '7'}))
        assert err.retryable
        assert err.retry_after == 7
        assert err.headers() == {'Retry-After': '7'}

    def test_server_error_is_retryable(self):
        err = translate_error(_status_error(anthropic.InternalServerError, 500))
        assert err.retryable

    def test_bad_request_is_502(self):
        err = translate_error(_status_error(anthropic.BadRequestError, 400))
        assert not err.retryable
        assert err.status_code == 502


def test_reply_from_collects_text_and_tool_calls():
    message = SimpleNamespace(content=[
        SimpleNamespace(type='text', text='Booked. '),
        SimpleNamespace(type='tool_use', name='add_segment', input={'type': 'HOTEL'}),
        SimpleNamespace(type='text', text='Anything else?'),
    ])
    reply = _reply_from(message)
    assert reply.text == 'Booked. Anything else?'
    assert [(c.tool, c.arguments) for c in reply.proposed_changes] == [('add_segment', {'type': 'HOTEL'})]


class TestWithRetries:
    def test_non_retryable_raised_immediately(self):
        calls = []

        async def call():
            calls.append(1)
            raise UpstreamServiceError('nope', retryable=False)

        with pytest.raises(UpstreamServiceError):
            asyncio.run(with_retries(call, max_retries=3, base_delay=0, label='test'))
        assert len(calls) == 1

    def test_other_exceptions_not_retried(self):
        calls = []

        async def call():
            calls.append(1)
            raise KeyError('bug')

        with pytest.raises(KeyError):
            asyncio.run(with_retries(call, max_retries=3, base_delay=0, label='test'))
        assert len(calls) == 1


class TestPdfImportClient:
    def _client(self, handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PdfImportClient('http://import.local', http_client=http, retry_delay=0)

    def test_posts_multipart_and_unwraps_itinerary(self):
        seen = {}

        def handler(request):
            seen['url']  = str(request.url)
            seen['body'] = request.read()
            return httpx.Response(200, json={'itinerary': {'title': 'From PDF'}})

        doc = asyncio.run(self._client(handler).import_pdf('trip.pdf', b'%PDF-1.4 data'))

        assert doc == {'title': 'From PDF'}
        assert seen['url'] == 'http://import.local/import/pdf'
        assert b'%PDF-1.4 data' in seen['body']

    def test_server_errors_retried_then_surfaced(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(502)

        with pytest.raises(UpstreamServiceError) as exc:
            asyncio.run(self._client(handler).import_pdf('trip.pdf', b'%PDF'))
        assert exc.value.retryable
        assert len(attempts) == 3

    def test_client_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(415, text='not a pdf')

        with pytest.raises(UpstreamServiceError) as exc:
            asyncio.run(self._client(handler).import_pdf('trip.pdf', b'%PDF'))
        assert not exc.value.retryable
        assert len(attempts) == 1


class TestRateLimiter:
    def test_in_memory_window(self):
        now     = [1000.0]
        limiter = RateLimiter(rules={'chat': (2, 60)}, clock=lambda: now[0])

        assert limiter.check('chat', 'fp') == (True, 0)
        assert limiter.check('chat', 'fp') == (True, 0)
        allowed, retry_after = limiter.check('chat', 'fp')
        assert not allowed
        assert retry_after == 61

        now[0] += 61
        assert limiter.check('chat', 'fp')[0] is True

    def test_subjects_are_independent(self):
        limiter = RateLimiter(rules={'chat': (1, 60)})
        assert limiter.check('chat', 'a')[0]
        assert limiter.check('chat', 'b')[0]

    def test_failures_only_counted_when_recorded(self):
        limiter = RateLimiter(rules={'login': (2, 300)})
        assert not limiter.is_blocked('login', '1.2.3.4')
        limiter.record('login', '1.2.3.4')
        limiter.record('login', '1.2.3.4')
        assert limiter.is_blocked('login', '1.2.3.4')

    def test_unknown_bucket_allowed(self):
        assert RateLimiter(rules={}).check('anything', 'x') == (True, 0)


def test_container_sweep_evicts_idle_sessions(settings, clock):
    container = build_container(settings, llm_factory=lambda c: FakeDesignerLLM(), session_clock=clock)
    designer  = container.designer_for('key-A')
    designer.start_session('itin-1')
    clock.advance(container.settings.session_idle_seconds + 1)

    result = container.sweep()

    assert result == {'services': 0, 'sessions': 1}
    assert designer.stats()['evictedSessions'] == 1


def test_evicted_designers_are_closed(settings, llms):
    settings.designer_cache_max_entries = 1

    def _factory(credential):
        llms[credential] = FakeDesignerLLM()
        return llms[credential]

    container = build_container(settings, llm_factory=_factory)
    container.designer_for('key-A')
    container.designer_for('key-B')

    assert asyncio.run(container.close_evicted()) == 1
    assert llms['key-A'].closed is True
    assert llms['key-B'].closed is False

    asyncio.run(container.aclose())
    assert llms['key-B'].closed is True
