"""
HTTP tests for app.py routers through FastAPI's TestClient.

Identity comes from the X-User-Email header (ALLOW_IDENTITY_HEADER, on outside
production) or the login cookie; the designer credential from X-Anthropic-API-Key.
"""
import json
import uuid

from conftest import insert_raw_record, make_itinerary, transient_failure
from llm import LLMReply, ProposedChange

ALICE = {'X-User-Email': 'alice@example.com'}
BOB   = {'X-User-Email': 'bob@x.com'}


def _new_doc(**overrides):
    doc = make_itinerary(**overrides)
    del doc['id']
    del doc['createdBy']
    return doc


def _create(client, headers=ALICE, **overrides):
    resp = client.post('/api/v1/itineraries', json=_new_doc(**overrides), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()['itinerary']


def _designer_headers(identity=ALICE, key='key-A'):
    return {**identity, 'X-Anthropic-API-Key': key}


def _sse_events(body: str):
    events = []
    for block in body.strip().split('\n\n'):
        lines = dict(line.split(': ', 1) for line in block.splitlines())
        events.append((lines['event'], json.loads(lines['data'])))
    return events


class TestItineraries:
    def test_create_stamps_owner_and_id(self, client):
        created = _create(client)
        assert created['createdBy'] == 'alice@example.com'
        uuid.UUID(created['id'])

    def test_client_supplied_created_by_rejected(self, client):
        doc = dict(_new_doc(), createdBy='mallory@evil.com')
        resp = client.post('/api/v1/itineraries', json=doc, headers=ALICE)
        assert resp.status_code == 422
        assert resp.json()['violations'][0]['field'] == 'createdBy'

    def test_invalid_document_lists_every_violation(self, client):
        doc = _new_doc(startDate='2025-02-10', endDate='2025-02-01', segments=[{
            'id': 'seg-1', 'type': 'TRANSFER',
            'startDatetime': '2021-04-09T00:29:00Z', 'endDatetime': '2021-04-08T23:45:00Z',
        }])
        resp = client.post('/api/v1/itineraries', json=doc, headers=ALICE)

        assert resp.status_code == 422
        body = resp.json()
        assert 'error' in body
        assert {v['field'] for v in body['violations']} == {'endDate', 'segments[0].endDatetime'}
        assert any(v.get('segmentId') == 'seg-1' for v in body['violations'])

    def test_anonymous_rejected(self, client):
        resp = client.get('/api/v1/itineraries')
        assert resp.status_code == 401
        assert resp.json() == {'error': 'Authentication required'}

    def test_list_is_scoped_to_owner(self, client):
        _create(client, ALICE)
        _create(client, ALICE)
        _create(client, BOB)

        alice = client.get('/api/v1/itineraries', headers=ALICE).json()
        bob   = client.get('/api/v1/itineraries', headers=BOB).json()

        assert len(alice['itineraries']) == 2
        assert len(bob['itineraries']) == 1
        assert alice['excluded'] == []

    def test_listing_reports_excluded_records(self, client, container):
        _create(client, BOB)
        corrupt_id = str(uuid.uuid4())
        insert_raw_record(container.store._session_factory, corrupt_id, 'bob@x.com', '{oops')

        body = client.get('/api/v1/itineraries', headers=BOB).json()

        assert len(body['itineraries']) == 1
        assert body['excluded'][0]['id'] == corrupt_id
        assert body['excluded'][0]['kind'] == 'corrupt'
        assert client.get('/health').json()['corruptRecords'] == 1

    def test_other_owners_record_is_not_found(self, client):
        created = _create(client, ALICE)
        resp = client.get(f"/api/v1/itineraries/{created['id']}", headers=BOB)
        assert resp.status_code == 404
        assert client.get(f"/api/v1/itineraries/{created['id']}", headers=ALICE).status_code == 200

    def test_cross_owner_reads_when_enabled(self, client, container):
        container.settings.allow_cross_owner_reads = True
        created = _create(client, ALICE)
        assert client.get(f"/api/v1/itineraries/{created['id']}", headers=BOB).status_code == 200

    def test_replace_is_owner_only_and_revalidated(self, client):
        created = _create(client, ALICE)
        url = f"/api/v1/itineraries/{created['id']}"

        assert client.put(url, json=_new_doc(title='Hijack'), headers=BOB).status_code == 404

        resp = client.put(url, json=_new_doc(title='Porto too'), headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()['itinerary']['title'] == 'Porto too'
        assert resp.json()['itinerary']['id'] == created['id']

        bad = client.put(url, json=_new_doc(endDate='2024-01-01'), headers=ALICE)
        assert bad.status_code == 422
        assert client.get(url, headers=ALICE).json()['itinerary']['title'] == 'Porto too'

    def test_delete(self, client):
        created = _create(client, ALICE)
        url = f"/api/v1/itineraries/{created['id']}"
        assert client.delete(url, headers=BOB).status_code == 404
        assert client.delete(url, headers=ALICE).status_code == 204
        assert client.get(url, headers=ALICE).status_code == 404

    def test_replace_after_delete_is_not_found(self, client):
        created = _create(client, ALICE)
        url = f"/api/v1/itineraries/{created['id']}"
        client.delete(url, headers=ALICE)

        assert client.put(url, json=_new_doc(title='Back again'), headers=ALICE).status_code == 404
        assert client.get(url, headers=ALICE).status_code == 404


class TestAuth:
    def test_login_cookie_identifies_caller(self, client):
        resp = client.post('/api/auth/login', json={'email': 'Carol@Example.com'})
        assert resp.status_code == 200
        assert 'itinerizer_session' in resp.cookies

        status = client.get('/api/auth/status').json()
        assert status['authenticated'] is True
        assert status['email'] == 'carol@example.com'

        created = _create(client, headers={})
        assert created['createdBy'] == 'carol@example.com'

    def test_logout(self, client):
        client.post('/api/auth/login', json={'email': 'carol@example.com'})
        client.post('/api/auth/logout')
        client.cookies.clear()
        assert client.get('/api/auth/status').json()['authenticated'] is False

    def test_password_mode(self, client, container):
        from auth import hash_password
        container.settings.auth_mode          = 'password'
        container.settings.auth_password_hash = hash_password('correct horse')

        bad = client.post('/api/auth/login', json={'email': 'a@b.com', 'password': 'nope'})
        ok  = client.post('/api/auth/login', json={'email': 'a@b.com', 'password': 'correct horse'})

        assert bad.status_code == 401
        assert ok.status_code == 200

    def test_identity_header_can_be_disabled(self, client, container):
        container.settings.allow_identity_header = False
        assert client.get('/api/v1/itineraries', headers=ALICE).status_code == 401


class TestDesigner:
    def _session(self, client, key='key-A'):
        itinerary = _create(client)
        resp = client.post('/api/v1/designer/sessions', json={'itineraryId': itinerary['id']},
                           headers=_designer_headers(key=key))
        assert resp.status_code == 201, resp.text
        return resp.json()['sessionId'], itinerary

    def test_session_reachable_with_same_credential_only(self, client):
        sid, _ = self._session(client, key='key-A')

        resp = client.post(f'/api/v1/designer/sessions/{sid}/messages', json={'message': 'hello'},
                           headers=_designer_headers(key='key-A'))
        assert resp.status_code == 200
        assert resp.json()['message']['role'] == 'assistant'

        other = client.get(f'/api/v1/designer/sessions/{sid}', headers=_designer_headers(key='key-B'))
        assert other.status_code == 404

        mine = client.get(f'/api/v1/designer/sessions/{sid}', headers=_designer_headers(key='key-A'))
        assert mine.json()['session']['messageCount'] == 2

    def test_missing_credential(self, client):
        resp = client.post('/api/v1/designer/sessions', json={'itineraryId': 'x'}, headers=ALICE)
        assert resp.status_code == 401

    def test_session_requires_visible_itinerary(self, client):
        itinerary = _create(client, ALICE)
        resp = client.post('/api/v1/designer/sessions', json={'itineraryId': itinerary['id']},
                           headers=_designer_headers(identity=BOB))
        assert resp.status_code == 404

    def test_stream_ends_with_done_marker(self, client, llms):
        sid, _ = self._session(client)
        llms['key-A'].replies = [LLMReply('Try the pastéis de nata')]

        resp = client.post(f'/api/v1/designer/sessions/{sid}/messages/stream',
                           json={'message': 'Food?'}, headers=_designer_headers())

        assert resp.status_code == 200
        assert resp.headers['content-type'].startswith('text/event-stream')
        events = _sse_events(resp.text)
        assert events[0] == ('connected', {'sessionId': sid})
        assert {name for name, _ in events[1:-1]} == {'text'}
        name, done = events[-1]
        assert name == 'done'
        assert done['message']['content'] == 'Try the pastéis de nata'

    def test_stream_unknown_session_is_404(self, client):
        resp = client.post('/api/v1/designer/sessions/nope/messages/stream',
                           json={'message': 'hi'}, headers=_designer_headers())
        assert resp.status_code == 404

    def test_rejected_change_is_422_with_assistant_message(self, client, llms):
        sid, itinerary = self._session(client)
        llms['key-A'].replies = [LLMReply('Dates updated.', (
            ProposedChange('update_itinerary', {'endDate': '2020-01-01'}),
        ))]

        resp = client.post(f'/api/v1/designer/sessions/{sid}/messages', json={'message': 'shorter'},
                           headers=_designer_headers())

        assert resp.status_code == 422
        assert resp.json()['violations'][0]['field'] == 'endDate'
        assert resp.json()['message']['content'] == 'Dates updated.'

    def test_upstream_failure_maps_to_503(self, client, llms):
        sid, _ = self._session(client)
        llms['key-A'].failures = [transient_failure() for _ in range(3)]

        resp = client.post(f'/api/v1/designer/sessions/{sid}/messages', json={'message': 'hi'},
                           headers=_designer_headers())

        assert resp.status_code == 503
        assert resp.json()['retryable'] is True

    def test_empty_message_rejected(self, client):
        sid, _ = self._session(client)
        resp = client.post(f'/api/v1/designer/sessions/{sid}/messages', json={'message': '   '},
                           headers=_designer_headers())
        assert resp.status_code == 422
        assert resp.json()['violations'][0]['field'] == 'message'

    def test_delete_session_and_stats(self, client):
        sid, _ = self._session(client)
        stats = client.get('/api/v1/designer/stats', headers=_designer_headers()).json()
        assert stats['activeSessions'] == 1
        assert stats['cachedDesigners'] == 1

        assert client.delete(f'/api/v1/designer/sessions/{sid}', headers=_designer_headers()).status_code == 200
        assert client.get(f'/api/v1/designer/sessions/{sid}', headers=_designer_headers()).status_code == 404


class FakeImporter:
    async def import_pdf(self, filename, data):
        return _new_doc(title='Imported trip')

    async def aclose(self):
        pass


class TestPdfImport:
    def test_unconfigured_is_503(self, client):
        resp = client.post('/api/v1/agent/import/pdf', headers=ALICE,
                           files={'file': ('trip.pdf', b'%PDF-1.4', 'application/pdf')})
        assert resp.status_code == 503

    def test_import_stores_itinerary_for_caller(self, client, container):
        container.importer = FakeImporter()
        resp = client.post('/api/v1/agent/import/pdf', headers=ALICE,
                           files={'file': ('trip.pdf', b'%PDF-1.4', 'application/pdf')})

        assert resp.status_code == 201
        assert resp.json()['itinerary']['createdBy'] == 'alice@example.com'
        assert resp.json()['itinerary']['title'] == 'Imported trip'

    def test_non_pdf_rejected(self, client, container):
        container.importer = FakeImporter()
        resp = client.post('/api/v1/agent/import/pdf', headers=ALICE,
                           files={'file': ('trip.txt', b'hello', 'text/plain')})
        assert resp.status_code == 400
