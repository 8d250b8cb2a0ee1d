import json

import pytest

from Qsync.authorityClient import AuthorityClient, AuthorityError, generate_signature
from Qsync.models import AuthorityConfig

pytestmark = pytest.mark.django_db


class StubResponse:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code
        self.text = json.dumps(body)

    def json(self):
        return self.body


def reverse_decoder(encrypted, key):
    return encrypted[::-1]


@pytest.fixture
def client():
    AuthorityConfig.objects.create(name='default', base_url='https://authority.test/antreanrs/',
                                   cons_id='1234', secret_key='s3cret', user_key='uk')
    return AuthorityClient()


def test_signature_is_base64_hmac_sha256():
    assert generate_signature('1234', 's3cret', '1700000000') == generate_signature('1234', 's3cret', '1700000000')
    assert generate_signature('1234', 's3cret', '1700000000') != generate_signature('1234', 's3cret', '1700000001')
    assert generate_signature('1234', 's3cret', '1700000000').endswith('=')


def test_registration_is_posted_with_signed_headers(client, monkeypatch):
    sent = {}

    def post(url, json=None, headers=None, timeout=None):
        sent.update(url=url, json=json, headers=headers)
        return StubResponse({'metadata': {'code': 208, 'message': 'Antrean sudah ada'}})

    monkeypatch.setattr(client.session, 'post', post)

    response = client.submit_registration({'kodebooking': 'V1'})

    assert sent['url'] == 'https://authority.test/antreanrs/antrean/add'
    assert sent['headers']['x-cons-id'] == '1234'
    assert sent['headers']['x-signature'] == generate_signature('1234', 's3cret', sent['headers']['x-timestamp'])
    assert response.ok
    assert response.code == 208


def test_unparseable_body_is_not_ok(client, monkeypatch):
    class HtmlResponse(StubResponse):
        def json(self):
            raise ValueError('not json')

    monkeypatch.setattr(client.session, 'post', lambda *args, **kwargs: HtmlResponse({}, status_code=502))

    response = client.submit_milestone_update({'kodebooking': 'V1', 'taskid': 3, 'waktu': 0})

    assert not response.ok
    assert response.http_status == 502


def test_schedule_lookup_returns_plain_list(client, monkeypatch):
    rows = [{'kodedokter': 12345, 'jadwal': '08:00-12:00', 'kapasitaspasien': 20}]
    monkeypatch.setattr(client.session, 'get',
                        lambda *args, **kwargs: StubResponse({'metadata': {'code': 200}, 'response': rows}))

    assert client.get_provider_schedule('ANA', '2026-01-24') == rows


def test_encrypted_schedule_is_decoded_with_configured_decoder(client, monkeypatch, settings):
    settings.QSYNC_AUTHORITY_RESPONSE_DECODER = 'tests.test_authority_client.reverse_decoder'
    rows = [{'kodedokter': 12345, 'jadwal': '08:00-12:00'}]
    encrypted = json.dumps(rows)[::-1]
    monkeypatch.setattr(client.session, 'get',
                        lambda *args, **kwargs: StubResponse({'metadata': {'code': 200}, 'response': encrypted}))

    assert client.get_provider_schedule('ANA', '2026-01-24') == rows


def test_schedule_lookup_rejects_non_200(client, monkeypatch):
    monkeypatch.setattr(client.session, 'get', lambda *args, **kwargs: StubResponse(
        {'metadata': {'code': 201, 'message': 'Tidak ada jadwal'}}))

    with pytest.raises(AuthorityError) as excinfo:
        client.get_provider_schedule('ANA', '2026-01-24')
    assert excinfo.value.code == 201


def test_missing_base_url_is_a_configuration_error(settings):
    settings.AUTHORITY_BASE_URL = ''

    with pytest.raises(ValueError):
        AuthorityClient()
