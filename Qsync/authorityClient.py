import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from django.utils.module_loading import import_string

from .models import AuthorityConfig
from .timeUtils import to_date

logger = logging.getLogger(__name__)

REGISTRATION_ENDPOINT = '/antrean/add'
MILESTONE_UPDATE_ENDPOINT = '/antrean/updatewaktu'
SCHEDULE_ENDPOINT = '/jadwaldokter/kodepoli/{clinic}/tanggal/{date}'

# 208 is the authority's "already exists" answer to a resubmission
SUCCESS_CODES = (200, 208)


class AuthorityError(Exception):
    """The authority answered, but not with a success code"""

    def __init__(self, message, code=None, http_status=None, body=None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.body = body


@dataclass
class AuthorityResponse:
    endpoint: str
    http_status: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def code(self) -> Optional[int]:
        metadata = self.body.get('metadata') or {}
        try:
            return int(metadata.get('code'))
        except (TypeError, ValueError):
            return None

    @property
    def message(self) -> str:
        return (self.body.get('metadata') or {}).get('message') or ''

    @property
    def ok(self) -> bool:
        return self.code in SUCCESS_CODES


def generate_signature(cons_id: str, secret_key: str, timestamp: str) -> str:
    digest = hmac.new(secret_key.encode(), f"{cons_id}&{timestamp}".encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class AuthorityClient:
    """HTTP client for the insurance authority queue API"""

    def __init__(self, config_name: str = 'default'):
        try:
            self.config = AuthorityConfig.objects.get(name=config_name, is_active=True)
            self.base_url = self.config.base_url or settings.AUTHORITY_BASE_URL
            self.cons_id = self.config.cons_id or settings.AUTHORITY_CONS_ID
            self.secret_key = self.config.secret_key or settings.AUTHORITY_SECRET_KEY
            self.user_key = self.config.user_key or settings.AUTHORITY_USER_KEY
            self.timeout = self.config.timeout
        except AuthorityConfig.DoesNotExist:
            self.config = None
            self.base_url = settings.AUTHORITY_BASE_URL
            self.cons_id = settings.AUTHORITY_CONS_ID
            self.secret_key = settings.AUTHORITY_SECRET_KEY
            self.user_key = settings.AUTHORITY_USER_KEY
            self.timeout = settings.AUTHORITY_TIMEOUT

        if not self.base_url:
            raise ValueError("Authority API URL not configured in settings or database")
        self.base_url = self.base_url.rstrip('/')

        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })

    def _signed_headers(self, timestamp: str) -> Dict[str, str]:
        return {
            'x-cons-id': self.cons_id,
            'x-timestamp': timestamp,
            'x-signature': generate_signature(self.cons_id, self.secret_key, timestamp),
            'user_key': self.user_key,
        }

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> AuthorityResponse:
        timestamp = str(int(time.time()))
        response = self.session.post(
            f"{self.base_url}{endpoint}",
            json=payload,
            headers=self._signed_headers(timestamp),
            timeout=self.timeout,
        )
        return AuthorityResponse(endpoint=endpoint, http_status=response.status_code,
                                 body=self._parse_body(response))

    @staticmethod
    def _parse_body(response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {'raw': response.text[:500]}
        return body if isinstance(body, dict) else {'response': body}

    def submit_registration(self, payload: Dict[str, Any]) -> AuthorityResponse:
        """Register a visit's queue entry (milestone 1)"""
        return self._post(REGISTRATION_ENDPOINT, payload)

    def submit_milestone_update(self, payload: Dict[str, Any]) -> AuthorityResponse:
        """Report that a visit reached a later milestone"""
        return self._post(MILESTONE_UPDATE_ENDPOINT, payload)

    def get_provider_schedule(self, clinic_id: str, schedule_date) -> List[Dict[str, Any]]:
        """
        Fetch the practice schedules of every provider of a clinic on one date.

        Returns:
            list of dicts with kodedokter, namadokter, kodepoli, namapoli,
            jadwal ("HH:MM-HH:MM") and kapasitaspasien
        Raises:
            AuthorityError if the authority does not answer with code 200
            requests.exceptions.RequestException on connectivity errors
        """
        endpoint = SCHEDULE_ENDPOINT.format(clinic=clinic_id, date=to_date(schedule_date).isoformat())
        timestamp = str(int(time.time()))
        response = self.session.get(
            f"{self.base_url}{endpoint}",
            headers=self._signed_headers(timestamp),
            timeout=self.timeout,
        )
        result = AuthorityResponse(endpoint=endpoint, http_status=response.status_code,
                                   body=self._parse_body(response))
        if result.code != 200:
            raise AuthorityError(
                f"Schedule lookup for {clinic_id} returned code {result.code}: {result.message}",
                code=result.code, http_status=result.http_status, body=result.body,
            )

        data = result.body.get('response')
        if isinstance(data, str):
            data = self._decode_response(data, timestamp)
        if isinstance(data, dict):
            data = data.get('list', [data])
        return data or []

    def _decode_response(self, encrypted: str, timestamp: str):
        decoder_path = settings.QSYNC_AUTHORITY_RESPONSE_DECODER
        if not decoder_path:
            raise AuthorityError("Authority response is encrypted and no response decoder is configured")
        decoder = import_string(decoder_path)
        return json.loads(decoder(encrypted, f"{self.cons_id}{self.secret_key}{timestamp}"))

    def check_server_availability(self) -> Dict[str, Any]:
        """Check whether the authority API answers at all"""
        try:
            response = self.session.get(self.base_url, timeout=self.timeout)
            return {
                'available': response.status_code < 500,
                'status': f'HTTP {response.status_code}',
            }
        except requests.exceptions.RequestException as e:
            return {
                'available': False,
                'status': f'Connection error: {str(e)}',
            }
