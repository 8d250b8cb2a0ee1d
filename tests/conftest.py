from datetime import date, datetime, time

import pytest
from django.conf import settings
from django.core.cache import caches
from django.db import connections

from core.celery import app as celery_app
from Qsync.authorityClient import AuthorityResponse
from Qsync.milestones import Milestone, ProgressMap, ProgressStatus
from Qsync.models import ScheduleSnapshot, Visit

HIS_TABLES = [
    """
    CREATE TABLE reg_periksa (
        no_reg VARCHAR(8),
        no_rawat VARCHAR(17) PRIMARY KEY,
        tgl_registrasi DATE,
        jam_reg TIME,
        kd_dokter VARCHAR(20),
        no_rkm_medis VARCHAR(15),
        kd_poli VARCHAR(5),
        kd_pj VARCHAR(3),
        status_poli VARCHAR(10),
        jenis_kunjungan VARCHAR(2),
        task_id_3 DATETIME,
        task_id_4 DATETIME,
        task_id_5 DATETIME,
        task_id_6 DATETIME,
        task_id_7 DATETIME
    )
    """,
    """
    CREATE TABLE jadwal (
        kd_dokter VARCHAR(20),
        hari_kerja VARCHAR(8),
        jam_mulai TIME,
        jam_selesai TIME,
        kd_poli VARCHAR(5),
        kuota INTEGER
    )
    """,
    """
    CREATE TABLE maping_poli_bpjs (
        kd_poli_rs VARCHAR(5) PRIMARY KEY,
        kd_poli_bpjs VARCHAR(15),
        nm_poli_bpjs VARCHAR(40)
    )
    """,
    """
    CREATE TABLE maping_dokter_dpjpvclaim (
        kd_dokter VARCHAR(20) PRIMARY KEY,
        kd_dokter_bpjs VARCHAR(20),
        nm_dokter_bpjs VARCHAR(50)
    )
    """,
    """
    CREATE TABLE pasien (
        no_rkm_medis VARCHAR(15) PRIMARY KEY,
        no_ktp VARCHAR(20),
        no_peserta VARCHAR(25),
        no_tlp VARCHAR(40)
    )
    """,
]

CLINIC = 'ANA'
PROVIDER = '12345'


class HisDatabase:
    """Seeds the legacy HIS tables used by the pollers"""

    def __init__(self, connection):
        self.connection = connection

    def execute(self, sql, params=None):
        with self.connection.cursor() as cursor:
            cursor.execute(sql, params or [])

    def add_clinic(self, his_code='ANA-RS', authority_code=CLINIC, name='Anak'):
        self.execute("INSERT INTO maping_poli_bpjs VALUES (%s, %s, %s)", [his_code, authority_code, name])

    def add_provider(self, his_code='D001', authority_code=PROVIDER, name='dr. Sari'):
        self.execute("INSERT INTO maping_dokter_dpjpvclaim VALUES (%s, %s, %s)", [his_code, authority_code, name])

    def add_schedule(self, weekday, start='08:00:00', end='12:00:00', quota=30,
                     his_provider='D001', his_clinic='ANA-RS'):
        self.execute("INSERT INTO jadwal VALUES (%s, %s, %s, %s, %s, %s)",
                     [his_provider, weekday, start, end, his_clinic, quota])

    def add_registration(self, no_rawat, visit_date, reg_time, no_reg='001', his_provider='D001',
                         his_clinic='ANA-RS', payer='BPJ', visit_type='1', status_poli='Lama',
                         medical_record_no='000123'):
        self.execute(
            "INSERT INTO reg_periksa (no_reg, no_rawat, tgl_registrasi, jam_reg, kd_dokter, no_rkm_medis, "
            "kd_poli, kd_pj, status_poli, jenis_kunjungan) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            [no_reg, no_rawat, str(visit_date), reg_time, his_provider, medical_record_no,
             his_clinic, payer, status_poli, visit_type],
        )

    def set_milestone(self, no_rawat, milestone, value):
        column = f"task_id_{int(milestone)}"
        self.execute(f"UPDATE reg_periksa SET {column} = %s WHERE no_rawat = %s", [str(value), no_rawat])


@pytest.fixture(autouse=True)
def qsync_cache(settings):
    settings.CACHES = {
        **settings.CACHES,
        'qsync': {'BACKEND': 'django.core.cache.backends.locmem.LocMemCache', 'LOCATION': 'qsync-tests'},
    }
    caches['qsync'].clear()
    yield caches['qsync']
    caches['qsync'].clear()


@pytest.fixture(autouse=True)
def eager_celery():
    celery_app.conf.CELERY_TASK_ALWAYS_EAGER = True
    yield celery_app
    celery_app.conf.CELERY_TASK_ALWAYS_EAGER = settings.CELERY_TASK_ALWAYS_EAGER


@pytest.fixture
def his():
    connection = connections[settings.HIS_DATABASE_ALIAS]
    with connection.cursor() as cursor:
        for ddl in HIS_TABLES:
            cursor.execute(ddl)
    return HisDatabase(connection)


class FakeAuthorityClient:
    """Records calls and answers with queued metadata codes"""

    def __init__(self, codes=(200,), schedule=None, error=None, schedule_error=None):
        self.codes = list(codes)
        self.schedule = schedule or []
        self.error = error
        self.schedule_error = schedule_error
        self.calls = []
        self.schedule_calls = []

    def _respond(self, endpoint, payload):
        self.calls.append((endpoint, payload))
        if self.error is not None:
            raise self.error
        code = self.codes.pop(0) if len(self.codes) > 1 else self.codes[0]
        return AuthorityResponse(
            endpoint=endpoint,
            http_status=200,
            body={'metadata': {'code': code, 'message': 'Ok' if code == 200 else 'Ditolak'}},
        )

    def submit_registration(self, payload):
        return self._respond('/antrean/add', payload)

    def submit_milestone_update(self, payload):
        return self._respond('/antrean/updatewaktu', payload)

    def get_provider_schedule(self, clinic_id, schedule_date):
        self.schedule_calls.append((clinic_id, schedule_date))
        if self.schedule_error is not None:
            raise self.schedule_error
        return self.schedule


@pytest.fixture
def fake_authority():
    return FakeAuthorityClient()


@pytest.fixture
def make_snapshot():
    def _make(schedule_date, clinic_id=CLINIC, provider_id=PROVIDER, start='08:00', end='12:00', quota=30,
              source=ScheduleSnapshot.SOURCE_AUTHORITY_SYNC):
        return ScheduleSnapshot.objects.create(
            clinic_id=clinic_id,
            provider_id=provider_id,
            schedule_date=schedule_date,
            start_time=start,
            end_time=end,
            quota=quota,
            clinic_name='Anak',
            provider_name='dr. Sari',
            source=source,
        )
    return _make


@pytest.fixture
def make_visit():
    def _make(visit_id='2026/01/24/000001', visit_date=None, progress=None, status=ProgressStatus.READY,
              practice_hours='08:00-12:00', provider_id=PROVIDER):
        visit_date = visit_date or date.today()
        registered_at = datetime.combine(visit_date, time(7, 30))
        progress_map = ProgressMap()
        progress_map.apply(Milestone.REGISTER, ProgressStatus.READY, event_at=registered_at)
        for milestone, entry_status in (progress or {}).items():
            if milestone == Milestone.REGISTER:
                if entry_status == ProgressStatus.SENT:
                    progress_map.apply(Milestone.REGISTER, ProgressStatus.SENT)
                continue
            progress_map.apply(milestone, ProgressStatus.DRAFT,
                               event_at=datetime.combine(visit_date, time(8, int(milestone))))
            if entry_status == ProgressStatus.SENT:
                progress_map.apply(milestone, ProgressStatus.SENT)
        register_status = progress_map.status(Milestone.REGISTER)
        if status == ProgressStatus.BLOCKED:
            progress_map.apply(Milestone.REGISTER, ProgressStatus.BLOCKED, reason='No schedule')
            register_status = ProgressStatus.BLOCKED

        return Visit.objects.create(
            visit_id=visit_id,
            clinic_id=CLINIC,
            provider_id=provider_id,
            visit_date=visit_date,
            registered_at=registered_at,
            queue_number='A-001',
            queue_sequence=1,
            medical_record_no='000123',
            visit_type=1,
            task_progress=progress_map.to_json(),
            payload_snapshot={
                'clinic_name': 'Anak',
                'provider_name': 'dr. Sari',
                'patient': {'nik': '3201', 'card_no': '0001', 'phone': '0812', 'is_new': False},
                'quota': {
                    'practice_hours': practice_hours,
                    'capacity': 30,
                    'remaining': 29,
                    'non_insured_capacity': 9,
                    'non_insured_remaining': 8,
                    'estimated_service_ms': 0,
                    'is_fallback': False,
                },
            },
            status=register_status.value,
            blocked_reason='No schedule' if register_status == ProgressStatus.BLOCKED else None,
        )
    return _make
