import logging
from typing import Any, Dict, List

from django.conf import settings
from django.db import connections

from .milestones import Milestone
from .timeUtils import format_cursor, his_weekday_name, to_date

logger = logging.getLogger(__name__)

# Milestones that have their own timestamp column on reg_periksa
MILESTONE_COLUMNS = {
    Milestone.CHECKIN: 'task_id_3',
    Milestone.START: 'task_id_4',
    Milestone.FINISH: 'task_id_5',
    Milestone.PHARMACY_STARTED: 'task_id_6',
    Milestone.CLOSE: 'task_id_7',
}

REGISTER_QUERY = """
    SELECT
        rp.no_reg,
        rp.no_rawat,
        rp.tgl_registrasi,
        rp.jam_reg,
        rp.kd_poli AS his_clinic_code,
        rp.kd_dokter AS his_provider_code,
        mp.kd_poli_bpjs AS clinic_id,
        mp.nm_poli_bpjs AS clinic_name,
        mpd.kd_dokter_bpjs AS provider_id,
        mpd.nm_dokter_bpjs AS provider_name,
        rp.no_rkm_medis,
        rp.jenis_kunjungan,
        rp.status_poli,
        p.no_ktp,
        p.no_peserta,
        p.no_tlp
    FROM reg_periksa rp
    LEFT JOIN maping_poli_bpjs mp ON rp.kd_poli = mp.kd_poli_rs
    LEFT JOIN maping_dokter_dpjpvclaim mpd ON rp.kd_dokter = mpd.kd_dokter
    LEFT JOIN pasien p ON rp.no_rkm_medis = p.no_rkm_medis
    WHERE rp.kd_pj = %s
      AND rp.jenis_kunjungan IS NOT NULL
      AND (rp.tgl_registrasi > %s OR (rp.tgl_registrasi = %s AND (
          rp.jam_reg > %s OR (rp.jam_reg = %s AND rp.no_rawat > %s))))
    ORDER BY rp.tgl_registrasi, rp.jam_reg, rp.no_rawat
    LIMIT %s
"""

SCHEDULE_QUERY = """
    SELECT
        j.jam_mulai,
        j.jam_selesai,
        j.kuota,
        mp.nm_poli_bpjs AS clinic_name,
        mpd.nm_dokter_bpjs AS provider_name
    FROM jadwal j
    INNER JOIN maping_poli_bpjs mp ON j.kd_poli = mp.kd_poli_rs
    INNER JOIN maping_dokter_dpjpvclaim mpd ON j.kd_dokter = mpd.kd_dokter
    WHERE mp.kd_poli_bpjs = %s
      AND mpd.kd_dokter_bpjs = %s
      AND j.hari_kerja = %s
    ORDER BY j.jam_mulai
"""

COMPETING_QUERY = """
    SELECT COUNT(rp.no_rawat) AS total
    FROM reg_periksa rp
    INNER JOIN maping_poli_bpjs mp ON rp.kd_poli = mp.kd_poli_rs
    INNER JOIN maping_dokter_dpjpvclaim mpd ON rp.kd_dokter = mpd.kd_dokter
    WHERE rp.tgl_registrasi = %s
      AND mp.kd_poli_bpjs = %s
      AND mpd.kd_dokter_bpjs = %s
"""


def _connection():
    return connections[settings.HIS_DATABASE_ALIAS]


def _dictfetchall(cursor) -> List[Dict[str, Any]]:
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def fetch_register_rows(cursor_value, limit: int, after_key: str = '') -> List[Dict[str, Any]]:
    """Insured registrations after the position (``cursor_value``, ``after_key``), oldest first"""
    last_date = cursor_value.strftime('%Y-%m-%d')
    last_time = cursor_value.strftime('%H:%M:%S')
    with _connection().cursor() as cursor:
        cursor.execute(REGISTER_QUERY, [
            settings.QSYNC_INSURED_PAYER_CODE, last_date, last_date, last_time, last_time, after_key or '', limit,
        ])
        return _dictfetchall(cursor)


def fetch_milestone_rows(milestone, cursor_value, limit: int, after_key: str = '') -> List[Dict[str, Any]]:
    """Visits whose (milestone timestamp, no_rawat) comes after (``cursor_value``, ``after_key``)"""
    column = MILESTONE_COLUMNS[Milestone(milestone)]
    query = (
        f"SELECT no_rawat, {column} AS event_time FROM reg_periksa "
        f"WHERE {column} IS NOT NULL AND ({column} > %s OR ({column} = %s AND no_rawat > %s)) "
        f"ORDER BY {column}, no_rawat LIMIT %s"
    )
    with _connection().cursor() as cursor:
        last = format_cursor(cursor_value)
        cursor.execute(query, [last, last, after_key or '', limit])
        return _dictfetchall(cursor)


def fetch_schedule_by_weekday(clinic_id: str, provider_id: str, schedule_date) -> List[Dict[str, Any]]:
    """HIS practice schedule for the weekday of ``schedule_date``, in authority codes"""
    weekday = his_weekday_name(schedule_date)
    with _connection().cursor() as cursor:
        cursor.execute(SCHEDULE_QUERY, [clinic_id, provider_id, weekday])
        rows = _dictfetchall(cursor)
    logger.debug(f"HIS schedule lookup {clinic_id}/{provider_id} {weekday}: {len(rows)} rows")
    return rows


def count_competing_registrations(clinic_id: str, provider_id: str, schedule_date) -> int:
    with _connection().cursor() as cursor:
        cursor.execute(COMPETING_QUERY, [to_date(schedule_date).isoformat(), clinic_id, provider_id])
        row = cursor.fetchone()
    return int(row[0] or 0) if row else 0
