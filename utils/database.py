"""
SQLite persistence for sightings, anomaly records, exclusions and settings.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

from utils.anomaly.models import AnomalyDetection, DeviceCategory, Sighting

logger = logging.getLogger('tailguard.database')

DEFAULT_DB_PATH = os.environ.get('TAILGUARD_DB_PATH', 'tailguard.db')

_db_path: str = DEFAULT_DB_PATH
_init_lock = threading.Lock()

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS sightings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL,
        category TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        latitude REAL,
        longitude REAL,
        accuracy REAL,
        signal_strength INTEGER,
        frequency INTEGER,
        capabilities TEXT,
        name TEXT,
        is_connected BOOLEAN DEFAULT 0
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_sightings_address_ts ON sightings(address, timestamp)',
    'CREATE INDEX IF NOT EXISTS idx_sightings_category_ts ON sightings(category, timestamp)',
    '''
    CREATE TABLE IF NOT EXISTS anomaly_detections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        detected_at INTEGER NOT NULL,
        anomaly_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        device_addresses TEXT NOT NULL,
        device_category TEXT NOT NULL,
        anomaly_score REAL NOT NULL,
        confidence_level REAL NOT NULL,
        description TEXT,
        detection_count INTEGER DEFAULT 0,
        locations TEXT,
        geographic_spread REAL,
        time_span INTEGER DEFAULT 0,
        first_seen INTEGER DEFAULT 0,
        last_seen INTEGER DEFAULT 0,
        is_acknowledged BOOLEAN DEFAULT 0,
        is_false_positive BOOLEAN DEFAULT 0,
        user_notes TEXT
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_anomaly_detected_at ON anomaly_detections(detected_at)',
    '''
    CREATE TABLE IF NOT EXISTS excluded_devices (
        address TEXT PRIMARY KEY,
        category TEXT,
        reason TEXT,
        excluded_at INTEGER NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
]


# =============================================================================
# CONNECTION MANAGEMENT
# =============================================================================

def init_db(path: Optional[str] = None) -> str:
    """
    Set the database path and create any missing tables.

    Returns:
        The database path in use.
    """
    global _db_path
    with _init_lock:
        if path is not None:
            _db_path = path
        with get_db() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
    logger.info(f"Database initialized at {_db_path}")
    return _db_path


def get_db_path() -> str:
    return _db_path


@contextmanager
def get_db(path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """
    Open a connection, commit on success and roll back on error.

    Each call gets its own connection so worker threads never share one.
    """
    conn = sqlite3.connect(path or _db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# =============================================================================
# SETTINGS
# =============================================================================

def get_setting(key: str, default: Any = None) -> Any:
    """Get a JSON-decoded setting value, or default if unset."""
    with get_db() as conn:
        row = conn.execute('SELECT value FROM settings WHERE key = ?', (key,)).fetchone()
    if row is None:
        return default
    try:
        return json.loads(row['value'])
    except (TypeError, ValueError):
        return row['value']


def set_setting(key: str, value: Any) -> None:
    with get_db() as conn:
        conn.execute(
            '''
            INSERT INTO settings (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            ''',
            (key, json.dumps(value)),
        )


def delete_setting(key: str) -> bool:
    """Delete a setting. Returns True if it existed."""
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM settings WHERE key = ?', (key,))
        return cursor.rowcount > 0


def get_all_settings() -> dict[str, Any]:
    with get_db() as conn:
        rows = conn.execute('SELECT key, value FROM settings ORDER BY key').fetchall()
    settings = {}
    for row in rows:
        try:
            settings[row['key']] = json.loads(row['value'])
        except (TypeError, ValueError):
            settings[row['key']] = row['value']
    return settings


# =============================================================================
# SIGHTING STORE
# =============================================================================

def _row_to_sighting(row: sqlite3.Row) -> Sighting:
    return Sighting(
        address=row['address'],
        category=DeviceCategory(row['category']),
        timestamp=row['timestamp'],
        latitude=row['latitude'],
        longitude=row['longitude'],
        accuracy=row['accuracy'],
        signal_strength=row['signal_strength'],
        frequency=row['frequency'],
        capabilities=row['capabilities'],
        name=row['name'],
        is_connected=bool(row['is_connected']),
    )


def _row_to_anomaly(row: sqlite3.Row) -> AnomalyDetection:
    data = dict(row)
    data['device_addresses'] = json.loads(data['device_addresses'] or '[]')
    data['locations'] = json.loads(data['locations'] or '[]')
    data['is_acknowledged'] = bool(data['is_acknowledged'])
    data['is_false_positive'] = bool(data['is_false_positive'])
    return AnomalyDetection.from_dict(data)


class SQLiteSightingStore:
    """
    SQLite-backed sighting source, exclusion list and anomaly sink.

    Every method opens its own connection, so one store can be shared by
    the analysis worker threads.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def _connect(self):
        return get_db(self.db_path)

    # -------------------------------------------------------------------------
    # Sightings
    # -------------------------------------------------------------------------

    def insert_sightings(self, sightings: Iterable[Sighting]) -> int:
        """Insert sightings and return how many rows were written."""
        rows = [
            (
                s.address, s.category.value, s.timestamp, s.latitude, s.longitude,
                s.accuracy, s.signal_strength, s.frequency, s.capabilities, s.name,
                int(s.is_connected),
            )
            for s in sightings
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            conn.executemany(
                '''
                INSERT INTO sightings (
                    address, category, timestamp, latitude, longitude, accuracy,
                    signal_strength, frequency, capabilities, name, is_connected
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                rows,
            )
        return len(rows)

    def sightings_for_device(
        self, address: str, start_time: int, end_time: int,
    ) -> list[Sighting]:
        with self._connect() as conn:
            rows = conn.execute(
                '''
                SELECT * FROM sightings
                WHERE address = ? AND timestamp BETWEEN ? AND ?
                ORDER BY timestamp
                ''',
                (address, start_time, end_time),
            ).fetchall()
        return [_row_to_sighting(r) for r in rows]

    def all_sightings_for_category_in_range(
        self, category: DeviceCategory, start_time: int, end_time: int,
    ) -> list[Sighting]:
        with self._connect() as conn:
            rows = conn.execute(
                '''
                SELECT * FROM sightings
                WHERE category = ? AND timestamp BETWEEN ? AND ?
                ORDER BY timestamp
                ''',
                (DeviceCategory(category).value, start_time, end_time),
            ).fetchall()
        return [_row_to_sighting(r) for r in rows]

    def distinct_device_addresses(self, category: DeviceCategory) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT DISTINCT address FROM sightings WHERE category = ?',
                (DeviceCategory(category).value,),
            ).fetchall()
        return {r['address'] for r in rows}

    # -------------------------------------------------------------------------
    # Exclusions
    # -------------------------------------------------------------------------

    def is_excluded(self, address: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT 1 FROM excluded_devices WHERE address = ?', (address,),
            ).fetchone()
        return row is not None

    def exclude(
        self,
        address: str,
        category: Optional[DeviceCategory] = None,
        reason: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                '''
                INSERT OR REPLACE INTO excluded_devices (address, category, reason, excluded_at)
                VALUES (?, ?, ?, ?)
                ''',
                (
                    address,
                    DeviceCategory(category).value if category else None,
                    reason,
                    int(time.time() * 1000),
                ),
            )

    def include(self, address: str) -> bool:
        """Remove a device from the exclusion list. Returns True if it was listed."""
        with self._connect() as conn:
            cursor = conn.execute('DELETE FROM excluded_devices WHERE address = ?', (address,))
            return cursor.rowcount > 0

    def list_exclusions(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM excluded_devices ORDER BY excluded_at DESC',
            ).fetchall()
        return [dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # Anomalies
    # -------------------------------------------------------------------------

    def insert(self, anomaly: AnomalyDetection) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                '''
                INSERT INTO anomaly_detections (
                    detected_at, anomaly_type, severity, device_addresses,
                    device_category, anomaly_score, confidence_level, description,
                    detection_count, locations, geographic_spread, time_span,
                    first_seen, last_seen, is_acknowledged, is_false_positive, user_notes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    anomaly.detected_at,
                    anomaly.anomaly_type.value,
                    anomaly.severity.value,
                    json.dumps(anomaly.device_addresses),
                    anomaly.device_category.value,
                    anomaly.anomaly_score,
                    anomaly.confidence_level,
                    anomaly.description,
                    anomaly.detection_count,
                    json.dumps([loc.to_dict() for loc in anomaly.locations]),
                    anomaly.geographic_spread,
                    anomaly.time_span,
                    anomaly.first_seen,
                    anomaly.last_seen,
                    int(anomaly.is_acknowledged),
                    int(anomaly.is_false_positive),
                    anomaly.user_notes,
                ),
            )
            anomaly.id = cursor.lastrowid
        return anomaly.id

    def get_anomaly(self, anomaly_id: int) -> Optional[AnomalyDetection]:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT * FROM anomaly_detections WHERE id = ?', (anomaly_id,),
            ).fetchone()
        return _row_to_anomaly(row) if row else None

    def list_anomalies(
        self,
        limit: int = 100,
        unacknowledged_only: bool = False,
    ) -> list[AnomalyDetection]:
        """Most recent anomaly records first."""
        query = 'SELECT * FROM anomaly_detections'
        if unacknowledged_only:
            query += ' WHERE is_acknowledged = 0'
        query += ' ORDER BY detected_at DESC, id DESC LIMIT ?'
        with self._connect() as conn:
            rows = conn.execute(query, (limit,)).fetchall()
        return [_row_to_anomaly(r) for r in rows]

    def mark_anomaly(
        self,
        anomaly_id: int,
        acknowledged: Optional[bool] = None,
        false_positive: Optional[bool] = None,
        notes: Optional[str] = None,
    ) -> bool:
        """Update user-action fields. Returns False if the record does not exist."""
        updates = []
        params: list[Any] = []
        if acknowledged is not None:
            updates.append('is_acknowledged = ?')
            params.append(int(acknowledged))
        if false_positive is not None:
            updates.append('is_false_positive = ?')
            params.append(int(false_positive))
        if notes is not None:
            updates.append('user_notes = ?')
            params.append(notes)

        with self._connect() as conn:
            if not updates:
                row = conn.execute(
                    'SELECT 1 FROM anomaly_detections WHERE id = ?', (anomaly_id,),
                ).fetchone()
                return row is not None
            cursor = conn.execute(
                f'UPDATE anomaly_detections SET {", ".join(updates)} WHERE id = ?',
                (*params, anomaly_id),
            )
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def storage_statistics(self) -> dict:
        with self._connect() as conn:
            total = conn.execute('SELECT COUNT(*) FROM sightings').fetchone()[0]
            per_category = {
                row['category']: row['count']
                for row in conn.execute(
                    'SELECT category, COUNT(*) AS count FROM sightings GROUP BY category',
                ).fetchall()
            }
            devices = conn.execute('SELECT COUNT(DISTINCT address) FROM sightings').fetchone()[0]
            oldest, newest = conn.execute(
                'SELECT MIN(timestamp), MAX(timestamp) FROM sightings',
            ).fetchone()
            anomalies = conn.execute('SELECT COUNT(*) FROM anomaly_detections').fetchone()[0]
            unacknowledged = conn.execute(
                'SELECT COUNT(*) FROM anomaly_detections WHERE is_acknowledged = 0',
            ).fetchone()[0]
            excluded = conn.execute('SELECT COUNT(*) FROM excluded_devices').fetchone()[0]

        return {
            'total_sightings': total,
            'sightings_by_category': per_category,
            'unique_devices': devices,
            'oldest_sighting': oldest,
            'newest_sighting': newest,
            'total_anomalies': anomalies,
            'unacknowledged_anomalies': unacknowledged,
            'excluded_devices': excluded,
        }
