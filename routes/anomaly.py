"""
Anomaly analysis API routes.

Runs analysis passes over stored sightings, manages the ML model, the
exclusion list and user feedback on anomaly records.
"""

from __future__ import annotations

import time
from collections import Counter

from flask import Blueprint, Response, jsonify, request

from utils.anomaly.analyzer import AnalysisConfig, AnalysisPassError, AnomalyAnalyzer
from utils.anomaly.ml_detector import get_ml_detector
from utils.anomaly.models import DeviceCategory, Sighting
from utils.database import SQLiteSightingStore, get_setting
from utils.logging import get_logger

logger = get_logger('tailguard.anomaly.api')

# Blueprint
anomaly_bp = Blueprint('anomaly', __name__, url_prefix='/api/anomaly')

MAX_DETECTIONS_LIMIT = 1000


def get_store() -> SQLiteSightingStore:
    return SQLiteSightingStore()


def get_analyzer() -> AnomalyAnalyzer:
    """Build an analyzer over the database using the stored settings."""
    store = get_store()
    config = AnalysisConfig.from_settings(get_setting)
    return AnomalyAnalyzer(
        source=store,
        sink=store,
        exclusions=store,
        ml_detector=get_ml_detector(),
        config=config,
    )


def _error(message: str, status: int = 500) -> tuple[Response, int]:
    return jsonify({
        'status': 'error',
        'message': message
    }), status


# =============================================================================
# ANALYSIS
# =============================================================================

@anomaly_bp.route('/analyze', methods=['POST'])
def run_analysis():
    """
    Run one analysis pass over the stored sighting history.

    Returns:
        JSON with the number of anomalies emitted, per type and per severity.
    """
    started = time.monotonic()
    try:
        anomalies = get_analyzer().run_analysis_pass()
    except AnalysisPassError as e:
        logger.error(f"Analysis pass failed: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success',
        'count': len(anomalies),
        'by_type': dict(Counter(a.anomaly_type.value for a in anomalies)),
        'by_severity': dict(Counter(a.severity.value for a in anomalies)),
        'duration_s': round(time.monotonic() - started, 3),
    })


# =============================================================================
# MODEL
# =============================================================================

@anomaly_bp.route('/model/status', methods=['GET'])
def model_status():
    detector = get_ml_detector()
    config = AnalysisConfig.from_settings(get_setting)
    return jsonify({
        'status': 'success',
        'ready': detector.is_model_ready(),
        'enabled': config.enable_ml,
        'number_of_trees': config.number_of_trees,
        'subsample_size': config.subsample_size,
    })


@anomaly_bp.route('/model/train', methods=['POST'])
def train_model():
    """Train the ML model on the current analysis window."""
    try:
        trained = get_analyzer().train_ml_model()
    except Exception as e:
        logger.error(f"Error training model: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success' if trained else 'skipped',
        'ready': get_ml_detector().is_model_ready(),
    })


@anomaly_bp.route('/model/scores', methods=['GET'])
def model_scores():
    """
    Per-device ML scores over the analysis window.

    Query params:
        - category: Device category (default: every configured category)
    """
    detector = get_ml_detector()
    if not detector.is_model_ready():
        return _error('Model not trained', 409)

    analyzer = get_analyzer()
    category_arg = request.args.get('category')
    try:
        categories = [DeviceCategory(category_arg)] if category_arg else analyzer.config.categories
    except ValueError:
        return _error(f'Unknown category: {category_arg}', 400)

    now = int(time.time() * 1000)
    start = now - analyzer.config.analysis_window_ms
    scores: dict[str, float] = {}
    try:
        for category in categories:
            history = analyzer.source.all_sightings_for_category_in_range(category, start, now)
            scores.update(detector.score_devices(history))
    except Exception as e:
        logger.error(f"Error scoring devices: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success',
        'scores': {address: round(score, 4) for address, score in scores.items()},
    })


# =============================================================================
# DETECTIONS
# =============================================================================

@anomaly_bp.route('/detections', methods=['GET'])
def list_detections():
    """
    List stored anomaly records, newest first.

    Query params:
        - unacknowledged: Only unacknowledged records (1/true)
        - limit: Max records (default 100)
    """
    unacknowledged = request.args.get('unacknowledged', '').lower() in ('1', 'true', 'yes')
    try:
        limit = min(int(request.args.get('limit', 100)), MAX_DETECTIONS_LIMIT)
    except ValueError:
        return _error('limit must be an integer', 400)

    anomalies = get_store().list_anomalies(limit=limit, unacknowledged_only=unacknowledged)
    return jsonify({
        'status': 'success',
        'count': len(anomalies),
        'detections': [a.to_dict() for a in anomalies],
    })


@anomaly_bp.route('/detections/<int:anomaly_id>/feedback', methods=['POST'])
def detection_feedback(anomaly_id: int):
    """
    Record user feedback on an anomaly.

    Request JSON:
        - acknowledged: bool (optional)
        - false_positive: bool (optional)
        - notes: str (optional)
    """
    data = request.json or {}
    store = get_store()

    anomaly = store.get_anomaly(anomaly_id)
    if anomaly is None:
        return _error('Detection not found', 404)

    false_positive = data.get('false_positive')
    try:
        store.mark_anomaly(
            anomaly_id,
            acknowledged=data.get('acknowledged'),
            false_positive=false_positive,
            notes=data.get('notes'),
        )

        if false_positive:
            sightings: list[Sighting] = []
            for address in anomaly.device_addresses:
                sightings.extend(store.sightings_for_device(
                    address, anomaly.first_seen, anomaly.last_seen,
                ))
            get_ml_detector().update_with_feedback(sightings, is_false_positive=True)
    except Exception as e:
        logger.error(f"Error saving feedback for detection {anomaly_id}: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success',
        'detection': store.get_anomaly(anomaly_id).to_dict(),
    })


# =============================================================================
# SIGHTINGS
# =============================================================================

@anomaly_bp.route('/sightings', methods=['POST'])
def add_sightings():
    """
    Bulk insert sightings.

    Request JSON: a list of sighting objects (address, category, timestamp,
    optional latitude/longitude/accuracy/signal_strength/...).
    """
    data = request.json
    if not isinstance(data, list):
        return _error('Expected a JSON list of sightings', 400)

    try:
        sightings = [Sighting.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        return _error(f'Invalid sighting: {e}', 400)

    try:
        inserted = get_store().insert_sightings(sightings)
    except Exception as e:
        logger.error(f"Error inserting sightings: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success',
        'inserted': inserted
    })


# =============================================================================
# EXCLUSIONS
# =============================================================================

@anomaly_bp.route('/exclusions', methods=['GET'])
def list_exclusions():
    exclusions = get_store().list_exclusions()
    return jsonify({
        'status': 'success',
        'count': len(exclusions),
        'exclusions': exclusions,
    })


@anomaly_bp.route('/exclusions', methods=['POST'])
def add_exclusion():
    """
    Exclude a device from analysis.

    Request JSON:
        - address: Device address (required)
        - category: Device category (optional)
        - reason: Free text (optional)
    """
    data = request.json or {}
    address = data.get('address')
    if not address:
        return _error('address is required', 400)

    category = data.get('category')
    try:
        category = DeviceCategory(category) if category else None
    except ValueError:
        return _error(f'Unknown category: {category}', 400)

    get_store().exclude(address, category=category, reason=data.get('reason'))
    return jsonify({
        'status': 'success',
        'address': address
    })


@anomaly_bp.route('/exclusions/<address>', methods=['DELETE'])
def remove_exclusion(address: str):
    if not get_store().include(address):
        return _error('Device not excluded', 404)
    return jsonify({
        'status': 'success',
        'address': address
    })


# =============================================================================
# STATISTICS
# =============================================================================

@anomaly_bp.route('/stats', methods=['GET'])
def storage_stats():
    try:
        stats = get_store().storage_statistics()
    except Exception as e:
        logger.error(f"Error getting storage statistics: {e}")
        return _error(str(e))

    return jsonify({
        'status': 'success',
        'stats': stats
    })
