"""Settings management routes."""

from __future__ import annotations

from dataclasses import fields

from flask import Blueprint, jsonify, request, Response

from utils.anomaly.analyzer import AnalysisConfig
from utils.anomaly.constants import SETTINGS_PREFIX
from utils.database import (
    get_setting,
    set_setting,
    delete_setting,
    get_all_settings,
)
from utils.logging import get_logger

logger = get_logger('tailguard.settings')

settings_bp = Blueprint('settings', __name__, url_prefix='/settings')

ANALYSIS_KEYS = frozenset(f'{SETTINGS_PREFIX}{f.name}' for f in fields(AnalysisConfig))


def _valid_key(key: str) -> bool:
    # Alphanumeric, underscores, dots, hyphens
    return bool(key) and all(c.isalnum() or c in '_.-' for c in key)


def _check_analysis_value(key: str, value) -> None:
    """Raise ValueError if an analysis override would not produce a valid config."""
    if key not in ANALYSIS_KEYS:
        return
    AnalysisConfig.from_settings(lambda k, default=None: value if k == key else None)


@settings_bp.route('', methods=['GET'])
def get_settings() -> Response:
    """Get all settings."""
    try:
        settings = get_all_settings()
        return jsonify({
            'status': 'success',
            'settings': settings
        })
    except Exception as e:
        logger.error(f"Error getting settings: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500


@settings_bp.route('', methods=['POST'])
def save_settings() -> Response:
    """Save one or more settings."""
    data = request.json or {}

    if not data:
        return jsonify({
            'status': 'error',
            'message': 'No settings provided'
        }), 400

    saved = []
    rejected = []
    try:
        for key, value in data.items():
            if not _valid_key(key):
                rejected.append(key)
                continue
            try:
                _check_analysis_value(key, value)
            except (TypeError, ValueError):
                rejected.append(key)
                continue

            set_setting(key, value)
            saved.append(key)

        return jsonify({
            'status': 'success',
            'saved': saved,
            'rejected': rejected
        })
    except Exception as e:
        logger.error(f"Error saving settings: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500


@settings_bp.route('/analysis', methods=['GET'])
def get_analysis_config() -> Response:
    """Effective analysis configuration (defaults merged with overrides)."""
    try:
        config = AnalysisConfig.from_settings(get_setting)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid analysis settings: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500

    return jsonify({
        'status': 'success',
        'prefix': SETTINGS_PREFIX,
        'config': config.to_dict()
    })


@settings_bp.route('/<key>', methods=['GET'])
def get_single_setting(key: str) -> Response:
    """Get a single setting by key."""
    try:
        value = get_setting(key)
        if value is None:
            return jsonify({
                'status': 'not_found',
                'key': key
            }), 404

        return jsonify({
            'status': 'success',
            'key': key,
            'value': value
        })
    except Exception as e:
        logger.error(f"Error getting setting {key}: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500


@settings_bp.route('/<key>', methods=['PUT'])
def update_single_setting(key: str) -> Response:
    """Update a single setting."""
    data = request.json or {}
    value = data.get('value')

    if value is None and 'value' not in data:
        return jsonify({
            'status': 'error',
            'message': 'Value is required'
        }), 400

    try:
        _check_analysis_value(key, value)
    except (TypeError, ValueError) as e:
        return jsonify({
            'status': 'error',
            'message': f'Invalid value for {key}: {e}'
        }), 400

    try:
        set_setting(key, value)
        return jsonify({
            'status': 'success',
            'key': key,
            'value': value
        })
    except Exception as e:
        logger.error(f"Error updating setting {key}: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500


@settings_bp.route('/<key>', methods=['DELETE'])
def delete_single_setting(key: str) -> Response:
    """Delete a setting, restoring the default for analysis keys."""
    try:
        deleted = delete_setting(key)
        if deleted:
            return jsonify({
                'status': 'success',
                'key': key,
                'deleted': True
            })
        else:
            return jsonify({
                'status': 'not_found',
                'key': key
            }), 404
    except Exception as e:
        logger.error(f"Error deleting setting {key}: {e}")
        return jsonify({
            'status': 'error',
            'message': str(e)
        }), 500
