"""
TailGuard - wireless device tracking detection.

Serves the anomaly API or runs a single analysis pass from the command line.
"""

from __future__ import annotations

import argparse
import os
import sys
from collections import Counter
from typing import Optional

from flask import Flask

from routes.anomaly import anomaly_bp
from routes.settings import settings_bp
from utils.anomaly.analyzer import AnalysisConfig, AnalysisPassError, AnomalyAnalyzer
from utils.anomaly.ml_detector import get_ml_detector
from utils.database import DEFAULT_DB_PATH, SQLiteSightingStore, get_setting, init_db
from utils.logging import configure_logging, get_logger

logger = get_logger('tailguard.app')


def create_app(db_path: Optional[str] = None) -> Flask:
    """Create the Flask application with every blueprint registered."""
    app = Flask(__name__)
    app.config['TAILGUARD_DB_PATH'] = init_db(db_path or os.environ.get('TAILGUARD_DB_PATH', DEFAULT_DB_PATH))

    app.register_blueprint(anomaly_bp)
    app.register_blueprint(settings_bp)

    return app


def run_analysis(db_path: str) -> int:
    """Run one analysis pass against the database and print a summary."""
    init_db(db_path)
    store = SQLiteSightingStore(db_path)
    config = AnalysisConfig.from_settings(get_setting)
    analyzer = AnomalyAnalyzer(
        source=store,
        sink=store,
        exclusions=store,
        ml_detector=get_ml_detector(),
        config=config,
    )

    try:
        anomalies = analyzer.run_analysis_pass()
    except AnalysisPassError as e:
        logger.error(f"Analysis failed: {e}")
        return 1

    print(f"{len(anomalies)} anomalies detected")
    for anomaly_type, count in sorted(Counter(a.anomaly_type.value for a in anomalies).items()):
        print(f"  {anomaly_type}: {count}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='TailGuard tracking detection')
    parser.add_argument(
        '--db',
        default=os.environ.get('TAILGUARD_DB_PATH', DEFAULT_DB_PATH),
        help='SQLite database path (default: $TAILGUARD_DB_PATH or tailguard.db)',
    )
    parser.add_argument('--log-level', default='INFO', help='Logging level')

    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP API')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=5050)
    serve.add_argument('--debug', action='store_true')

    subparsers.add_parser('analyze', help='Run a single analysis pass')

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == 'analyze':
        return run_analysis(args.db)

    app = create_app(args.db)
    logger.info(f"Serving on {args.host}:{args.port} (database {args.db})")
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)
    return 0


if __name__ == '__main__':
    sys.exit(main())
