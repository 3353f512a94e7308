"""
Flask Application Factory
Main entry point for the reporting dashboard sync service.
"""

import os

from flask import Flask, jsonify
from flask_cors import CORS
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from dashboard_sync.config_manager import ConfigManager
from dashboard_sync.database.connection import get_db
from dashboard_sync.orchestrator import SyncOrchestrator
from dashboard_sync.utils.helpers import utcnow
from dashboard_sync.utils.logger import setup_logging, get_logger


def create_app(orchestrator: SyncOrchestrator = None) -> Flask:
    """
    Application factory for Flask app.

    Args:
        orchestrator: Optional orchestrator; one bound to the configured
            database is created when omitted

    Returns:
        Configured Flask application
    """
    setup_logging()
    logger = get_logger(__name__)

    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.json.sort_keys = False

    CORS(app)

    app.extensions['sync_orchestrator'] = orchestrator or SyncOrchestrator()

    from dashboard_sync.api.sync_routes import sync_bp
    app.register_blueprint(sync_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = get_db().check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': utcnow().isoformat(),
            'database': 'connected' if db_healthy else 'disconnected'
        })

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'Reporting Dashboard Sync API',
            'version': '1.0.0',
            'endpoints': {
                '/health': 'Health check',
                '/api/sync/all': 'Sync all tenants (POST)',
                '/api/sync/<tenant_id>': 'Sync one tenant (POST)',
                '/api/sync/status': 'Sync status (GET)',
                '/api/sync/logs': 'Recent sync runs (GET)',
                '/api/backfill': 'Historical backfill (POST)',
                '/api/ingestion/fetch': 'Voicemail file ingestion (POST)',
                '/api/campaigns/<campaign_id>/link-client': 'Link campaign to client (POST)',
                '/api/campaigns/<campaign_id>/unlink-client': 'Unlink campaign (POST)'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'Method not allowed'
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


def create_scheduler(orchestrator: SyncOrchestrator) -> BackgroundScheduler:
    """
    Create and configure the background scheduler.

    Scheduled runs go through the same single-flight guard as API calls,
    so a tick that lands during another run is skipped.

    Args:
        orchestrator: Orchestrator shared with the API

    Returns:
        Configured scheduler
    """
    logger = get_logger(__name__)
    scheduler_config = ConfigManager().get_scheduler_config()

    scheduler = BackgroundScheduler(timezone=scheduler_config.get('timezone', 'UTC'))

    if not scheduler_config.get('enabled', True):
        logger.info("Scheduler is disabled")
        return scheduler

    ingestion_schedule = scheduler_config.get('ingestion_schedule', '0 2 * * *')

    @scheduler.scheduled_job(CronTrigger.from_crontab(ingestion_schedule), id='voicemail_ingestion')
    def scheduled_ingestion():
        """Scheduled voicemail file ingestion."""
        logger.info("Running scheduled ingestion")
        try:
            result = orchestrator.run_ingestion(run_type='scheduled')
            logger.info(f"Scheduled ingestion finished: {result.message}")
        except Exception as e:
            logger.error(f"Scheduled ingestion failed: {e}")

    tenant_sync_schedule = scheduler_config.get('tenant_sync_schedule', '0 3 * * *')

    @scheduler.scheduled_job(CronTrigger.from_crontab(tenant_sync_schedule), id='tenant_sync')
    def scheduled_tenant_sync():
        """Scheduled incremental sync of all tenants."""
        logger.info("Running scheduled tenant sync")
        try:
            result = orchestrator.run_full_sync(run_type='scheduled')
            logger.info(f"Scheduled tenant sync finished: {result.message}")
        except Exception as e:
            logger.error(f"Scheduled tenant sync failed: {e}")

    return scheduler


if __name__ == '__main__':
    # Development server
    app = create_app()
    scheduler = create_scheduler(app.extensions['sync_orchestrator'])
    scheduler.start()

    try:
        app.run(
            host='0.0.0.0',
            port=int(os.getenv('FLASK_PORT', 6922)),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        app.extensions['sync_orchestrator'].shutdown(wait=False)
