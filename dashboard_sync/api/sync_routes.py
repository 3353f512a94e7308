"""
Sync API Blueprint
Provides REST endpoints for triggering and monitoring sync runs.
"""

from flask import Blueprint, current_app, jsonify, request

from dashboard_sync.database.queries import QueryHelpers
from dashboard_sync.orchestrator import SyncOrchestrator, SyncResult
from dashboard_sync.utils.helpers import parse_date_arg, to_int
from dashboard_sync.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api')


def get_orchestrator() -> SyncOrchestrator:
    """Get the orchestrator registered on the current app."""
    return current_app.extensions['sync_orchestrator']


def _started_response(result: SyncResult):
    """202 for an accepted run, 409 while another run holds the guard."""
    if result.conflict:
        return jsonify(result.to_dict()), 409

    payload = result.to_dict()
    payload.update(get_orchestrator().guard.status())
    return jsonify(payload), 202


@sync_bp.route('/sync/all', methods=['POST'])
def trigger_full_sync():
    """
    Start a sync of every active tenant.

    Query params:
        forceFull: If 'true', ignore last sync timestamps.
    """
    try:
        force_full = request.args.get('forceFull', 'false').lower() == 'true'
        logger.info(f"Full sync triggered via API: force_full={force_full}")

        result = get_orchestrator().start('full', run_type='manual', force_full=force_full)
        return _started_response(result)

    except Exception as e:
        logger.error(f"Failed to start full sync: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/sync/<int:tenant_id>', methods=['POST'])
def trigger_tenant_sync(tenant_id: int):
    """Start a sync of one tenant."""
    try:
        force_full = request.args.get('forceFull', 'false').lower() == 'true'
        logger.info(f"Tenant sync triggered via API: tenant={tenant_id}")

        result = get_orchestrator().start('tenant', tenant_id=tenant_id, run_type='manual', force_full=force_full)
        return _started_response(result)

    except Exception as e:
        logger.error(f"Failed to start tenant sync: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/sync/status', methods=['GET'])
def get_sync_status():
    """
    Get the single-flight status.

    Returns:
        JSON with isSyncing, elapsedSeconds, startTime, syncType and lastSyncAt
    """
    try:
        return jsonify({'success': True, **get_orchestrator().status()})
    except Exception as e:
        logger.error(f"Failed to get sync status: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/backfill', methods=['POST'])
def trigger_backfill():
    """
    Start a month-by-month historical backfill.

    JSON body (all optional):
        tenantId: Tenant to backfill (default: every active tenant)
        fromDate: 'YYYY-MM-DD' start of range
        toDate: 'YYYY-MM-DD' end of range
        pageLimit: Rows per page
    """
    data = request.get_json(silent=True) or {}

    try:
        from_date = parse_date_arg(data.get('fromDate'))
        to_date = parse_date_arg(data.get('toDate'))
    except (ValueError, OverflowError) as e:
        return jsonify({'success': False, 'error': f"Invalid date: {e}"}), 400

    if from_date and to_date and from_date > to_date:
        return jsonify({'success': False, 'error': 'fromDate must not be after toDate'}), 400

    tenant_id = data.get('tenantId')
    page_limit = data.get('pageLimit')

    try:
        logger.info(f"Backfill triggered via API: tenant={tenant_id}, {from_date} -> {to_date}")
        result = get_orchestrator().start(
            'backfill',
            tenant_id=to_int(tenant_id) if tenant_id is not None else None,
            from_date=from_date,
            to_date=to_date,
            page_limit=to_int(page_limit) if page_limit is not None else None
        )
        return _started_response(result)

    except Exception as e:
        logger.error(f"Failed to start backfill: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/ingestion/fetch', methods=['POST'])
def trigger_ingestion():
    """Start a voicemail file ingestion."""
    try:
        logger.info("Ingestion triggered via API")
        result = get_orchestrator().start('ingestion', run_type='manual')
        return _started_response(result)

    except Exception as e:
        logger.error(f"Failed to start ingestion: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/sync/logs', methods=['GET'])
def get_sync_logs():
    """
    Get recent sync logs.

    Query params:
        limit: Number of runs to return (default 20)
        source: 'dropcowboy' or 'mautic'
    """
    try:
        limit = to_int(request.args.get('limit'), default=20) or 20
        source = request.args.get('source')

        with get_orchestrator().session_factory() as session:
            logs = QueryHelpers(session).get_sync_logs(limit=limit, source=source)
            result = [{
                'id': log.id,
                'source': log.source,
                'runType': log.run_type,
                'status': log.status,
                'itemsProcessed': log.items_processed,
                'campaignsProcessed': log.campaigns_processed,
                'recordsProcessed': log.records_processed,
                'errorCount': log.error_count,
                'errorMessage': log.error_message,
                'startedAt': log.started_at.isoformat() if log.started_at else None,
                'completedAt': log.completed_at.isoformat() if log.completed_at else None,
            } for log in logs]

        return jsonify({'success': True, 'logs': result})

    except Exception as e:
        logger.error(f"Failed to get sync logs: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/campaigns/<campaign_id>/link-client', methods=['POST'])
def link_campaign(campaign_id: str):
    """
    Manually link a voicemail campaign to a client.

    JSON body:
        clientId: Client to link
    """
    data = request.get_json(silent=True) or {}
    client_id = to_int(data.get('clientId'), default=None)
    if client_id is None:
        return jsonify({'success': False, 'error': 'clientId is required'}), 400

    try:
        with get_orchestrator().session_factory() as session:
            campaign = QueryHelpers(session).link_campaign(campaign_id, client_id)
            payload = {'campaignId': campaign.campaign_id, 'clientId': campaign.client_id}
        return jsonify({'success': True, 'campaign': payload})

    except LookupError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to link campaign {campaign_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/campaigns/<campaign_id>/unlink-client', methods=['POST'])
def unlink_campaign(campaign_id: str):
    """Manually remove a voicemail campaign's client link."""
    try:
        with get_orchestrator().session_factory() as session:
            campaign = QueryHelpers(session).unlink_campaign(campaign_id)
            payload = {'campaignId': campaign.campaign_id, 'clientId': None}
        return jsonify({'success': True, 'campaign': payload})

    except LookupError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to unlink campaign {campaign_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
