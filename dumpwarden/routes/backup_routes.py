"""
Backup routes - manual backup of the local machine and the backup log.
"""

from flask import Blueprint, jsonify, request, current_app

from dumpwarden import store
from dumpwarden.models import LOCAL_MACHINE_ID
from dumpwarden.backup.executor import CancelToken, run_backup


bp = Blueprint('backup', __name__, url_prefix='/api/backup')


@bp.route('/manual', methods=['POST'])
def manual_backup():
    """
    Back up databases of the local machine.

    Request body:
        - databases: List of database names (required)
    """
    data = request.get_json(silent=True) or {}
    databases = data.get('databases') or []

    token = CancelToken(deadline=current_app.config['MANUAL_BACKUP_TIMEOUT'])
    results = run_backup(LOCAL_MACHINE_ID, databases, token, allow_disabled=True)

    return jsonify({
        'success': all(r.success for r in results),
        'results': [r.to_dict() for r in results]
    })


@bp.route('/logs', methods=['GET'])
def backup_logs():
    """
    Get the backup log, most recent first.

    Query params:
        - limit: Maximum number of entries (optional)
    """
    limit = request.args.get('limit', type=int)
    return jsonify([entry.to_dict() for entry in store.get_backup_logs(limit)])
