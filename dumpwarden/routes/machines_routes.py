"""
Machine routes - CRUD, connectivity tests, database listing and on-demand backups.
"""

import logging
from flask import Blueprint, jsonify, request, current_app

from dumpwarden import store
from dumpwarden.backup.executor import CancelToken, run_backup, test_connectivity, get_machine_databases
from dumpwarden.scheduler import reload_scheduler


bp = Blueprint('machines', __name__, url_prefix='/api/machines')
logger = logging.getLogger(__name__)


@bp.route('', methods=['GET'])
def list_machines():
    """
    Get list of all machines.

    Returns:
        JSON array of machines (secrets reported as has_* flags only)
    """
    return jsonify([machine.to_dict() for machine in store.list_machines()])


@bp.route('/<machine_id>', methods=['GET'])
def get_machine(machine_id):
    return jsonify(store.get_machine(machine_id).to_dict())


@bp.route('', methods=['POST'])
def create_machine():
    """
    Create a machine.

    Request body:
        - name: Machine name (required)
        - type: 'local' or 'remote'
        - description, enabled
        - mysql: {host, port, username, password}
        - ssh: {host, port, username, password, private_key, passphrase, key_path}

    Returns:
        JSON with the created machine
    """
    data = request.get_json(silent=True) or {}
    machine = store.create_machine(data)
    reload_scheduler()
    return jsonify(machine.to_dict()), 201


@bp.route('/<machine_id>', methods=['PUT'])
def update_machine(machine_id):
    """
    Update a machine.

    Omitted secret fields keep their stored value; null or "" clears them.
    """
    data = request.get_json(silent=True) or {}
    machine = store.update_machine(machine_id, data)
    reload_scheduler()
    return jsonify(machine.to_dict())


@bp.route('/<machine_id>', methods=['DELETE'])
def delete_machine(machine_id):
    """Delete a machine together with its schedules."""
    store.delete_machine(machine_id)
    reload_scheduler()
    return jsonify({'message': 'Machine deleted successfully'})


@bp.route('/<machine_id>/test', methods=['POST'])
def test_machine(machine_id):
    test_connectivity(machine_id=machine_id)
    return jsonify({'success': True, 'message': 'Connection successful'})


@bp.route('/test-config', methods=['POST'])
def test_machine_config():
    """
    Test an unsaved machine definition.

    Request body: same shape as machine creation.
    """
    data = request.get_json(silent=True) or {}
    machine = store.machine_spec_from_payload(data)
    test_connectivity(machine=machine)
    return jsonify({'success': True, 'message': 'Connection successful'})


@bp.route('/<machine_id>/databases', methods=['GET'])
def list_machine_databases(machine_id):
    return jsonify({'databases': get_machine_databases(machine_id)})


@bp.route('/<machine_id>/backup', methods=['POST'])
def backup_machine(machine_id):
    """
    Run a backup now and wait for it.

    Request body:
        - databases: List of database names (required)

    Returns:
        JSON with one result per database
    """
    data = request.get_json(silent=True) or {}
    databases = data.get('databases') or []

    token = CancelToken(deadline=current_app.config['MANUAL_BACKUP_TIMEOUT'])
    results = run_backup(machine_id, databases, token, allow_disabled=True)

    logger.info(f"Manual backup of machine {machine_id}: {sum(r.success for r in results)}/{len(results)} succeeded")
    return jsonify({
        'machine_id': machine_id,
        'success': all(r.success for r in results),
        'results': [r.to_dict() for r in results]
    })
