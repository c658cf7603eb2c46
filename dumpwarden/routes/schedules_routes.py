"""
Schedule routes - CRUD and scheduler start/stop/status.
"""

import logging
from flask import Blueprint, jsonify, request

from dumpwarden import store
from dumpwarden.scheduler import get_scheduler, reload_scheduler


bp = Blueprint('schedules', __name__, url_prefix='/api')
logger = logging.getLogger(__name__)


@bp.route('/schedules', methods=['GET'])
def list_schedules():
    return jsonify([schedule.to_dict() for schedule in store.list_schedules()])


@bp.route('/schedules', methods=['POST'])
def create_schedule():
    """
    Create a schedule.

    Request body:
        - name: Schedule name (required)
        - machine_id: Machine to back up (required)
        - databases: List of database names
        - days_of_week: List of weekdays, 0=Sunday .. 6=Saturday
        - times: List of "HH:MM" times
        - description, enabled

    Returns:
        JSON with the created schedule
    """
    data = request.get_json(silent=True) or {}
    schedule = store.create_schedule(data)
    reload_scheduler()
    return jsonify(schedule.to_dict()), 201


@bp.route('/schedules/<schedule_id>', methods=['PUT'])
def update_schedule(schedule_id):
    data = request.get_json(silent=True) or {}
    schedule = store.update_schedule(schedule_id, data)
    reload_scheduler()
    return jsonify(schedule.to_dict())


@bp.route('/schedules/<schedule_id>', methods=['DELETE'])
def delete_schedule(schedule_id):
    store.delete_schedule(schedule_id)
    reload_scheduler()
    return jsonify({'message': 'Schedule deleted successfully'})


@bp.route('/scheduler/status', methods=['GET'])
def scheduler_status():
    return jsonify(get_scheduler().status())


@bp.route('/scheduler/start', methods=['POST'])
def start_scheduler():
    """
    Start the scheduler with the enabled schedules.

    Returns:
        JSON with scheduler status; 409 when no schedule is active
        or the scheduler is already running
    """
    backup_scheduler = get_scheduler()
    backup_scheduler.start()
    logger.info("Scheduler started via API")
    return jsonify(backup_scheduler.status())


@bp.route('/scheduler/stop', methods=['POST'])
def stop_scheduler():
    backup_scheduler = get_scheduler()
    backup_scheduler.stop()
    logger.info("Scheduler stopped via API")
    return jsonify(backup_scheduler.status())
