"""
JSON error responses for backup errors raised inside route handlers.
"""

import logging
from flask import jsonify

from dumpwarden.backup.errors import (
    BackupError,
    ConfigurationError,
    NotFoundError,
    SchedulerError,
)

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their parents
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ConfigurationError, 400),
)


def register_error_handlers(app):

    @app.errorhandler(BackupError)
    def handle_backup_error(error):
        status = 500
        for error_class, error_status in _STATUS_BY_ERROR:
            if isinstance(error, error_class):
                status = error_status
                break

        if status >= 500:
            logger.error(f"{error.kind}: {error}")

        return jsonify({'success': False, 'error': str(error), 'kind': error.kind}), status

    @app.errorhandler(SchedulerError)
    def handle_scheduler_error(error):
        return jsonify({'success': False, 'error': str(error)}), 409
