"""
Schema bootstrap for Dumpwarden.

Creates tables on first start and guarantees the reserved local machine.
Safe to call from several Gunicorn workers at once.
"""

import logging
from sqlalchemy import inspect
from dumpwarden import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and seed required rows.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
        try:
            # create_all only adds missing tables
            db.create_all()
        except Exception as e:
            # Another worker may have created them first
            logger.error(f"Failed to create database schema: {e}")
            db.session.rollback()

        ensure_local_machine()


def ensure_local_machine():
    """
    Insert the reserved local machine if it is missing.

    Returns:
        True if the row was created
    """
    from dumpwarden.models import Machine, LOCAL_MACHINE_ID

    if db.session.get(Machine, LOCAL_MACHINE_ID) is not None:
        return False

    logger.info("Creating reserved local machine")
    db.session.add(Machine(
        id=LOCAL_MACHINE_ID,
        name='Local Machine',
        description='Local MySQL server',
        machine_type='local',
        db_host='localhost',
        db_port=3306,
        enabled=True
    ))
    try:
        db.session.commit()
    except Exception as e:
        logger.warning(f"Local machine insert raced with another worker: {e}")
        db.session.rollback()
        return False
    return True
