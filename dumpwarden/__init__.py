import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = os.path.join(app.config['DATA_DIR'], 'logs')
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'dumpwarden.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dumpwarden.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    from dumpwarden.routes import backup_routes, machines_routes, schedules_routes, settings_routes
    app.register_blueprint(machines_routes.bp)
    app.register_blueprint(schedules_routes.bp)
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(settings_routes.bp)

    from dumpwarden.routes.errors import register_error_handlers
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Create tables and the reserved local machine
    from dumpwarden import models
    from dumpwarden.migrations import init_database_schema

    init_database_schema(app)

    # Scheduler lives in exactly one process (see docker/gunicorn_conf.py)
    from dumpwarden.scheduler import init_scheduler, shutdown_scheduler
    from dumpwarden.backup.errors import NoActiveSchedulesError
    import atexit

    backup_scheduler = init_scheduler(app)

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if is_development:
        should_start_scheduler = is_reloader_child
    else:
        should_start_scheduler = is_scheduler_worker

    if app.config.get('SCHEDULER_AUTOSTART', True) and should_start_scheduler:
        try:
            backup_scheduler.start()
            atexit.register(shutdown_scheduler)
            app.logger.info("Scheduler started with the enabled schedules")
        except NoActiveSchedulesError:
            app.logger.info("No enabled schedules - scheduler left stopped")
    else:
        app.logger.info("Scheduler autostart skipped in this process")

    return app
