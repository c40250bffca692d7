import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy

from backupdb.utils.log import configure_logging

__version__ = '7.1.0'

# Initialize extensions
db = SQLAlchemy()


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backupdb.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO
    configure_logging(log_level, log_dir=app.config.get('LOG_DIR'), force=False)
    app.logger.setLevel(log_level)

    # Ensure the history database directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from backupdb.routes import runs_routes
    app.register_blueprint(runs_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy', 'version': __version__}, 200

    # Create run history tables
    from backupdb import models  # noqa: F401
    with app.app_context():
        db.create_all()

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
        return app

    # Initialize and start scheduler (only in designated worker or development child process)
    from backupdb.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    # Determine if this process should initialize the scheduler
    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        should_init_scheduler = is_reloader_child
    else:
        should_init_scheduler = is_scheduler_worker

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
