import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(app):
    """
    Send app and library logs to the console and, unless disabled, to a
    rotating dumpkeeper.log under LOG_DIR.
    """
    level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers = [console]

    if app.config.get('LOG_TO_FILE', True):
        log_dir = app.config['LOG_DIR']
        os.makedirs(log_dir, exist_ok=True)
        logfile = RotatingFileHandler(
            os.path.join(log_dir, 'dumpkeeper.log'),
            maxBytes=10 * 1024 * 1024,
            backupCount=10
        )
        logfile.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(logfile)

    for handler in handlers:
        handler.setLevel(level)

    logging.basicConfig(level=level, handlers=handlers)
    app.logger.setLevel(level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(level)})")


def _owns_scheduler(app) -> bool:
    """
    Whether this process should run the retention scheduler.

    Development: only the reloader child. Production: only the gunicorn
    worker flagged with SCHEDULER_WORKER=true.
    """
    if app.config.get('DEBUG', False):
        return os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    return os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'


def create_app(config_name=None, config_overrides=None):
    """
    Flask application factory.

    Args:
        config_name: Key of dumpkeeper.config.config (default: FLASK_ENV or 'production')
        config_overrides: Mapping applied on top of the config class

    Raises:
        ConfigError: If the disk, storage or retention configuration is invalid
    """
    from dumpkeeper.config import config, load_dump_settings

    app = Flask(__name__)
    app.config.from_object(config[config_name or os.environ.get('FLASK_ENV', 'production')])
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    # Validated once here; the service layer only reads this object
    app.extensions['dumpkeeper'] = load_dump_settings(app.config)

    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        db_dir = os.path.dirname(db_uri[len('sqlite:///'):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    db.init_app(app)

    from dumpkeeper.routes import dumps_routes, history_routes, dashboard_routes
    app.register_blueprint(dumps_routes.bp)
    app.register_blueprint(history_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    from dumpkeeper import models  # noqa: F401
    with app.app_context():
        db.create_all()

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Retention scheduler disabled by configuration")
        return app

    if not _owns_scheduler(app):
        app.logger.info("Retention scheduler runs in another process")
        return app

    from dumpkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler
    init_scheduler(app)
    start_scheduler()
    atexit.register(stop_scheduler)
    app.logger.info("Retention scheduler started in this process")

    return app
