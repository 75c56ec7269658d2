import logging
import os
from datetime import timedelta

from flask import Flask, jsonify, request
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

# Define db globally here. Models import it from this module.
db = SQLAlchemy()
login_manager = LoginManager()
logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))
MB = 1024 * 1024

# environment variable -> config key
ENV_OVERRIDES = {
    'SECRET_KEY': 'SECRET_KEY',
    'DATABASE_URL': 'SQLALCHEMY_DATABASE_URI',
    'UPLOAD_FOLDER': 'UPLOAD_FOLDER',
    'OWNERSHIP_STRATEGY': 'OWNERSHIP_STRATEGY',
    'METADATA_BACKEND': 'METADATA_BACKEND',
    'LOG_LEVEL': 'LOG_LEVEL',
}
DEV_SECRET_KEY = 'dev-secret-key-musicpro'


def _error(message, status):
    return jsonify({'ok': False, 'error': message}), status


def register_error_handlers(app):
    """Усі помилки API повертаються як ``{"ok": false, "error": ...}``."""
    from errors import ApiError

    @app.errorhandler(ApiError)
    def handle_api_error(e):
        return _error(e.message, e.status_code)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(e):
        return _error('File too large', 400)

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e):
        db.session.rollback()
        logger.exception('Database error on %s %s', request.method, request.path)
        return _error('Database unavailable', 500)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            if request.path.startswith('/api/'):
                return _error(e.description, e.code)
            return e
        logger.exception('Unhandled error on %s %s', request.method, request.path)
        return _error('Internal server error', 500)


def create_app(config=None):
    """
    Створює Flask-застосунок.

    Порядок конфігурації: значення за замовчуванням, змінні оточення,
    потім словник ``config`` (тести передають його сюди).

    :param config: Додаткові налаштування, що мають найвищий пріоритет.
    :type config: dict
    :return: Налаштований застосунок.
    :raises ValueError: Якщо задано невідому стратегію власності або бекенд.
    """
    app = Flask(__name__)

    # Default configuration
    app.config.update({
        'SECRET_KEY': DEV_SECRET_KEY,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + os.path.join(basedir, 'musicpro.db'),
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'UPLOAD_FOLDER': os.path.join(basedir, 'uploads'),
        'OWNERSHIP_STRATEGY': 'token',
        'METADATA_BACKEND': 'json',
        'AUDIO_MAX_BYTES': 50 * MB,
        'COVER_MAX_BYTES': 5 * MB,
        'LYRICS_MAX_BYTES': 500 * 1024,
        'MAX_FILES_PER_UPLOAD': 20,
        'MAX_CONTENT_LENGTH': 20 * 50 * MB + MB,
        'PERMANENT_SESSION_LIFETIME': timedelta(days=7),
        'LOG_LEVEL': 'INFO',
    })
    for env_name, key in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            app.config[key] = os.environ[env_name]
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if app.config['SECRET_KEY'] == DEV_SECRET_KEY and not app.testing:
        logger.warning('SECRET_KEY is not set, using the development key')

    # Imported here: these modules import `db` from this one
    import accounts  # noqa: F401  registers the Flask-Login user loader
    from app import api, auth, files
    from metadata_store import make_store
    from ownership import make_ownership
    from services import Library
    import storage

    ownership = make_ownership(app.config['OWNERSHIP_STRATEGY'])
    store = make_store(app.config)
    root = app.config['UPLOAD_FOLDER']
    storage.ensure_dirs(root)
    app.extensions['musicpro'] = Library(store, ownership, root, app.config)

    db.init_app(app)
    login_manager.init_app(app)
    register_error_handlers(app)

    app.register_blueprint(api)
    app.register_blueprint(files)
    if ownership.name == 'session':
        app.register_blueprint(auth)

    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError:
            # keep serving static files; API calls report the outage
            logger.exception('Database unavailable at startup')

    logger.info(
        'MusicPro ready: ownership=%s, metadata=%s, uploads=%s',
        ownership.name, app.config['METADATA_BACKEND'], root,
    )
    return app
