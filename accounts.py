import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from errors import Conflict, Unavailable, ValidationError
from init import db, login_manager
from models import User

logger = logging.getLogger(__name__)


@login_manager.user_loader
def load_user(user_id):
    """Завантажує користувача з БД за ID для Flask-Login."""
    return db.session.get(User, int(user_id))


def _credentials(email, password):
    email = (email or '').strip().lower()
    if not email or '@' not in email:
        raise ValidationError('A valid email is required')
    if not password:
        raise ValidationError('Password is required')
    return email, password


def register_user(email, password):
    """
    Створює нового користувача.

    :param email: Email (нормалізується до нижнього регістру).
    :param password: Пароль у відкритому вигляді; зберігається лише його хеш.
    :return: Створений :class:`models.User`.
    :raises Conflict: Якщо такий email уже зареєстровано.
    """
    email, password = _credentials(email, password)
    try:
        if User.query.filter_by(email=email).first():
            raise Conflict('Email already registered')
        user = User(email=email, password_hash=generate_password_hash(password))
        db.session.add(user)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise Conflict('Email already registered') from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception('Failed to register %s', email)
        raise Unavailable('Database unavailable') from e
    logger.info('User registered: %s (ID: %d)', email, user.id)
    return user


def authenticate(email, password):
    """Повертає користувача, якщо пароль правильний, інакше None."""
    email, password = _credentials(email, password)
    try:
        user = User.query.filter_by(email=email).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception('Failed to look up %s', email)
        raise Unavailable('Database unavailable') from e
    if user and check_password_hash(user.password_hash, password):
        return user
    logger.info('Failed login for %s', email)
    return None
