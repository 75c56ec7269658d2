"""
Перевірка права власності на завантажені треки.

Стратегія обирається один раз під час старту (``OWNERSHIP_STRATEGY``):

* ``token`` - кожне завантаження отримує випадковий секрет, який клієнт бачить
  лише один раз; на сервері зберігається тільки його SHA-256;
* ``session`` - власником є користувач поточної сесії Flask-Login.
"""
import hashlib
import hmac
import logging
import secrets

from flask import request
from flask_login import current_user

from errors import Forbidden

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def generate_delete_token():
    """Новий секрет видалення: 256 біт, 64 hex-символи."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token):
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def bearer_token(headers):
    """
    Дістає токен із заголовка ``Authorization: Bearer <token>``.

    :return: Токен або None, якщо заголовка немає чи схема інша.
    """
    scheme, _, token = headers.get('Authorization', '').partition(' ')
    token = token.strip()
    if scheme.lower() != 'bearer' or not token:
        return None
    return token


class Ownership:
    """Інтерфейс стратегії власності."""
    name = None

    def require_uploader(self):
        """Перевірка перед обробкою завантаження; за замовчуванням дозволено всім."""

    def claim(self):
        """
        Поля власності для нового запису.

        :return: Пара (словник полів запису, секрет для клієнта або None).
        :raises Forbidden: Якщо завантаження зараз не дозволене.
        """
        raise NotImplementedError

    def authorize(self, record):
        """
        Перевіряє, що поточний запит має право змінювати або видаляти запис.

        :raises Forbidden: Якщо права немає.
        """
        raise NotImplementedError

    def is_mine(self, record):
        return False


class TokenOwnership(Ownership):
    name = 'token'

    def claim(self):
        token = generate_delete_token()
        return {'delete_token_hash': hash_token(token)}, token

    def authorize(self, record):
        token = bearer_token(request.headers)
        if token is None:
            raise Forbidden('Authorization token required')
        stored = record.delete_token_hash or ''
        if not hmac.compare_digest(hash_token(token), stored):
            logger.warning('Rejected delete token for %s', record.filename)
            raise Forbidden('Invalid authorization token')


class SessionOwnership(Ownership):
    name = 'session'

    def require_uploader(self):
        if not current_user.is_authenticated:
            raise Forbidden('Login required')

    def claim(self):
        self.require_uploader()
        return {'owner_id': current_user.id}, None

    def authorize(self, record):
        if not current_user.is_authenticated:
            raise Forbidden('Login required')
        # unowned records fail closed
        if record.owner_id is None or record.owner_id != current_user.id:
            logger.warning('User %s denied access to %s', current_user.id, record.filename)
            raise Forbidden('You can only modify your own files')

    def is_mine(self, record):
        return (current_user.is_authenticated
                and record.owner_id is not None
                and record.owner_id == current_user.id)


STRATEGIES = {cls.name: cls for cls in (TokenOwnership, SessionOwnership)}


def make_ownership(name):
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(f'Unknown OWNERSHIP_STRATEGY: {name!r}') from None
