import logging
import os

from flask import Blueprint, abort, current_app, jsonify, request, send_from_directory, session
from flask_login import current_user, login_user, logout_user

from accounts import authenticate, register_user
from errors import Forbidden
from init import create_app
from storage import METADATA_FILE

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')
auth = Blueprint('auth', __name__, url_prefix='/api/auth')
files = Blueprint('files', __name__)


def library():
    return current_app.extensions['musicpro']


@api.route('/upload', methods=['POST'])
def upload():
    """
    Завантаження аудіофайлів (поле форми ``songs``).

    У стратегії ``token`` кожен файл у відповіді має поле ``secret`` -
    єдиний шанс клієнта отримати токен видалення.
    """
    saved, errors = library().upload(request.files.getlist('songs'))
    payload = {'ok': True, 'files': saved}
    if errors:
        payload['errors'] = errors
    return jsonify(payload)


@api.route('/songs')
def list_songs():
    """Публічний список треків."""
    return jsonify({'ok': True, 'files': library().list_songs()})


@api.route('/songs/<filename>', methods=['DELETE'])
def delete_song(filename):
    """Видалення треку власником (Bearer-токен або сесія)."""
    removed = library().delete(filename)
    return jsonify({'ok': True, 'removed': removed})


@api.route('/cover', methods=['POST'])
def upload_cover():
    record = library().attach_cover(request.form.get('filename'), request.files.get('file'))
    return jsonify({'ok': True, 'file': record})


@api.route('/lyrics', methods=['POST'])
def upload_lyrics():
    record = library().attach_lyrics(
        request.form.get('filename'),
        part=request.files.get('file'),
        text=request.form.get('lyrics'),
    )
    return jsonify({'ok': True, 'file': record})


@api.route('/lyrics/<filename>')
def get_lyrics(filename):
    kind, content = library().read_lyrics(filename)
    return jsonify({'ok': True, 'type': kind, 'content': content})


def _credentials():
    data = request.get_json(silent=True) or request.form
    return data.get('email'), data.get('password')


@auth.route('/register', methods=['POST'])
def register():
    """Реєстрація; новий користувач одразу входить у систему."""
    user = register_user(*_credentials())
    login_user(user)
    session.permanent = True
    return jsonify({'ok': True, 'user': user.to_public()})


@auth.route('/login', methods=['POST'])
def login():
    user = authenticate(*_credentials())
    if user is None:
        raise Forbidden('Invalid email or password')
    login_user(user)
    session.permanent = True
    logger.info('User logged in: %s', user.email)
    return jsonify({'ok': True, 'user': user.to_public()})


@auth.route('/logout', methods=['POST'])
def logout():
    logout_user()
    return jsonify({'ok': True})


@auth.route('/me')
def me():
    user = current_user.to_public() if current_user.is_authenticated else None
    return jsonify({'ok': True, 'user': user})


@files.route('/uploads/<path:name>')
def uploaded_file(name):
    """Віддає аудіо, обкладинки та тексти. Файл метаданих не віддається."""
    if name == METADATA_FILE or any(part.startswith('.') for part in name.split('/')):
        abort(404)
    response = send_from_directory(current_app.config['UPLOAD_FOLDER'], name)
    response.headers['Accept-Ranges'] = 'bytes'
    response.headers['Cache-Control'] = 'public, max-age=31536000, immutable'
    return response


if __name__ == '__main__':
    app = create_app()
    app.run(port=int(os.environ.get('PORT', 3000)), debug=os.environ.get('FLASK_DEBUG') == '1')
