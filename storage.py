"""Робота з файлами на диску: аудіо, обкладинки та тексти пісень."""
import logging
import os
import re
import tempfile
import time

from errors import ValidationError

logger = logging.getLogger(__name__)

COVERS_DIR = 'covers'
LYRICS_DIR = 'lyrics'
METADATA_FILE = 'metadata.json'
CHUNK_SIZE = 64 * 1024


class FileTooLarge(ValidationError):
    def __init__(self):
        super().__init__('File too large')


def slugify(name):
    """
    Перетворює ім'я файлу на безпечний slug.

    >>> slugify('My Song (Live).mp3')
    'my-song-live.mp3'
    """
    name = re.sub(r'\s+', '-', name.lower())
    name = re.sub(r'[^a-z0-9.-]', '', name)
    name = re.sub(r'-+', '-', name)
    return name.strip('-')


def split_name(original_name):
    """Повертає (slug основи, безпечне розширення з крапкою або '')."""
    base, ext = os.path.splitext(os.path.basename(original_name or ''))
    ext = slugify(ext.lstrip('.'))
    return slugify(base) or 'audio', f'.{ext}' if ext else ''


def ensure_dirs(root):
    for path in (root, os.path.join(root, COVERS_DIR), os.path.join(root, LYRICS_DIR)):
        os.makedirs(path, exist_ok=True)


def _copy(stream, fh, max_bytes):
    size = 0
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            return size
        size += len(chunk)
        if max_bytes is not None and size > max_bytes:
            raise FileTooLarge()
        fh.write(chunk)


def _claim_name(tmp, folder, base, ext):
    stamp = int(time.time() * 1000)
    while True:
        filename = f'{base}-{stamp}{ext}'
        try:
            os.link(tmp, os.path.join(folder, filename))
        except FileExistsError:
            stamp += 1
            continue
        return filename


def save_unique(stream, folder, original_name, max_bytes=None):
    """
    Зберігає аудіо під унікальним ім'ям ``<slug>-<мілісекунди><ext>``.

    Байти спершу пишуться у прихований тимчасовий файл, і лише повністю
    записаний файл отримує остаточне ім'я через ``os.link``. Жорстке
    посилання не перезаписує наявний файл, тому два одночасні завантаження
    не можуть отримати те саме ім'я, а список не бачить недописаних файлів.

    :param stream: Потік з байтами файлу.
    :param folder: Каталог для збереження.
    :param original_name: Ім'я файлу від клієнта.
    :param max_bytes: Максимальний розмір або None.
    :return: Пара (ім'я файлу, розмір у байтах).
    :rtype: tuple
    :raises FileTooLarge: Якщо файл перевищує ``max_bytes``.
    """
    base, ext = split_name(original_name)
    fd, tmp = tempfile.mkstemp(dir=folder, prefix='.upload.', suffix='.part')
    try:
        with os.fdopen(fd, 'wb') as fh:
            size = _copy(stream, fh, max_bytes)
        filename = _claim_name(tmp, folder, base, ext)
    except BaseException:
        logger.warning('Discarding partial upload of %s', original_name)
        raise
    finally:
        remove_file(tmp)
    return filename, size


def save_replacing(stream, path, max_bytes=None):
    """Записує потік у ``path`` через тимчасовий файл (старий вміст замінюється)."""
    directory = os.path.dirname(path)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix='.upload.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as fh:
            size = _copy(stream, fh, max_bytes)
        os.replace(tmp, path)
    except BaseException:
        remove_file(tmp)
        raise
    return size


def remove_file(path):
    """
    Видаляє файл.

    :return: True, якщо файл видалено; False, якщо його вже не було.
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def asset_path(root, subdir, url):
    """Шлях на диску для URL виду ``/uploads/<subdir>/<name>``."""
    return os.path.join(root, subdir, os.path.basename(url))


def scan_audio(folder):
    """
    Перелічує файли, що лежать безпосередньо в каталозі завантажень.

    :return: Словник {ім'я файлу: розмір}.
    """
    found = {}
    try:
        entries = list(os.scandir(folder))
    except FileNotFoundError:
        return found
    for entry in entries:
        if entry.name.startswith('.') or entry.name == METADATA_FILE:
            continue
        try:
            if entry.is_file():
                found[entry.name] = entry.stat().st_size
        except FileNotFoundError:
            continue
    return found
