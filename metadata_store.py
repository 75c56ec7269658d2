"""
Сховище метаданих завантажених треків.

Два взаємозамінні варіанти з однаковим інтерфейсом:

* :class:`JsonFileStore` - один JSON-масив на диску, який після кожної зміни
  повністю перезаписується через тимчасовий файл та атомарне перейменування;
* :class:`SqlStore` - таблиця ``track`` через Flask-SQLAlchemy.

Кілька процесів, що одночасно пишуть у той самий JSON-файл, працюють за
правилом "останній записувач виграє". Всередині одного процесу зміни
серіалізуються блокуванням.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import DuplicateKey, NotFound, Unavailable, ValidationError
from init import db
from models import Track

logger = logging.getLogger(__name__)

# attribute name -> key in metadata.json / API payloads
JSON_KEYS = {
    'filename': 'filename',
    'original_name': 'originalName',
    'size': 'size',
    'url': 'url',
    'uploaded_at': 'uploadedAt',
    'owner_id': 'ownerId',
    'delete_token_hash': 'deleteTokenHash',
    'cover_url': 'coverUrl',
    'lyrics_url': 'lyricsUrl',
}
REQUIRED_FIELDS = ('filename', 'original_name', 'size', 'url', 'uploaded_at')
UPDATABLE_FIELDS = ('cover_url', 'lyrics_url')


@dataclass(frozen=True)
class UploadRecord:
    """Метадані одного збереженого аудіофайлу."""
    filename: str
    original_name: str
    size: int
    url: str
    uploaded_at: str
    owner_id: int = None
    delete_token_hash: str = None
    cover_url: str = None
    lyrics_url: str = None

    def to_dict(self):
        return {
            key: getattr(self, attr)
            for attr, key in JSON_KEYS.items()
            if getattr(self, attr) is not None
        }

    def to_public(self):
        """Словник для клієнта: без хешу токена видалення."""
        data = self.to_dict()
        data.pop('deleteTokenHash', None)
        return data

    @classmethod
    def from_dict(cls, data):
        """
        Відновлює запис із JSON-словника.

        :raises ValueError: Якщо бракує обов'язкових полів.
        """
        values = {attr: data.get(key) for attr, key in JSON_KEYS.items()}
        missing = [attr for attr in REQUIRED_FIELDS if values[attr] is None]
        if missing:
            raise ValueError(f"Metadata entry is missing fields: {', '.join(missing)}")
        return cls(**values)


def _clean_changes(changes):
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    # None means "not specified", never "clear"
    return {k: v for k, v in changes.items() if v is not None}


class MetadataStore:
    """Спільний інтерфейс сховищ метаданих."""

    def insert(self, record):
        raise NotImplementedError

    def get(self, filename):
        raise NotImplementedError

    def update(self, filename, changes):
        raise NotImplementedError

    def remove(self, filename):
        raise NotImplementedError

    def list(self):
        raise NotImplementedError


class JsonFileStore(MetadataStore):
    """
    Сховище у вигляді одного JSON-файлу.

    :param path: Шлях до файлу метаданих (наприклад, ``uploads/metadata.json``).
    :type path: str
    """

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def _load(self):
        try:
            with open(self.path, encoding='utf-8') as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.exception('Failed to read metadata file: %s', self.path)
            raise Unavailable('Metadata store is unreadable') from e
        try:
            return [UploadRecord.from_dict(item) for item in raw]
        except (TypeError, ValueError, AttributeError) as e:
            logger.exception('Corrupt metadata file: %s', self.path)
            raise Unavailable('Metadata store is corrupt') from e

    def _save(self, records):
        directory, name = os.path.split(os.path.abspath(self.path))
        tmp = None
        try:
            os.makedirs(directory, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                'w', encoding='utf-8', dir=directory, prefix=f'.{name}.',
                suffix='.tmp', delete=False,
            ) as fh:
                tmp = fh.name
                json.dump([r.to_dict() for r in records], fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            logger.exception('Failed to save metadata file: %s', self.path)
            if tmp and os.path.exists(tmp):
                os.remove(tmp)
            raise Unavailable('Metadata store is not writable') from e

    def insert(self, record):
        with self._lock:
            records = self._load()
            if any(r.filename == record.filename for r in records):
                raise DuplicateKey(f'Record already exists: {record.filename}')
            records.append(record)
            self._save(records)
        logger.info('Metadata record inserted: %s', record.filename)
        return record

    def get(self, filename):
        for record in self._load():
            if record.filename == filename:
                return record
        raise NotFound('File not found')

    def update(self, filename, changes):
        changes = _clean_changes(changes)
        with self._lock:
            records = self._load()
            for i, record in enumerate(records):
                if record.filename == filename:
                    records[i] = replace(record, **changes)
                    self._save(records)
                    logger.info('Metadata record updated: %s (%s)', filename, ', '.join(changes))
                    return records[i]
        raise NotFound('File not found')

    def remove(self, filename):
        with self._lock:
            records = self._load()
            kept = [r for r in records if r.filename != filename]
            if len(kept) == len(records):
                raise NotFound('File not found')
            self._save(kept)
        logger.info('Metadata record removed: %s', filename)

    def list(self):
        return self._load()


def _record_from_row(row):
    return UploadRecord(
        filename=row.filename,
        original_name=row.original_name,
        size=row.size,
        url=row.url,
        uploaded_at=row.uploaded_at,
        owner_id=row.owner_user_id,
        delete_token_hash=row.delete_token_hash,
        cover_url=row.cover_url,
        lyrics_url=row.lyrics_url,
    )


@contextmanager
def _database(action):
    """Відкочує сесію та перетворює помилки БД на :class:`Unavailable`."""
    try:
        yield
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception('Database error during %s', action)
        raise Unavailable('Database unavailable') from e


class SqlStore(MetadataStore):
    """Сховище метаданих у реляційній таблиці ``track``."""

    def insert(self, record):
        with _database('insert'):
            if db.session.get(Track, record.filename) is not None:
                raise DuplicateKey(f'Record already exists: {record.filename}')
            db.session.add(Track(
                filename=record.filename,
                original_name=record.original_name,
                size=record.size,
                url=record.url,
                uploaded_at=record.uploaded_at,
                owner_user_id=record.owner_id,
                delete_token_hash=record.delete_token_hash,
                cover_url=record.cover_url,
                lyrics_url=record.lyrics_url,
            ))
            try:
                db.session.commit()
            except IntegrityError as e:
                db.session.rollback()
                raise DuplicateKey(f'Record already exists: {record.filename}') from e
        logger.info('Metadata record inserted: %s', record.filename)
        return record

    def _row(self, filename):
        row = db.session.get(Track, filename)
        if row is None:
            raise NotFound('File not found')
        return row

    def get(self, filename):
        with _database('get'):
            return _record_from_row(self._row(filename))

    def update(self, filename, changes):
        changes = _clean_changes(changes)
        with _database('update'):
            row = self._row(filename)
            for attr, value in changes.items():
                setattr(row, attr, value)
            db.session.commit()
            logger.info('Metadata record updated: %s (%s)', filename, ', '.join(changes))
            return _record_from_row(row)

    def remove(self, filename):
        with _database('remove'):
            db.session.delete(self._row(filename))
            db.session.commit()
        logger.info('Metadata record removed: %s', filename)

    def list(self):
        with _database('list'):
            rows = Track.query.order_by(Track.uploaded_at, Track.filename).all()
            return [_record_from_row(row) for row in rows]


def make_store(config):
    """
    Створює сховище метаданих згідно з ``METADATA_BACKEND``.

    :param config: Конфігурація Flask-застосунку.
    :return: Екземпляр :class:`MetadataStore`.
    :raises ValueError: Якщо вказано невідомий бекенд.
    """
    backend = config['METADATA_BACKEND']
    if backend == 'json':
        return JsonFileStore(os.path.join(config['UPLOAD_FOLDER'], 'metadata.json'))
    if backend == 'sql':
        return SqlStore()
    raise ValueError(f'Unknown METADATA_BACKEND: {backend!r}')
