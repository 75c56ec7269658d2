"""
Бізнес-логіка бібліотеки: завантаження, перелік, видалення треків
та прикріплення обкладинок і текстів пісень.
"""
import io
import logging
import os
from datetime import datetime, timezone

import storage
from errors import ApiError, NotFound, Unavailable, ValidationError
from metadata_store import UploadRecord
from storage import COVERS_DIR, LYRICS_DIR

logger = logging.getLogger(__name__)

LYRICS_EXTENSIONS = ('.lrc', '.txt')


def _now():
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class Library:
    """
    Музична бібліотека поверх сховища метаданих і каталогу завантажень.

    :param store: Сховище метаданих (:class:`metadata_store.MetadataStore`).
    :param ownership: Активна стратегія власності (:class:`ownership.Ownership`).
    :param root: Каталог завантажень.
    :param config: Конфігурація Flask з лімітами розмірів.
    """

    def __init__(self, store, ownership, root, config):
        self.store = store
        self.ownership = ownership
        self.root = root
        self.audio_max_bytes = config['AUDIO_MAX_BYTES']
        self.cover_max_bytes = config['COVER_MAX_BYTES']
        self.lyrics_max_bytes = config['LYRICS_MAX_BYTES']
        self.max_files = config['MAX_FILES_PER_UPLOAD']

    # Upload

    def upload(self, parts):
        """
        Зберігає кілька аудіофайлів. Кожен файл обробляється окремо, без
        відкату вже збережених при помилці наступного.

        :param parts: Список ``werkzeug.datastructures.FileStorage``.
        :return: Пара (успішні записи, помилки по файлах).
        :raises ValidationError: Якщо файлів немає або їх забагато.
        :raises Forbidden: Якщо завантаження не дозволене (немає сесії).
        """
        self.ownership.require_uploader()
        parts = [p for p in parts if p and p.filename]
        if not parts:
            raise ValidationError('No audio files received')
        if len(parts) > self.max_files:
            raise ValidationError(f'At most {self.max_files} files per upload')

        saved, errors, failures = [], [], []
        for part in parts:
            try:
                saved.append(self._upload_one(part))
            except ApiError as e:
                logger.warning('Upload of %s failed: %s', part.filename, e.message)
                failures.append(e)
                errors.append({'originalName': part.filename, 'error': e.message})
        if not saved:
            raise failures[0]
        return saved, errors

    def _upload_one(self, part):
        if not (part.mimetype or '').startswith('audio/'):
            raise ValidationError('Only audio files are allowed.')
        owner_fields, secret = self.ownership.claim()
        try:
            filename, size = storage.save_unique(part.stream, self.root, part.filename, self.audio_max_bytes)
        except OSError as e:
            logger.exception('Failed to store uploaded file: %s', part.filename)
            raise Unavailable('Failed to store file') from e
        record = UploadRecord(
            filename=filename,
            original_name=part.filename,
            size=size,
            url=f'/uploads/{filename}',
            uploaded_at=_now(),
            **owner_fields,
        )
        try:
            self.store.insert(record)
        except Exception:
            logger.exception('Metadata insert failed, removing uploaded file: %s', filename)
            storage.remove_file(os.path.join(self.root, filename))
            raise
        logger.info('Uploaded %s as %s (%d bytes)', part.filename, filename, size)

        result = record.to_public()
        if secret:
            result['secret'] = secret
        return result

    # Listing

    def list_songs(self):
        """Усі треки для публічного списку, разом із файлами без метаданих."""
        records = self.store.list()
        files = []
        for record in records:
            item = record.to_public()
            item.setdefault('ownerId', None)
            item['mine'] = self.ownership.is_mine(record)
            files.append(item)

        known = {r.filename for r in records}
        on_disk = storage.scan_audio(self.root)
        for name in sorted(set(on_disk) - known):
            logger.warning('File without metadata record: %s', name)
            files.append({
                'filename': name,
                'size': on_disk[name],
                'url': f'/uploads/{name}',
                'ownerId': None,
                'mine': False,
            })
        return files

    # Deletion

    def _asset_paths(self, record):
        paths = [os.path.join(self.root, record.filename)]
        if record.cover_url:
            paths.append(storage.asset_path(self.root, COVERS_DIR, record.cover_url))
        if record.lyrics_url:
            paths.append(storage.asset_path(self.root, LYRICS_DIR, record.lyrics_url))
        return paths

    def delete(self, filename):
        """
        Видаляє трек: спершу перевірка прав, потім файли, потім запис.

        Відсутній на диску файл вважається вже видаленим. Якщо файли видалено,
        а запис - ні, це помилка, яку бачить і клієнт, і оператор у логах.

        :return: Ім'я видаленого файлу.
        """
        filename = os.path.basename(filename or '')
        if not filename:
            raise ValidationError('Filename required')
        record = self.store.get(filename)
        self.ownership.authorize(record)

        for path in self._asset_paths(record):
            try:
                removed = storage.remove_file(path)
            except OSError as e:
                logger.exception('Failed to remove file: %s', path)
                raise Unavailable('Failed to remove file from storage') from e
            if not removed:
                logger.warning('File already missing on delete: %s', path)

        try:
            self.store.remove(filename)
        except NotFound:
            raise
        except ApiError as e:
            logger.error('Files of %s removed but its metadata record remains', filename)
            raise Unavailable(
                f'Files of {filename} were removed but its metadata record could not be removed'
            ) from e
        logger.info('Deleted %s', filename)
        return filename

    # Cover and lyrics

    def _owned_record(self, filename):
        record = self.store.get(os.path.basename(filename))
        self.ownership.authorize(record)
        return record

    def attach_cover(self, filename, part):
        if not filename or not part or not part.filename:
            raise ValidationError('Audio filename and image file required')
        if not (part.mimetype or '').startswith('image/'):
            raise ValidationError('Only image files are allowed.')
        record = self._owned_record(filename)

        _, ext = storage.split_name(part.filename)
        cover_name = os.path.splitext(record.filename)[0] + (ext or '.jpg')
        path = os.path.join(self.root, COVERS_DIR, cover_name)
        storage.save_replacing(part.stream, path, self.cover_max_bytes)
        updated = self._point_to(record, 'cover_url', record.cover_url, COVERS_DIR, cover_name)
        logger.info('Cover attached to %s: %s', record.filename, cover_name)
        return updated.to_public()

    def attach_lyrics(self, filename, part=None, text=None):
        """
        Прикріплює текст пісні з файлу (.lrc/.txt) або з текстового поля.

        :return: Оновлений публічний запис.
        """
        if not filename:
            raise ValidationError('Audio filename required')
        has_file = part is not None and bool(part.filename)
        if not has_file and not text:
            raise ValidationError('Lyrics file or text required')
        if has_file:
            ext = os.path.splitext(part.filename)[1].lower()
            if ext not in LYRICS_EXTENSIONS:
                raise ValidationError('Only .lrc and .txt files are allowed.')
            stream = part.stream
        else:
            ext = '.txt'
            stream = io.BytesIO(text.encode('utf-8'))
        record = self._owned_record(filename)

        lyrics_name = os.path.splitext(record.filename)[0] + ext
        path = os.path.join(self.root, LYRICS_DIR, lyrics_name)
        storage.save_replacing(stream, path, self.lyrics_max_bytes)
        updated = self._point_to(record, 'lyrics_url', record.lyrics_url, LYRICS_DIR, lyrics_name)
        logger.info('Lyrics attached to %s: %s', record.filename, lyrics_name)
        return updated.to_public()

    def _point_to(self, record, field, old_url, subdir, new_name):
        """
        Переводить запис на щойно записаний файл і лише потім прибирає старий.

        Якщо оновити запис не вдалося, новий файл з іншим ім'ям видаляється,
        а запис і далі вказує на старий.
        """
        replaced = old_url and os.path.basename(old_url) != new_name
        try:
            updated = self.store.update(record.filename, {field: f'/uploads/{subdir}/{new_name}'})
        except Exception:
            if not old_url or replaced:
                logger.warning('Metadata update failed, discarding %s/%s', subdir, new_name)
                storage.remove_file(os.path.join(self.root, subdir, new_name))
            raise
        # a new asset with another extension leaves the old one behind
        if replaced:
            storage.remove_file(storage.asset_path(self.root, subdir, old_url))
        return updated

    def read_lyrics(self, name):
        """
        :return: Пара (тип ``lrc`` або ``txt``, вміст).
        :raises NotFound: Якщо файлу немає.
        """
        name = os.path.basename(name or '')
        path = os.path.join(self.root, LYRICS_DIR, name)
        if not name or not os.path.isfile(path):
            raise NotFound('Lyrics not found')
        with open(path, encoding='utf-8', errors='replace') as fh:
            content = fh.read()
        kind = 'lrc' if os.path.splitext(name)[1].lower() == '.lrc' else 'txt'
        return kind, content
