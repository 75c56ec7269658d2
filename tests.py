import io
import json
import os
import shutil
import tempfile
import time
import unittest
from datetime import timedelta
from unittest import mock

from init import create_app, db
from errors import DuplicateKey, NotFound, Unavailable, ValidationError
from metadata_store import JsonFileStore, SqlStore, UploadRecord
from models import User, Track
from ownership import bearer_token, hash_token, make_ownership
import storage

AUDIO = b'ID3' + b'\x00' * 125


def make_record(filename='song-1.mp3', **kwargs):
    values = {
        'filename': filename,
        'original_name': 'song.mp3',
        'size': 128,
        'url': f'/uploads/{filename}',
        'uploaded_at': '2025-01-01T00:00:00.000Z',
    }
    values.update(kwargs)
    return UploadRecord(**values)


class AppTestCase(unittest.TestCase):
    """Спільна підготовка: окремий застосунок, тимчасовий каталог і БД у пам'яті."""
    CONFIG = {}

    def setUp(self):
        self.upload_dir = tempfile.mkdtemp()
        config = {
            'TESTING': True,
            'SECRET_KEY': 'test-secret',
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'UPLOAD_FOLDER': self.upload_dir,
        }
        config.update(self.CONFIG)
        self.app = create_app(config)
        self.client = self.app.test_client()
        self.library = self.app.extensions['musicpro']

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
        shutil.rmtree(self.upload_dir, ignore_errors=True)

    def upload(self, client=None, name='song.mp3', data=AUDIO, mimetype='audio/mpeg'):
        client = client or self.client
        return client.post(
            '/api/upload',
            data={'songs': (io.BytesIO(data), name, mimetype)},
            content_type='multipart/form-data',
        )

    def songs(self, client=None):
        response = (client or self.client).get('/api/songs')
        self.assertEqual(response.status_code, 200)
        return response.get_json()['files']


class TestStorage(unittest.TestCase):
    """Тестування роботи з файлами на диску."""

    def setUp(self):
        self.folder = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.folder, ignore_errors=True)

    def test_slugify(self):
        self.assertEqual(storage.slugify('My Song (Live).mp3'), 'my-song-live.mp3')
        self.assertEqual(storage.slugify('  --A   b--  '), 'a-b')
        self.assertEqual(storage.slugify('Пісня'), '')

    def test_split_name_defaults_to_audio(self):
        self.assertEqual(storage.split_name('Пісня.MP3'), ('audio', '.mp3'))
        self.assertEqual(storage.split_name('../../etc/passwd'), ('passwd', ''))

    def test_save_unique_never_reuses_a_name(self):
        """Два збереження з однаковим ім'ям і часом дають різні файли."""
        with mock.patch('storage.time.time', return_value=1700000000.0):
            first, _ = storage.save_unique(io.BytesIO(b'a'), self.folder, 'Song.mp3')
            second, size = storage.save_unique(io.BytesIO(b'bb'), self.folder, 'Song.mp3')
        self.assertEqual(first, 'song-1700000000000.mp3')
        self.assertEqual(second, 'song-1700000000001.mp3')
        self.assertEqual(size, 2)

    def test_save_unique_too_large_leaves_nothing(self):
        with self.assertRaises(storage.FileTooLarge):
            storage.save_unique(io.BytesIO(b'x' * 100), self.folder, 'big.mp3', max_bytes=10)
        self.assertEqual(os.listdir(self.folder), [])

    def test_partial_upload_is_not_listed(self):
        """Поки файл пишеться, у каталозі немає видимого недописаного аудіо."""
        folder = self.folder
        seen = []

        class Stream:
            chunks = [b'abc', b'def', b'']

            def read(self, size):
                seen.append(storage.scan_audio(folder))
                return self.chunks.pop(0)

        filename, size = storage.save_unique(Stream(), folder, 'Song.mp3')
        self.assertEqual(seen, [{}, {}, {}])
        self.assertEqual(storage.scan_audio(folder), {filename: 6})
        self.assertEqual(os.listdir(folder), [filename])

    def test_scan_audio_skips_metadata_and_hidden(self):
        for name in ('a.mp3', 'metadata.json', '.metadata.json.123.tmp'):
            with open(os.path.join(self.folder, name), 'wb') as fh:
                fh.write(b'123')
        os.mkdir(os.path.join(self.folder, 'covers'))
        self.assertEqual(storage.scan_audio(self.folder), {'a.mp3': 3})

    def test_remove_missing_file(self):
        self.assertFalse(storage.remove_file(os.path.join(self.folder, 'nope.mp3')))


class StoreContract:
    """Однакові перевірки для обох варіантів сховища метаданих."""

    def test_insert_and_get(self):
        record = make_record(delete_token_hash='ab' * 32)
        self.store.insert(record)
        self.assertEqual(self.store.get('song-1.mp3'), record)

    def test_duplicate_insert_rejected(self):
        self.store.insert(make_record())
        with self.assertRaises(DuplicateKey):
            self.store.insert(make_record(original_name='other.mp3'))
        self.assertEqual(self.store.get('song-1.mp3').original_name, 'song.mp3')

    def test_get_missing(self):
        with self.assertRaises(NotFound):
            self.store.get('missing.mp3')

    def test_update_merges_fields(self):
        self.store.insert(make_record())
        self.store.update('song-1.mp3', {'cover_url': '/uploads/covers/song-1.jpg'})
        updated = self.store.update('song-1.mp3', {'lyrics_url': '/uploads/lyrics/song-1.txt', 'cover_url': None})
        self.assertEqual(updated.cover_url, '/uploads/covers/song-1.jpg')
        self.assertEqual(updated.lyrics_url, '/uploads/lyrics/song-1.txt')
        self.assertEqual(self.store.get('song-1.mp3'), updated)

    def test_update_rejects_immutable_fields(self):
        self.store.insert(make_record(owner_id=1))
        with self.assertRaises(ValidationError):
            self.store.update('song-1.mp3', {'owner_id': 2})
        self.assertEqual(self.store.get('song-1.mp3').owner_id, 1)

    def test_update_missing(self):
        with self.assertRaises(NotFound):
            self.store.update('missing.mp3', {'cover_url': '/x.jpg'})

    def test_remove(self):
        self.store.insert(make_record())
        self.store.remove('song-1.mp3')
        with self.assertRaises(NotFound):
            self.store.remove('song-1.mp3')
        self.assertEqual(self.store.list(), [])

    def test_list_is_stable(self):
        self.store.insert(make_record('a-1.mp3'))
        self.store.insert(make_record('b-2.mp3', owner_id=3))
        first = self.store.list()
        self.assertEqual({r.filename for r in first}, {'a-1.mp3', 'b-2.mp3'})
        self.assertEqual(set(first), set(self.store.list()))


class TestJsonFileStore(StoreContract, unittest.TestCase):

    def setUp(self):
        self.folder = tempfile.mkdtemp()
        self.path = os.path.join(self.folder, 'metadata.json')
        self.store = JsonFileStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.folder, ignore_errors=True)

    def test_file_layout(self):
        """На диску - JSON-масив з camelCase-ключами, без тимчасових файлів."""
        self.store.insert(make_record(delete_token_hash='ff' * 32))
        self.store.update('song-1.mp3', {'cover_url': '/uploads/covers/song-1.png'})
        with open(self.path, encoding='utf-8') as fh:
            data = json.load(fh)
        self.assertEqual(data[0]['originalName'], 'song.mp3')
        self.assertEqual(data[0]['deleteTokenHash'], 'ff' * 32)
        self.assertEqual(data[0]['coverUrl'], '/uploads/covers/song-1.png')
        self.assertNotIn('lyricsUrl', data[0])
        self.assertEqual(os.listdir(self.folder), ['metadata.json'])

    def test_failed_save_keeps_previous_file(self):
        """Збій під час запису не псує наявний файл і не лишає тимчасових."""
        self.store.insert(make_record())
        with open(self.path, encoding='utf-8') as fh:
            before = fh.read()
        with mock.patch('metadata_store.os.replace', side_effect=OSError(28, 'No space left on device')):
            with self.assertRaises(Unavailable):
                self.store.insert(make_record('song-2.mp3'))
        with open(self.path, encoding='utf-8') as fh:
            self.assertEqual(fh.read(), before)
        self.assertEqual(os.listdir(self.folder), ['metadata.json'])
        self.assertEqual([r.filename for r in self.store.list()], ['song-1.mp3'])

    def test_corrupt_file_is_unavailable(self):
        with open(self.path, 'w', encoding='utf-8') as fh:
            fh.write('{not json')
        with self.assertRaises(Unavailable):
            self.store.list()

    def test_record_missing_required_fields_is_unavailable(self):
        with open(self.path, 'w', encoding='utf-8') as fh:
            json.dump([{'filename': 'x.mp3'}], fh)
        with self.assertRaises(Unavailable):
            self.store.get('x.mp3')


class TestSqlStore(StoreContract, AppTestCase):
    CONFIG = {'METADATA_BACKEND': 'sql'}

    def setUp(self):
        super().setUp()
        self.ctx = self.app.app_context()
        self.ctx.push()
        self.store = SqlStore()

    def tearDown(self):
        self.ctx.pop()
        super().tearDown()

    def test_store_is_selected_by_config(self):
        self.assertIsInstance(self.library.store, SqlStore)


class TestDatabaseModels(AppTestCase):
    """Тестування бази даних та моделей (User, Track)."""

    def test_user_creation(self):
        with self.app.app_context():
            db.session.add(User(email='test@test.com', password_hash='hash123'))
            db.session.commit()
            self.assertIsNotNone(User.query.filter_by(email='test@test.com').first())

    def test_track_relationship(self):
        """Перевірка зв'язку Користувач -> Трек."""
        with self.app.app_context():
            user = User(email='artist@test.com', password_hash='123')
            db.session.add(user)
            db.session.commit()
            db.session.add(Track(filename='hit-1.mp3', original_name='hit.mp3', size=3,
                                 url='/uploads/hit-1.mp3', uploaded_at='2025-01-01T00:00:00Z',
                                 owner=user))
            db.session.commit()
            self.assertEqual(len(user.tracks), 1)
            self.assertEqual(user.tracks[0].filename, 'hit-1.mp3')


class TestOwnershipHelpers(unittest.TestCase):

    def test_hash_token(self):
        self.assertEqual(hash_token('abc'), hash_token('abc'))
        self.assertEqual(len(hash_token('abc')), 64)
        self.assertNotEqual(hash_token('abc'), hash_token('abd'))

    def test_bearer_token(self):
        self.assertEqual(bearer_token({'Authorization': 'Bearer abc'}), 'abc')
        self.assertEqual(bearer_token({'Authorization': 'bearer  abc '}), 'abc')
        self.assertIsNone(bearer_token({'Authorization': 'Basic abc'}))
        self.assertIsNone(bearer_token({'Authorization': 'Bearer '}))
        self.assertIsNone(bearer_token({}))

    def test_unknown_strategy(self):
        with self.assertRaises(ValueError):
            make_ownership('both')

    def test_unknown_backend(self):
        folder = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, folder, True)
        with self.assertRaises(ValueError):
            create_app({'TESTING': True, 'UPLOAD_FOLDER': folder,
                        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
                        'METADATA_BACKEND': 'redis'})


class TestTokenStrategy(AppTestCase):
    """Стратегія з токеном видалення (за замовчуванням, JSON-сховище)."""

    def upload_one(self, **kwargs):
        response = self.upload(**kwargs)
        self.assertEqual(response.status_code, 200, response.get_json())
        return response.get_json()['files'][0]

    def test_upload_delete_scenario(self):
        """Завантажити -> видалити з секретом -> трека більше немає у списку."""
        uploaded = self.upload_one()
        self.assertRegex(uploaded['filename'], r'^song-\d+\.mp3$')
        self.assertEqual(uploaded['originalName'], 'song.mp3')
        self.assertEqual(uploaded['size'], len(AUDIO))
        self.assertGreaterEqual(len(uploaded['secret']), 64)
        self.assertNotIn('deleteTokenHash', uploaded)

        listed = self.songs()
        self.assertEqual([f['size'] for f in listed], [len(AUDIO)])

        response = self.client.delete(
            f"/api/songs/{uploaded['filename']}",
            headers={'Authorization': f"Bearer {uploaded['secret']}"},
        )
        self.assertEqual(response.get_json(), {'ok': True, 'removed': uploaded['filename']})
        self.assertEqual(self.songs(), [])
        self.assertFalse(os.path.exists(os.path.join(self.upload_dir, uploaded['filename'])))

    def test_secret_deletes_exactly_once(self):
        uploaded = self.upload_one()
        headers = {'Authorization': f"Bearer {uploaded['secret']}"}
        url = f"/api/songs/{uploaded['filename']}"
        self.assertEqual(self.client.delete(url, headers=headers).status_code, 200)
        response = self.client.delete(url, headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['ok'])

    def test_wrong_or_missing_secret_forbidden(self):
        uploaded = self.upload_one()
        url = f"/api/songs/{uploaded['filename']}"
        for headers in ({}, {'Authorization': 'Bearer ' + 'f' * 64},
                        {'Authorization': uploaded['secret']}):
            response = self.client.delete(url, headers=headers)
            self.assertEqual(response.status_code, 403)
            self.assertFalse(response.get_json()['ok'])
        self.assertEqual(len(self.songs()), 1)

    def test_secret_is_never_stored_or_listed(self):
        uploaded = self.upload_one()
        with open(os.path.join(self.upload_dir, 'metadata.json'), encoding='utf-8') as fh:
            raw = fh.read()
        self.assertNotIn(uploaded['secret'], raw)
        self.assertIn(hash_token(uploaded['secret']), raw)
        listing = self.client.get('/api/songs').get_data(as_text=True)
        self.assertNotIn('deleteTokenHash', listing)
        self.assertNotIn(hash_token(uploaded['secret']), listing)
        self.assertEqual(self.client.get('/uploads/metadata.json').status_code, 404)

    def test_same_name_uploads_do_not_collide(self):
        response = self.client.post(
            '/api/upload',
            data={'songs': [(io.BytesIO(AUDIO), 'song.mp3', 'audio/mpeg'),
                            (io.BytesIO(AUDIO), 'song.mp3', 'audio/mpeg')]},
            content_type='multipart/form-data',
        )
        names = [f['filename'] for f in response.get_json()['files']]
        self.assertEqual(len(set(names)), 2)

    def test_batch_reports_per_file_failures(self):
        response = self.client.post(
            '/api/upload',
            data={'songs': [(io.BytesIO(AUDIO), 'good.mp3', 'audio/mpeg'),
                            (io.BytesIO(b'text'), 'notes.txt', 'text/plain')]},
            content_type='multipart/form-data',
        )
        payload = response.get_json()
        self.assertTrue(payload['ok'])
        self.assertEqual(len(payload['files']), 1)
        self.assertEqual(payload['errors'], [{'originalName': 'notes.txt',
                                              'error': 'Only audio files are allowed.'}])
        self.assertEqual(len(self.songs()), 1)

    def test_upload_rejections(self):
        response = self.upload(name='notes.txt', mimetype='text/plain')
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/upload')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'No audio files received')
        self.assertEqual(self.songs(), [])

    def test_too_large_upload(self):
        self.library.audio_max_bytes = 10
        response = self.upload()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {'ok': False, 'error': 'File too large'})
        self.assertEqual(self.songs(), [])

    def test_disk_error_keeps_earlier_secrets(self):
        """Збій диску на другому файлі не забирає секрет першого."""
        real_save = storage.save_unique
        calls = []

        def save(stream, folder, name, max_bytes=None):
            calls.append(name)
            if len(calls) == 2:
                raise OSError(28, 'No space left on device')
            return real_save(stream, folder, name, max_bytes)

        with mock.patch('storage.save_unique', side_effect=save):
            response = self.client.post(
                '/api/upload',
                data={'songs': [(io.BytesIO(AUDIO), 'a.mp3', 'audio/mpeg'),
                                (io.BytesIO(AUDIO), 'b.mp3', 'audio/mpeg')]},
                content_type='multipart/form-data',
            )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload['errors'], [{'originalName': 'b.mp3', 'error': 'Failed to store file'}])
        saved = payload['files'][0]
        response = self.client.delete(f"/api/songs/{saved['filename']}",
                                      headers={'Authorization': f"Bearer {saved['secret']}"})
        self.assertEqual(response.status_code, 200)

    def test_failed_cover_update_keeps_old_cover(self):
        """Якщо запис не оновився, стара обкладинка лишається, нова прибирається."""
        uploaded = self.upload_one()
        auth = {'Authorization': f"Bearer {uploaded['secret']}"}
        base = os.path.splitext(uploaded['filename'])[0]
        covers = os.path.join(self.upload_dir, 'covers')

        def attach(name, mimetype):
            return self.client.post('/api/cover', headers=auth, data={
                'filename': uploaded['filename'],
                'file': (io.BytesIO(b'img'), name, mimetype),
            }, content_type='multipart/form-data')

        self.assertEqual(attach('front.png', 'image/png').status_code, 200)
        with mock.patch.object(self.library.store, 'update', side_effect=Unavailable('disk full')):
            response = attach('front.jpg', 'image/jpeg')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(os.listdir(covers), [f'{base}.png'])
        self.assertEqual(self.songs()[0]['coverUrl'], f'/uploads/covers/{base}.png')

    def test_failed_lyrics_update_leaves_no_file(self):
        uploaded = self.upload_one()
        auth = {'Authorization': f"Bearer {uploaded['secret']}"}
        with mock.patch.object(self.library.store, 'update', side_effect=Unavailable('disk full')):
            response = self.client.post('/api/lyrics', headers=auth,
                                        data={'filename': uploaded['filename'], 'lyrics': 'la'})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(os.listdir(os.path.join(self.upload_dir, 'lyrics')), [])
        self.assertNotIn('lyricsUrl', self.songs()[0])

    def test_failed_insert_removes_file(self):
        with mock.patch.object(self.library.store, 'insert', side_effect=Unavailable('down')):
            response = self.upload()
        self.assertEqual(response.status_code, 500)
        self.assertEqual(storage.scan_audio(self.upload_dir), {})

    def test_orphan_file_is_listed(self):
        with open(os.path.join(self.upload_dir, 'lost-1.mp3'), 'wb') as fh:
            fh.write(b'12345')
        self.assertEqual(self.songs(), [{'filename': 'lost-1.mp3', 'size': 5,
                                         'url': '/uploads/lost-1.mp3',
                                         'ownerId': None, 'mine': False}])

    def test_delete_when_file_already_gone(self):
        uploaded = self.upload_one()
        os.remove(os.path.join(self.upload_dir, uploaded['filename']))
        response = self.client.delete(
            f"/api/songs/{uploaded['filename']}",
            headers={'Authorization': f"Bearer {uploaded['secret']}"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.songs(), [])

    def test_dangling_metadata_is_reported(self):
        uploaded = self.upload_one()
        with mock.patch.object(self.library.store, 'remove', side_effect=Unavailable('disk full')):
            response = self.client.delete(
                f"/api/songs/{uploaded['filename']}",
                headers={'Authorization': f"Bearer {uploaded['secret']}"},
            )
        self.assertEqual(response.status_code, 500)
        self.assertIn('metadata record', response.get_json()['error'])

    def test_delete_unknown(self):
        response = self.client.delete('/api/songs/nope.mp3', headers={'Authorization': 'Bearer x'})
        self.assertEqual(response.status_code, 404)

    def test_cover_and_lyrics(self):
        uploaded = self.upload_one()
        auth = {'Authorization': f"Bearer {uploaded['secret']}"}
        base = os.path.splitext(uploaded['filename'])[0]

        response = self.client.post('/api/cover', data={
            'filename': uploaded['filename'],
            'file': (io.BytesIO(b'\x89PNG'), 'Front.PNG', 'image/png'),
        }, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 403)

        response = self.client.post('/api/cover', headers=auth, data={
            'filename': uploaded['filename'],
            'file': (io.BytesIO(b'\x89PNG'), 'Front.PNG', 'image/png'),
        }, content_type='multipart/form-data')
        self.assertEqual(response.get_json()['file']['coverUrl'], f'/uploads/covers/{base}.png')

        response = self.client.post('/api/lyrics', headers=auth, data={
            'filename': uploaded['filename'],
            'file': (io.BytesIO(b'[00:01.00]la la'), 'words.lrc', 'text/plain'),
        }, content_type='multipart/form-data')
        self.assertEqual(response.get_json()['file']['lyricsUrl'], f'/uploads/lyrics/{base}.lrc')
        self.assertEqual(response.get_json()['file']['coverUrl'], f'/uploads/covers/{base}.png')

        response = self.client.get(f'/api/lyrics/{base}.lrc')
        self.assertEqual(response.get_json(), {'ok': True, 'type': 'lrc', 'content': '[00:01.00]la la'})

        self.client.delete(f"/api/songs/{uploaded['filename']}", headers=auth)
        self.assertFalse(os.path.exists(os.path.join(self.upload_dir, 'covers', f'{base}.png')))
        self.assertFalse(os.path.exists(os.path.join(self.upload_dir, 'lyrics', f'{base}.lrc')))

    def test_lyrics_text_and_validation(self):
        uploaded = self.upload_one()
        auth = {'Authorization': f"Bearer {uploaded['secret']}"}
        response = self.client.post('/api/lyrics', headers=auth,
                                    data={'filename': uploaded['filename'], 'lyrics': 'Рядок'})
        self.assertTrue(response.get_json()['file']['lyricsUrl'].endswith('.txt'))

        response = self.client.post('/api/lyrics', headers=auth, data={
            'filename': uploaded['filename'],
            'file': (io.BytesIO(b'x'), 'words.doc', 'application/msword'),
        }, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)

        response = self.client.post('/api/lyrics', headers=auth, data={'filename': uploaded['filename']})
        self.assertEqual(response.get_json()['error'], 'Lyrics file or text required')

        response = self.client.post('/api/lyrics', headers=auth, data={'filename': 'nope.mp3', 'lyrics': 'x'})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.get('/api/lyrics/nope.txt').status_code, 404)

    def test_uploaded_file_is_served(self):
        uploaded = self.upload_one()
        response = self.client.get(uploaded['url'])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, AUDIO)
        self.assertEqual(response.headers['Accept-Ranges'], 'bytes')
        response.close()

    def test_corrupt_store_keeps_serving(self):
        uploaded = self.upload_one()
        with open(os.path.join(self.upload_dir, 'metadata.json'), 'w', encoding='utf-8') as fh:
            fh.write('{broken')
        response = self.client.get('/api/songs')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'ok': False, 'error': 'Metadata store is unreadable'})
        response = self.client.get(uploaded['url'])
        self.assertEqual(response.status_code, 200)
        response.close()

    def test_account_routes_disabled(self):
        response = self.client.get('/api/auth/me')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['ok'])


class TestSessionStrategy(AppTestCase):
    """Стратегія з сесіями користувачів та SQL-сховищем."""
    CONFIG = {'OWNERSHIP_STRATEGY': 'session', 'METADATA_BACKEND': 'sql'}

    def register(self, email, password='pw1', client=None):
        client = client or self.app.test_client()
        response = client.post('/api/auth/register', json={'email': email, 'password': password})
        return client, response

    def setUp(self):
        super().setUp()
        self.alice, _ = self.register('a@x.com')
        self.bob, _ = self.register('b@x.com')

    def upload_as(self, client, name='track.mp3'):
        response = self.upload(client=client, name=name)
        self.assertEqual(response.status_code, 200, response.get_json())
        return response.get_json()['files'][0]

    def test_duplicate_registration(self):
        """Повторна реєстрація того самого email - конфлікт, акаунт не змінюється."""
        _, response = self.register('A@x.com', password='other')
        self.assertEqual(response.status_code, 409)
        client = self.app.test_client()
        response = client.post('/api/auth/login', json={'email': 'a@x.com', 'password': 'pw1'})
        self.assertTrue(response.get_json()['ok'])
        response = client.post('/api/auth/login', json={'email': 'a@x.com', 'password': 'other'})
        self.assertEqual(response.status_code, 403)

    def test_register_validation(self):
        _, response = self.register('not-an-email')
        self.assertEqual(response.status_code, 400)
        _, response = self.register('c@x.com', password='')
        self.assertEqual(response.status_code, 400)

    def test_session_lifecycle(self):
        client = self.app.test_client()
        self.assertIsNone(client.get('/api/auth/me').get_json()['user'])
        response = client.post('/api/auth/login', data={'email': 'b@x.com', 'password': 'pw1'})
        self.assertEqual(response.get_json()['user']['email'], 'b@x.com')
        self.assertNotIn('password_hash', response.get_data(as_text=True))
        self.assertEqual(client.get('/api/auth/me').get_json()['user']['email'], 'b@x.com')
        client.post('/api/auth/logout')
        self.assertIsNone(client.get('/api/auth/me').get_json()['user'])
        self.assertEqual(self.upload(client=client).status_code, 403)

    def test_anonymous_upload_forbidden(self):
        response = self.upload()
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()['error'], 'Login required')
        self.assertEqual(storage.scan_audio(self.upload_dir), {})

    def test_other_user_cannot_delete(self):
        uploaded = self.upload_as(self.alice)
        url = f"/api/songs/{uploaded['filename']}"
        self.assertEqual(self.bob.delete(url).status_code, 403)
        self.assertEqual(self.client.delete(url).status_code, 403)
        self.assertEqual(len(self.songs()), 1)
        response = self.alice.delete(url)
        self.assertEqual(response.get_json(), {'ok': True, 'removed': uploaded['filename']})
        self.assertEqual(self.songs(), [])

    def test_listing_marks_own_tracks(self):
        mine = self.upload_as(self.alice, 'mine.mp3')
        self.upload_as(self.bob, 'theirs.mp3')
        flags = {f['filename']: f['mine'] for f in self.songs(self.alice)}
        self.assertTrue(flags[mine['filename']])
        self.assertEqual(sum(flags.values()), 1)
        self.assertFalse(any(f['mine'] for f in self.songs()))
        owners = {f['ownerId'] for f in self.songs()}
        self.assertEqual(len(owners), 2)

    def test_unowned_record_fails_closed(self):
        with self.app.app_context():
            self.library.store.insert(make_record('stray-1.mp3'))
        self.assertEqual(self.alice.delete('/api/songs/stray-1.mp3').status_code, 403)

    def test_owner_attaches_lyrics(self):
        uploaded = self.upload_as(self.alice)
        data = {'filename': uploaded['filename'], 'lyrics': 'hello'}
        self.assertEqual(self.bob.post('/api/lyrics', data=data).status_code, 403)
        response = self.alice.post('/api/lyrics', data=data)
        self.assertIn('lyricsUrl', response.get_json()['file'])


class TestSessionExpiry(AppTestCase):
    """Сесія живе не довше за PERMANENT_SESSION_LIFETIME."""
    CONFIG = {
        'OWNERSHIP_STRATEGY': 'session',
        'METADATA_BACKEND': 'sql',
        'PERMANENT_SESSION_LIFETIME': timedelta(seconds=60),
    }

    def test_session_expires(self):
        self.client.post('/api/auth/register', json={'email': 'a@x.com', 'password': 'pw1'})
        self.assertEqual(self.client.get('/api/auth/me').get_json()['user']['email'], 'a@x.com')
        later = time.time() + 120
        with mock.patch('time.time', return_value=later):
            self.assertIsNone(self.client.get('/api/auth/me').get_json()['user'])
            self.assertEqual(self.upload().status_code, 403)


if __name__ == '__main__':
    unittest.main()
