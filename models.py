from init import db
from flask_login import UserMixin


class User(UserMixin, db.Model):
    """
    Модель користувача системи.
    Зберігає email та хеш пароля. Пароль у відкритому вигляді не зберігається.
    """
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    tracks = db.relationship('Track', backref='owner', lazy=True)

    def to_public(self):
        return {'id': self.id, 'email': self.email}


class Track(db.Model):
    """
    Модель аудіо-треку (реляційний варіант сховища метаданих).
    Первинний ключ - унікальне ім'я файлу на диску.
    """
    filename = db.Column(db.String(255), primary_key=True)
    original_name = db.Column(db.String(255), nullable=False)
    size = db.Column(db.BigInteger, nullable=False)
    url = db.Column(db.String(300), nullable=False)
    uploaded_at = db.Column(db.String(40), nullable=False)
    owner_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    delete_token_hash = db.Column(db.String(64), nullable=True)
    cover_url = db.Column(db.String(300), nullable=True)
    lyrics_url = db.Column(db.String(300), nullable=True)
