class ApiError(Exception):
    """
    Базова помилка API.

    Кожен підклас має власний HTTP-статус; обробник у `init.py` перетворює
    її на відповідь ``{"ok": false, "error": message}``.
    """
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(ApiError):
    """Некоректні або відсутні вхідні дані."""
    status_code = 400


class Forbidden(ApiError):
    """Перевірка прав не пройдена."""
    status_code = 403


class NotFound(ApiError):
    """Запис або файл не знайдено."""
    status_code = 404


class Conflict(ApiError):
    """Дублікат (наприклад, email уже зареєстровано)."""
    status_code = 409


class DuplicateKey(Conflict):
    """Запис з таким filename уже є у сховищі метаданих."""


class Unavailable(ApiError):
    """Сховище недоступне або не налаштоване."""
    status_code = 500
