"""
Domain errors.

Every error carries a stable numeric code and an HTTP status. The text shown
to the user is rendered from a per-locale catalog so the same failure reads
naturally in each supported language.
"""

import enum
from typing import Any, Dict, Optional, Tuple


class ErrorCode(enum.IntEnum):
    INTERNAL_ERROR = 100
    INVALID_CREDENTIAL = 101
    USER_NOT_FOUND = 102
    CHAT_NOT_FOUND = 103
    ACCESS_DENIED = 104
    SENDER_NOT_MEMBER = 105
    MESSAGE_NOT_FOUND = 106
    MESSAGE_CHAT_MISMATCH = 107
    INVALID_TOKEN = 108
    FILE_NOT_FOUND = 109
    VALIDATION_FAILED = 110
    USERNAME_TAKEN = 111


MESSAGES: Dict[str, Dict[ErrorCode, str]] = {
    "en": {
        ErrorCode.INTERNAL_ERROR: "Something went wrong, please try again",
        ErrorCode.INVALID_CREDENTIAL: "Login data could not be verified: {0}",
        ErrorCode.USER_NOT_FOUND: "User {0} not found",
        ErrorCode.CHAT_NOT_FOUND: "Chat {0} not found",
        ErrorCode.ACCESS_DENIED: "Access denied: {0}",
        ErrorCode.SENDER_NOT_MEMBER: "User {0} is not a member of chat {1}",
        ErrorCode.MESSAGE_NOT_FOUND: "Message {0} not found",
        ErrorCode.MESSAGE_CHAT_MISMATCH: "Message {0} does not belong to chat {1}",
        ErrorCode.INVALID_TOKEN: "Invalid or expired token",
        ErrorCode.FILE_NOT_FOUND: "File {0} not found",
        ErrorCode.VALIDATION_FAILED: "Invalid request: {0}",
        ErrorCode.USERNAME_TAKEN: "Username {0} is already taken",
    },
    "ru": {
        ErrorCode.INTERNAL_ERROR: "Что-то пошло не так, попробуйте ещё раз",
        ErrorCode.INVALID_CREDENTIAL: "Не удалось проверить данные входа: {0}",
        ErrorCode.USER_NOT_FOUND: "Пользователь {0} не найден",
        ErrorCode.CHAT_NOT_FOUND: "Чат {0} не найден",
        ErrorCode.ACCESS_DENIED: "Доступ запрещён: {0}",
        ErrorCode.SENDER_NOT_MEMBER: "Пользователь {0} не состоит в чате {1}",
        ErrorCode.MESSAGE_NOT_FOUND: "Сообщение {0} не найдено",
        ErrorCode.MESSAGE_CHAT_MISMATCH: "Сообщение {0} не принадлежит чату {1}",
        ErrorCode.INVALID_TOKEN: "Недействительный или просроченный токен",
        ErrorCode.FILE_NOT_FOUND: "Файл {0} не найден",
        ErrorCode.VALIDATION_FAILED: "Некорректный запрос: {0}",
        ErrorCode.USERNAME_TAKEN: "Имя пользователя {0} уже занято",
    },
    "uz": {
        ErrorCode.INTERNAL_ERROR: "Xatolik yuz berdi, qayta urinib ko'ring",
        ErrorCode.INVALID_CREDENTIAL: "Kirish ma'lumotlari tasdiqlanmadi: {0}",
        ErrorCode.USER_NOT_FOUND: "Foydalanuvchi {0} topilmadi",
        ErrorCode.CHAT_NOT_FOUND: "Chat {0} topilmadi",
        ErrorCode.ACCESS_DENIED: "Ruxsat yo'q: {0}",
        ErrorCode.SENDER_NOT_MEMBER: "Foydalanuvchi {0} chat {1} a'zosi emas",
        ErrorCode.MESSAGE_NOT_FOUND: "Xabar {0} topilmadi",
        ErrorCode.MESSAGE_CHAT_MISMATCH: "Xabar {0} chat {1} ga tegishli emas",
        ErrorCode.INVALID_TOKEN: "Token yaroqsiz yoki muddati o'tgan",
        ErrorCode.FILE_NOT_FOUND: "Fayl {0} topilmadi",
        ErrorCode.VALIDATION_FAILED: "Noto'g'ri so'rov: {0}",
        ErrorCode.USERNAME_TAKEN: "{0} foydalanuvchi nomi band",
    },
}


def pick_locale(accept_language: Optional[str], default: str = "en") -> str:
    """First supported language tag from an Accept-Language header."""
    if accept_language:
        for part in accept_language.split(","):
            tag = part.split(";")[0].strip().lower()
            lang = tag.split("-")[0]
            if lang in MESSAGES:
                return lang
    return default if default in MESSAGES else "en"


class ChatError(Exception):
    code: ErrorCode
    status_code: int = 400

    def __init__(self, *args: Any):
        self.args_for_message: Tuple[Any, ...] = args
        super().__init__(self.render("en"))

    def render(self, locale: str = "en") -> str:
        catalog = MESSAGES.get(locale, MESSAGES["en"])
        template = catalog[self.code]
        try:
            return template.format(*self.args_for_message)
        except IndexError:
            return template

    def to_dict(self, locale: str = "en") -> Dict[str, Any]:
        return {"code": int(self.code), "message": self.render(locale)}


class InternalError(ChatError):
    code = ErrorCode.INTERNAL_ERROR
    status_code = 500


class InvalidCredential(ChatError):
    code = ErrorCode.INVALID_CREDENTIAL
    status_code = 401


class UserNotFound(ChatError):
    code = ErrorCode.USER_NOT_FOUND
    status_code = 404


class ChatNotFound(ChatError):
    code = ErrorCode.CHAT_NOT_FOUND
    status_code = 404


class AccessDenied(ChatError):
    code = ErrorCode.ACCESS_DENIED
    status_code = 403


class SenderNotMember(ChatError):
    code = ErrorCode.SENDER_NOT_MEMBER
    status_code = 403


class MessageNotFound(ChatError):
    code = ErrorCode.MESSAGE_NOT_FOUND
    status_code = 404


class MessageChatMismatch(ChatError):
    code = ErrorCode.MESSAGE_CHAT_MISMATCH


class InvalidToken(ChatError):
    code = ErrorCode.INVALID_TOKEN
    status_code = 401


class FileNotFound(ChatError):
    code = ErrorCode.FILE_NOT_FOUND
    status_code = 404


class ValidationFailed(ChatError):
    code = ErrorCode.VALIDATION_FAILED


class UsernameTaken(ChatError):
    code = ErrorCode.USERNAME_TAKEN
    status_code = 409
