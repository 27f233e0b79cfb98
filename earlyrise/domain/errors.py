"""
Error taxonomy of the challenge engine.

UserError             — ожидаемый отказ, текст показывается пользователю как есть
ConfigurationError    — нет активного челленджа / функция выключена
ExternalDependencyError — куратор, Telegram и т.п. (восстанавливаемся локально)
DataIntegrityError    — запись, на которую сослались по id, отсутствует
"""


class EngineError(Exception):
    """Base error: machine-readable code + user-facing message."""

    code: str = "error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class UserError(EngineError, ValueError):
    code = "user_error"


class ConfigurationError(EngineError):
    code = "unavailable"


class InvalidTimezoneError(ConfigurationError):
    code = "invalid_timezone"


class ExternalDependencyError(EngineError):
    code = "external_failure"


class DataIntegrityError(EngineError):
    code = "not_found"


class PermissionDeniedError(UserError):
    code = "forbidden"
