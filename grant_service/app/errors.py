class LifecycleError(Exception):
    """Базовая ошибка жизненного цикла доступа. status_code — HTTP-код ответа."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    """Некорректный или неполный ввод; отклоняется до обращения к хранилищу."""

    status_code = 400


class NotFoundError(LifecycleError):
    status_code = 404


class UnauthorizedError(LifecycleError):
    """У вызывающего нет роли или проекта в области действия."""

    status_code = 403


class ConflictError(LifecycleError):
    """Нарушено правило машины состояний: финальный статус, повторный голос, проигранная гонка."""

    status_code = 409


class ExternalServiceError(LifecycleError):
    """Сбой хранилища, сервиса назначения ролей или транспорта уведомлений."""

    status_code = 502


class StaleWriteError(Exception):
    """
    Внутренний сигнал: условная запись не применилась, потому что запись
    изменилась после чтения. Движок перечитывает запись и повторяет попытку.
    """
