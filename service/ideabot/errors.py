"""
Error taxonomy shared by the ledger, publisher and dialog relay.

Bot handlers turn these into user-visible replies, the HTTP layer turns
them into 4xx/5xx responses.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all expected (non-crash) failures."""

    user_message = "Произошла ошибка. Попробуйте позже."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class NotFound(LedgerError):
    user_message = "Ошибка: заявка не найдена"


class DuplicateVote(LedgerError):
    """Same voter, same request, same direction. Informational."""

    user_message = "Вы уже голосовали так"

    def __init__(self, tally: int, message: str | None = None):
        super().__init__(message)
        self.tally = tally


class ValidationError(LedgerError):
    user_message = "Некорректные данные"

    def __init__(self, message: str | None = None, field: str | None = None):
        super().__init__(message)
        self.field = field


class ContentTooShort(ValidationError):
    pass


class UnknownCallback(ValidationError):
    user_message = "Неизвестное действие"


class UpstreamError(LedgerError):
    user_message = "Сервис временно недоступен. Попробуйте ещё раз."


class UpstreamTimeout(UpstreamError):
    user_message = "Сервис не ответил вовремя. Попробуйте ещё раз."


class AlreadyProcessed(LedgerError):
    """Payment charge id seen before. Never shown to the payer as an error."""

    def __init__(self, tally: int, message: str | None = None):
        super().__init__(message or "payment already processed")
        self.tally = tally
