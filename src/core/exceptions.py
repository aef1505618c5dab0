"""Централизованные исключения приложения.

Этот модуль содержит ВСЕ кастомные исключения проекта.
Удобный импорт: `from src.core.exceptions import SomeError`

Организация исключений по доменам:
- Database: Ошибки работы с БД и записи в леджер
- Routing: Ошибки маршрутизации моделей
- AI Providers: Ошибки провайдеров генерации
- Ledger: Бизнес-ошибки кошелька (недостаточно кредитов)
- Auth: Ошибки аутентификации клиента
"""

from typing_extensions import override

# =============================================================================
# DATABASE EXCEPTIONS
# =============================================================================
# Исключения для работы с базой данных.
# Иерархия: DatabaseError -> DatabaseOperationError, LedgerWriteError
# =============================================================================


class DatabaseError(Exception):
    """Базовое исключение для ошибок работы с БД.

    Может быть потенциально восстановимым (retry) в зависимости от причины.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        """Создать исключение БД.

        Args:
            message: Описание ошибки.
            retryable: Можно ли повторить операцию (True для временных сбоев).
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class DatabaseOperationError(DatabaseError):
    """Ошибка выполнения операции с БД.

    Может быть восстановимой (deadlock, timeout) или невосстановимой
    (constraint violation).
    """

    def __init__(
        self, operation: str, original_error: Exception, retryable: bool = False
    ) -> None:
        """Создать исключение об ошибке операции БД.

        Args:
            operation: Название операции (charge, refund, и т.д.).
            original_error: Оригинальное исключение от SQLAlchemy.
            retryable: Можно ли повторить операцию.
        """
        super().__init__(
            f"Ошибка выполнения операции '{operation}': {original_error}",
            retryable=retryable,
        )
        self.operation = operation
        self.original_error = original_error


class LedgerWriteError(DatabaseOperationError):
    """Инфраструктурный сбой записи в леджер.

    Бизнес-логика тут ни при чём: БД недоступна, deadlock, обрыв соединения.
    Для возвратов такая ошибка повторяется с backoff, а после исчерпания
    попыток логируется как CRITICAL и пробрасывается дальше.

    Attributes:
        user_id: ID пользователя.
        category: Категория баланса.
        attempts: Сколько попыток было сделано.
    """

    def __init__(
        self,
        operation: str,
        original_error: Exception,
        *,
        user_id: int,
        category: str,
        attempts: int = 1,
    ) -> None:
        """Создать исключение о сбое записи в леджер.

        Args:
            operation: Операция леджера (charge, refund, credit).
            original_error: Оригинальное исключение от SQLAlchemy.
            user_id: ID пользователя.
            category: Категория баланса.
            attempts: Количество выполненных попыток.
        """
        super().__init__(operation, original_error, retryable=True)
        self.user_id = user_id
        self.category = category
        self.attempts = attempts


# =============================================================================
# ROUTING EXCEPTIONS
# =============================================================================
# Исключения маршрутизации: модель не найдена в реестре маршрутов.
# =============================================================================


class UnknownModelError(Exception):
    """Модель (slug) отсутствует в реестре маршрутов.

    Возникает до списания кредитов, поэтому деньги пользователя не затронуты.

    Attributes:
        slug: Запрошенный slug модели.
    """

    def __init__(self, slug: str) -> None:
        """Создать исключение о неизвестной модели.

        Args:
            slug: Slug модели, которого нет в конфигурации.
        """
        self.slug = slug
        super().__init__(f"Неизвестная модель: {slug}")


# =============================================================================
# AI PROVIDER EXCEPTIONS
# =============================================================================
# Исключения для AI-провайдеров (OpenAI, Groq, Replicate, и т.д.).
# Иерархия: GenerationError -> RetryableProviderError, FatalProviderError
# =============================================================================


class GenerationError(Exception):
    """Ошибка при генерации.

    Выбрасывается когда провайдер не может выполнить запрос.
    Содержит информацию для логирования и отображения пользователю.

    Attributes:
        message: Человекочитаемое описание ошибки.
        provider: Название провайдера (openai, replicate, и т.д.).
        model_id: ID модели, на которой произошла ошибка.
        is_retryable: Можно ли попробовать следующего провайдера.
        original_error: Оригинальное исключение от SDK провайдера.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        model_id: str,
        is_retryable: bool = False,
        original_error: Exception | None = None,
    ) -> None:
        """Создать ошибку генерации.

        Args:
            message: Описание ошибки.
            provider: Название провайдера.
            model_id: ID модели.
            is_retryable: Можно ли перейти к следующему кандидату.
            original_error: Оригинальное исключение.
        """
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.model_id = model_id
        self.is_retryable = is_retryable
        self.original_error = original_error

    @override
    def __str__(self) -> str:
        """Строковое представление ошибки."""
        return f"[{self.provider}:{self.model_id}] {self.message}"


class RetryableProviderError(GenerationError):
    """Временный сбой провайдера.

    Провайдер недоступен, rate limit, 5xx, обрыв соединения.
    Роутер переходит к следующему кандидату.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        model_id: str,
        original_error: Exception | None = None,
    ) -> None:
        """Создать ошибку временного сбоя провайдера."""
        super().__init__(
            message,
            provider=provider,
            model_id=model_id,
            is_retryable=True,
            original_error=original_error,
        )


class FatalProviderError(GenerationError):
    """Постоянная ошибка: проблема во входных данных.

    Промпт отклонён модерацией, некорректные параметры и т.д.
    Перебор кандидатов прекращается: другие провайдеры ответят так же.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        model_id: str,
        original_error: Exception | None = None,
    ) -> None:
        """Создать ошибку постоянного сбоя провайдера."""
        super().__init__(
            message,
            provider=provider,
            model_id=model_id,
            is_retryable=False,
            original_error=original_error,
        )


class ProviderNotAvailableError(Exception):
    """Провайдер недоступен или не зарегистрирован.

    Возникает когда:
    - Провайдер не зарегистрирован в реестре
    - API-ключ для провайдера не настроен
    - Для модели не осталось ни одного настроенного кандидата

    Attributes:
        message: Описание ошибки.
        provider_type: Тип провайдера, который недоступен.
    """

    def __init__(self, message: str, provider_type: str | None = None) -> None:
        """Создать исключение ProviderNotAvailableError.

        Args:
            message: Описание ошибки.
            provider_type: Тип провайдера (опционально).
        """
        self.message = message
        self.provider_type = provider_type
        super().__init__(message)


# =============================================================================
# LEDGER EXCEPTIONS
# =============================================================================
# Бизнес-ошибки кошелька пользователя.
# =============================================================================


class InsufficientBalanceError(Exception):
    """Недостаточно кредитов для генерации.

    Возникает когда баланс категории меньше стоимости запроса.
    Частичное списание не выполняется.

    Attributes:
        user_id: ID пользователя.
        category: Категория баланса (text, image, video, audio).
        required: Требуемое количество кредитов.
        available: Доступное количество кредитов.
    """

    def __init__(
        self,
        user_id: int,
        category: str,
        required: int,
        available: int,
    ) -> None:
        """Создать исключение о недостаточном балансе.

        Args:
            user_id: ID пользователя.
            category: Категория баланса.
            required: Требуемое количество кредитов.
            available: Доступное количество кредитов.
        """
        self.user_id = user_id
        self.category = category
        self.required = required
        self.available = available
        super().__init__(
            f"Недостаточно кредитов: требуется {required}, доступно {available} "
            f"(user_id={user_id}, category={category})"
        )


# =============================================================================
# AUTH EXCEPTIONS
# =============================================================================


class AuthenticationError(Exception):
    """Не удалось аутентифицировать клиента.

    Токен отсутствует, просрочен, подделан или initData не прошла проверку.
    """
