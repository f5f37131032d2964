from __future__ import annotations


class EnricherError(RuntimeError):
    pass


class TransientProviderError(EnricherError):
    """Timeout, 5xx, 429 or network failure. Always safe to retry."""

    def __init__(self, provider: str, message: str, status_code: int = 0) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class PermanentProviderError(EnricherError):
    """404 / no match / other 4xx. Resolvers treat it as "no result"."""

    def __init__(self, provider: str, message: str, status_code: int = 0) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ValidationRejection(EnricherError):
    def __init__(self, source: str, isbn: str, title_score: float, author_score: float) -> None:
        super().__init__(
            f"{source} candidate {isbn} rejected (title={title_score:.2f}, author={author_score:.2f})"
        )
        self.source = source
        self.isbn = isbn
        self.title_score = title_score
        self.author_score = author_score


class QuotaExhaustedError(EnricherError):
    """Routing signal: the primary provider must not be called right now."""

    def __init__(self, provider: str, message: str = "quota exhausted", remaining: int = 0) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.remaining = remaining


class TaskExhaustedError(EnricherError):
    def __init__(self, task_id: int, retry_count: int, max_retries: int, last_error: str = "") -> None:
        super().__init__(f"task {task_id} exhausted retries ({retry_count}/{max_retries}): {last_error}")
        self.task_id = task_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.last_error = last_error


class QueueError(EnricherError):
    pass


class StoreError(EnricherError):
    pass


class KVStoreError(EnricherError):
    pass


class UnknownProviderError(EnricherError, ValueError):
    pass
