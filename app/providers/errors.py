from __future__ import annotations


class ExternalAPIError(Exception):
    """Failure reported by (or while talking to) an external generation service."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.code = code

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is not None:
            return f"[{self.provider} {self.status_code}] {message}"
        return f"[{self.provider}] {message}"
