"""Error types raised while rendering and delivering notifications."""


class AppError(Exception):
    """Base class for notification delivery errors."""

    def is_permanent_mailer(self) -> bool:
        """True when retrying the delivery cannot succeed."""
        return False


class PermanentMailerError(AppError):
    """A delivery failure that retrying will not fix (bad address, 4xx)."""

    def is_permanent_mailer(self) -> bool:
        return True


class TransientMailerError(AppError):
    """A delivery failure that may succeed on retry (network, 5xx)."""


class RateLimitedError(AppError):
    """The remote side asked us to slow down (HTTP 429); retryable."""


class TemplateError(AppError):
    """A template failed to parse or render; never retried."""