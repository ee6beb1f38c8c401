"""Utility functions for Metronome operations.

This module provides small helpers shared across the engine: validation,
string and format helpers, SQL identifier quoting, time helpers and the
cooperative cancellation token used by the scheduler.

Classes:
    ValidationUtils: Validation of identifiers, e-mail addresses and URLs
    StringUtils: String manipulation helpers
    FormatUtils: Human-readable formatting helpers
    CancellationToken: Cooperative cancellation signal for async work

Example:
    >>> token = CancellationToken()
    >>> token.cancel()
    >>> token.is_cancelled
    True
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import List, Optional, Union

from .exceptions import ErrorCodes, OperationCancelledError


class ValidationUtils:
    """Utility class for validation operations."""

    IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
    EMAIL_PATTERN = re.compile(
        r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    )
    URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
    PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()-]{5,}$")

    @classmethod
    def validate_identifier(cls, identifier: str, *, allow_empty: bool = False) -> bool:
        """Validate identifier string.

        Args:
            identifier: String to validate as identifier
            allow_empty: Whether to allow empty strings

        Returns:
            True if identifier is valid

        Example:
            >>> ValidationUtils.validate_identifier("prod_sql_01")
            True
            >>> ValidationUtils.validate_identifier("01_invalid")
            False
        """
        if not identifier:
            return allow_empty

        return bool(cls.IDENTIFIER_PATTERN.match(identifier))

    @classmethod
    def validate_email(cls, email: str) -> bool:
        """Validate e-mail address format.

        Args:
            email: E-mail address to validate

        Returns:
            True if the address looks valid
        """
        return bool(email and cls.EMAIL_PATTERN.match(email))

    @classmethod
    def validate_url(cls, url: str) -> bool:
        """Validate http(s) URL format.

        Args:
            url: URL to validate

        Returns:
            True if the URL looks valid
        """
        return bool(url and cls.URL_PATTERN.match(url))

    @classmethod
    def validate_phone(cls, phone: str) -> bool:
        """Validate phone number format for SMS targets."""
        return bool(phone and cls.PHONE_PATTERN.match(phone))


class StringUtils:
    """Utility class for string operations."""

    @staticmethod
    def truncate_string(text: str, max_length: int, *, suffix: str = "...") -> str:
        """Truncate string to a maximum length and append a suffix.

        The suffix is added after ``max_length`` characters, so the result
        can be up to ``max_length + len(suffix)`` characters long.

        Args:
            text: String to truncate
            max_length: Number of characters to keep
            suffix: Suffix to add when truncating

        Returns:
            Truncated string

        Example:
            >>> StringUtils.truncate_string("SELECT name FROM sys.databases", 6)
            'SELECT...'
        """
        if len(text) <= max_length:
            return text

        return text[:max_length] + suffix

    @staticmethod
    def quote_identifier(name: str) -> str:
        """Quote a SQL Server identifier with brackets.

        Args:
            name: Identifier to quote

        Returns:
            Bracket-quoted identifier with embedded ``]`` escaped

        Example:
            >>> StringUtils.quote_identifier("Order Details")
            '[Order Details]'
        """
        return "[" + name.replace("]", "]]") + "]"

    @staticmethod
    def quote_literal(value: str) -> str:
        """Quote a value as an N'' string literal."""
        return "N'" + value.replace("'", "''") + "'"

    @classmethod
    def qualified_name(cls, *parts: str) -> str:
        """Build a bracket-quoted multi-part name, skipping empty parts."""
        return ".".join(cls.quote_identifier(part) for part in parts if part)


class FormatUtils:
    """Utility class for formatting operations."""

    @staticmethod
    def format_duration(seconds: Union[int, float]) -> str:
        """Format duration into human-readable string.

        Args:
            seconds: Duration in seconds

        Returns:
            Formatted duration string

        Example:
            >>> FormatUtils.format_duration(3661)
            '1h 1m 1s'
            >>> FormatUtils.format_duration(0.25)
            '250.00ms'
        """
        if seconds == 0:
            return "0s"

        abs_seconds = abs(seconds)
        sign = "-" if seconds < 0 else ""

        if abs_seconds < 1:
            return f"{sign}{abs_seconds * 1000:.2f}ms"

        hours = int(abs_seconds // 3600)
        minutes = int((abs_seconds % 3600) // 60)
        secs = abs_seconds % 60

        parts: List[str] = []
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        if secs > 0 or not parts:
            if secs == int(secs):
                parts.append(f"{int(secs)}s")
            else:
                parts.append(f"{secs:.2f}s")

        return sign + " ".join(parts)

    @staticmethod
    def format_megabytes(megabytes: Union[int, float]) -> str:
        """Format a size in MB as MB/GB/TB."""
        size = float(megabytes)
        for unit in ("MB", "GB"):
            if abs(size) < 1024:
                return f"{size:,.0f} {unit}"
            size /= 1024
        return f"{size:,.2f} TB"


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes returned by drivers."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CancellationToken:
    """Cooperative cancellation signal shared by a monitoring cycle.

    A token is set once and never reset. Child tokens created with
    :meth:`create_child` are cancelled together with their parent, which
    lets the scheduler link its own token to one supplied by a caller.

    Example:
        >>> token = CancellationToken()
        >>> await token.sleep(0.1)  # returns normally
        >>> token.cancel()
        >>> token.raise_if_cancelled("analysis")
        Traceback (most recent call last):
        OperationCancelledError: OPERATION_CANCELLED: analysis cancelled
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: List["CancellationToken"] = []
        self._parent: Optional["CancellationToken"] = None

    @property
    def is_cancelled(self) -> bool:
        """Check whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation of this token and all of its children."""
        if self._event.is_set():
            return
        self._event.set()
        children, self._children = self._children, []
        for child in children:
            child._parent = None
            child.cancel()
        self.release()

    def create_child(self) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        child = CancellationToken()
        if self.is_cancelled:
            child.cancel()
        else:
            child._parent = self
            self._children.append(child)
        return child

    def release(self) -> None:
        """Stop following the parent token.

        Called when the work owning a child token ends, so a long-lived
        parent does not keep every finished child alive.
        """
        parent, self._parent = self._parent, None
        if parent is not None and self in parent._children:
            parent._children.remove(self)

    @property
    def child_count(self) -> int:
        return len(self._children)

    def raise_if_cancelled(self, operation: Optional[str] = None) -> None:
        """Raise :class:`OperationCancelledError` if cancellation was requested.

        Args:
            operation: Name of the unit of work, used in the error message
        """
        if self.is_cancelled:
            raise OperationCancelledError(
                f"{operation or 'operation'} cancelled",
                code=ErrorCodes.OPERATION_CANCELLED,
                context={"operation": operation},
            )

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first.

        Raises:
            OperationCancelledError: If the token is set before or during the sleep
        """
        self.raise_if_cancelled("sleep")
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled("sleep")

    def __repr__(self) -> str:
        """Return string representation of token."""
        return f"CancellationToken(cancelled={self.is_cancelled})"
