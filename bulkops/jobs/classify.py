"""Enrichment failure taxonomy.

The scheduler never inspects raw exceptions itself: everything an enrichment
client raises goes through :func:`classify_error`, and the resulting
:class:`ErrorKind` decides whether the item is retried, failed, or the whole
job aborted.
"""

import asyncio
import re
import socket
from typing import Optional

import httpx

from bulkops.jobs.types import ErrorKind, ErrorSeverity

# Ordered: quota before rate limit (providers answer 429 for both)
_MESSAGE_PATTERNS: list[tuple[re.Pattern, ErrorKind]] = [
    (re.compile(r"quota|billing|insufficient_quota", re.I), ErrorKind.QUOTA_EXCEEDED),
    (re.compile(r"model.*not.*found|model_not_found|model.*unavailable", re.I), ErrorKind.MODEL_UNAVAILABLE),
    (re.compile(r"rate.?limit|too many requests|\b429\b", re.I), ErrorKind.RATE_LIMIT),
    (re.compile(r"ENOTFOUND|getaddrinfo|name or service not known|nodename nor servname", re.I), ErrorKind.DNS),
    (re.compile(r"ECONNREFUSED|ECONNRESET|connection (refused|reset|aborted)|fetch failed", re.I), ErrorKind.NETWORK),
    (re.compile(r"timeout|ETIMEDOUT|timed?\s*out", re.I), ErrorKind.TIMEOUT),
    (re.compile(r"api[_ ]key|authentication|unauthorized|\b401\b", re.I), ErrorKind.AUTH),
    (re.compile(r"\b50[0-9]\b|internal server error|bad gateway|service unavailable", re.I), ErrorKind.SERVER_ERROR),
]

_HUMANIZED: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMIT: "The AI service is busy. This will automatically retry.",
    ErrorKind.NETWORK: "Couldn't reach the research service. Check your internet connection.",
    ErrorKind.DNS: "Couldn't reach the research service. Check your internet connection.",
    ErrorKind.TIMEOUT: "The research took too long and timed out. Try again.",
    ErrorKind.AUTH: "API authentication failed. Check your API key configuration.",
    ErrorKind.QUOTA_EXCEEDED: "API quota exceeded. Check your billing and usage limits.",
    ErrorKind.MODEL_UNAVAILABLE: "The configured AI model is not available. Check your model settings.",
    ErrorKind.NOT_FOUND: "The research service endpoint was not found. Check the service configuration.",
    ErrorKind.SERVER_ERROR: "The research service had an internal error. Try again.",
    ErrorKind.INVALID_INPUT: "The research service rejected this record. Check its data.",
}
_DEFAULT_HUMANIZED = "Something went wrong. You can retry this account."


class EnrichmentError(Exception):
    """A classified enrichment failure.

    Clients may raise this directly when they already know the failure class;
    anything else is mapped by :func:`classify_error`.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"EnrichmentError(kind={self.kind.value!r}, message={self.message!r})"


def kind_for_status(status_code: int, message: str = "") -> ErrorKind:
    """Map an HTTP status code from the enrichment service to an error kind."""
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 402:
        return ErrorKind.QUOTA_EXCEEDED
    if status_code == 404:
        if re.search(r"model", message, re.I):
            return ErrorKind.MODEL_UNAVAILABLE
        return ErrorKind.NOT_FOUND
    if status_code == 429:
        if re.search(r"quota|billing", message, re.I):
            return ErrorKind.QUOTA_EXCEEDED
        return ErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if status_code in (400, 409, 413, 422):
        return ErrorKind.INVALID_INPUT
    return ErrorKind.UNKNOWN


def _message_of(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__


def classify_error(error: BaseException) -> EnrichmentError:
    """Classify any exception raised by an enrichment client.

    The original message is kept verbatim for operator diagnosis.
    """
    if isinstance(error, EnrichmentError):
        return error

    message = _message_of(error)

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        body = error.response.text if error.response is not None else ""
        return EnrichmentError(
            kind_for_status(status_code, f"{message} {body}"),
            f"{message}: {body}" if body else message,
            status_code=status_code,
        )
    if isinstance(error, httpx.TimeoutException):
        return EnrichmentError(ErrorKind.TIMEOUT, message)
    if isinstance(error, httpx.ConnectError):
        kind = _match_message(message)
        return EnrichmentError(kind if kind is ErrorKind.DNS else ErrorKind.NETWORK, message)
    if isinstance(error, httpx.TransportError):
        return EnrichmentError(ErrorKind.NETWORK, message)

    # SDK exceptions (openai, anthropic) carry the HTTP status as an attribute
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and status_code >= 400:
        return EnrichmentError(
            kind_for_status(status_code, message), message, status_code=status_code
        )

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return EnrichmentError(ErrorKind.TIMEOUT, message)
    if isinstance(error, socket.gaierror):
        return EnrichmentError(ErrorKind.DNS, message)
    if isinstance(error, (ConnectionError, OSError)):
        return EnrichmentError(ErrorKind.NETWORK, message)

    if isinstance(error, (ValueError, KeyError)):
        return EnrichmentError(ErrorKind.INVALID_INPUT, message)

    # Bare exceptions may carry item data in their message ("Quota Labs"),
    # so pattern matches alone never produce a job-fatal kind
    kind = _match_message(message)
    if kind is not None and kind.severity != ErrorSeverity.JOB:
        return EnrichmentError(kind, message)

    return EnrichmentError(ErrorKind.UNKNOWN, message)


def _match_message(message: str) -> Optional[ErrorKind]:
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return None


def humanize_error(
    raw_error: Optional[str], kind: Optional[ErrorKind] = None
) -> str:
    """Operator-facing sentence for a raw item error message.

    A known ``kind`` wins; otherwise the message is pattern-matched.
    """
    if kind is not None and kind in _HUMANIZED:
        return _HUMANIZED[kind]
    if not raw_error:
        return _DEFAULT_HUMANIZED
    kind = _match_message(raw_error)
    if kind is None:
        return _DEFAULT_HUMANIZED
    return _HUMANIZED.get(kind, _DEFAULT_HUMANIZED)
