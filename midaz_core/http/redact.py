"""Header and URL redaction for request logging."""

import re
from typing import Dict, Mapping

# Headers that must never appear in logs
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "proxy-authorization",
        "x-api-key",
        "x-auth-token",
    }
)

REDACTED_VALUE = "[REDACTED]"

_URL_CREDENTIALS = re.compile(r"(https?://)([^:/@]+):([^@/]+)@")


def is_sensitive_header(header_name: str) -> bool:
    return header_name.lower() in SENSITIVE_HEADERS


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Copy of ``headers`` with sensitive values replaced by ``[REDACTED]``.

    Args:
        headers: Original request headers

    Returns:
        New dictionary safe to log
    """
    return {
        key: REDACTED_VALUE if is_sensitive_header(key) else value
        for key, value in headers.items()
    }


def redact_url_credentials(url: str) -> str:
    """Mask ``user:password@`` credentials embedded in a URL."""
    return _URL_CREDENTIALS.sub(r"\1[REDACTED]:[REDACTED]@", url)
