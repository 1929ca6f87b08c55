"""Client identifier resolution from proxy headers."""

from typing import Mapping

FORWARDED_FOR_HEADER = "x-forwarded-for"
REAL_IP_HEADER = "x-real-ip"
UNKNOWN_IDENTIFIER = "unknown"


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette Headers are already case-insensitive; plain dicts are not.
    value = headers.get(name)
    if value is not None:
        return value
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def resolve_client_identifier(headers: Mapping[str, str]) -> str:
    """Resolve the rate limit identifier for a request.

    Priority:
    1. First hop of X-Forwarded-For (the originating client as seen by
       the nearest proxy)
    2. X-Real-IP, verbatim
    3. "unknown"

    IP syntax is not validated. Every client without either header lands in
    the shared "unknown" bucket.

    Args:
        headers: Request headers (Starlette Headers or a plain mapping)

    Returns:
        Identifier string
    """
    forwarded = _get_header(headers, FORWARDED_FOR_HEADER)
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = _get_header(headers, REAL_IP_HEADER)
    if real_ip:
        return real_ip

    return UNKNOWN_IDENTIFIER
