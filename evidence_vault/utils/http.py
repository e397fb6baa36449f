"""Request helpers."""

from fastapi import Request


def client_ip(request: Request) -> str | None:
    """First hop of ``X-Forwarded-For``, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
