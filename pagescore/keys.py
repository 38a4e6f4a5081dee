"""
Cache key derivation.

Turns the raw `url` field of a request into the canonical string used as
the cache key. Parsing follows the WHATWG URL standard via pydantic's URL
type, so hosts are IDNA-encoded and percent-decoded, IPv4 literals are
canonicalized and dot segments resolved. Pure string handling, no I/O.
"""

from __future__ import annotations

from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

DEFAULT_LOCK_PREFIX = "lh:"

_HTTP_URL = TypeAdapter(AnyHttpUrl)


class InvalidRequest(Exception):
    """Raised when the request does not carry a usable absolute URL."""


def normalize_url(raw: Any) -> str:
    """
    Return the canonical cache key for an absolute http(s) URL.

    The key is the serialized URL without its fragment, and without a
    bare trailing '?'.

    Raises InvalidRequest for non-strings, relative or unparseable URLs.
    """
    if not isinstance(raw, str):
        raise InvalidRequest("url must be a string")

    try:
        url = _HTTP_URL.validate_python(raw.strip())
    except ValidationError as exc:
        raise InvalidRequest(f"Invalid url {raw!r}: {exc}") from exc

    key = str(url).split("#", 1)[0]
    if not url.query and key.endswith("?"):
        key = key[:-1]
    return key


def lock_key(key: str, prefix: str = DEFAULT_LOCK_PREFIX) -> str:
    """Key of the refresh lock guarding the cache entry `key`."""
    return f"{prefix}{key}"
