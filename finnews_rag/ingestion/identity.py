"""
Content identity hashing.

Articles are identified by the SHA-256 of their normalized URL (primary key)
and of their normalized title (secondary dedup key).
"""

import re
import hashlib


_WHITESPACE_RE = re.compile(r'\s+')
_FULLWIDTH_SPACE = '　'


def normalize_url(url: str) -> str:
    """
    Normalize a URL for identity purposes.

    Trims surrounding whitespace, drops the query string and removes
    trailing slashes. Idempotent.
    """
    if not url:
        return ''
    normalized = url.strip().split('?', 1)[0].strip()
    return normalized.rstrip('/')


def normalize_title(title: str) -> str:
    """
    Normalize a title for identity purposes.

    Fullwidth spaces become ASCII spaces, whitespace runs collapse to a
    single space and the result is lowercased.
    """
    if not title:
        return ''
    normalized = title.strip().replace(_FULLWIDTH_SPACE, ' ')
    normalized = _WHITESPACE_RE.sub(' ', normalized).strip()
    return normalized.lower()


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def hash_url(url: str) -> str:
    """SHA-256 hex digest of the normalized URL."""
    return _sha256(normalize_url(url))


def hash_title(title: str) -> str:
    """SHA-256 hex digest of the normalized title."""
    return _sha256(normalize_title(title))
