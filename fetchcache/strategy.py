"""
Decides how a request should be served from the cache.

Everything here is a pure function of the request: override headers win,
otherwise the defaults for the URL apply.
"""

import logging
import re
from typing import FrozenSet, Optional, Sequence, Tuple

from .model import CachePolicy, CacheStrategy, Request


logger = logging.getLogger(__name__)

STRATEGY_HEADER = 'x-cache-strategy'
TTL_HEADER = 'x-cache-ttl'
TAGS_HEADER = 'x-cache-tags'
NO_CACHE_HEADER = 'x-no-cache'

KEY_HEADERS = ('accept', 'content-type', 'authorization')
CACHEABLE_METHODS = {'GET', 'HEAD'}
AUTH_URL_FRAGMENTS = ('/auth/', '/login')

DEFAULT_TTL_MILLIS = 10 * 60 * 1000

# First match wins.
TTL_BY_URL: Sequence[Tuple[Tuple[str, ...], int]] = (
    (('/api/static', '/api/config'), 60 * 60 * 1000),
    (('/api/services',), 15 * 60 * 1000),
    (('/api/search',), 5 * 60 * 1000),
    (('/api/user',), 2 * 60 * 1000),
)

STRATEGY_BY_URL: Sequence[Tuple[Tuple[str, ...], CacheStrategy]] = (
    (('/api/services', '/api/search'), CacheStrategy.STALE_WHILE_REVALIDATE),
    (('/api/static', '/api/config'), CacheStrategy.CACHE_FIRST),
    (('/api/user', '/api/profile'), CacheStrategy.NETWORK_FIRST),
)

TAGS_BY_URL: Sequence[Tuple[str, str]] = (
    ('/api/services', 'services'),
    ('/api/search', 'search'),
    ('/api/user', 'user'),
)

_SERVICE_ID = re.compile(r'/api/services/(\d+)')


def generate_cache_key(request: Request) -> str:
    """
    Derive the key identifying `request` in the cache.

    Only the method, the full URL (with query parameters) and a fixed set of headers take part. Any other header may
    vary without changing the key.

    `|` separates the parts of the key, so it is percent-encoded wherever it appears inside one. A literal `|` is not
    valid in a URL, and `%7C` is how it travels on the wire, so escaping it there keeps the same resource.
    """
    header_parts = []
    for name in KEY_HEADERS:
        value = request.header(name)
        if value:
            header_parts.append('{}:{}'.format(name, value.replace('%', '%25').replace('|', '%7C')))
    key = '{}:{}'.format(request.method, request.url.replace('|', '%7C'))
    if header_parts:
        key += '|' + '|'.join(header_parts)
    return key


def should_cache(request: Request) -> bool:
    if request.method not in CACHEABLE_METHODS:
        return False

    cache_control = request.header('cache-control') or ''
    directives = {directive.strip().lower() for directive in cache_control.split(',')}
    if 'no-cache' in directives:
        return False
    if (request.header(NO_CACHE_HEADER) or '').strip().lower() == 'true':
        return False

    return not any(fragment in request.url for fragment in AUTH_URL_FRAGMENTS)


def resolve_strategy(request: Request) -> CacheStrategy:
    override = request.header(STRATEGY_HEADER)
    if override:
        try:
            return CacheStrategy(override.strip().lower())
        except ValueError:
            logger.warning('Ignoring unknown cache strategy override: {}'.format(override))

    for fragments, strategy in STRATEGY_BY_URL:
        if any(fragment in request.url for fragment in fragments):
            return strategy
    return CacheStrategy.CACHE_FIRST


def resolve_ttl(request: Request) -> int:
    """
    The time to live, in milliseconds, for a response to `request`.
    """
    ttl_millis = _parse_ttl_override(request.header(TTL_HEADER))
    if ttl_millis is not None:
        return ttl_millis

    for fragments, ttl_millis in TTL_BY_URL:
        if any(fragment in request.url for fragment in fragments):
            return ttl_millis
    return DEFAULT_TTL_MILLIS


def _parse_ttl_override(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        logger.warning('Ignoring non-integer cache TTL override: {}'.format(value))
        return None
    if seconds <= 0:
        logger.warning('Ignoring non-positive cache TTL override: {}'.format(value))
        return None
    return seconds * 1000


def resolve_tags(request: Request) -> FrozenSet[str]:
    tags = set()

    explicit = request.header(TAGS_HEADER)
    if explicit:
        tags.update(tag.strip() for tag in explicit.split(',') if tag.strip())

    for fragment, tag in TAGS_BY_URL:
        if fragment in request.url:
            tags.add(tag)

    match = _SERVICE_ID.search(request.url)
    if match:
        tags.add('service-{}'.format(match.group(1)))

    return frozenset(tags)


def resolve(request: Request) -> CachePolicy:
    return CachePolicy(key=generate_cache_key(request),
                       strategy=resolve_strategy(request),
                       ttl_millis=resolve_ttl(request),
                       tags=resolve_tags(request))
