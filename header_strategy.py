"""
Header strategy table.

Each upstream CDN validates Referer/Origin differently. The table below maps a
(host, request kind) pair to the headers that get a request through, plus the
ordered variants to try when the CDN still answers 403.
"""
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
from urllib.parse import urlparse

from config import (
    CHROME_CLIENT_HINTS,
    KWIK_ORIGIN,
    KWIK_REFERER,
    MEGAUP_HOSTS,
    VAULT_CDN_SUFFIXES,
)

KEY = 'key'
SEGMENT = 'segment'
MANIFEST = 'manifest'
THUMBNAIL = 'thumbnail'

THUMBNAIL_EXTENSIONS = ('.jpg', '.jpeg', '.png')

_VAULT_HOST_RE = re.compile(
    r'^vault-[^.]+\.(?:%s)$' % '|'.join(re.escape(s) for s in VAULT_CDN_SUFFIXES)
)


@dataclass(frozen=True)
class HeaderVariant:
    """One request shape. ``None`` means the header is not sent at all."""
    name: str
    referer: Optional[str]
    origin: Optional[str]


@dataclass(frozen=True)
class HeaderStrategy:
    name: str
    matches: Callable[[str, str], bool]
    variants: Tuple[HeaderVariant, ...] = ()
    extra_headers: Tuple[Tuple[str, str], ...] = ()


def classify_request(pathname):
    path = (pathname or '').lower()
    if '.key' in path:
        return KEY
    if '.m3u8' in path or 'list,' in path:
        return MANIFEST
    if path.endswith(THUMBNAIL_EXTENSIONS):
        return THUMBNAIL
    return SEGMENT


def origin_of(url):
    parsed = urlparse(url or '')
    if not parsed.scheme or not parsed.netloc:
        return None
    return f'{parsed.scheme}://{parsed.netloc}'


def is_vault_host(hostname):
    return bool(_VAULT_HOST_RE.match((hostname or '').lower()))


def is_megaup_host(hostname):
    hostname = (hostname or '').lower()
    return any(hostname == h or hostname.endswith('.' + h) for h in MEGAUP_HOSTS)


def is_megaup_landing(url):
    """A MegaUp embed page (``/e/<id>``), the page MegaUp expects as Referer."""
    parsed = urlparse(url or '')
    return is_megaup_host(parsed.hostname) and '/e/' in parsed.path


VAULT_KEY_VARIANTS = (
    HeaderVariant('kwik-with-slash', KWIK_REFERER, KWIK_ORIGIN),
    HeaderVariant('no-origin', KWIK_REFERER, None),
    HeaderVariant('kwik-no-slash', KWIK_REFERER.rstrip('/'), KWIK_ORIGIN),
)

GENERIC_KEY_VARIANTS = (
    HeaderVariant('no-referer', None, None),
)

STRATEGIES = (
    HeaderStrategy(
        'vault-key',
        lambda host, kind: kind == KEY and is_vault_host(host),
        variants=VAULT_KEY_VARIANTS,
    ),
    HeaderStrategy('vault', lambda host, kind: is_vault_host(host)),
    HeaderStrategy(
        'megaup',
        lambda host, kind: is_megaup_host(host),
        extra_headers=tuple(CHROME_CLIENT_HINTS.items()),
    ),
    HeaderStrategy(
        'generic-key',
        lambda host, kind: kind == KEY,
        variants=GENERIC_KEY_VARIANTS,
    ),
    HeaderStrategy('generic', lambda host, kind: True),
)


def find_strategy(hostname, kind):
    for strategy in STRATEGIES:
        if strategy.matches((hostname or '').lower(), kind):
            return strategy
    return STRATEGIES[-1]


def _referer_pair(referer, origin_override=None):
    return referer, origin_override or origin_of(referer)


def select_headers(hostname, pathname, kind=None, caller_referer=None,
                   origin_override=None, scheme='https'):
    """Return ``(headers, fallback_variants)`` for an upstream request.

    The first entry of a strategy's variant list is the shape used for the
    initial request; the rest are returned as fallbacks for the retry ladder.
    """
    kind = kind or classify_request(pathname)
    caller_referer = (caller_referer or '').strip() or None
    strategy = find_strategy(hostname, kind)
    target_origin = f'{scheme}://{hostname}'

    if strategy.name == 'vault-key':
        first, fallbacks = strategy.variants[0], strategy.variants[1:]
        referer, origin = first.referer, first.origin
    elif strategy.name == 'vault':
        fallbacks = ()
        if caller_referer:
            referer, origin = _referer_pair(caller_referer, origin_override)
        else:
            referer, origin = KWIK_REFERER, KWIK_ORIGIN
    elif strategy.name == 'megaup':
        fallbacks = ()
        if caller_referer and is_megaup_landing(caller_referer):
            referer, origin = caller_referer, origin_of(caller_referer)
        else:
            referer, origin = target_origin + '/', target_origin
    else:
        fallbacks = strategy.variants
        if caller_referer:
            referer, origin = _referer_pair(caller_referer, origin_override)
        else:
            referer, origin = target_origin, target_origin

    headers = dict(strategy.extra_headers)
    if referer:
        headers['Referer'] = referer
    if origin:
        headers['Origin'] = origin
    return headers, tuple(fallbacks)


def apply_variant(headers, variant):
    """Copy ``headers`` with Referer/Origin replaced by the variant's values."""
    updated = {k: v for k, v in headers.items() if k.lower() not in ('referer', 'origin')}
    if variant.referer is not None:
        updated['Referer'] = variant.referer
    if variant.origin is not None:
        updated['Origin'] = variant.origin
    return updated
