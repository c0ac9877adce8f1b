"""
M3U8 playlist rewriter.

Walks a playlist line by line, resolves every URI against the playlist URL and
decides per URI whether the browser should fetch it through the proxy or
directly. Line order, line count and line terminators are preserved.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, quote, urlencode, urljoin, urlparse

from config import (
    DIRECT_SEGMENT_REFERERS,
    KEY_PROXY_HOST,
    KEY_PROXY_PATH,
    PASSTHROUGH_PROXY_HOSTS,
)
from header_strategy import THUMBNAIL_EXTENSIONS, is_megaup_host, is_vault_host, origin_of

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = 'application/vnd.apple.mpegurl; charset=utf-8'

BLANK = 'blank'
COMMENT = 'comment'
ATTRIBUTE_URI = 'attribute_uri'
CONTENT_URI = 'content_uri'

_TERMINATOR_RE = re.compile(r'\r\n|\r|\n')
_URI_ATTR_RE = re.compile(r'URI=["\']([^"\']+)["\']', re.IGNORECASE)
_ENCRYPTED_RE = re.compile(r'#EXT-X-KEY[^\r\n]*URI=', re.IGNORECASE)


@dataclass(frozen=True)
class RewriteContext:
    base_url: str
    proxy_base_url: str
    caller_referer: Optional[str] = None


@dataclass(frozen=True)
class ManifestLine:
    raw: str
    terminator: str
    kind: str
    uri: Optional[str] = None
    resolved: Optional[str] = None
    # span of the URI inside ``raw`` for attribute lines
    span: Optional[tuple] = None


def split_lines(text):
    """Split into ``(content, terminator)`` pairs; the last terminator may be ''."""
    lines = []
    pos = 0
    for match in _TERMINATOR_RE.finditer(text):
        lines.append((text[pos:match.start()], match.group()))
        pos = match.end()
    if pos < len(text):
        lines.append((text[pos:], ''))
    return lines


def _resolve(uri, base_url):
    try:
        return urljoin(base_url, uri)
    except ValueError:
        return None


def parse_lines(text, base_url):
    for raw, terminator in split_lines(text):
        stripped = raw.strip()
        if not stripped:
            yield ManifestLine(raw, terminator, BLANK)
        elif stripped.startswith('#'):
            match = _URI_ATTR_RE.search(raw)
            if match:
                uri = match.group(1)
                yield ManifestLine(raw, terminator, ATTRIBUTE_URI, uri,
                                   _resolve(uri, base_url), match.span(1))
            else:
                yield ManifestLine(raw, terminator, COMMENT)
        else:
            yield ManifestLine(raw, terminator, CONTENT_URI, stripped,
                               _resolve(stripped, base_url))


def build_proxy_url(proxy_base, target, referer=None):
    params = {'url': target}
    if referer:
        params['referer'] = referer
    separator = '&' if '?' in proxy_base else '?'
    return proxy_base + separator + urlencode(params, quote_via=quote)


def is_encrypted(text):
    return bool(_ENCRYPTED_RE.search(text))


def should_passthrough(text, manifest_url):
    """Unencrypted playlists on CORS-open CDNs are served untouched."""
    return not is_encrypted(text) and is_vault_host(urlparse(manifest_url).hostname)


def is_manifest_response(content_type, pathname):
    return 'mpegurl' in (content_type or '').lower() or (pathname or '').lower().endswith('.m3u8')


def is_key_proxy_url(url):
    parsed = urlparse(url)
    return parsed.hostname == KEY_PROXY_HOST and KEY_PROXY_PATH in parsed.path


def unwrap_key_proxy_url(url):
    """Return the key URL wrapped by the third-party key proxy, or ``url``."""
    if not is_key_proxy_url(url):
        return url
    wrapped = parse_qs(urlparse(url).query).get('url')
    return wrapped[0] if wrapped else url


def _points_at_proxy(uri, resolved, context):
    base = context.proxy_base_url
    if base and (resolved.startswith(base) or uri.startswith(base)):
        return True
    return (urlparse(resolved).hostname or '') in PASSTHROUGH_PROXY_HOSTS


def _key_referer(key_url, context):
    """Same-origin keys get the playlist URL as referer, others their own origin."""
    key_origin = origin_of(key_url)
    if key_origin and key_origin == origin_of(context.base_url):
        return context.base_url
    return key_origin or context.caller_referer


def _rewrite_key(key_url, context):
    if is_vault_host(urlparse(key_url).hostname):
        # vault keys are fetched by the browser directly
        return key_url
    return build_proxy_url(context.proxy_base_url, key_url, _key_referer(key_url, context))


def _allows_direct_segments(url, context):
    referer = context.caller_referer or ''
    if any(marker in referer for marker in DIRECT_SEGMENT_REFERERS):
        return True
    return is_vault_host(urlparse(url).hostname)


def rewrite_attribute(line, context):
    if line.resolved is None or _points_at_proxy(line.uri, line.resolved, context):
        return line.raw

    resolved = line.resolved
    if '.key' in line.uri or '.key' in resolved:
        replacement = _rewrite_key(resolved, context)
    else:
        replacement = build_proxy_url(context.proxy_base_url, resolved, context.caller_referer)

    start, end = line.span
    return line.raw[:start] + replacement + line.raw[end:]


def rewrite_content(line, context):
    absolute = line.resolved
    if absolute is None:
        return line.raw

    if _points_at_proxy(line.uri, absolute, context):
        return line.raw

    lowered = absolute.lower()
    if is_megaup_host(urlparse(absolute).hostname) and '.m3u8' not in lowered and '.key' not in lowered:
        # the player attaches the landing-page referer itself
        return absolute

    if '.key' in lowered or is_key_proxy_url(absolute):
        return _rewrite_key(unwrap_key_proxy_url(absolute), context)

    if any(ext in lowered for ext in THUMBNAIL_EXTENSIONS):
        return absolute

    if _allows_direct_segments(absolute, context):
        return absolute

    return build_proxy_url(context.proxy_base_url, absolute, context.caller_referer)


def rewrite(text, context):
    """Rewrite ``text`` so the browser can play it through the proxy."""
    if should_passthrough(text, context.base_url):
        logger.info(f"Unencrypted playlist on direct CDN, passing through: {context.base_url[:80]}")
        return text

    output = []
    rewritten = 0
    for line in parse_lines(text, context.base_url):
        if line.kind == ATTRIBUTE_URI:
            new = rewrite_attribute(line, context)
        elif line.kind == CONTENT_URI:
            new = rewrite_content(line, context)
        else:
            new = line.raw
        if new != line.raw:
            rewritten += 1
        output.append(new + line.terminator)

    logger.debug(f"Rewrote {rewritten}/{len(output)} playlist lines for {context.base_url[:80]}")
    return ''.join(output)
