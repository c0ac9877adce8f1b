#!/usr/bin/env python3
"""
HLS EDGE PROXY - Plays referer-locked HLS CDNs from a browser
Forwards playlist, key and segment requests with per-CDN header spoofing and
rewrites playlists so the player keeps coming back through this server.
"""
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import requests
from flask import Flask, Response, jsonify, request, stream_with_context

from config import (
    BLOCKED_HOSTS,
    BROWSER_HEADERS,
    CORS_HEADERS,
    DEFAULT_USER_AGENT,
    ERROR_PREVIEW_CHARS,
    HOST,
    PORT,
    PREFLIGHT_HEADERS,
    PUBLIC_BASE_URL,
    STREAM_CHUNK_SIZE,
    UPSTREAM_TIMEOUT,
    configure_logging,
)
from errors import ForbiddenTarget, InvalidURL, MissingURL, NetworkError, ProxyError
from header_strategy import KEY, classify_request, select_headers
from manifest_rewriter import (
    MANIFEST_CONTENT_TYPE,
    RewriteContext,
    is_key_proxy_url,
    is_manifest_response,
    rewrite,
    should_passthrough,
    unwrap_key_proxy_url,
)
from megaup import MegaUpPipeline, extract_megaup_sources
from retry import fetch_with_variants
from source_cache import SourceCache, SourceResolver

app = Flask(__name__)
configure_logging()
logger = logging.getLogger(__name__)

source_cache = SourceCache()
source_resolver = SourceResolver(extract_megaup_sources, cache=source_cache)

# Upstream headers forwarded to the client on streamed bodies
PASSTHROUGH_RESPONSE_HEADERS = ('Content-Range', 'Accept-Ranges')


@dataclass(frozen=True)
class ProxyRequest:
    target_url: str
    referer: Optional[str] = None
    origin_override: Optional[str] = None
    range_header: Optional[str] = None
    method: str = 'GET'
    accept: Optional[str] = None


def log_request(mode, method, url, status="→"):
    """Consistent logging format"""
    logger.info(f"[{mode.upper():8}] {status} {method:4} {url[:80]}")


# =============================================================================
# REQUEST VALIDATION
# =============================================================================

def _parse_absolute(url, code='invalid_url'):
    try:
        parsed = urlparse(url)
    except ValueError:
        raise InvalidURL(f"Invalid URL: {url[:80]}", code=code)
    if not parsed.scheme or not parsed.netloc or not parsed.hostname:
        raise InvalidURL(f"Invalid URL: {url[:80]}", code=code)
    return parsed


def validate_target(raw_url):
    """Return a safe absolute target URL or raise before any network call."""
    url = (raw_url or '').strip()
    if not url:
        raise MissingURL('Missing url parameter')

    _parse_absolute(url)

    if is_key_proxy_url(url):
        unwrapped = unwrap_key_proxy_url(url)
        if unwrapped != url:
            _parse_absolute(unwrapped, code='invalid_key_url')
            logger.info(f"Extracted original key URL from key proxy: {unwrapped[:80]}")
            url = unwrapped

    parsed = _parse_absolute(url)
    if parsed.scheme.lower() not in ('http', 'https'):
        raise ForbiddenTarget(f"Scheme not allowed: {parsed.scheme}")
    if parsed.hostname.lower() in BLOCKED_HOSTS:
        raise ForbiddenTarget(f"Host not allowed: {parsed.hostname}")
    return url


def parse_proxy_request():
    return ProxyRequest(
        target_url=validate_target(request.args.get('url')),
        referer=request.args.get('referer') or None,
        origin_override=request.args.get('origin') or None,
        range_header=request.headers.get('Range'),
        method=request.method,
        accept=request.headers.get('Accept'),
    )


def proxy_base_url():
    """Absolute URL of this endpoint as the browser sees it."""
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL + request.path
    if request.headers.get('X-Forwarded-Host'):
        # behind a reverse proxy (Codespaces port forwarding etc.)
        forwarded_proto = request.headers.get('X-Forwarded-Proto', 'https')
        forwarded_host = request.headers.get('X-Forwarded-Host')
        return f"{forwarded_proto}://{forwarded_host}{request.path}"
    return request.url_root.rstrip('/') + request.path


# =============================================================================
# UPSTREAM FETCH
# =============================================================================

def build_upstream_headers(proxy_request, kind):
    target = urlparse(proxy_request.target_url)
    headers = {
        'User-Agent': DEFAULT_USER_AGENT,
        'Accept': proxy_request.accept or '*/*',
    }
    headers.update(BROWSER_HEADERS)

    strategy_headers, fallbacks = select_headers(
        target.hostname,
        target.path,
        kind,
        caller_referer=proxy_request.referer,
        origin_override=proxy_request.origin_override,
        scheme=target.scheme,
    )
    headers.update(strategy_headers)

    if proxy_request.range_header:
        headers['Range'] = proxy_request.range_header
    return headers, fallbacks


def fetch_upstream(proxy_request, headers, fallbacks, kind):
    def send(request_headers):
        return requests.request(
            method=proxy_request.method,
            url=proxy_request.target_url,
            headers=request_headers,
            allow_redirects=True,
            stream=True,
            timeout=UPSTREAM_TIMEOUT,
        )

    if kind == KEY and fallbacks:
        return fetch_with_variants(send, headers, fallbacks)
    return send(headers)


# =============================================================================
# RESPONSES
# =============================================================================

def _read_preview(upstream):
    chunk = next(upstream.iter_content(chunk_size=ERROR_PREVIEW_CHARS * 4), b'')
    return chunk.decode(upstream.encoding or 'utf-8', errors='replace')[:ERROR_PREVIEW_CHARS]


def error_response(upstream):
    try:
        preview = _read_preview(upstream)
    except requests.RequestException:
        preview = 'No error body'
    finally:
        upstream.close()

    body = f"Upstream request failed: {upstream.status_code} {upstream.reason or ''}".rstrip()
    body += f"\n\nDetails:\n{preview}"
    return Response(body, status=upstream.status_code, mimetype='text/plain', headers=CORS_HEADERS)


def manifest_response(upstream, proxy_request):
    try:
        body = upstream.content
    except requests.RequestException as e:
        log_request('manifest', proxy_request.method, proxy_request.target_url, f"✗ {e}")
        raise NetworkError(f"Fetch error: {e}")
    finally:
        upstream.close()

    # relative URIs resolve against where the playlist was actually served from
    base_url = upstream.url or proxy_request.target_url
    text = body.decode('utf-8', errors='replace')

    if should_passthrough(text, base_url):
        log_request('manifest', proxy_request.method, base_url, "✓ passthrough")
        payload = body
    else:
        context = RewriteContext(base_url, proxy_base_url(), proxy_request.referer)
        payload = rewrite(text, context).encode('utf-8')
        log_request('manifest', proxy_request.method, base_url, f"✓ {len(payload)}b")

    return Response(payload, status=upstream.status_code, content_type=MANIFEST_CONTENT_TYPE,
                    headers=CORS_HEADERS)


def stream_response(upstream):
    def generate():
        try:
            for chunk in upstream.iter_content(chunk_size=STREAM_CHUNK_SIZE):
                if chunk:
                    yield chunk
        finally:
            # also runs when the client disconnects mid-stream
            upstream.close()

    headers = dict(CORS_HEADERS)
    for name in PASSTHROUGH_RESPONSE_HEADERS:
        if upstream.headers.get(name):
            headers[name] = upstream.headers[name]
    if upstream.headers.get('Content-Length') and not upstream.headers.get('Content-Encoding'):
        headers['Content-Length'] = upstream.headers['Content-Length']

    return Response(
        stream_with_context(generate()),
        status=upstream.status_code,
        content_type=upstream.headers.get('Content-Type') or 'application/octet-stream',
        headers=headers,
    )


@app.errorhandler(ProxyError)
def handle_proxy_error(error):
    response = jsonify(error.to_dict())
    response.status_code = error.status
    response.headers.update(CORS_HEADERS)
    return response


# =============================================================================
# ROUTES
# =============================================================================

@app.route('/', methods=['GET', 'HEAD', 'OPTIONS'])
@app.route('/proxy', methods=['GET', 'HEAD', 'OPTIONS'])
def proxy():
    """Forward one playlist/key/segment request to its CDN"""
    if request.method == 'OPTIONS':
        return Response(status=204, headers=PREFLIGHT_HEADERS)

    proxy_request = parse_proxy_request()
    target = urlparse(proxy_request.target_url)
    kind = classify_request(target.path)
    headers, fallbacks = build_upstream_headers(proxy_request, kind)

    log_request(kind, proxy_request.method, proxy_request.target_url)

    try:
        upstream = fetch_upstream(proxy_request, headers, fallbacks, kind)
    except requests.RequestException as e:
        log_request(kind, proxy_request.method, proxy_request.target_url, f"✗ {e}")
        raise NetworkError(f"Fetch error: {e}")

    if not upstream.ok:
        log_request(kind, proxy_request.method, proxy_request.target_url, f"✗ {upstream.status_code}")
        return error_response(upstream)

    if is_manifest_response(upstream.headers.get('Content-Type'), target.path):
        return manifest_response(upstream, proxy_request)

    log_request(kind, proxy_request.method, proxy_request.target_url, f"✓ {upstream.status_code}")
    return stream_response(upstream)


@app.route('/megaup/extract')
def megaup_extract():
    """Resolve a MegaUp /media/ URL into playable sources"""
    media_url = validate_target(request.args.get('url'))
    landing_url = request.args.get('eUrl') or None

    result = MegaUpPipeline().run(media_url, landing_url)
    response = jsonify(success=True, **result.to_dict())
    response.headers.update(CORS_HEADERS)
    return response


@app.route('/sources')
def episode_sources():
    """Cached source lookup for one episode of one session"""
    session_id = request.args.get('session')
    episode = request.args.get('episode')
    if not session_id or not episode:
        raise ProxyError('Missing session or episode parameter', status=400, code='missing_episode')

    media_url = validate_target(request.args.get('url'))
    entry, cached = source_resolver.resolve_episode(
        session_id,
        episode,
        media_url=media_url,
        landing_url=request.args.get('eUrl') or None,
    )
    body = entry.to_dict()
    body['cached'] = cached
    response = jsonify(body)
    response.headers.update(CORS_HEADERS)
    return response


@app.route('/health')
def health():
    return Response("OK", status=200, mimetype='text/plain')


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 70)
    print("HLS EDGE PROXY")
    print("=" * 70)
    print("\nEndpoints:")
    print("  /proxy?url=...&referer=...   → playlist / key / segment relay")
    print("  /megaup/extract?url=...      → MegaUp source extraction")
    print("  /sources?session=...&episode=...&url=...  → cached source lookup")
    print("  /health")
    print("=" * 70 + "\n")
    print(f"Starting server on http://{HOST}:{PORT}\n")

    app.run(host=HOST, port=PORT, debug=False, threaded=True)
