"""
Shared configuration for the HLS edge proxy.
Every knob is a module constant; the ones that differ per deployment can be
overridden through environment variables.
"""
import logging
import os
import sys


def _env_float(name, default):
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# --- Configuration ---
HOST = os.environ.get('HOST', '0.0.0.0')
PORT = int(os.environ.get('PORT', 5000))

# Absolute URL of the /proxy endpoint as seen by browsers. Leave empty to
# derive it from the incoming request (X-Forwarded-* aware).
PUBLIC_BASE_URL = os.environ.get('PROXY_PUBLIC_BASE_URL', '').rstrip('/')

UPSTREAM_TIMEOUT = _env_float('PROXY_UPSTREAM_TIMEOUT', 30)
PIPELINE_TIMEOUT = _env_float('PROXY_PIPELINE_TIMEOUT', 30)
STREAM_CHUNK_SIZE = 64 * 1024
ERROR_PREVIEW_CHARS = 500

BLOCKED_HOSTS = frozenset(
    host.strip().lower()
    for host in os.environ.get('PROXY_BLOCKED_HOSTS', 'localhost,127.0.0.1,0.0.0.0,169.254.169.254').split(',')
    if host.strip()
)

RETRY_MAX_ATTEMPTS = 2
RETRY_DELAY = 0.5

SOURCE_CACHE_TTL = 60 * 60
SOURCE_CACHE_MAX_ENTRIES = 1000

DECODE_SERVICE_URL = os.environ.get('MEGAUP_DECODE_URL', 'https://enc-dec.app/api/dec-mega')
# ---------------------

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/137.0.0.0 Safari/537.36'
)

# Sent on every upstream request to look like a browser XHR
BROWSER_HEADERS = {
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept-Encoding': 'gzip, deflate',
    'Connection': 'keep-alive',
    'Sec-Fetch-Dest': 'empty',
    'Sec-Fetch-Mode': 'cors',
    'Sec-Fetch-Site': 'cross-site',
}

CHROME_CLIENT_HINTS = {
    'Sec-Ch-Ua': '"Google Chrome";v="137", "Chromium";v="137", "Not_A Brand";v="24"',
    'Sec-Ch-Ua-Mobile': '?0',
    'Sec-Ch-Ua-Platform': '"Windows"',
}

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Cache-Control': 'no-store',
}

PREFLIGHT_HEADERS = dict(CORS_HEADERS, **{
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Accept, Accept-Encoding, Accept-Language',
})

# Host families
VAULT_CDN_SUFFIXES = ('owocdn.top', 'uwucdn.top')
KWIK_REFERER = 'https://kwik.cx/'
KWIK_ORIGIN = 'https://kwik.cx'

MEGAUP_HOSTS = (
    'pro25zone.site',
    'megaup.cc',
    'megaup.live',
    '4spromax.site',
    'dev23app.site',
)

# Proxies that already rewrite their own playlists
PASSTHROUGH_PROXY_HOSTS = ('hls.shrina.dev',)

# Third-party key proxy that 403s on key requests; we fetch the wrapped URL instead
KEY_PROXY_HOST = 'animepahe-proxy.vercel.app'
KEY_PROXY_PATH = '/api/proxy/key'

# Referers whose segment CDNs serve browsers directly with CORS enabled
DIRECT_SEGMENT_REFERERS = ('flixhq.to', 'rabbitstream')

CLOUDFLARE_MARKERS = ('challenge-platform', 'cf-browser-verification', 'Just a moment')

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level=None, log_file=None):
    """Log to stdout and, optionally, to a file so runs can be inspected later."""
    root = logging.getLogger()
    if getattr(root, '_hls_proxy_configured', False):
        return root

    level = level or os.environ.get('PROXY_LOG_LEVEL', 'INFO')
    log_file = log_file or os.environ.get('PROXY_LOG_FILE')
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(level)
    root._hls_proxy_configured = True
    return root
