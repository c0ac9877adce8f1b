"""
MegaUp source extraction.

MegaUp embeds serve an encrypted ``/media/`` payload; an external decode
service turns it into playable sources. The pipeline runs as a small state
machine so callers (and logs) can see exactly where an extraction stopped:

    init -> visit_landing (optional) -> fetch_media -> decode -> normalize -> done

Any step can end in ``failed``.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import unquote, urlparse

import requests

from config import (
    BROWSER_HEADERS,
    CLOUDFLARE_MARKERS,
    DECODE_SERVICE_URL,
    DEFAULT_USER_AGENT,
    ERROR_PREVIEW_CHARS,
    PIPELINE_TIMEOUT,
)
from errors import (
    CloudflareChallengeDetected,
    DecodeFailure,
    NetworkError,
    NoSourcesFound,
    ProxyError,
    UpstreamNon2xx,
)
from header_strategy import MANIFEST, select_headers

logger = logging.getLogger(__name__)

INIT = 'init'
VISIT_LANDING = 'visit_landing'
FETCH_MEDIA = 'fetch_media'
DECODE = 'decode'
NORMALIZE = 'normalize'
DONE = 'done'
FAILED = 'failed'

SESSION_COOKIE_NAME = 'heh'
PAYLOAD_FIELDS = ('result', 'text', 'data', 'content', 'encrypted', 'payload')


@dataclass
class DecryptSession:
    media_url: str
    landing_url: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    session_cookie: Optional[str] = None
    encrypted_text: Optional[str] = None
    decoded: Optional[dict] = None


@dataclass
class MegaUpResult:
    sources: list
    tracks: list = field(default_factory=list)
    download: Optional[str] = None

    def to_dict(self):
        return {'sources': self.sources, 'tracks': self.tracks, 'download': self.download}


def has_cloudflare_challenge(text):
    return any(marker in text for marker in CLOUDFLARE_MARKERS)


def extract_encrypted_text(body, content_type=''):
    """Pull the encrypted blob out of a ``/media/`` response body.

    The endpoint answers either ``{"status": 200, "result": "..."}`` or the
    bare text.
    """
    if 'json' not in (content_type or '').lower() and not body.lstrip().startswith('{'):
        return body

    try:
        data = json.loads(body)
    except ValueError:
        return body
    if not isinstance(data, dict):
        return data if isinstance(data, str) else body

    for name in PAYLOAD_FIELDS:
        value = data.get(name)
        if isinstance(value, str) and value:
            if name == 'result':
                decoded = unquote(value)
                if decoded != value and len(decoded) > 100:
                    return decoded
            return value
    return body


def normalize_sources(result):
    raw_sources = result.get('sources')
    if not isinstance(raw_sources, list):
        raw_sources = [result] if result.get('file') else []

    sources = []
    for source in raw_sources:
        url = source.get('file') or source.get('url')
        if not url:
            continue
        sources.append({
            'url': url,
            'isM3U8': '.m3u8' in url or url.endswith('m3u8'),
            'quality': source.get('quality') or 'auto',
        })

    tracks = []
    for track in result.get('tracks') or []:
        url = track.get('file') or track.get('url')
        if not url:
            continue
        tracks.append({
            'url': url,
            'lang': track.get('label') or track.get('lang'),
            'kind': track.get('kind'),
        })
    return sources, tracks


class MegaUpPipeline:
    def __init__(self, session=None, decode_url=DECODE_SERVICE_URL,
                 timeout=PIPELINE_TIMEOUT, user_agent=DEFAULT_USER_AGENT):
        # sessions created here are closed when run() finishes
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.decode_url = decode_url
        self.timeout = timeout
        self.user_agent = user_agent
        self.state = INIT
        self.history = [INIT]
        self.failure_reason = None

    def _enter(self, state):
        logger.info(f"MegaUp pipeline: {self.state} -> {state}")
        self.state = state
        self.history.append(state)

    def _fail(self, error):
        self.failure_reason = error.code
        logger.error(f"MegaUp pipeline failed in {self.state}: {error.code} ({error.message})")
        self.state = FAILED
        self.history.append(FAILED)

    def run(self, media_url, landing_url=None):
        decrypt = DecryptSession(media_url, landing_url, self.user_agent)
        try:
            if landing_url:
                self._enter(VISIT_LANDING)
                self.visit_landing(decrypt)
            self._enter(FETCH_MEDIA)
            self.fetch_media(decrypt)
            self._enter(DECODE)
            self.decode(decrypt)
            self._enter(NORMALIZE)
            result = self.normalize(decrypt)
        except ProxyError as e:
            self._fail(e)
            raise
        finally:
            if self._owns_session:
                self.session.close()
        self._enter(DONE)
        return result

    def _headers(self, url, referer=None):
        parsed = urlparse(url)
        headers, _ = select_headers(parsed.hostname, parsed.path, MANIFEST, referer,
                                    scheme=parsed.scheme or 'https')
        headers.update(BROWSER_HEADERS)
        headers['User-Agent'] = self.user_agent
        return headers

    def visit_landing(self, decrypt):
        try:
            resp = self.session.get(decrypt.landing_url, headers=self._headers(decrypt.landing_url),
                                    timeout=self.timeout)
            resp.close()
        except requests.RequestException as e:
            logger.warning(f"Landing page visit failed, continuing without session cookie: {e}")
            return

        cookie = None
        for c in self.session.cookies:
            if c.name == SESSION_COOKIE_NAME or SESSION_COOKIE_NAME in c.name.lower():
                cookie = c.value
                break
        if cookie:
            decrypt.session_cookie = cookie
            logger.info(f"Got session cookie from landing page ({len(cookie)} chars)")
        else:
            logger.warning(f"No '{SESSION_COOKIE_NAME}' cookie from landing page, decode may fail")

    def fetch_media(self, decrypt):
        headers = self._headers(decrypt.media_url, decrypt.landing_url)
        try:
            resp = self.session.get(decrypt.media_url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Failed to fetch /media/ URL: {e}")

        body = resp.text
        if resp.status_code != 200:
            if has_cloudflare_challenge(body):
                raise CloudflareChallengeDetected(
                    'The server returned a Cloudflare challenge page instead of encrypted text',
                    details={'responsePreview': body[:ERROR_PREVIEW_CHARS]},
                )
            raise UpstreamNon2xx(resp.status_code, body[:ERROR_PREVIEW_CHARS],
                                 message='Failed to fetch /media/ URL')

        text = extract_encrypted_text(body, resp.headers.get('Content-Type', ''))
        if has_cloudflare_challenge(text):
            raise CloudflareChallengeDetected(
                'The server returned a Cloudflare challenge page instead of encrypted text',
                details={'responsePreview': text[:ERROR_PREVIEW_CHARS]},
            )
        decrypt.encrypted_text = text
        logger.info(f"Got encrypted text from /media/ URL ({len(text)} chars)")

    def decode(self, decrypt):
        payload = {'text': decrypt.encrypted_text, 'agent': decrypt.user_agent}
        if decrypt.session_cookie:
            payload['cookie'] = decrypt.session_cookie

        try:
            resp = self.session.post(
                self.decode_url,
                json=payload,
                headers={'Content-Type': 'application/json', 'User-Agent': decrypt.user_agent},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Decode service unreachable: {e}")

        if resp.status_code != 200:
            raise DecodeFailure(f"Decode service returned {resp.status_code}",
                                details={'decodeStatus': resp.status_code})
        try:
            data = resp.json()
        except ValueError:
            raise DecodeFailure('Decode service returned invalid JSON')

        result = data.get('result') if isinstance(data, dict) else None
        if not result:
            raise DecodeFailure('Decode service response has no result')
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except ValueError:
                raise DecodeFailure('Decode service result is not JSON')
        if not isinstance(result, dict):
            raise DecodeFailure('Decode service result has an unexpected shape')
        decrypt.decoded = result

    def normalize(self, decrypt):
        sources, tracks = normalize_sources(decrypt.decoded)
        if not sources:
            raise NoSourcesFound('No video sources found in decoded response')
        logger.info(f"Found {len(sources)} video sources and {len(tracks)} tracks")
        return MegaUpResult(sources, tracks, decrypt.decoded.get('download'))


def extract_megaup_sources(media_url, landing_url=None, session=None):
    """Run a fresh pipeline; returns ``{'sources': ..., 'tracks': ...}``."""
    return MegaUpPipeline(session=session).run(media_url, landing_url).to_dict()
