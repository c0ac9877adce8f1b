#!/usr/bin/env python3
"""
Tests for the M3U8 rewriter
"""
import unittest
from urllib.parse import parse_qs, urlparse

from manifest_rewriter import (
    RewriteContext,
    build_proxy_url,
    is_encrypted,
    is_manifest_response,
    rewrite,
    split_lines,
)

PROXY = 'http://proxy.test/proxy'


def proxied(url):
    """Return the (url, referer) pair carried by a proxy URL, or None"""
    if not url.startswith(PROXY):
        return None
    query = parse_qs(urlparse(url).query)
    return query['url'][0], query.get('referer', [None])[0]


class TestScenarios(unittest.TestCase):
    """End-to-end playlist rewrites"""

    def test_vault_encrypted_playlist(self):
        """Test the full rewrite of an encrypted vault playlist"""
        text = '#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="key1.key"\nseg1.ts\n'
        context = RewriteContext('https://vault-1.owocdn.top/a/b.m3u8', PROXY)

        out = rewrite(text, context)

        self.assertEqual(out, (
            '#EXTM3U\n'
            '#EXT-X-KEY:METHOD=AES-128,URI="https://vault-1.owocdn.top/a/key1.key"\n'
            'https://vault-1.owocdn.top/a/seg1.ts\n'
        ))
        self.assertEqual(len(split_lines(out)), len(split_lines(text)))

    def test_unencrypted_vault_playlist_is_verbatim(self):
        """Test that unencrypted vault playlists are returned as-is"""
        text = '#EXTM3U\r\n#EXT-X-TARGETDURATION:10\r\n  seg1.ts  \r\n#EXT-X-ENDLIST'
        context = RewriteContext('https://vault-3.uwucdn.top/s/index.m3u8', PROXY)
        self.assertIs(rewrite(text, context), text)

    def test_generic_playlist_is_idempotent(self):
        """Test that rewriting a rewritten playlist changes nothing"""
        text = (
            '#EXTM3U\n'
            '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",URI="audio/en.m3u8"\n'
            '#EXT-X-KEY:METHOD=AES-128,URI="/keys/k.key",IV=0x1\n'
            '#EXTINF:4.0,\n'
            'seg-1.ts\n'
            '#EXTINF:4.0,\n'
            'https://other.example.net/seg-2.ts\n'
        )
        context = RewriteContext('https://cdn.example.com/hls/index.m3u8', PROXY, 'https://site.example/')

        once = rewrite(text, context)
        twice = rewrite(once, context)

        self.assertNotEqual(once, text)
        self.assertEqual(once, twice)


class TestLineHandling(unittest.TestCase):
    """Terminators, blanks and comments"""

    def test_terminators_preserved(self):
        """Test that line endings survive the rewrite"""
        text = '#EXTM3U\r\n\r\n#EXTINF:4,\rseg.ts\n#EXT-X-ENDLIST'
        context = RewriteContext('https://cdn.example.com/a/index.m3u8', PROXY)
        out = rewrite(text, context)
        self.assertEqual([t for _, t in split_lines(out)], ['\r\n', '\r\n', '\r', '\n', ''])
        self.assertTrue(out.startswith('#EXTM3U\r\n\r\n#EXTINF:4,\r'))
        self.assertTrue(out.endswith('\n#EXT-X-ENDLIST'))

    def test_is_encrypted(self):
        """Test detection of AES key tags"""
        self.assertTrue(is_encrypted('#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="k.key"\n'))
        self.assertFalse(is_encrypted('#EXTM3U\n#EXT-X-KEY:METHOD=NONE\n'))

    def test_is_manifest_response(self):
        """Test playlist detection by content type and path"""
        self.assertTrue(is_manifest_response('application/vnd.apple.mpegurl', '/x'))
        self.assertTrue(is_manifest_response('audio/x-mpegURL', '/x'))
        self.assertTrue(is_manifest_response('', '/x/index.M3U8'))
        self.assertFalse(is_manifest_response('video/mp2t', '/x/seg.ts'))


class TestKeyRewrites(unittest.TestCase):
    """EXT-X-KEY handling"""

    def test_same_origin_key_uses_playlist_referer(self):
        """Test that same-origin keys keep the playlist referer"""
        base = 'https://cdn.example.com/hls/index.m3u8'
        out = rewrite('#EXT-X-KEY:METHOD=AES-128,URI="k.key"\n', RewriteContext(base, PROXY))
        uri = out.split('URI="')[1].split('"')[0]
        self.assertEqual(proxied(uri), ('https://cdn.example.com/hls/k.key', base))

    def test_cross_origin_key_uses_key_origin(self):
        """Test that cross-origin keys use their own origin"""
        base = 'https://cdn.example.com/hls/index.m3u8'
        text = '#EXT-X-KEY:METHOD=AES-128,URI="https://keys.example.org/v1/k.key"\n'
        out = rewrite(text, RewriteContext(base, PROXY, 'https://site.example/'))
        uri = out.split('URI="')[1].split('"')[0]
        self.assertEqual(proxied(uri), ('https://keys.example.org/v1/k.key', 'https://keys.example.org'))

    def test_key_proxy_content_line_is_unwrapped(self):
        """Test that wrapped key URLs on content lines are unwrapped"""
        wrapped = 'https://animepahe-proxy.vercel.app/api/proxy/key?url=https%3A%2F%2Fkeys.example.org%2Fk.key'
        out = rewrite(wrapped + '\n', RewriteContext('https://cdn.example.com/i.m3u8', PROXY))
        self.assertEqual(proxied(out.strip()), ('https://keys.example.org/k.key', 'https://keys.example.org'))

    def test_already_proxied_key_untouched(self):
        """Test that proxied key URIs are left alone"""
        line = '#EXT-X-KEY:METHOD=AES-128,URI="%s"\n' % build_proxy_url(PROXY, 'https://k.example/k.key')
        self.assertEqual(rewrite(line, RewriteContext('https://cdn.example.com/i.m3u8', PROXY)), line)


class TestSegmentRewrites(unittest.TestCase):
    """Content line special cases"""

    def test_generic_segment_proxied_with_caller_referer(self):
        """Test that generic segments carry the caller referer"""
        context = RewriteContext('https://cdn.example.com/hls/index.m3u8', PROXY, 'https://site.example/')
        out = rewrite('seg-1.ts', context)
        self.assertEqual(proxied(out), ('https://cdn.example.com/hls/seg-1.ts', 'https://site.example/'))

    def test_megaup_fragment_left_direct(self):
        """Test that MegaUp fragments are not proxied"""
        context = RewriteContext('https://cdn.pro25zone.site/x/list,abc.m3u8', PROXY, 'https://megaup.live/e/1')
        self.assertEqual(rewrite('frag-1.jpg\n', context), 'https://cdn.pro25zone.site/x/frag-1.jpg\n')

    def test_megaup_sub_playlist_proxied(self):
        """Test that MegaUp sub-playlists are proxied"""
        context = RewriteContext('https://megaup.live/x/master.m3u8', PROXY, 'https://megaup.live/e/1')
        out = rewrite('720/index.m3u8', context)
        self.assertEqual(proxied(out), ('https://megaup.live/x/720/index.m3u8', 'https://megaup.live/e/1'))

    def test_thumbnail_left_direct(self):
        """Test that thumbnails are not proxied"""
        context = RewriteContext('https://cdn.example.com/v/index.m3u8', PROXY)
        self.assertEqual(rewrite('thumbs/1.png', context), 'https://cdn.example.com/v/thumbs/1.png')

    def test_direct_segment_referer(self):
        """Test that direct-segment referers skip the proxy"""
        context = RewriteContext('https://cdn.example.com/v/index.m3u8', PROXY, 'https://flixhq.to/')
        self.assertEqual(rewrite('seg.ts', context), 'https://cdn.example.com/v/seg.ts')

    def test_passthrough_proxy_host_untouched(self):
        """Test that URLs on passthrough proxy hosts are untouched"""
        line = 'https://hls.shrina.dev/proxy?url=abc'
        context = RewriteContext('https://cdn.example.com/v/index.m3u8', PROXY, 'https://site.example/')
        self.assertEqual(rewrite(line, context), line)

    def test_build_proxy_url_round_trip(self):
        """Test that proxy URLs decode back to the target"""
        url = build_proxy_url(PROXY, 'https://cdn.example.com/a b/seg.ts?x=1&y=2', 'https://r.example/?q=1')
        self.assertEqual(proxied(url), ('https://cdn.example.com/a b/seg.ts?x=1&y=2', 'https://r.example/?q=1'))


if __name__ == '__main__':
    unittest.main(verbosity=2)
