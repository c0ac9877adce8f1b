"""Canned upstream responses for tests (no network)"""
import io

import requests
from requests.structures import CaseInsensitiveDict

REASONS = {200: 'OK', 206: 'Partial Content', 403: 'Forbidden', 404: 'Not Found', 502: 'Bad Gateway'}


class CountingBody(io.BytesIO):
    """Raw body that remembers how many bytes were read from it"""

    def __init__(self, data):
        super().__init__(data)
        self.bytes_read = 0

    def read(self, size=-1):
        chunk = super().read(size)
        self.bytes_read += len(chunk)
        return chunk


def make_response(status=200, body=b'', headers=None, url='https://cdn.example.com/'):
    """Build a fully-read requests.Response"""
    if isinstance(body, str):
        body = body.encode('utf-8')
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp._content_consumed = True
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.url = url
    resp.reason = REASONS.get(status, '')
    resp.encoding = 'utf-8'
    return resp


def make_streamed_response(status=200, body=b'', headers=None, url='https://cdn.example.com/'):
    """Build a requests.Response whose body has not been read yet"""
    resp = make_response(status, b'', headers, url)
    resp._content = False
    resp._content_consumed = False
    resp.raw = CountingBody(body)
    return resp
