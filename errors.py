"""Errors raised by the proxy, each mapped to the HTTP status it surfaces as."""


class ProxyError(Exception):
    status = 500
    code = 'proxy_error'
    # worth one more attempt through the retry coordinator
    retryable = False

    def __init__(self, message=None, status=None, code=None, details=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self):
        body = {'error': self.code, 'message': self.message}
        body.update(self.details)
        return body


class MissingURL(ProxyError):
    status = 400
    code = 'missing_url'


class InvalidURL(ProxyError):
    status = 400
    code = 'invalid_url'


class ForbiddenTarget(ProxyError):
    status = 400
    code = 'forbidden_target'


class UpstreamNon2xx(ProxyError):
    code = 'upstream_error'

    def __init__(self, status, preview='', message=None):
        super().__init__(
            message or f'Upstream returned {status}',
            status=status,
            details={'status': status, 'responsePreview': preview},
        )
        self.preview = preview

    @property
    def retryable(self):
        return self.status == 502


class NetworkError(ProxyError):
    status = 502
    code = 'proxy_failure'
    retryable = True


class CloudflareChallengeDetected(ProxyError):
    status = 403
    code = 'cloudflare_challenge'


class DecodeFailure(ProxyError):
    status = 502
    code = 'decode_failure'


class NoSourcesFound(ProxyError):
    status = 404
    code = 'no_sources'
