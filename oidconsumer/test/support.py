import io
import logging
import os
import urllib.error
import urllib.parse
import urllib.request

from oidconsumer import message


DATAPATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data')
HOST = 'unittest'


class RecordingHandler(logging.Handler):
    '''
    Keeps the attribute dicts of every record it sees, so tests can look
    at 'msg' and 'levelname' after the fact.
    '''
    def __init__(self, records):
        logging.Handler.__init__(self, logging.DEBUG)
        self.records = records

    def emit(self, record):
        self.records.append(vars(record))


class CatchLogs(object):
    '''
    TestCase mixin collecting everything logged through the root logger
    into self.messages.
    '''
    def setUp(self):
        self.messages = []
        self.handler = RecordingHandler(self.messages)
        root = logging.getLogger()
        self.saved_level = root.level
        root.setLevel(logging.DEBUG)
        root.addHandler(self.handler)

    def tearDown(self):
        root = logging.getLogger()
        root.removeHandler(self.handler)
        root.setLevel(self.saved_level)

    def failUnlessLogMatches(self, *prefixes):
        """
        Assert that exactly len(prefixes) messages were logged and that
        each one starts with the corresponding prefix.
        """
        logged = [r['msg'] for r in self.messages]
        self.assertEqual(
            len(prefixes), len(logged),
            'Expected log prefixes %r, got %r' % (prefixes, logged))
        for prefix, msg in zip(prefixes, logged):
            self.assertTrue(
                msg.startswith(prefix),
                'Expected log prefixes %r, got %r' % (prefixes, logged))

    def failUnlessLogEmpty(self):
        self.failUnlessLogMatches()


class OpenIDTestMixin(object):
    def failUnlessOpenIDValueEquals(self, msg, key, expected, ns=message.OPENID_NS):
        actual = msg.getArg(ns, key)
        self.assertEqual(
            expected, actual,
            'openid.%s: expected %r, got %r' % (key, expected, actual))

    def failIfOpenIDKeyExists(self, msg, key, ns=message.OPENID_NS):
        actual = msg.getArg(ns, key)
        self.assertIsNone(
            actual, 'openid.%s should be absent, got %r' % (key, actual))


class HTTPResponse(object):
    '''
    The bits of http.client.HTTPResponse the fetcher and discovery code
    look at.
    '''
    def __init__(self, url, status, headers=None, body=b''):
        self.url = url
        self.status = status
        self.headers = dict((k.lower(), v) for k, v in (headers or {}).items())
        self._body = io.BytesIO(body)

    def info(self):
        return self.headers

    def getheader(self, name, default=None):
        return self.headers.get(name.lower(), default)

    def read(self, *args):
        return self._body.read(*args)


def gentests(cls):
    '''
    Class decorator generating one test_<name> method per (name, args)
    entry of cls.data; each calls self._test(*args).
    '''
    def make(args):
        return lambda self: self._test(*args)

    for name, args in cls.data:
        method = make(args)
        method.__name__ = 'test_' + name
        setattr(cls, method.__name__, method)
    return cls


def _http_error(url, status, reason):
    return urllib.error.HTTPError(url, status, reason, {}, io.BytesIO())


def _load(url, path):
    if path.isdigit():
        status = int(path)
        if status >= 300:
            raise _http_error(url, status, 'Requested status: %s' % status)
        return status, b'OK'
    try:
        with open(os.path.join(DATAPATH, path), 'rb') as f:
            return 200, f.read()
    except FileNotFoundError:
        raise _http_error(url, 404, '%s not found' % path)


def urlopen(request, data=None, timeout=None):
    '''
    Replacement for urllib.request.urlopen serving files from DATAPATH.

    Only the host "unittest" resolves. A numeric path answers with that
    HTTP status, and a "redirect" query argument behaves as if the server
    had redirected to its value. The last request, body and timeout are
    kept as attributes of this function.
    '''
    if isinstance(request, str):
        request = urllib.request.Request(request)
    urlopen.request = request
    urlopen.data = data
    urlopen.timeout = timeout

    url = request.get_full_url()
    parts = urllib.parse.urlsplit(url)
    if parts.hostname != HOST:
        raise urllib.error.URLError('Wrong host: %s' % parts.netloc)
    redirect = urllib.parse.parse_qs(parts.query).get('redirect')
    if redirect:
        return urlopen(redirect[0], timeout=timeout)

    status, body = _load(url, parts.path.lstrip('/'))
    headers = {
        'Server': 'Urlopen-Mock',
        'Content-Type': 'text/html',
        'Content-Length': str(len(body)),
    }
    return HTTPResponse(url, status, headers, body)
