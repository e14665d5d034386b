import socket
import unittest
from unittest import mock
import urllib.error

from oidconsumer import fetchers
from . import support


@mock.patch('urllib.request.urlopen', support.urlopen)
class Fetcher(unittest.TestCase):
    def test_success(self):
        url = 'http://unittest/200'
        result = fetchers.fetch(url)
        self.assertEqual(result.url, url)
        self.assertEqual(result.status, 200)
        self.assertEqual(result.read(), b'OK')

    def test_bad_urls(self):
        self.assertRaises(fetchers.TransportError, fetchers.fetch, 'not-a-url')
        self.assertRaises(fetchers.TransportError, fetchers.fetch, 'http://unknown-host/')

    def test_disallowed(self):
        with mock.patch('urllib.request.urlopen') as urlopen:
            self.assertRaises(fetchers.TransportError, fetchers.fetch, 'ftp://localhost/')
            self.assertEqual(urlopen.call_count, 0)

    def test_http_errors(self):
        with self.assertRaises(urllib.error.HTTPError) as cm:
            fetchers.fetch('http://unittest/404')
        self.assertEqual(cm.exception.code, 404)
        self.assertNotIsInstance(cm.exception, fetchers.TransportError)

    def test_user_agent(self):
        fetchers.fetch('http://unittest/200')
        self.assertEqual(support.urlopen.request.get_header('User-agent'), fetchers.USER_AGENT)

    def test_post(self):
        body = b'body'
        fetchers.fetch('http://unittest/200', body, {'Content-length': len(body)})
        self.assertEqual(support.urlopen.request.data, body)

    def test_timeout(self):
        fetchers.fetch('http://unittest/200', timeout=5)
        self.assertEqual(support.urlopen.timeout, 5)
        fetchers.fetch('http://unittest/200')
        self.assertEqual(support.urlopen.timeout, None)


class FetcherFailures(unittest.TestCase):
    def _fail_with(self, error):
        with mock.patch('urllib.request.urlopen', side_effect=error):
            with self.assertRaises(fetchers.TransportError) as cm:
                fetchers.fetch('http://op.unittest/', timeout=1)
        return cm.exception

    def test_socket_timeout(self):
        error = self._fail_with(socket.timeout('timed out'))
        self.assertIsInstance(error.__cause__, socket.timeout)

    def test_url_error(self):
        error = self._fail_with(urllib.error.URLError('connection refused'))
        self.assertEqual(error.reason, 'connection refused')

    def test_connection_reset(self):
        self._fail_with(ConnectionResetError())


if __name__ == '__main__':
    unittest.main()
