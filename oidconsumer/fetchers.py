'''
Wrapper around urlopen providing default parameters and safety checkings.
'''
import urllib.request
import urllib.error
import urllib.parse
import sys

import oidconsumer


USER_AGENT = 'oidconsumer/%s (%s) Python-urllib/%s' % (
    oidconsumer.__version__,
    sys.platform,
    urllib.request.__version__,
)


class TransportError(urllib.error.URLError):
    '''
    The provider could not be reached: bad URL, network failure or a
    timeout. HTTP error statuses are reported as
    C{urllib.error.HTTPError} instead.
    '''


def fetch(url, body=None, headers=None, timeout=None):
    '''
    Performs a GET, or a POST when C{body} is given, and returns the
    response object from urlopen.

    @param timeout: seconds to wait for the server, None waits for the
        global socket default
    @raises TransportError: on network failures and timeouts
    @raises urllib.error.HTTPError: on HTTP error statuses
    '''
    if urllib.parse.urlparse(url).scheme not in ('http', 'https'):
        raise TransportError('Bad URL scheme: %r' % url)

    if headers is None:
        headers = {}
    headers.setdefault('User-Agent', USER_AGENT)

    request = urllib.request.Request(url, data=body, headers=headers)
    kwargs = {} if timeout is None else {'timeout': timeout}
    try:
        return urllib.request.urlopen(request, **kwargs)
    except urllib.error.HTTPError:
        raise
    except urllib.error.URLError as e:
        raise TransportError(e.reason) from e
    except OSError as e:
        # socket timeouts surface as bare OSErrors
        raise TransportError(e) from e
