'''
Functions to discover OpenID endpoints from identifiers.

Discovery fetches the identity page and looks for the OpenID link
relations in its HTML head: C{openid2.provider}/C{openid2.local_id}
and C{openid.server}/C{openid.delegate}.
'''
import urllib.parse
import logging

import html5lib

from oidconsumer import fetchers
from oidconsumer.message import OPENID1_NS, OPENID2_NS

OPENID_IDP_2_0_TYPE = 'http://specs.openid.net/auth/2.0/server'
OPENID_2_0_TYPE = 'http://specs.openid.net/auth/2.0/signon'
OPENID_1_1_TYPE = 'http://openid.net/signon/1.1'
OPENID_1_0_TYPE = 'http://openid.net/signon/1.0'

# OpenID service type URIs, listed in order of preference.
SERVICE_TYPES = [
    OPENID_IDP_2_0_TYPE,
    OPENID_2_0_TYPE,
    OPENID_1_1_TYPE,
    OPENID_1_0_TYPE,
]

XHTML_NS = '{http://www.w3.org/1999/xhtml}'

DEFAULT_PORTS = {'http': '80', 'https': '443'}


class DiscoveryFailure(Exception):
    pass


class Service(object):
    """
    An OpenID endpoint found by discovery, or built by hand for a known
    provider.

    @ivar types: the OpenID service type URIs the endpoint supports,
        C{[OPENID_2_0_TYPE]} when not given
    @ivar server_url: the OP endpoint URL
    @ivar claimed_id: the identifier the user claims to own, None for
        OP identifiers
    @ivar local_id: the identifier the provider knows the user by, if
        it differs from the claimed one (delegation)
    """

    def __init__(self, types=None, server_url=None, claimed_id=None, local_id=None):
        self.types = [OPENID_2_0_TYPE] if types is None else list(types)
        self.server_url = server_url
        self.claimed_id = claimed_id
        self.local_id = local_id

    def supports(self, *type_uris):
        return any(t in self.types for t in type_uris)

    def compat_mode(self):
        """True for endpoints speaking only OpenID 1.x."""
        return not self.supports(OPENID_IDP_2_0_TYPE, OPENID_2_0_TYPE)

    def ns(self):
        if self.compat_mode():
            return OPENID1_NS
        return OPENID2_NS

    def is_op_identifier(self):
        return self.supports(OPENID_IDP_2_0_TYPE)

    def identity(self):
        # sent as openid.identity, the delegate when there is one
        return self.local_id or self.claimed_id

    def __eq__(self, other):
        return type(self) == type(other) and vars(self) == vars(other)

    def __ne__(self, other):
        return not self == other

    def __repr__(self):
        return '<%s %s claimed_id=%r local_id=%r>' % (
            self.__class__.__name__, self.server_url,
            self.claimed_id, self.local_id)


def normalize(url):
    '''
    Turn an identifier as typed by a user into a URL: add the http
    scheme when it is missing, lowercase the scheme and host, drop a
    default port and the fragment.

    @raises DiscoveryFailure: for schemes other than http and https
    '''
    url = url.strip()
    parsed = urllib.parse.urlsplit(url)
    if not parsed.scheme or not parsed.netloc:
        # checking both scheme and netloc as things like 'server:80/' put 'server' in scheme
        parsed = urllib.parse.urlsplit('http://' + url)

    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise DiscoveryFailure('Unsupported URL scheme: %s' % url)

    netloc = parsed.netloc.lower()
    host, _, port = netloc.rpartition(':')
    if host and port == DEFAULT_PORTS[scheme]:
        netloc = host

    return urllib.parse.urlunsplit((scheme, netloc, parsed.path or '/', parsed.query, ''))


def canonicalize(url, timeout=None):
    '''
    Normalize the URL and follow the redirects the server issues for
    it. Returns the final URL.
    '''
    url = normalize(url)
    response = fetchers.fetch(url, timeout=timeout)
    return urllib.parse.urldefrag(response.url)[0]


def parse_html(url, html):
    root = html5lib.parse(html)
    links = root.findall(XHTML_NS + 'head/' + XHTML_NS + 'link')
    hrefs = {}
    for l in links:
        for rel in l.get('rel', '').split():
            # the first link of each kind wins
            hrefs.setdefault(rel, l.get('href'))

    link_types = [
        (OPENID_2_0_TYPE, 'openid2.provider', 'openid2.local_id'),
        (OPENID_1_1_TYPE, 'openid.server', 'openid.delegate'),
    ]

    return [
        Service([type_uri], hrefs[op_endpoint_rel], url, hrefs.get(local_id_rel))
        for type_uri, op_endpoint_rel, local_id_rel in link_types
        if hrefs.get(op_endpoint_rel)
    ]


def discoverURI(url, timeout=None):
    url = normalize(url)
    response = fetchers.fetch(url, headers={'Accept': 'text/html'}, timeout=timeout)
    try:
        data = response.read()
    except OSError as e:
        raise fetchers.TransportError(e) from e
    claimed_id = urllib.parse.urldefrag(response.url)[0]
    services = parse_html(claimed_id, data)
    logging.info('Discovered %d OpenID services at %s' % (len(services), claimed_id))
    return services


def _preference(service):
    return min(SERVICE_TYPES.index(t) for t in service.types if t in SERVICE_TYPES)


def discoverall(identifier, timeout=None):
    return sorted(discoverURI(identifier, timeout), key=_preference)


def discover(identifier, timeout=None):
    services = discoverall(identifier, timeout)
    if not services:
        raise DiscoveryFailure('No services found for %s' % identifier)
    return services[0]
