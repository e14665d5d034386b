"""Small helpers shared by the rest of the package."""
import base64
import urllib.parse

__all__ = ['appendArgs', 'toBase64', 'fromBase64', 'Symbol']


def appendArgs(url, args):
    """Add query arguments to a URL, after any it already has.

    @param args: a dict, appended in sorted key order, or a sequence of
        pairs, appended in the given order

    @rtype: str
    """
    pairs = sorted(args.items()) if hasattr(args, 'items') else list(args)
    if not pairs:
        return url
    return url + ('&' if '?' in url else '?') + urllib.parse.urlencode(pairs)


def toBase64(data):
    return base64.b64encode(data).decode('ascii')


def fromBase64(s):
    """
    @raises ValueError: on malformed input (C{binascii.Error} is one)
    @rtype: bytes
    """
    if isinstance(s, str):
        s = s.encode('ascii', 'replace')
    return base64.b64decode(s)


class Symbol(object):
    """A named marker that is never equal to any string."""

    def __init__(self, name):
        self.name = name

    def __eq__(self, other):
        return type(self) == type(other) and self.name == other.name

    def __ne__(self, other):
        return not self == other

    def __hash__(self):
        return hash((type(self), self.name))

    def __repr__(self):
        return '<Symbol %s>' % (self.name,)
