"""OpenID message (parameter set) handling.

A L{Message} holds the arguments of one OpenID request or response,
grouped by namespace URI. On the wire the arguments are prefixed with
C{openid.}; extension arguments additionally carry their namespace
alias (C{openid.<alias>.<key>}) declared by C{openid.ns.<alias>}.
"""
import copy
import urllib.parse

from oidconsumer import oidutil
from oidconsumer import kvform

__all__ = ['Message', 'NamespaceMap', 'UndefinedOpenIDNamespace',
           'OPENID_NS', 'BARE_NS', 'OPENID1_NS', 'OPENID11_NS',
           'OPENID2_NS', 'IDENTIFIER_SELECT', 'no_default']

# The OpenID 1.X namespace URIs
OPENID1_NS = 'http://openid.net/signon/1.0'
OPENID11_NS = 'http://openid.net/signon/1.1'

# The OpenID 2.0 namespace URI
OPENID2_NS = 'http://specs.openid.net/auth/2.0'

# The value used for the identity and claimed_id when the OP is left to
# choose the identifier (directed identity)
IDENTIFIER_SELECT = 'http://specs.openid.net/auth/2.0/identifier_select'

# The namespace consisting of pairs with keys that are prefixed with
# "openid."  but not in another namespace.
NULL_NAMESPACE = oidutil.Symbol('Null namespace')

# The null namespace, when it is an allowed OpenID namespace
OPENID_NS = oidutil.Symbol('OpenID namespace')

# The top-level namespace, excluding all pairs with keys that start
# with "openid."
BARE_NS = oidutil.Symbol('Bare namespace')

# Sentinel for Message.getArg to raise KeyError on a missing argument
no_default = object()

OPENID1_NAMESPACES = [OPENID1_NS, OPENID11_NS]


class UndefinedOpenIDNamespace(ValueError):
    """Raised if the generic OpenID namespace is accessed when there
    is no OpenID namespace set for this message."""


class Message(object):
    """
    @ivar args: the values in this message, keyed by
        (namespace URI, key) pairs.

    @ivar namespaces: the L{NamespaceMap} of namespace URIs to aliases
        used when encoding this message.
    """

    allowed_openid_namespaces = [OPENID1_NS, OPENID11_NS, OPENID2_NS]

    def __init__(self, openid_namespace=None):
        """Create an empty Message, optionally bound to an OpenID
        protocol version namespace."""
        self.args = {}
        self.namespaces = NamespaceMap()
        self._openid_ns_uri = None
        if openid_namespace is not None:
            self.setOpenIDNamespace(openid_namespace)

    @classmethod
    def fromPostArgs(cls, args):
        """Construct a Message containing a set of POST arguments"""
        self = cls()

        # Partition into "openid." args and bare args
        openid_args = {}
        for key, value in args.items():
            if isinstance(value, list):
                raise TypeError("query dict must have one value for each key, "
                                "not lists of values.  Query is %r" % (args,))

            prefix, _, rest = key.partition('.')
            if prefix != 'openid' or not rest:
                self.args[(BARE_NS, key)] = value
            else:
                openid_args[rest] = value

        self._fromOpenIDArgs(openid_args)
        return self

    @classmethod
    def fromOpenIDArgs(cls, openid_args):
        """Construct a Message from a parsed KVForm message"""
        self = cls()
        self._fromOpenIDArgs(openid_args)
        return self

    @classmethod
    def fromKVForm(cls, kvform_string):
        """Create a Message from a KVForm string"""
        return cls.fromOpenIDArgs(kvform.kvToDict(kvform_string))

    def _fromOpenIDArgs(self, openid_args):
        ns_args = []

        # Resolve namespaces
        for rest, value in openid_args.items():
            ns_alias, sep, ns_key = rest.partition('.')
            if not sep:
                ns_alias = NULL_NAMESPACE
                ns_key = rest

            if ns_alias == 'ns':
                self.namespaces.addAlias(value, ns_key)
            elif ns_alias == NULL_NAMESPACE and ns_key == 'ns':
                self.setOpenIDNamespace(value)
            else:
                ns_args.append((ns_alias, ns_key, value))

        # Ensure that there is an OpenID namespace definition
        if self._openid_ns_uri is None:
            self.setOpenIDNamespace(OPENID1_NS)

        # Actually put the pairs into the appropriate namespaces
        for (ns_alias, ns_key, value) in ns_args:
            ns_uri = self.namespaces.getNamespaceURI(ns_alias)
            if ns_uri is None:
                # An undeclared alias is part of the key itself,
                # e.g. "openid.sreg.nickname" in an OpenID 1 message.
                ns_uri = self._openid_ns_uri
                ns_key = '%s.%s' % (ns_alias, ns_key)
            self.setArg(ns_uri, ns_key, value)

    def setOpenIDNamespace(self, openid_ns_uri):
        if openid_ns_uri not in self.allowed_openid_namespaces:
            raise ValueError('Invalid null namespace: %r' % (openid_ns_uri,))

        self.namespaces.addAlias(openid_ns_uri, NULL_NAMESPACE)
        self._openid_ns_uri = openid_ns_uri

    def getOpenIDNamespace(self):
        return self._openid_ns_uri

    def isOpenID1(self):
        return self.getOpenIDNamespace() in OPENID1_NAMESPACES

    def isOpenID2(self):
        return self.getOpenIDNamespace() == OPENID2_NS

    def setup_url(self):
        """The OpenID 1 C{user_setup_url} of a deferred immediate-mode
        response, if any."""
        if self.isOpenID1():
            return self.getArg(OPENID_NS, 'user_setup_url')
        return None

    def copy(self):
        return copy.deepcopy(self)

    def toPostArgs(self):
        """All arguments keyed the way they go on the wire."""
        args = {}
        for ns_uri, alias in self.namespaces.items():
            if alias != NULL_NAMESPACE:
                args['openid.ns.' + alias] = ns_uri
            elif ns_uri not in OPENID1_NAMESPACES:
                # OpenID 1 goes without openid.ns
                args['openid.ns'] = ns_uri

        for (ns_uri, ns_key), value in self.args.items():
            args[self.getKey(ns_uri, ns_key)] = value
        return args

    def toArgs(self):
        """Wire arguments with the C{openid.} prefix dropped.

        @raises ValueError: if there are bare arguments, which have no
            such prefix to drop
        """
        prefix = 'openid.'
        args = {}
        for key, value in self.toPostArgs().items():
            if not key.startswith(prefix):
                raise ValueError('Bare argument %r only fits in a POST' % (key,))
            args[key[len(prefix):]] = value
        return args

    def toURL(self, base_url):
        return oidutil.appendArgs(base_url, self.toPostArgs())

    def toKVForm(self):
        return kvform.dictToKV(self.toArgs())

    def toURLEncoded(self):
        return urllib.parse.urlencode(sorted(self.toPostArgs().items()))

    def _fixNS(self, namespace):
        if namespace == OPENID_NS:
            if self._openid_ns_uri is None:
                raise UndefinedOpenIDNamespace('OpenID namespace not set')
            return self._openid_ns_uri
        if namespace != BARE_NS and not isinstance(namespace, str):
            raise TypeError('Namespace must be BARE_NS, OPENID_NS or a URI '
                            'string, got %r' % (namespace,))
        return namespace

    def hasKey(self, namespace, ns_key):
        return (self._fixNS(namespace), ns_key) in self.args

    def getKey(self, namespace, ns_key):
        """The wire key of an argument, or None when its namespace has
        no alias in this message."""
        namespace = self._fixNS(namespace)
        if namespace == BARE_NS:
            return ns_key
        alias = self.namespaces.getAlias(namespace)
        if alias is None:
            return None
        if alias == NULL_NAMESPACE:
            return 'openid.' + ns_key
        return 'openid.%s.%s' % (alias, ns_key)

    def getArg(self, namespace, key, default=None):
        """
        @raises KeyError: if the argument is missing and C{default} is
            C{no_default}
        """
        namespace = self._fixNS(namespace)
        value = self.args.get((namespace, key), default)
        if value is no_default:
            raise KeyError((namespace, key))
        return value

    def getArgs(self, namespace):
        """
        @returns: the arguments in the namespace, by their unprefixed keys
        @rtype: dict
        """
        namespace = self._fixNS(namespace)
        return {
            ns_key: value
            for (pair_ns, ns_key), value in self.args.items()
            if pair_ns == namespace
        }

    def getAliasedArg(self, aliased_key, default=None):
        """Get a value by the key used in C{openid.signed}, i.e. with
        the C{openid.} prefix stripped but the alias kept."""
        if aliased_key == 'ns':
            return self.getOpenIDNamespace()

        if aliased_key.startswith('ns.'):
            uri = self.namespaces.getNamespaceURI(aliased_key[3:])
            return default if uri is None else uri

        alias, sep, key = aliased_key.partition('.')
        ns = self.namespaces.getNamespaceURI(alias) if sep else None
        if ns is None:
            key = aliased_key
            ns = self.getOpenIDNamespace()

        return self.getArg(ns, key, default)

    def updateArgs(self, namespace, updates):
        for key, value in updates.items():
            self.setArg(namespace, key, value)

    def setArg(self, namespace, key, value):
        assert key is not None
        assert value is not None
        namespace = self._fixNS(namespace)
        self.args[(namespace, key)] = value
        if namespace != BARE_NS:
            self.namespaces.add(namespace)

    def delArg(self, namespace, key):
        del self.args[(self._fixNS(namespace), key)]

    def __repr__(self):
        return '<%s.%s %r>' % (self.__class__.__module__,
                               self.__class__.__name__,
                               self.args)

    def __eq__(self, other):
        return isinstance(other, Message) and self.args == other.args

    def __ne__(self, other):
        return not self == other


class NamespaceMap(object):
    """One-to-one mapping of namespace URIs and their aliases."""

    def __init__(self):
        self.alias_to_namespace = {}
        self.namespace_to_alias = {}

    def getAlias(self, namespace_uri):
        return self.namespace_to_alias.get(namespace_uri)

    def getNamespaceURI(self, alias):
        return self.alias_to_namespace.get(alias)

    def items(self):
        """(namespace_uri, alias) pairs"""
        return self.namespace_to_alias.items()

    def addAlias(self, namespace_uri, desired_alias):
        """Map a URI to the given alias.

        @raises KeyError: if either side is already mapped to something
            else, or the alias contains a dot
        """
        taken_by = self.alias_to_namespace.get(desired_alias, namespace_uri)
        if taken_by != namespace_uri:
            raise KeyError('Alias %r is already used for %r'
                           % (desired_alias, taken_by))
        current = self.namespace_to_alias.get(namespace_uri, desired_alias)
        if current != desired_alias:
            raise KeyError('%r already has the alias %r'
                           % (namespace_uri, current))

        if desired_alias != NULL_NAMESPACE:
            if not isinstance(desired_alias, str):
                raise TypeError('Alias must be a string, got %r'
                                % (desired_alias,))
            if '.' in desired_alias:
                raise KeyError('%r is not an allowed namespace alias'
                               % (desired_alias,))

        self.alias_to_namespace[desired_alias] = namespace_uri
        self.namespace_to_alias[namespace_uri] = desired_alias
        return desired_alias

    def add(self, namespace_uri):
        """Map a URI to its current alias, or to the first free
        C{extN} one."""
        if namespace_uri in self.namespace_to_alias:
            return self.namespace_to_alias[namespace_uri]
        n = 0
        while 'ext%d' % n in self.alias_to_namespace:
            n += 1
        return self.addAlias(namespace_uri, 'ext%d' % n)

    def __contains__(self, namespace_uri):
        return namespace_uri in self.namespace_to_alias
