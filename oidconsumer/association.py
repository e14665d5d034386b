# -*- test-case-name: oidconsumer.test.test_association -*-
"""
Associations: secrets shared between the consumer and a provider, used
to sign and check C{openid.mode=id_res} messages.

Applications rarely touch these directly, the consumer and the
L{store<oidconsumer.store>} manage them. What applications may want to
tune is the C{L{SessionNegotiator}} deciding which kinds of
associations to ask providers for.

@var default_negotiator: allows every association and session type,
    preferring HMAC-SHA256 over Diffie-Hellman.

@var encrypted_negotiator: the same without C{'no-encryption'}
    sessions.
"""
import time

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.constant_time import bytes_eq
from cryptography.hazmat.primitives.hmac import HMAC

from oidconsumer import kvform, oidutil
from oidconsumer.message import OPENID_NS

__all__ = [
    'default_negotiator',
    'encrypted_negotiator',
    'SessionNegotiator',
    'Association',
]


# association type -> (digest, secret size, session types it may use)
ASSOCIATION_TYPES = {
    'HMAC-SHA1': (hashes.SHA1, 20, ('DH-SHA1', 'no-encryption')),
    'HMAC-SHA256': (hashes.SHA256, 32, ('DH-SHA256', 'no-encryption')),
}

default_association_order = [
    ('HMAC-SHA256', 'DH-SHA256'),
    ('HMAC-SHA256', 'no-encryption'),
    ('HMAC-SHA1', 'DH-SHA1'),
    ('HMAC-SHA1', 'no-encryption'),
]

only_encrypted_association_order = [
    pair for pair in default_association_order if pair[1] != 'no-encryption'
]


def _lookup(assoc_type):
    try:
        return ASSOCIATION_TYPES[assoc_type]
    except KeyError:
        raise ValueError('Unsupported association type: %r' % (assoc_type,))


def getSessionTypes(assoc_type):
    return list(ASSOCIATION_TYPES.get(assoc_type, (None, None, ()))[2])


def getSecretSize(assoc_type):
    return _lookup(assoc_type)[1]


def checkSessionType(assoc_type, session_type):
    if session_type not in getSessionTypes(assoc_type):
        raise ValueError('Session type %r not valid for association type %r'
                         % (session_type, assoc_type))


class SessionNegotiator(object):
    """Which (association type, session type) pairs the consumer asks
    providers for, in order of preference.

    The first pair is requested first. A provider refusing it may
    suggest another pair, which is only tried when C{L{isAllowed}}
    agrees.

    @ivar allowed_types: the pairs, most preferred first
    @type allowed_types: [(str, str)]
    """

    def __init__(self, allowed_types):
        self.setAllowedTypes(allowed_types)

    def copy(self):
        return self.__class__(self.allowed_types)

    def setAllowedTypes(self, allowed_types):
        allowed_types = list(allowed_types)
        for assoc_type, session_type in allowed_types:
            checkSessionType(assoc_type, session_type)
        self.allowed_types = allowed_types

    def addAllowedType(self, assoc_type, session_type=None):
        """Append a pair, or every session type the association type
        works with when C{session_type} is None.
        """
        if session_type is not None:
            checkSessionType(assoc_type, session_type)
            self.allowed_types.append((assoc_type, session_type))
            return
        session_types = getSessionTypes(assoc_type)
        if not session_types:
            raise ValueError('No session available for association type %r'
                             % (assoc_type,))
        self.allowed_types.extend((assoc_type, s) for s in session_types)

    def isAllowed(self, assoc_type, session_type):
        return (assoc_type, session_type) in self.allowed_types

    def getAllowedType(self):
        """The preferred pair, or C{(None, None)} if nothing is allowed."""
        if not self.allowed_types:
            return (None, None)
        return self.allowed_types[0]

    def encrypted(self):
        """A negotiator keeping only the Diffie-Hellman pairs of this one."""
        return self.__class__(
            pair for pair in self.allowed_types if pair[1] != 'no-encryption')


default_negotiator = SessionNegotiator(default_association_order)
encrypted_negotiator = SessionNegotiator(only_encrypted_association_order)


class Association(object):
    """
    A secret shared with one provider under one handle.

    Custom L{stores<oidconsumer.store.interface.OpenIDStore>} need to
    keep every attribute below, or the string from C{L{serialize}}.

    @ivar server_url: OP endpoint URL of the provider
    @ivar handle: the handle the provider gave the association
    @ivar secret: the shared MAC key
    @type secret: bytes
    @ivar issued: unix timestamp of the negotiation
    @ivar lifetime: seconds after C{issued} the association is good for
    @ivar assoc_type: C{'HMAC-SHA1'} or C{'HMAC-SHA256'}
    """

    # field order of the serialized form
    assoc_keys = [
        'version',
        'server_url',
        'handle',
        'secret',
        'issued',
        'lifetime',
        'assoc_type',
    ]

    @classmethod
    def fromExpiresIn(cls, expires_in, server_url, handle, secret, assoc_type):
        """An association negotiated just now, good for C{expires_in}
        seconds as the provider declared.
        """
        return cls(server_url, handle, secret, int(time.time()), expires_in, assoc_type)

    def __init__(self, server_url, handle, secret, issued, lifetime, assoc_type):
        _lookup(assoc_type)
        if not isinstance(secret, bytes):
            raise TypeError('Association secret must be bytes')

        self.server_url = server_url
        self.handle = handle
        self.secret = secret
        self.issued = int(issued)
        self.lifetime = int(lifetime)
        self.assoc_type = assoc_type

    @property
    def expires(self):
        return self.issued + self.lifetime

    def getExpiresIn(self, now=None):
        """Seconds left before expiry, never negative."""
        if now is None:
            now = int(time.time())
        return max(0, self.expires - now)

    expiresIn = property(getExpiresIn)

    def __eq__(self, other):
        return type(self) == type(other) and vars(self) == vars(other)

    def __ne__(self, other):
        return not self == other

    def serialize(self):
        """
        @return: the association in KV form, read back by
            C{L{deserialize}}
        @rtype: str
        """
        values = [
            '2',
            self.server_url,
            self.handle,
            oidutil.toBase64(self.secret),
            str(self.issued),
            str(self.lifetime),
            self.assoc_type,
        ]
        return kvform.seqToKV(list(zip(self.assoc_keys, values)), strict=True)

    @classmethod
    def deserialize(cls, assoc_s):
        pairs = kvform.kvToSeq(assoc_s, strict=True)
        if [k for k, _ in pairs] != cls.assoc_keys:
            raise ValueError('Unexpected keys in %r' % (assoc_s,))

        fields = dict(pairs)
        if fields['version'] != '2':
            raise ValueError('Unknown version: %r' % fields['version'])
        return cls(fields['server_url'], fields['handle'],
                   oidutil.fromBase64(fields['secret']),
                   int(fields['issued']), int(fields['lifetime']),
                   fields['assoc_type'])

    def sign(self, pairs):
        """
        MAC over the KV form of C{pairs}.

        @type pairs: [(str, str)]
        @rtype: bytes
        """
        digest = _lookup(self.assoc_type)[0]
        hmac = HMAC(self.secret, digest())
        hmac.update(kvform.seqToKV(pairs).encode('utf-8'))
        return hmac.finalize()

    def getMessageSignature(self, message):
        """
        @return: the base64 signature over the fields C{openid.signed}
            lists
        @raises ValueError: if the message has no signed list
        """
        return oidutil.toBase64(self.sign(self._makePairs(message)))

    def signMessage(self, message):
        """Sign every C{openid.} field of a copy of the message.

        @rtype: L{oidconsumer.message.Message}
        """
        if message.hasKey(OPENID_NS, 'sig') or message.hasKey(OPENID_NS, 'signed'):
            raise ValueError('Message already has signed list or signature')
        handle = message.getArg(OPENID_NS, 'assoc_handle')
        if handle and handle != self.handle:
            raise ValueError('Message has a different association handle')

        signed = message.copy()
        signed.setArg(OPENID_NS, 'assoc_handle', self.handle)
        fields = sorted(
            key[len('openid.'):] for key in signed.toPostArgs()
            if key.startswith('openid.'))
        signed.setArg(OPENID_NS, 'signed', ','.join(fields + ['signed']))
        signed.setArg(OPENID_NS, 'sig', self.getMessageSignature(signed))
        return signed

    def checkMessageSignature(self, message):
        """Recompute the signature and compare it in constant time with
        the one the message carries.

        @raises ValueError: if the message has no signature
        """
        sig = message.getArg(OPENID_NS, 'sig')
        if not sig:
            raise ValueError('%s has no sig.' % (message,))
        expected = self.getMessageSignature(message)
        return bytes_eq(expected.encode('utf-8'), sig.encode('utf-8'))

    def _makePairs(self, message):
        signed = message.getArg(OPENID_NS, 'signed')
        if not signed:
            raise ValueError('Message has no signed list: %s' % (message,))
        args = message.toPostArgs()
        return [(key, args.get('openid.' + key, '')) for key in signed.split(',')]

    def __repr__(self):
        # no secret here, this ends up in logs
        return '<%s.%s %s %s %s>' % (
            self.__class__.__module__,
            self.__class__.__name__,
            self.assoc_type,
            self.server_url,
            self.handle)
