# -*- test-case-name: oidconsumer.test.test_consumer -*-
"""Relying party side of OpenID 1.1 and 2.0.

Everything an application calls lives here, except for the store
passed to C{L{GenericConsumer}} or C{L{Consumer}}, which is described in
the C{L{oidconsumer.store}} package.


OVERVIEW
========

    A login takes two HTTP requests on the relying party's site:

        1. The user submits an identifier.  The site finds the user's
           provider from the link tags of the identifier page, makes
           sure it shares a secret (an association) with that provider,
           and redirects the browser there with a C{checkid} request.

        2. The provider redirects the browser back with its answer to
           the request, which the site then verifies.

    C{L{Consumer}} carries the discovered endpoint from the first
    request to the second in the user's session; C{L{GenericConsumer}}
    does the protocol work and keeps no per-user state.


VERIFICATION
============

    A positive response from the provider is only accepted after a
    fixed sequence of checks, each of which fails with its own
    exception class:

        1. The mode must be C{id_res}.  Deferred immediate requests
           raise C{L{SetupNeeded}}, everything else
           C{L{ResponseRejected}}.

        2. The asserted identity must be the expected one
           (C{L{IdentityMismatch}}), and must agree with what discovery
           says about it (C{L{DiscoveryMismatch}}).

        3. The fields that must be present are present
           (C{L{MalformedResponse}}) and covered by the signature
           (C{L{MissingSignedFields}}).

        4. The response nonce is fresh (C{L{StaleResponse}}) and has
           not been seen before (C{L{ReplayDetected}}).

        5. The signature is checked with the stored association
           (C{L{SignatureMismatch}}) or, when the association is not
           known, by asking the provider (C{L{VerificationDenied}}).

        6. The association did not expire in the meantime
           (C{L{ExpiredOnDelivery}}).

    All of these derive from C{L{AuthenticationError}} so callers can
    handle them together when the distinction does not matter to them.


STORES
======

    Associations and the nonces of accepted responses are kept in an
    L{oidconsumer.store.interface.OpenIDStore}.  A store is required,
    since without one replayed responses go unnoticed.  It holds the
    secrets shared with providers, so keep it away from other tenants
    of a shared host.


IMMEDIATE MODE
==============

    C{checkid_setup} lets the provider talk to the user before sending
    them back.  C{checkid_immediate} asks for an answer straight away;
    a provider that can't give one without the user replies with
    C{L{SetupNeeded}}.
"""
import logging
import urllib.parse
import urllib.error

from cryptography.hazmat.primitives import hashes

from oidconsumer import fetchers
from oidconsumer import discover
from oidconsumer.message import Message, OPENID_NS, OPENID2_NS, \
     IDENTIFIER_SELECT, no_default, BARE_NS
from oidconsumer import oidutil
from oidconsumer.association import default_negotiator, SessionNegotiator, \
     getSecretSize
from oidconsumer.dh import DiffieHellman
from oidconsumer.store.interface import NotFound
from oidconsumer.store.nonce import mkNonce, checkTimestamp, split as splitNonce


# Query argument carrying our own nonce on OpenID 1 return_to URLs.
# OpenID 2 providers send openid.response_nonce instead.
NONCE_ARG = 'openid1_nonce'

# Seconds to wait for a provider on direct requests and discovery.
DEFAULT_TIMEOUT = 30


def makeKVPost(request_message, server_url, timeout=DEFAULT_TIMEOUT):
    """Make a Direct Request to an OpenID Provider and return the
    result as a Message object.

    @raises ServerError: if the provider answers with HTTP 400
    @raises ProtocolError: if the reply isn't a KV form message
    @raises fetchers.TransportError: if the provider can't be reached
        or doesn't answer in C{timeout} seconds
    @raises urllib.error.HTTPError: on other HTTP error statuses

    @rtype: L{oidconsumer.message.Message}
    """
    body = request_message.toURLEncoded().encode('utf-8')
    try:
        response = fetchers.fetch(server_url, body=body, timeout=timeout)
        data = response.read()
    except urllib.error.HTTPError as e:
        if e.code == 400:
            raise ServerError.fromMessage(_parseReply(e.read(), server_url))
        raise
    except fetchers.TransportError:
        raise
    except OSError as e:
        raise fetchers.TransportError(e) from e
    return _parseReply(data, server_url)


def _parseReply(data, server_url):
    # undecodable bytes and clashing namespace aliases end up here
    try:
        return Message.fromKVForm(data)
    except (ValueError, KeyError) as why:
        raise ProtocolError(
            'Malformed reply from %s: %s' % (server_url, why)) from why


def validate_fields(message):
    '''
    Checks for required fields and unsigned fields.
    Raises MalformedResponse or MissingSignedFields if something's amiss.
    '''
    basic_fields = ['return_to', 'assoc_handle', 'sig', 'signed']
    basic_sig_fields = ['return_to', 'identity', 'assoc_handle']

    if message.isOpenID2():
        require_fields = basic_fields + ['op_endpoint', 'response_nonce']
        require_sigs = basic_sig_fields + ['claimed_id', 'op_endpoint', 'response_nonce']
    else:
        require_fields = basic_fields + ['identity']
        require_sigs = basic_sig_fields + ['mode']

    missing = [
        f for f in require_fields
        if not message.hasKey(OPENID_NS, f)
    ]
    if missing:
        raise MalformedResponse('Missing fields: %s' % ', '.join(missing), message)

    signed_list = message.getArg(OPENID_NS, 'signed').split(',')
    unsigned = [
        f for f in require_sigs
        if message.hasKey(OPENID_NS, f) and f not in signed_list
    ]
    if unsigned:
        raise MissingSignedFields('Unsigned fields: %s' % ', '.join(unsigned), message)


def _url_parts(url):
    parts = urllib.parse.urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower(), parts.path or '/'


def validate_return_to(message, return_to):
    '''
    Check an OpenID message and its openid.return_to value
    against a return_to URL from an application.
    '''
    msg_return_to = message.getArg(OPENID_NS, 'return_to')
    rt_query = urllib.parse.urlsplit(msg_return_to).query
    parsed_args = urllib.parse.parse_qsl(rt_query)

    # The provider must pass the return_to arguments on unchanged
    args = [
        key for key, value in parsed_args
        if value != message.getArg(BARE_NS, key, None)
    ]
    if args:
        raise ReturnToMismatch('Mismatched return_to args: %s' % ', '.join(args), message)

    if _url_parts(return_to) != _url_parts(msg_return_to):
        raise ReturnToMismatch('Wrong return_to: %s' % msg_return_to, message)


def _expected_identities(message):
    identities = [message.getArg(OPENID_NS, 'identity')]
    if message.isOpenID2():
        claimed_id = message.getArg(OPENID2_NS, 'claimed_id')
        if claimed_id:
            identities.append(urllib.parse.urldefrag(claimed_id)[0])
    return identities


class DiffieHellmanSHA1ConsumerSession(object):
    session_type = 'DH-SHA1'
    hash_algorithm = hashes.SHA1
    secret_size = 20
    allowed_assoc_types = ['HMAC-SHA1']

    def __init__(self, dh=None):
        if dh is None:
            dh = DiffieHellman.fromDefaults()

        self.dh = dh

    def getRequest(self):
        args = {'dh_consumer_public': self.dh.public_key}

        if not self.dh.usingDefaultValues():
            modulus, generator = self.dh.parameters
            args.update({
                'dh_modulus': modulus,
                'dh_gen': generator,
                })

        return args

    def extractSecret(self, response):
        dh_server_public64 = response.getArg(
            OPENID_NS, 'dh_server_public', no_default)
        enc_mac_key64 = response.getArg(OPENID_NS, 'enc_mac_key', no_default)
        enc_mac_key = oidutil.fromBase64(enc_mac_key64)
        return self.dh.xor_secret(
            dh_server_public64, enc_mac_key, self.hash_algorithm())


class DiffieHellmanSHA256ConsumerSession(DiffieHellmanSHA1ConsumerSession):
    session_type = 'DH-SHA256'
    hash_algorithm = hashes.SHA256
    secret_size = 32
    allowed_assoc_types = ['HMAC-SHA256']


class PlainTextConsumerSession(object):
    session_type = 'no-encryption'
    allowed_assoc_types = ['HMAC-SHA1', 'HMAC-SHA256']

    def getRequest(self):
        return {}

    def extractSecret(self, response):
        mac_key64 = response.getArg(OPENID_NS, 'mac_key', no_default)
        return oidutil.fromBase64(mac_key64)


def create_session(type):
    return {
        'DH-SHA1': DiffieHellmanSHA1ConsumerSession,
        'DH-SHA256': DiffieHellmanSHA256ConsumerSession,
        'no-encryption': PlainTextConsumerSession,
    }[type]()


class ProtocolError(ValueError):
    """A provider reply that breaks the protocol. Converted to
    AssociationFailed or VerificationDenied before it leaves
    GenericConsumer.associate and GenericConsumer.verify."""


class AssociationFailed(Exception):
    """No association could be established with the provider. No
    part of a secret is kept when this is raised."""


class ServerError(Exception):
    """The provider answered a direct request with HTTP 400 and an
    error message.

    @ivar error_code: the C{openid.error_code} of the reply, if any
    @ivar message: the whole reply
    """

    def __init__(self, error_text, error_code, message):
        Exception.__init__(self, error_text)
        self.error_text = error_text
        self.error_code = error_code
        self.message = message

    @classmethod
    def fromMessage(cls, message):
        """Build the exception from an error reply."""
        error_text = message.getArg(
            OPENID_NS, 'error', '<no error message supplied>')
        error_code = message.getArg(OPENID_NS, 'error_code')
        return cls(error_text, error_code, message)


class AuthenticationError(ValueError):
    '''
    Base class for all non-normal conditions during handling authentication
    responses from a provider.

    @ivar response: the response message that failed verification, None
        when the query couldn't be parsed into one
    @type response: L{oidconsumer.message.Message}
    '''
    def __init__(self, message, response):
        super().__init__(message)
        self.response = response


class SetupNeeded(AuthenticationError):
    '''
    Provider requires additional setup in response to an immediate request.

    @ivar setup_url: where to send the user to finish the interaction,
        if the provider said (OpenID 1 only)
    '''
    def __init__(self, response):
        super().__init__('Setup needed', response)
        self.setup_url = response.setup_url()


class ResponseRejected(AuthenticationError):
    '''
    The provider did not assert an identity: the user cancelled, the
    provider reported an error or the mode is unknown.

    @ivar mode: the C{openid.mode} of the response
    @ivar error: the provider supplied error text, if any
    '''
    def __init__(self, message, response):
        super().__init__(message, response)
        self.mode = response.getArg(OPENID_NS, 'mode')
        self.error = response.getArg(OPENID_NS, 'error')


class IdentityMismatch(AuthenticationError):
    pass


class DiscoveryMismatch(AuthenticationError):
    '''The asserted identifier or endpoint differs from discovered information.'''


class MalformedResponse(AuthenticationError):
    pass


class MissingSignedFields(AuthenticationError):
    pass


class ReturnToMismatch(AuthenticationError):
    pass


class ReplayDetected(AuthenticationError):
    '''The response nonce has already been accepted once.'''


class StaleResponse(AuthenticationError):
    '''The response nonce is outside the allowed clock skew.'''


class SignatureMismatch(AuthenticationError):
    pass


class VerificationDenied(AuthenticationError):
    '''The provider did not confirm the signature in check_authentication.'''


class ExpiredOnDelivery(AuthenticationError):
    '''The association expired while the response was being verified.'''


class GenericConsumer(object):
    """The OpenID protocol without any per-user state. Builds requests
    and verifies the responses to them.

    @ivar negotiator: which association and session types to ask
        providers for, in order. A copy of
        C{L{oidconsumer.association.default_negotiator}} unless given.
    @type negotiator: C{L{oidconsumer.association.SessionNegotiator}}

    @ivar timeout: seconds to wait for a provider on every network call
    """

    def __init__(self, store, negotiator=None, timeout=DEFAULT_TIMEOUT,
                 discoverer=None):
        """
        @param store: where associations and used nonces are kept
        @type store: C{L{oidconsumer.store.interface.OpenIDStore}}

        @param discoverer: a function taking an identifier and a
            timeout and returning a
            L{Service<oidconsumer.discover.Service>}. Defaults to
            L{oidconsumer.discover.discover}.
        """
        if store is None:
            raise ValueError('A store is required to verify responses')
        self.store = store
        self.negotiator = (negotiator or default_negotiator).copy()
        self.timeout = timeout
        self.discoverer = discoverer or discover.discover

    def discover(self, identifier):
        return self.discoverer(identifier, timeout=self.timeout)

    # Requests

    def begin(self, identity):
        """Discover the provider for an identity and get an
        association with it.

        @rtype: L{AuthRequest}
        """
        return self.beginWithoutDiscovery(self.discover(identity))

    def beginWithoutDiscovery(self, endpoint):
        """Start an authentication request for an already discovered
        endpoint.

        @raises AssociationFailed: if no association can be made
        @rtype: L{AuthRequest}
        """
        assoc = self.getAssociation(endpoint)
        request = AuthRequest(endpoint, assoc)
        if endpoint.compat_mode():
            request.return_to_args[NONCE_ARG] = mkNonce()
        return request

    def checkid(self, mode, identity, return_to, trust_root=None, extensions=None):
        """Build the URL to redirect the user agent to for an
        authentication request.

        @param mode: C{'checkid_immediate'} or C{'checkid_setup'}

        @param extensions: objects implementing the
            L{Extension<oidconsumer.extension.Extension>} hooks, called
            in order

        @returns: the provider endpoint URL with the request arguments
        @rtype: str

        @raises ValueError: for an unknown mode, or a missing
            return_to in immediate mode
        @raises AssociationFailed: if no association can be made
        """
        if mode not in ('checkid_immediate', 'checkid_setup'):
            raise ValueError('Unknown checkid mode: %r' % (mode,))
        immediate = mode == 'checkid_immediate'
        if immediate and not return_to:
            raise ValueError(
                '"return_to" is mandatory when using "checkid_immediate"')

        request = self.begin(identity)
        for extension in extensions or []:
            request.addExtension(extension)
        return request.redirectURL(trust_root, return_to, immediate)

    def checkid_immediate(self, identity, return_to, trust_root=None, extensions=None):
        return self.checkid('checkid_immediate', identity, return_to, trust_root, extensions)

    def checkid_setup(self, identity, return_to, trust_root=None, extensions=None):
        return self.checkid('checkid_setup', identity, return_to, trust_root, extensions)

    # Responses

    def verify(self, query, identity=None, extensions=None, return_to=None,
               endpoint=None):
        """Verify a response from a provider.

        @param query: the query arguments of the request the provider
            redirected the user agent with, or a parsed
            L{Message<oidconsumer.message.Message>}

        @param identity: the identifier the response must assert, if
            the caller knows it

        @param extensions: objects implementing the
            L{Extension<oidconsumer.extension.Extension>} hooks; their
            C{on_response} is called once the response is verified

        @param return_to: the URL that received the response, checked
            against C{openid.return_to}

        @param endpoint: the endpoint the request was sent to. When it
            is not given it is discovered from the response.
        @type endpoint: L{Service<oidconsumer.discover.Service>}

        @returns: the verified response
        @rtype: L{Response}

        @raises AuthenticationError: a subclass naming the failed check
        """
        if isinstance(query, Message):
            message = query
        else:
            try:
                message = Message.fromPostArgs(query)
            except (ValueError, KeyError) as why:
                raise MalformedResponse(
                    'Unparseable response: %s' % (why,), None) from why

        self._checkMode(message)
        self._checkIdentity(message, identity)
        validate_fields(message)
        if return_to is not None:
            validate_return_to(message, return_to)

        if message.isOpenID2():
            endpoint = self._verify_openid2(message, endpoint)
        else:
            endpoint = self._verify_openid1(message, endpoint, identity)

        self._idResCheckNonce(message, endpoint)
        assoc = self._idResCheckSignature(message, endpoint.server_url)
        if assoc is not None and assoc.expiresIn <= 0:
            raise ExpiredOnDelivery(
                'Association with %s expired' % endpoint.server_url, message)

        signed_list = message.getArg(OPENID_NS, 'signed').split(',')
        signed_fields = ['openid.' + s for s in signed_list]
        claimed_id = endpoint.claimed_id if message.isOpenID1() else None
        response = Response(message, signed_fields, claimed_id, endpoint)
        logging.info('Verified response from %s for %s' % (
            endpoint.server_url, response.claimed_id))

        for extension in extensions or []:
            extension.on_response(response)
        return response

    def _checkMode(self, message):
        mode = message.getArg(OPENID_NS, 'mode')
        if (mode == 'setup_needed' and message.isOpenID2() or
            mode == 'id_res' and message.setup_url()):
            raise SetupNeeded(message)
        if mode == 'cancel':
            raise ResponseRejected('Authentication cancelled by OpenID provider', message)
        if mode == 'error':
            error = message.getArg(OPENID_NS, 'error', 'Unspecified provider error')
            raise ResponseRejected(error, message)
        if mode != 'id_res':
            raise ResponseRejected('Mode missing or invalid: %s' % mode, message)

    def _checkIdentity(self, message, identity):
        if identity is None or identity == IDENTIFIER_SELECT:
            return
        if identity not in _expected_identities(message):
            raise IdentityMismatch(
                'Expected identity %s, got %s' % (
                    identity, message.getArg(OPENID_NS, 'identity')),
                message)

    def _rediscover(self, identifier, message):
        try:
            return self.discover(identifier)
        except discover.DiscoveryFailure as why:
            raise DiscoveryMismatch(
                'Discovery of %s failed: %s' % (identifier, why), message) from why

    def _verify_openid1(self, message, endpoint, identity=None):
        if endpoint is None:
            if identity is None or identity == IDENTIFIER_SELECT:
                raise DiscoveryMismatch(
                    'Can\'t verify discovered info without a stored endpoint '
                    'or an identity under OpenID 1', message)
            endpoint = self._rediscover(identity, message)
        if not endpoint.compat_mode():
            raise DiscoveryMismatch('Expected an OpenID 2 response', message)
        if message.getArg(OPENID_NS, 'identity') != endpoint.identity():
            raise DiscoveryMismatch('Bad identity: %s' % message.getArg(OPENID_NS, 'identity'), message)
        return endpoint

    def _verify_openid2(self, message, endpoint):
        claimed_id = message.getArg(OPENID2_NS, 'claimed_id')
        if claimed_id:
            claimed_id = urllib.parse.urldefrag(claimed_id)[0]
        identity = message.getArg(OPENID2_NS, 'identity')
        if (claimed_id is None) != (identity is None):
            raise MalformedResponse(
                'openid.identity and openid.claimed_id should be either both '
                'present or both absent',
                message
            )

        if claimed_id is None:
            # anonymous assertion, only the provider can be checked
            if endpoint is None:
                raise DiscoveryMismatch(
                    'Can\'t verify discovered info without a stored endpoint or '
                    'claimed_id', message
                )
            endpoint = discover.Service(endpoint.types, endpoint.server_url)
        elif endpoint is None or claimed_id != endpoint.claimed_id:
            endpoint = self._rediscover(claimed_id, message)

        if endpoint.compat_mode():
            raise DiscoveryMismatch('Expected an OpenID 1 response', message)
        if message.getArg(OPENID2_NS, 'op_endpoint') != endpoint.server_url:
            raise DiscoveryMismatch('Bad OP Endpoint: %s' % message.getArg(OPENID2_NS, 'op_endpoint'), message)
        if claimed_id != endpoint.claimed_id:
            raise DiscoveryMismatch('Bad Claimed ID: %s' % claimed_id, message)
        if identity != endpoint.identity():
            raise DiscoveryMismatch('Bad Identity: %s' % identity, message)
        return endpoint

    def _idResCheckNonce(self, message, endpoint):
        if message.isOpenID1():
            # The nonce we put on return_to, which is covered by the
            # signature.
            return_to = message.getArg(OPENID_NS, 'return_to')
            query = urllib.parse.urlsplit(return_to).query
            nonce = dict(urllib.parse.parse_qsl(query)).get(NONCE_ARG)
            server_url = ''
        else:
            nonce = message.getArg(OPENID2_NS, 'response_nonce')
            server_url = endpoint.server_url

        if nonce is None:
            raise MalformedResponse('Nonce missing from response', message)

        try:
            timestamp, salt = splitNonce(nonce)
        except ValueError as why:
            raise MalformedResponse('Malformed nonce: %s' % why, message)

        if not checkTimestamp(nonce):
            raise StaleResponse('Nonce %s is out of range' % nonce, message)

        if not self.store.useNonce(server_url, timestamp, salt):
            logging.error('Replayed nonce %s from %s' % (nonce, endpoint.server_url))
            raise ReplayDetected('Nonce already used: %s' % nonce, message)

    def _idResCheckSignature(self, message, server_url):
        """Check the signature with the stored association, or with
        the provider if there is none.

        @returns: the association used, None on the stateless path
        """
        assoc_handle = message.getArg(OPENID_NS, 'assoc_handle')
        try:
            assoc = self.store.getAssociation(server_url, assoc_handle)
        except NotFound:
            # unknown handle, ask the provider
            self._checkAuth(message, server_url)
            return None

        try:
            valid = assoc.checkMessageSignature(message)
        except ValueError as why:
            # empty sig or signed list
            logging.error('Unusable signature in response from %s: %s'
                          % (server_url, why))
            raise SignatureMismatch(str(why), message) from why
        if not valid:
            logging.error('Bad signature in response from %s' % (server_url,))
            raise SignatureMismatch('Bad signature', message)

        invalidate_handle = message.getArg(OPENID_NS, 'invalidate_handle')
        if invalidate_handle is not None:
            logging.info('Response from %s invalidates association %s' % (
                server_url, invalidate_handle))
            self.store.removeAssociation(server_url, invalidate_handle)

        return assoc

    def _checkAuth(self, message, server_url):
        """Make a check_authentication request to verify this message,
        invalidating the association the provider names.

        @raises VerificationDenied: unless the provider confirms the
            signature and names no handle to invalidate
        """
        try:
            is_valid, invalidate_handle = self.check_authentication(server_url, message)
        except ProtocolError as why:
            logging.error('Bad check_authentication reply from %s: %s'
                          % (server_url, why))
            raise VerificationDenied(str(why), message) from why
        if invalidate_handle is not None:
            logging.info(
                'Received "invalidate_handle" from server %s' % (server_url,))
            self.store.removeAssociation(server_url, invalidate_handle)
            raise VerificationDenied(
                'Server invalidated association %s' % invalidate_handle, message)
        if not is_valid:
            logging.error('Server responds that checkAuth call is not valid')
            raise VerificationDenied('Server denied check_authentication', message)

    def check_authentication(self, server_url, message):
        """Ask the provider whether it signed this message.

        @param message: the signed C{id_res} message
        @type message: L{oidconsumer.message.Message}

        @returns: whether the provider confirmed the signature, and the
            association handle it asks to invalidate, if any
        @rtype: (bool, str or NoneType)

        @raises ServerError: if the provider answers with an error
        @raises ProtocolError: if the provider answers with garbage
        @raises fetchers.TransportError: if the provider can't be reached
        """
        if not isinstance(message, Message):
            message = Message.fromPostArgs(message)
        logging.info('Using OpenID check_authentication with %s' % (server_url,))
        request = self._createCheckAuthRequest(message)
        if request is None:
            return False, None
        response = makeKVPost(request, server_url, self.timeout)
        return self._processCheckAuthResponse(response)

    def _createCheckAuthRequest(self, message):
        """Generate a check_authentication request message given an
        id_res message, or None if a signed field is missing.
        """
        signed = message.getArg(OPENID_NS, 'signed')
        if signed:
            for k in signed.split(','):
                val = message.getAliasedArg(k)

                # Signed value is missing
                if val is None:
                    logging.info('Missing signed field %r' % (k,))
                    return None

        check_auth_message = message.copy()
        check_auth_message.setArg(OPENID_NS, 'mode', 'check_authentication')
        return check_auth_message

    def _processCheckAuthResponse(self, response):
        is_valid = response.getArg(OPENID_NS, 'is_valid', 'false')
        invalidate_handle = response.getArg(OPENID_NS, 'invalidate_handle')
        return is_valid == 'true', invalidate_handle

    # Associations

    def getAssociation(self, endpoint):
        """Return a live association with the endpoint's provider,
        negotiating a new one when the store has none.

        @rtype: L{oidconsumer.association.Association}
        @raises AssociationFailed: if negotiation fails
        """
        try:
            return self.store.findAssociation(endpoint.server_url)
        except NotFound:
            return self.associate(endpoint)

    def _getNegotiator(self, endpoint):
        if urllib.parse.urlsplit(endpoint.server_url).scheme == 'https':
            return self.negotiator
        # no-encryption sessions only over TLS
        return self.negotiator.encrypted()

    def associate(self, endpoint):
        """Negotiate a new association with the endpoint's provider and
        store it.

        A provider refusing with C{unsupported-type} gets one more
        request with the pair it suggests, if the negotiator allows it.

        @rtype: L{oidconsumer.association.Association}

        @raises AssociationFailed: if the provider refuses or answers
            with garbage
        @raises fetchers.TransportError: if the provider can't be reached
        """
        negotiator = self._getNegotiator(endpoint)
        pair = negotiator.getAllowedType()
        if pair[0] is None:
            raise AssociationFailed(
                'No association type allowed for %s' % endpoint.server_url)

        try:
            return self._requestAssociation(endpoint, *pair)
        except ServerError as why:
            pair = self._extractSupportedAssociationType(
                why, endpoint, pair[0], negotiator)
            if pair is None:
                raise AssociationFailed(why.error_text) from why

        try:
            return self._requestAssociation(endpoint, *pair)
        except ServerError as why:
            logging.error(
                'Server %s refused its suggested association type: '
                'assoc_type=%s, session_type=%s'
                % ((endpoint.server_url,) + tuple(pair)))
            raise AssociationFailed(why.error_text) from why

    def _extractSupportedAssociationType(self, server_error, endpoint,
                                         assoc_type, negotiator):
        """Work out what to ask for after a refused association request.

        @returns: the (assoc_type, session_type) pair the provider
            suggested, or None if there's nothing acceptable to retry with
        """
        error = server_error.message
        if server_error.error_code != 'unsupported-type' or error.isOpenID1():
            logging.error(
                'Server error when requesting an association from %r: %s'
                % (endpoint.server_url, server_error.error_text))
            return None

        logging.error('Unsupported association type %s: %s'
                      % (assoc_type, server_error.error_text))
        suggested = (error.getArg(OPENID_NS, 'assoc_type'),
                     error.getArg(OPENID_NS, 'session_type'))
        if None in suggested:
            logging.error('Server responded with unsupported association '
                          'session but did not supply a fallback.')
            return None
        if not negotiator.isAllowed(*suggested):
            logging.error('Server sent unsupported session/association type: '
                          'assoc_type=%s, session_type=%s' % suggested)
            return None
        return suggested

    def _requestAssociation(self, endpoint, assoc_type, session_type):
        """Send one associate request and store the association the
        reply carries.

        @raises ServerError: if the provider answers with an error reply
        @raises AssociationFailed: if the reply can't be used
        """
        server_url = endpoint.server_url
        assoc_session, request = self._createAssociateRequest(
            endpoint, assoc_type, session_type)
        try:
            response = makeKVPost(request, server_url, self.timeout)
        except (urllib.error.HTTPError, ProtocolError) as why:
            logging.error('openid.associate request to %s failed: %s'
                          % (server_url, why))
            raise AssociationFailed(str(why)) from why

        try:
            assoc_type, handle, secret, expires_in = \
                self._extractAssociation(response, assoc_session)
        except KeyError as why:
            logging.error('Association reply from %s lacks %s' % (server_url, why))
            raise AssociationFailed('Missing field: %s' % why) from why
        except ProtocolError as why:
            logging.error('Bad association reply from %s: %s' % (server_url, why))
            raise AssociationFailed(str(why)) from why

        assoc = self.store.storeAssociation(
            server_url, handle, secret, expires_in, assoc_type)
        logging.info('Associated with %s: %r' % (server_url, assoc))
        return assoc

    def _createAssociateRequest(self, endpoint, assoc_type, session_type):
        """
        @returns: the session object that will decode the reply, and the
            request message
        @rtype: (session, L{oidconsumer.message.Message})
        """
        assoc_session = create_session(session_type)
        openid1 = endpoint.compat_mode()

        args = {'mode': 'associate', 'assoc_type': assoc_type}
        if not openid1:
            args['ns'] = OPENID2_NS
        # OpenID 1 providers read a missing session_type as no-encryption
        if not (openid1 and session_type == 'no-encryption'):
            args['session_type'] = session_type
        args.update(assoc_session.getRequest())
        return assoc_session, Message.fromOpenIDArgs(args)

    def _getOpenID1SessionType(self, assoc_response):
        """OpenID 1 providers leave session_type out, or empty, when
        they send the secret in the clear.
        """
        session_type = assoc_response.getArg(OPENID_NS, 'session_type')
        if not session_type:
            return 'no-encryption'
        if session_type == 'no-encryption':
            logging.warning('OpenID server sent "no-encryption" for OpenID 1.X')
        return session_type

    def _extractAssociation(self, assoc_response, assoc_session):
        """Read the association out of an associate reply.

        @returns: assoc_type, assoc_handle, secret and expires_in
        @rtype: (str, str, bytes, int)

        @raises KeyError: when a required field is missing
        @raises ProtocolError: when a field is malformed or doesn't fit
            the session
        """
        def field(ns, key):
            return assoc_response.getArg(ns, key, no_default)

        assoc_type = field(OPENID_NS, 'assoc_type')
        assoc_handle = field(OPENID_NS, 'assoc_handle')
        expires_in = field(OPENID_NS, 'expires_in')
        try:
            expires_in = int(expires_in)
        except ValueError as why:
            raise ProtocolError('Invalid expires_in field: %s' % why)
        if expires_in <= 0:
            raise ProtocolError('Invalid expires_in field: %s' % expires_in)

        openid1 = assoc_response.isOpenID1()
        if openid1:
            session_type = self._getOpenID1SessionType(assoc_response)
        else:
            session_type = field(OPENID2_NS, 'session_type')

        if session_type != assoc_session.session_type:
            # OpenID 1 providers may answer any request in the clear
            if not (openid1 and session_type == 'no-encryption'):
                raise ProtocolError('Session type mismatch. Expected %r, got %r'
                                    % (assoc_session.session_type, session_type))
            assoc_session = PlainTextConsumerSession()

        if assoc_type not in assoc_session.allowed_assoc_types:
            raise ProtocolError('Unsupported assoc_type for session %s returned: %s'
                                % (assoc_session.session_type, assoc_type))

        try:
            secret = assoc_session.extractSecret(assoc_response)
        except ValueError as why:
            raise ProtocolError('Malformed response for %s session: %s'
                                % (assoc_session.session_type, why))
        if len(secret) != getSecretSize(assoc_type):
            raise ProtocolError('Secret of wrong size for %s: %d bytes'
                                % (assoc_type, len(secret)))

        return assoc_type, assoc_handle, secret, expires_in


class Consumer(object):
    """Runs both halves of an OpenID login, keeping the discovered
    endpoint in the user's session between them.

    Create a new instance for every HTTP request handling OpenID.

    @ivar session: dict-like storage of the user's session
    @ivar consumer: the L{GenericConsumer} doing the protocol work
    @cvar session_key_prefix: prepended to the session keys used here
    """
    session_key_prefix = '_openid_consumer_'

    _token = 'last_token'

    def __init__(self, session, store, consumer_class=None, **options):
        """
        @param store: see L{oidconsumer.store.interface.OpenIDStore}

        @param options: keyword arguments for C{consumer_class}, which
            defaults to L{GenericConsumer}
        """
        self.session = session
        self.consumer = (consumer_class or GenericConsumer)(store, **options)
        self._token_key = self.session_key_prefix + self._token

    def begin(self, user_url, anonymous=False):
        """Discover the provider of what the user typed in and prepare
        a request to it.

        @param anonymous: ask for no identifier assertion at all, which
            only makes sense together with extensions (OpenID 2 only)

        @rtype: L{AuthRequest}
        """
        return self.beginWithoutDiscovery(self.consumer.discover(user_url), anonymous)

    def beginWithoutDiscovery(self, service, anonymous=False):
        """
        @type service: L{Service<oidconsumer.discover.Service>}
        @rtype: L{AuthRequest}
        @raises ValueError: for anonymous requests to OpenID 1 providers
        """
        request = self.consumer.beginWithoutDiscovery(service)
        request.setAnonymous(anonymous)
        self.session[self._token_key] = dict(vars(request.endpoint))
        return request

    def complete(self, query, current_url, extensions=None):
        """Verify the response the provider sent the user back with.

        @param query: the query arguments of the current request

        @param current_url: the URL of the current request, checked
            against C{openid.return_to}

        @rtype: L{Response}
        @raises AuthenticationError: if the response isn't acceptable
        """
        saved = self.session.pop(self._token_key, None)
        endpoint = discover.Service(**saved) if saved else None
        return self.consumer.verify(
            query, extensions=extensions, return_to=current_url, endpoint=endpoint)

    def setAssociationPreference(self, association_preferences):
        """Restrict and order the (assoc_type, session_type) pairs tried
        with providers, e.g. C{[('HMAC-SHA256', 'DH-SHA256')]}.
        """
        self.consumer.negotiator = SessionNegotiator(association_preferences)


class AuthRequest(object):
    """A checkid request with its endpoint and association settled.
    Arguments may still be added before building the redirect.

    @ivar return_to_args: extra arguments appended to C{return_to}
    """

    def __init__(self, endpoint, assoc):
        self.endpoint = endpoint
        self.assoc = assoc
        self.return_to_args = {}
        self.message = Message(endpoint.ns())
        self._anonymous = False

    def setAnonymous(self, is_anonymous):
        """Leave the identifier out of the request.

        @raises ValueError: for OpenID 1, which has no anonymous requests
        """
        if is_anonymous and self.message.isOpenID1():
            raise ValueError(
                'OpenID 1 requests MUST include the identifier in the request')
        self._anonymous = is_anonymous

    def addExtension(self, extension):
        extension.on_request(self.message)

    def addExtensionArg(self, namespace, key, value):
        self.message.setArg(namespace, key, value)

    def getMessage(self, realm, return_to=None, immediate=False):
        """Build the request message.

        @param realm: the site the user is asked to trust, sent as
            C{trust_root} to OpenID 1 providers. May be None.

        @param return_to: where the provider sends the user back.
            Required for OpenID 1 and for immediate requests.

        @rtype: L{oidconsumer.message.Message}
        @raises ValueError: if C{return_to} is required but missing
        """
        if return_to:
            return_to = oidutil.appendArgs(return_to, self.return_to_args)
        elif immediate or self.message.isOpenID1() or self.return_to_args:
            raise ValueError('"return_to" is mandatory for this request')

        mode = 'checkid_immediate' if immediate else 'checkid_setup'
        message = self.message.copy()
        message.setArg(OPENID_NS, 'mode', mode)
        if return_to:
            message.setArg(OPENID_NS, 'return_to', return_to)
        if realm:
            message.setArg(
                OPENID_NS, 'trust_root' if message.isOpenID1() else 'realm', realm)

        if not self._anonymous:
            if self.endpoint.is_op_identifier():
                identity = claimed_id = IDENTIFIER_SELECT
            else:
                identity = self.endpoint.identity()
                claimed_id = self.endpoint.claimed_id
            message.setArg(OPENID_NS, 'identity', identity)
            if message.isOpenID2():
                message.setArg(OPENID2_NS, 'claimed_id', claimed_id)

        message.setArg(OPENID_NS, 'assoc_handle', self.assoc.handle)
        logging.info('Generated %s request to %s with association %s'
                     % (mode, self.endpoint.server_url, self.assoc.handle))
        return message

    def redirectURL(self, realm, return_to=None, immediate=False):
        """The provider endpoint URL carrying the request in its query."""
        message = self.getMessage(realm, return_to, immediate)
        return message.toURL(self.endpoint.server_url)


class Response(object):
    '''
    A verified positive assertion.

    @ivar message: the response message
    @ivar signed_fields: the signed keys, with the C{openid.} prefix
    @ivar claimed_id: the verified identifier
    @ivar endpoint: the endpoint the response was verified against
    '''
    def __init__(self, message, signed_fields=None, claimed_id=None, endpoint=None):
        self.message = message
        self.signed_fields = signed_fields or []
        self.claimed_id = claimed_id or self.getSigned(OPENID2_NS, 'claimed_id')
        self.endpoint = endpoint

    def isOpenID1(self):
        return self.message.isOpenID1()

    def isSigned(self, ns_uri, ns_key):
        return self.message.getKey(ns_uri, ns_key) in self.signed_fields

    def getSigned(self, ns_uri, ns_key, default=None):
        """The value of a field if the signature covers it."""
        if not self.isSigned(ns_uri, ns_key):
            return default
        return self.message.getArg(ns_uri, ns_key, default)

    def getSignedNS(self, ns_uri):
        """All arguments in a namespace, or None unless every one of
        them is signed."""
        args = self.message.getArgs(ns_uri)
        if all(self.isSigned(ns_uri, key) for key in args):
            return args
        return None

    def extensionResponse(self, namespace_uri, require_signed):
        """Arguments an extension sent back in the response. With
        C{require_signed} it is None unless all of them are signed.
        """
        if require_signed:
            return self.getSignedNS(namespace_uri)
        return self.message.getArgs(namespace_uri)

    def getReturnTo(self):
        return self.getSigned(OPENID_NS, 'return_to')

    def __repr__(self):
        return '<%s.%s id=%r signed=%r>' % (
            self.__class__.__module__,
            self.__class__.__name__,
            self.claimed_id, self.signed_fields)
