"""Tests for consumer handling of association responses"""
import unittest
from unittest import mock
import urllib.error
import urllib.parse

from cryptography.hazmat.primitives import hashes

from oidconsumer.message import Message, OPENID2_NS, OPENID_NS
from oidconsumer.consumer import GenericConsumer, ProtocolError, AssociationFailed, \
     PlainTextConsumerSession
from oidconsumer.discover import Service, OPENID_1_1_TYPE, OPENID_2_0_TYPE
from oidconsumer.dh import DiffieHellman
from oidconsumer.store.memstore import MemoryStore
from oidconsumer.store.interface import NotFound
from oidconsumer import oidutil, kvform
from . import support
from .support import CatchLogs

# Some values we can use for convenience (see mkAssocResponse)
association_response_values = {
    'expires_in': '1000',
    'assoc_handle': 'a handle',
    'assoc_type': 'a type',
    'session_type': 'a session type',
    'ns': OPENID2_NS,
}


def mkAssocResponse(*keys):
    """Build an association response message that contains the
    specified subset of keys. The values come from
    `association_response_values`."""
    args = dict([(key, association_response_values[key]) for key in keys])
    return Message.fromOpenIDArgs(args)


class BaseAssocTest(CatchLogs, unittest.TestCase):
    def setUp(self):
        CatchLogs.setUp(self)
        self.store = MemoryStore()
        self.consumer = GenericConsumer(self.store)
        self.endpoint = Service([OPENID_2_0_TYPE], 'https://op.unittest/')

    def failUnlessProtocolError(self, str_prefix, func, *args, **kwargs):
        try:
            result = func(*args, **kwargs)
        except ProtocolError as e:
            e_arg = e.args[0]
            message = 'Expected prefix %r, got %r' % (str_prefix, e_arg)
            self.assertTrue(e_arg.startswith(str_prefix), message)
        else:
            self.fail('Expected ProtocolError, got %r' % (result,))


@support.gentests
class ExtractAssociationMissingFields(BaseAssocTest):
    """If 'ns' is missing, the response is checked as OpenID 1, where
    everything except 'session_type' is required."""
    data = [
        ('no_fields_openid2', (['ns'],)),
        ('missing_expires_openid2', (['assoc_handle', 'assoc_type', 'session_type', 'ns'],)),
        ('missing_handle_openid2', (['expires_in', 'assoc_type', 'session_type', 'ns'],)),
        ('missing_assoc_type_openid2', (['expires_in', 'assoc_handle', 'session_type', 'ns'],)),
        ('missing_session_type_openid2', (['expires_in', 'assoc_handle', 'assoc_type', 'ns'],)),
        ('no_fields_openid1', ([],)),
        ('missing_expires_openid1', (['assoc_handle', 'assoc_type'],)),
        ('missing_handle_openid1', (['expires_in', 'assoc_type'],)),
        ('missing_assoc_type_openid1', (['expires_in', 'assoc_handle'],)),
    ]

    def _test(self, keys):
        msg = mkAssocResponse(*keys)
        self.assertRaises(KeyError, self.consumer._extractAssociation, msg, None)


class DummyAssociationSession(object):
    secret = b'x' * 20
    extract_secret_called = False

    def __init__(self, session_type, allowed_assoc_types=()):
        self.session_type = session_type
        self.allowed_assoc_types = allowed_assoc_types

    def extractSecret(self, message):
        self.extract_secret_called = True
        return self.secret


@support.gentests
class ExtractAssociationSessionTypeMismatch(BaseAssocTest):
    data = [
        # name, (requested session type, response session type, openid1)
        ('no_enc_blank_openid2', ('no-encryption', '', False)),
        ('dh_sha1_no_enc_openid2', ('DH-SHA1', 'no-encryption', False)),
        ('dh_sha256_no_enc_openid2', ('DH-SHA256', 'no-encryption', False)),
        ('no_enc_dh_sha1_openid2', ('no-encryption', 'DH-SHA1', False)),
        ('dh_sha1_dh_sha256_openid1', ('DH-SHA1', 'DH-SHA256', True)),
        ('dh_sha256_dh_sha1_openid1', ('DH-SHA256', 'DH-SHA1', True)),
        ('no_enc_dh_sha1_openid1', ('no-encryption', 'DH-SHA1', True)),
    ]

    def _test(self, requested_session_type, response_session_type, openid1):
        assoc_session = DummyAssociationSession(requested_session_type)
        keys = list(association_response_values.keys())
        if openid1:
            keys.remove('ns')
        msg = mkAssocResponse(*keys)
        msg.setArg(OPENID_NS, 'session_type', response_session_type)
        self.failUnlessProtocolError('Session type mismatch',
            self.consumer._extractAssociation, msg, assoc_session)


@support.gentests
class OpenID1AssociationResponseSessionType(BaseAssocTest):
    data = [
        # name, (session_type value, expected session type)
        ('none', (None, 'no-encryption')),
        ('empty', ('', 'no-encryption')),
        ('dh_sha1', ('DH-SHA1', 'DH-SHA1')),
        # not valid for OpenID 1, but passed through to fail later
        ('dh_sha256', ('DH-SHA256', 'DH-SHA256')),
    ]

    def _doTest(self, session_type_value, expected_session_type):
        args = {}
        if session_type_value is not None:
            args['session_type'] = session_type_value
        message = Message.fromOpenIDArgs(args)
        self.assertTrue(message.isOpenID1())
        self.assertEqual(
            expected_session_type, self.consumer._getOpenID1SessionType(message))

    def _test(self, session_type_value, expected_session_type):
        self._doTest(session_type_value, expected_session_type)
        self.failUnlessLogEmpty()

    def test_explicit_no_encryption(self):
        self._doTest('no-encryption', 'no-encryption')
        self.assertEqual(1, len(self.messages))
        log_msg = self.messages[0]
        self.assertEqual(log_msg['levelname'], 'WARNING')
        self.assertTrue(log_msg['msg'].startswith(
                'OpenID server sent "no-encryption"'))


class InvalidFields(BaseAssocTest):
    def setUp(self):
        BaseAssocTest.setUp(self)
        self.assoc_response = Message.fromOpenIDArgs({
            'expires_in': '1000',
            'assoc_handle': 'testing-assoc-handle',
            'assoc_type': 'HMAC-SHA1',
            'session_type': 'testing-session',
            'ns': OPENID2_NS,
            })
        self.assoc_session = DummyAssociationSession('testing-session', ['HMAC-SHA1'])

    def test_good_fields(self):
        assoc_type, handle, secret, expires_in = self.consumer._extractAssociation(
            self.assoc_response, self.assoc_session)
        self.assertTrue(self.assoc_session.extract_secret_called)
        self.assertEqual(self.assoc_session.secret, secret)
        self.assertEqual(1000, expires_in)
        self.assertEqual('testing-assoc-handle', handle)
        self.assertEqual('HMAC-SHA1', assoc_type)

    def test_bad_assoc_type(self):
        self.assoc_session.allowed_assoc_types = []
        self.failUnlessProtocolError('Unsupported assoc_type for session',
            self.consumer._extractAssociation,
            self.assoc_response, self.assoc_session)

    def test_bad_expires_in(self):
        self.assoc_response.setArg(OPENID_NS, 'expires_in', 'forever')
        self.failUnlessProtocolError('Invalid expires_in',
            self.consumer._extractAssociation,
            self.assoc_response, self.assoc_session)

    def test_non_positive_expires_in(self):
        for value in ('0', '-10'):
            self.assoc_response.setArg(OPENID_NS, 'expires_in', value)
            self.failUnlessProtocolError('Invalid expires_in',
                self.consumer._extractAssociation,
                self.assoc_response, self.assoc_session)

    def test_secret_size(self):
        self.assoc_session.secret = b'x' * 32
        self.failUnlessProtocolError('Secret of wrong size',
            self.consumer._extractAssociation,
            self.assoc_response, self.assoc_session)

    def test_openid1_no_encryption_fallback(self):
        response = Message.fromOpenIDArgs({
            'expires_in': '1000',
            'assoc_handle': 'handle',
            'assoc_type': 'HMAC-SHA1',
            'mac_key': oidutil.toBase64(b'\x05' * 20),
        })
        session = DummyAssociationSession('DH-SHA1', ['HMAC-SHA1'])
        result = self.consumer._extractAssociation(response, session)
        self.assertEqual(result[2], b'\x05' * 20)
        self.assertFalse(session.extract_secret_called)


def server_dh_response(session, secret, assoc_type, session_type, handle='handle'):
    """The provider's half of a Diffie-Hellman association."""
    algorithm = hashes.SHA1() if session_type == 'DH-SHA1' else hashes.SHA256()
    server = DiffieHellman.fromDefaults()
    enc_mac_key = server.xor_secret(session.dh.public_key, secret, algorithm)
    return {
        'dh_server_public': server.public_key,
        'enc_mac_key': oidutil.toBase64(enc_mac_key),
        'assoc_type': assoc_type,
        'assoc_handle': handle,
        'expires_in': '1000',
        'session_type': session_type,
    }


class ExtractAssociationDiffieHellman(BaseAssocTest):
    secret = b'x' * 20

    def _setUpDH(self):
        sess, message = self.consumer._createAssociateRequest(
            self.endpoint, 'HMAC-SHA1', 'DH-SHA1')
        self.assertEqual(self.endpoint.compat_mode(), message.isOpenID1())
        self.assertEqual(message.getArg(OPENID_NS, 'dh_consumer_public'), sess.dh.public_key)
        # default parameters are left out
        self.assertFalse(message.hasKey(OPENID_NS, 'dh_modulus'))

        server_resp = server_dh_response(sess, self.secret, 'HMAC-SHA1', 'DH-SHA1')
        if message.isOpenID2():
            server_resp['ns'] = OPENID2_NS
        return sess, Message.fromOpenIDArgs(server_resp)

    def test_success(self):
        sess, server_resp = self._setUpDH()
        assoc_type, handle, secret, expires_in = \
            self.consumer._extractAssociation(server_resp, sess)
        self.assertEqual(assoc_type, 'HMAC-SHA1')
        self.assertEqual(secret, self.secret)
        self.assertEqual(handle, 'handle')
        self.assertEqual(expires_in, 1000)

    def test_openid1_success(self):
        self.endpoint.types = [OPENID_1_1_TYPE]
        self.test_success()

    def test_bad_dh_values(self):
        sess, server_resp = self._setUpDH()
        server_resp.setArg(OPENID_NS, 'enc_mac_key', '\x00\x00\x00')
        self.failUnlessProtocolError('Malformed response for',
            self.consumer._extractAssociation, server_resp, sess)


class CreateAssociationRequest(unittest.TestCase):
    def setUp(self):
        self.consumer = GenericConsumer(MemoryStore())
        self.endpoint = Service([OPENID_2_0_TYPE], 'https://op.unittest/')

    def test_no_encryption_sends_type(self):
        session, args = self.consumer._createAssociateRequest(
            self.endpoint, 'HMAC-SHA1', 'no-encryption')
        self.assertTrue(isinstance(session, PlainTextConsumerSession))
        self.assertEqual(args.toPostArgs(), {
            'openid.ns': OPENID2_NS,
            'openid.session_type': 'no-encryption',
            'openid.mode': 'associate',
            'openid.assoc_type': 'HMAC-SHA1',
        })

    def test_no_encryption_compatibility(self):
        self.endpoint.types = [OPENID_1_1_TYPE]
        session, args = self.consumer._createAssociateRequest(
            self.endpoint, 'HMAC-SHA1', 'no-encryption')
        self.assertEqual(args.toPostArgs(), {
            'openid.mode': 'associate',
            'openid.assoc_type': 'HMAC-SHA1',
        })

    def test_dh_sha256(self):
        session, args = self.consumer._createAssociateRequest(
            self.endpoint, 'HMAC-SHA256', 'DH-SHA256')
        self.assertEqual(session.session_type, 'DH-SHA256')
        self.assertEqual(args.getArg(OPENID_NS, 'session_type'), 'DH-SHA256')
        self.assertEqual(args.getArg(OPENID_NS, 'dh_consumer_public'), session.dh.public_key)


def kv_response(url, data, status=200):
    return support.HTTPResponse(url, status, body=kvform.dictToKV(data).encode('utf-8'))


class Associate(CatchLogs, unittest.TestCase):
    """Full association exchanges against a fake provider."""
    def setUp(self):
        CatchLogs.setUp(self)
        self.store = MemoryStore()
        self.consumer = GenericConsumer(self.store, timeout=7)
        self.endpoint = Service([OPENID_2_0_TYPE], 'https://op.unittest/')

    def _provider(self, secret, assoc_type='HMAC-SHA256'):
        def fetch(url, body=None, headers=None, timeout=None):
            self.assertEqual(timeout, 7)
            query = dict(urllib.parse.parse_qsl(body.decode('utf-8')))
            self.assertEqual(query['openid.mode'], 'associate')
            consumer_public = query['openid.dh_consumer_public']
            server = DiffieHellman.fromDefaults()
            session_type = query['openid.session_type']
            algorithm = hashes.SHA256() if session_type == 'DH-SHA256' else hashes.SHA1()
            enc_mac_key = server.xor_secret(consumer_public, secret, algorithm)
            return kv_response(url, {
                'ns': OPENID2_NS,
                'dh_server_public': server.public_key,
                'enc_mac_key': oidutil.toBase64(enc_mac_key),
                'assoc_type': assoc_type,
                'assoc_handle': 'handle',
                'expires_in': '1000',
                'session_type': session_type,
            })
        return fetch

    def test_associate_stores(self):
        secret = b'\x07' * 32
        with mock.patch('oidconsumer.fetchers.fetch', self._provider(secret)):
            assoc = self.consumer.getAssociation(self.endpoint)
        self.assertEqual(assoc.secret, secret)
        self.assertEqual(assoc.assoc_type, 'HMAC-SHA256')
        stored = self.store.getAssociation(self.endpoint.server_url, 'handle')
        self.assertEqual(stored, assoc)
        # found in the store the second time
        with mock.patch('oidconsumer.fetchers.fetch') as fetch:
            self.assertEqual(self.consumer.getAssociation(self.endpoint), assoc)
            self.assertEqual(fetch.call_count, 0)

    def test_assoc_type_not_for_session(self):
        provider = self._provider(b'\x07' * 32, assoc_type='HMAC-SHA1')
        with mock.patch('oidconsumer.fetchers.fetch', provider):
            self.assertRaises(AssociationFailed, self.consumer.associate, self.endpoint)
        self.assertRaises(NotFound, self.store.getAssociation, self.endpoint.server_url, 'handle')

    def test_http_error(self):
        error = urllib.error.HTTPError(
            'https://op.unittest/', 500, 'Server error', {}, None)
        with mock.patch('oidconsumer.fetchers.fetch', side_effect=error):
            self.assertRaises(AssociationFailed, self.consumer.associate, self.endpoint)
        self.failUnlessLogMatches('openid.associate request to')


if __name__ == '__main__':
    unittest.main()
