import unittest

from cryptography.hazmat.primitives import hashes

from oidconsumer import dh
from oidconsumer.dh import DiffieHellman


class StrXorTest(unittest.TestCase):
    def test_xor(self):
        self.assertEqual(dh.strxor(b'\x00\xff', b'\xff\xff'), b'\xff\x00')
        self.assertEqual(dh.strxor(b'', b''), b'')

    def test_length_mismatch(self):
        self.assertRaises(ValueError, dh.strxor, b'abc', b'ab')


class DiffieHellmanTest(unittest.TestCase):
    def test_defaults(self):
        dh1 = DiffieHellman.fromDefaults()
        self.assertTrue(dh1.usingDefaultValues())
        self.assertEqual(dh1.parameters, (dh.DEFAULT_DH_MODULUS, dh.DEFAULT_DH_GENERATOR))

    def test_shared_secret(self):
        dh1 = DiffieHellman.fromDefaults()
        dh2 = DiffieHellman.fromDefaults()
        self.assertNotEqual(dh1.public_key, dh2.public_key)
        secret1 = dh1.get_shared_secret(dh2.public_key)
        secret2 = dh2.get_shared_secret(dh1.public_key)
        self.assertEqual(secret1, secret2)

    def test_xor_secret(self):
        consumer = DiffieHellman.fromDefaults()
        server = DiffieHellman.fromDefaults()
        for algorithm, secret in [(hashes.SHA1(), b'\x01' * 20),
                                  (hashes.SHA256(), b'\x02' * 32)]:
            encrypted = server.xor_secret(consumer.public_key, secret, algorithm)
            self.assertNotEqual(encrypted, secret)
            self.assertEqual(
                consumer.xor_secret(server.public_key, encrypted, algorithm), secret)

    def test_xor_secret_wrong_size(self):
        consumer = DiffieHellman.fromDefaults()
        server = DiffieHellman.fromDefaults()
        self.assertRaises(
            ValueError, consumer.xor_secret, server.public_key, b'\x01' * 20, hashes.SHA256())


if __name__ == '__main__':
    unittest.main()
