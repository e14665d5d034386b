"""Utilities for Diffie-Hellman key exchange."""
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.dh import DHParameterNumbers, DHPublicNumbers

from oidconsumer import cryptutil

# Default Diffie-Hellman modulus and generator, base64 btwoc encoded.
# http://openid.net/specs/openid-authentication-2_0.html#pvalue
DEFAULT_DH_MODULUS = (
    'ANz5OguIOXLsDhmYmsWizjEOHTdxfo2Vcbt2I3MYZuYe91ouJ4mLBX+YkcLiemOcPym2CBRYHNOyyjmG0mg3BVd9RcLn5S3I'
    'HHoXGHblzqdLFEi/368Ygo79JRnxTkXjgmY0rxlJ5bU1zIKaSDuKdiI+XUkKJX8Fvf8W8vsixYOr')
DEFAULT_DH_GENERATOR = 'Ag=='


def strxor(x, y):
    if len(x) != len(y):
        raise ValueError('Inputs to strxor must have the same length')
    return bytes(a ^ b for a, b in zip(x, y))


class DiffieHellman(object):
    """One side of a Diffie-Hellman exchange: parameters and a freshly
    generated private key.
    """

    def __init__(self, modulus, generator):
        """Create a new instance.

        @param modulus: base64 encoded prime modulus
        @param generator: base64 encoded generator
        """
        self.parameter_numbers = DHParameterNumbers(
            cryptutil.base64ToLong(modulus), cryptutil.base64ToLong(generator))
        parameters = self.parameter_numbers.parameters()
        self.private_key = parameters.generate_private_key()

    @classmethod
    def fromDefaults(cls):
        """Create Diffie-Hellman with the default modulus and generator."""
        return cls(DEFAULT_DH_MODULUS, DEFAULT_DH_GENERATOR)

    @property
    def parameters(self):
        """Return base64 encoded modulus and generator.

        @rtype: (str, str)
        """
        return (cryptutil.longToBase64(self.parameter_numbers.p),
                cryptutil.longToBase64(self.parameter_numbers.g))

    @property
    def public_key(self):
        """Return base64 encoded public key.

        @rtype: str
        """
        return cryptutil.longToBase64(
            self.private_key.public_key().public_numbers().y)

    def usingDefaultValues(self):
        return self.parameters == (DEFAULT_DH_MODULUS, DEFAULT_DH_GENERATOR)

    def get_shared_secret(self, public_key):
        """Return the btwoc encoded shared secret.

        @param public_key: Base64 encoded public key of the other party.
        @type public_key: str
        @rtype: bytes
        """
        public_numbers = DHPublicNumbers(
            cryptutil.base64ToLong(public_key), self.parameter_numbers)
        shared = self.private_key.exchange(public_numbers.public_key())
        # Strip any padding the backend adds before re-encoding as btwoc.
        return cryptutil.int_to_bytes(cryptutil.bytes_to_int(shared))

    def xor_secret(self, public_key, secret, algorithm):
        """XOR a secret with the hash of the shared DH secret. This both
        encrypts (provider side) and decrypts (consumer side) a MAC key.

        @param public_key: Base64 encoded public key of the other party.
        @type public_key: str
        @param secret: the MAC key, or the encrypted MAC key
        @type secret: bytes
        @type algorithm: hashes.HashAlgorithm
        @rtype: bytes
        """
        digest = hashes.Hash(algorithm)
        digest.update(self.get_shared_secret(public_key))
        return strxor(secret, digest.finalize())
