"""Integer/byte conversions used by the Diffie-Hellman exchange and a
source of random strings.

Integers travel over the wire as base64 of their big-endian two's
complement representation (C{btwoc}).
"""
import secrets
import string

from oidconsumer.oidutil import fromBase64, toBase64

__all__ = [
    'base64ToLong',
    'bytes_to_int',
    'fix_btwoc',
    'int_to_bytes',
    'longToBase64',
    'randomString',
]


def bytes_to_int(value):
    return int.from_bytes(value, 'big')


def fix_btwoc(value):
    """Prepend a zero byte when the high bit is set so that the value
    reads as a positive number.

    See http://openid.net/specs/openid-authentication-2_0.html#btwoc
    """
    if value and value[0] > 127:
        return b'\x00' + bytes(value)
    return bytes(value)


def int_to_bytes(value):
    length = max(1, (value.bit_length() + 7) // 8)
    return fix_btwoc(value.to_bytes(length, 'big'))


def longToBase64(value):
    return toBase64(int_to_bytes(value))


def base64ToLong(s):
    return bytes_to_int(fromBase64(s))


def randomString(length, chars=string.ascii_letters + string.digits):
    """Produce a string of length random characters drawn from chars,
    using the operating system's source of randomness.
    """
    return ''.join(secrets.choice(chars) for _ in range(length))
