#-*-coding: utf-8-*-
"""
This is an implementation of the relying party (consumer) side of the
OpenID 1.1 and 2.0 protocols.

See the :ref:`oidconsumer.consumer` module for the consumer itself and
the :ref:`oidconsumer.store` package for the stores it keeps
associations and nonces in.
"""

version_info = (0, 1, 0)

__version__ = ".".join(str(x) for x in version_info)

__all__ = [
    'association',
    'consumer',
    'cryptutil',
    'dh',
    'discover',
    'extension',
    'fetchers',
    'kvform',
    'message',
    'oidutil',
    'store',
]
