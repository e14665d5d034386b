"""
This package contains the modules related to this library's use of
persistent storage.

@sort: interface, memstore, sqlstore, nonce
"""

__all__ = ['interface', 'memstore', 'sqlstore', 'nonce']
