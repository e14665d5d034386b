"""A simple store using only in-process memory."""
import copy
import threading
import time

from oidconsumer.association import Association
from oidconsumer.store import nonce
from oidconsumer.store.interface import OpenIDStore, NotFound


class ServerAssocs(object):
    def __init__(self):
        self.assocs = {}

    def set(self, assoc):
        self.assocs[assoc.handle] = assoc

    def get(self, handle):
        return self.assocs.get(handle)

    def remove(self, handle):
        return self.assocs.pop(handle, None) is not None

    def best(self):
        """Returns the association that stays valid the longest,
        or None if there are no associations.
        """
        best = None
        for assoc in self.assocs.values():
            if best is None or best.expires < assoc.expires:
                best = assoc
        return best

    def cleanup(self):
        """Remove expired associations.

        @return: tuple of (removed associations, remaining associations)
        """
        remove = [handle for handle, assoc in self.assocs.items()
                  if assoc.expiresIn == 0]
        for handle in remove:
            del self.assocs[handle]
        return len(remove), len(self.assocs)


class MemoryStore(OpenIDStore):
    """In-process memory store.

    Use for single long-running processes. No persistence supplied.
    """
    def __init__(self):
        self.server_assocs = {}
        self.nonces = {}
        self.lock = threading.Lock()

    def _getServerAssocs(self, server_url):
        try:
            return self.server_assocs[server_url]
        except KeyError:
            assocs = self.server_assocs[server_url] = ServerAssocs()
            return assocs

    def storeAssociation(self, server_url, handle, secret, expires_in,
                         assoc_type='HMAC-SHA1'):
        assoc = Association.fromExpiresIn(
            expires_in, server_url, handle, secret, assoc_type)
        with self.lock:
            self._getServerAssocs(server_url).set(copy.deepcopy(assoc))
        return assoc

    def getAssociation(self, server_url, handle):
        with self.lock:
            assoc = self._getServerAssocs(server_url).get(handle)
        if assoc is None or assoc.expiresIn <= 0:
            raise NotFound('%s %s' % (server_url, handle))
        return copy.deepcopy(assoc)

    def findAssociation(self, server_url):
        with self.lock:
            assocs = self._getServerAssocs(server_url)
            assocs.cleanup()
            assoc = assocs.best()
        if assoc is None:
            raise NotFound(server_url)
        return copy.deepcopy(assoc)

    def removeAssociation(self, server_url, handle):
        with self.lock:
            return self._getServerAssocs(server_url).remove(handle)

    def useNonce(self, server_url, timestamp, salt):
        if abs(timestamp - time.time()) > nonce.SKEW:
            return False

        anonce = (str(server_url), int(timestamp), str(salt))
        with self.lock:
            if anonce in self.nonces:
                return False
            self.nonces[anonce] = None
            return True

    def cleanupNonces(self):
        now = time.time()
        with self.lock:
            expired = [anonce for anonce in self.nonces
                       if abs(anonce[1] - now) > nonce.SKEW]
            for anonce in expired:
                del self.nonces[anonce]
        return len(expired)

    def cleanupAssociations(self):
        with self.lock:
            remove_urls = []
            removed_assocs = 0
            for server_url, assocs in self.server_assocs.items():
                removed, remaining = assocs.cleanup()
                removed_assocs += removed
                if not remaining:
                    remove_urls.append(server_url)

            # Remove entries from server_assocs that had none remaining.
            for server_url in remove_urls:
                del self.server_assocs[server_url]
        return removed_assocs

    def __eq__(self, other):
        return ((self.server_assocs == other.server_assocs) and
                (self.nonces == other.nonces))

    def __ne__(self, other):
        return not (self == other)
