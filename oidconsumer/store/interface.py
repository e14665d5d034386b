"""
This module contains the definition of the C{L{OpenIDStore}}
interface.
"""


class NotFound(LookupError):
    """No usable association: absent, expired or removed."""


class OpenIDStore(object):
    """
    This is the interface for the store objects the consumer uses. It
    is a single class that provides all of the persistence mechanisms
    that the consumer needs: associations shared with providers and
    the nonces of responses already accepted.

    A store is shared between concurrent authentication attempts;
    implementations must synchronize their own reads and writes. The
    consumer performs no locking of its own.

    @sort: storeAssociation, getAssociation, removeAssociation,
        findAssociation, useNonce, cleanupNonces, cleanupAssociations,
        cleanup
    """

    def storeAssociation(self, server_url, handle, secret, expires_in,
                         assoc_type='HMAC-SHA1'):
        """
        Persist a freshly negotiated association, retrievable by
        server URL and handle.

        @param server_url: The URL of the OP endpoint that this
            association is with. Don't assume there are any limitations
            on the character set of the input string.
        @type server_url: str

        @param handle: the handle the provider issued
        @type handle: str

        @param secret: the shared secret
        @type secret: bytes

        @param expires_in: lifetime in seconds, counted from now
        @type expires_in: int

        @return: the stored association, expiring exactly
            C{expires_in} seconds from now
        @rtype: L{Association<oidconsumer.association.Association>}
        """
        raise NotImplementedError

    def getAssociation(self, server_url, handle):
        """
        Return the association matching the server URL and handle.

        This method must not return expired associations: expiry is
        checked at read time. It is allowed (and encouraged) to garbage
        collect expired associations when found.

        @rtype: L{Association<oidconsumer.association.Association>}

        @raises NotFound: if no such association exists, or it has
            expired or been removed
        """
        raise NotImplementedError

    def removeAssociation(self, server_url, handle):
        """
        Remove the matching association. Removing an association that
        does not exist is not an error.

        @return: whether the association existed
        @rtype: bool
        """
        raise NotImplementedError

    def findAssociation(self, server_url):
        """
        Return any unexpired association with this server, preferably
        the one that stays valid the longest. Used to avoid negotiating
        a new association for every request.

        This default implementation never finds one, which makes the
        consumer negotiate an association per request.

        @rtype: L{Association<oidconsumer.association.Association>}

        @raises NotFound: if there is no usable association
        """
        raise NotFound(server_url)

    def useNonce(self, server_url, timestamp, salt):
        """Called when using a nonce.

        This method should return C{True} if the nonce has not been
        used before, and store it for a while to make sure nobody
        tries to use the same value again. If the nonce has already
        been used or the timestamp is not current, return C{False}.

        You may use L{oidconsumer.store.nonce.SKEW} for your timestamp
        window.

        @param server_url: The URL of the server from which the nonce
            originated ('' for nonces the consumer generated itself).
        @type server_url: str

        @param timestamp: The time that the nonce was created (to the
            nearest second), in seconds since January 1 1970 UTC.
        @type timestamp: int

        @param salt: A random string that makes two nonces from the
            same server issued during the same second unique.
        @type salt: str

        @return: Whether or not the nonce was valid.
        @rtype: bool
        """
        raise NotImplementedError

    def cleanupNonces(self):
        """Remove expired nonces from the store.

        @return: the number of nonces expired.
        @rtype: int
        """
        raise NotImplementedError

    def cleanupAssociations(self):
        """Remove expired associations from the store.

        @return: the number of associations expired.
        @rtype: int
        """
        raise NotImplementedError

    def cleanup(self):
        """Shortcut for C{L{cleanupNonces}()}, C{L{cleanupAssociations}()}.

        @return: tuple of the number of expired nonces and expired
            associations.
        @rtype: (int, int)
        """
        return self.cleanupNonces(), self.cleanupAssociations()
