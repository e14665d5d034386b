"""
L{OpenIDStore<oidconsumer.store.interface.OpenIDStore>} kept in a SQL
database, reached through a DB-API connection.
"""
import contextlib
import threading
import time

from oidconsumer.association import Association
from oidconsumer.store import nonce
from oidconsumer.store.interface import OpenIDStore, NotFound


class SQLStore(OpenIDStore):
    """
    Logic shared by the SQL stores. Subclasses provide the statements as
    C{<name>_sql} class attributes in their driver's parameter style,
    with C{%(associations)s} and C{%(nonces)s} standing for the table
    names.

    Each public method runs in a transaction of its own, committed when
    the method returns and rolled back when it raises. Call
    C{L{createTables}} once on a fresh database.

    @cvar associations_table: default name of the associations table
    @cvar nonces_table: default name of the nonces table
    """

    associations_table = 'oid_associations'
    nonces_table = 'oid_nonces'

    def __init__(self, conn, associations_table=None, nonces_table=None):
        """
        @param conn: an open DB-API connection to the database the
            subclass speaks to
        @param associations_table: overrides C{associations_table}
        @param nonces_table: overrides C{nonces_table}
        """
        self.conn = conn
        self.lock = threading.Lock()
        self.max_nonce_age = nonce.SKEW
        self._tables = {
            'associations': associations_table or self.associations_table,
            'nonces': nonces_table or self.nonces_table,
        }

    def blobEncode(self, data):
        return data

    def blobDecode(self, blob):
        return bytes(blob)

    @contextlib.contextmanager
    def _transaction(self):
        with self.lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                cursor.close()

    def _execute(self, cursor, name, *args):
        cursor.execute(getattr(self, name + '_sql') % self._tables, args)
        return cursor

    def createTables(self):
        with self._transaction() as cursor:
            self._execute(cursor, 'create_nonce')
            self._execute(cursor, 'create_assoc')

    def storeAssociation(self, server_url, handle, secret, expires_in,
                         assoc_type='HMAC-SHA1'):
        assoc = Association.fromExpiresIn(
            expires_in, server_url, handle, secret, assoc_type)
        with self._transaction() as cursor:
            self._execute(cursor, 'set_assoc', server_url, handle,
                          self.blobEncode(secret), assoc.issued,
                          assoc.lifetime, assoc_type)
        return assoc

    def _live(self, cursor, server_url):
        """Associations in the fetched rows, deleting expired ones."""
        live = []
        for handle, secret, issued, lifetime, assoc_type in cursor.fetchall():
            assoc = Association(server_url, handle, self.blobDecode(secret),
                                issued, lifetime, assoc_type)
            if assoc.expiresIn > 0:
                live.append(assoc)
            else:
                self._execute(cursor, 'remove_assoc', server_url, handle)
        return live

    def getAssociation(self, server_url, handle):
        with self._transaction() as cursor:
            self._execute(cursor, 'get_assoc', server_url, handle)
            found = self._live(cursor, server_url)
        # raised after the commit, expired rows stay deleted
        if not found:
            raise NotFound('%s %s' % (server_url, handle))
        return found[0]

    def findAssociation(self, server_url):
        with self._transaction() as cursor:
            self._execute(cursor, 'get_assocs', server_url)
            found = self._live(cursor, server_url)
        if not found:
            raise NotFound(server_url)
        return max(found, key=lambda assoc: assoc.expires)

    def removeAssociation(self, server_url, handle):
        with self._transaction() as cursor:
            cursor = self._execute(cursor, 'remove_assoc', server_url, handle)
            return cursor.rowcount > 0

    def useNonce(self, server_url, timestamp, salt):
        if abs(timestamp - time.time()) > self.max_nonce_age:
            return False
        with self._transaction() as cursor:
            self._execute(cursor, 'get_nonce', server_url, timestamp, salt)
            if cursor.fetchone() is not None:
                return False
            self._execute(cursor, 'add_nonce', server_url, timestamp, salt)
        return True

    def cleanupNonces(self):
        oldest = int(time.time()) - self.max_nonce_age
        with self._transaction() as cursor:
            return self._execute(cursor, 'clean_nonce', oldest).rowcount

    def cleanupAssociations(self):
        with self._transaction() as cursor:
            return self._execute(cursor, 'clean_assoc', int(time.time())).rowcount


class SQLiteStore(SQLStore):
    """
    C{L{SQLStore}} on the standard library's C{sqlite3}. A connection
    shared between threads must be opened with
    C{check_same_thread=False}.
    """

    create_nonce_sql = """
    CREATE TABLE %(nonces)s
    (
        server_url VARCHAR(2047),
        timestamp INTEGER,
        salt CHAR(40),
        UNIQUE(server_url, timestamp, salt)
    );
    """

    create_assoc_sql = """
    CREATE TABLE %(associations)s
    (
        server_url VARCHAR(2047),
        handle VARCHAR(255),
        secret BLOB(128),
        issued INTEGER,
        lifetime INTEGER,
        assoc_type VARCHAR(64),
        PRIMARY KEY (server_url, handle)
    );
    """

    set_assoc_sql = ('INSERT OR REPLACE INTO %(associations)s '
                     'VALUES (?, ?, ?, ?, ?, ?);')
    get_assocs_sql = ('SELECT handle, secret, issued, lifetime, assoc_type '
                      'FROM %(associations)s WHERE server_url = ?;')
    get_assoc_sql = ('SELECT handle, secret, issued, lifetime, assoc_type '
                     'FROM %(associations)s WHERE server_url = ? AND handle = ?;')
    remove_assoc_sql = ('DELETE FROM %(associations)s '
                        'WHERE server_url = ? AND handle = ?;')
    clean_assoc_sql = 'DELETE FROM %(associations)s WHERE issued + lifetime <= ?;'

    add_nonce_sql = 'INSERT INTO %(nonces)s VALUES (?, ?, ?);'
    get_nonce_sql = ('SELECT 1 FROM %(nonces)s '
                     'WHERE server_url = ? AND timestamp = ? AND salt = ?;')
    clean_nonce_sql = 'DELETE FROM %(nonces)s WHERE timestamp < ?;'

    def blobEncode(self, data):
        return memoryview(data)
