"""
Storage of CEN keys and observed CENs

The protocol core only relies on the :class:`KeyStore` and
:class:`ObservationStore` interfaces. Two implementations are provided: an
in-memory store and a SQLite store.

Observation queries use inclusive bounds on the observation time, and CENs
are compared by exact byte equality.
"""

__copyright__ = """
    Copyright 2020 EPFL

    Licensed under the Apache License, Version 2.0 (the "License");
    you may not use this file except in compliance with the License.
    You may obtain a copy of the License at

        http://www.apache.org/licenses/LICENSE-2.0

    Unless required by applicable law or agreed to in writing, software
    distributed under the License is distributed on an "AS IS" BASIS,
    WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
    See the License for the specific language governing permissions and
    limitations under the License.
"""
__license__ = "Apache 2.0"

import os
import sqlite3
import threading
from collections import Counter, namedtuple

from cuckoo.filter import ScalableCuckooFilter

from cen.errors import StorageFailure
from cen.logger import get_logger
from cen.protocols.derivation import SymmetricKey

log = get_logger("cen.storage")


#: A CEN received from a peer, with the UNIX time (in seconds) it was received
ObservedToken = namedtuple("ObservedToken", ["token", "observed_at"])

#: Initial capacity of the observation pre-index
CUCKOO_INITIAL_CAPACITY = 10000

#: FPR for the observation pre-index
CUCKOO_FPR = 2 ** -20

#: Maximum number of candidate CENs bound to a single SQLite query
SQLITE_BATCH_SIZE = 500


class KeyStore:
    """Persistent storage of the keys this device has broadcast under"""

    def load_last_key(self):
        """Return the most recently issued :obj:`SymmetricKey`, or None"""
        raise NotImplementedError

    def insert_key(self, key, timestamp):
        """Persist key as issued at timestamp

        Raises:
            StorageFailure: If the key could not be persisted
        """
        raise NotImplementedError

    def load_keys_since(self, timestamp):
        """Return all keys issued at or after timestamp, oldest first"""
        raise NotImplementedError


class ObservationStore:
    """Append-only log of CENs observed on the radio layer"""

    def insert_observed_token(self, token, observed_at):
        """Record that token was received at observed_at"""
        raise NotImplementedError

    def query_tokens_in_window(self, min_timestamp, max_timestamp, candidates):
        """Find observations of any candidate CEN

        Args:
            min_timestamp (int): First observation time to consider (inclusive)
            max_timestamp (int): Last observation time to consider (inclusive)
            candidates (set of byte arrays): The CENs to look for

        Returns:
            list of :obj:`ObservedToken`: Matching observations, oldest first
        """
        raise NotImplementedError

    def delete_observations_before(self, timestamp):
        """Prune observations made before timestamp

        Returns:
            int: the number of pruned observations
        """
        raise NotImplementedError


class MemoryStore(KeyStore, ObservationStore):
    """Thread-safe in-memory key and observation store

    Observed CENs are additionally indexed in a scalable cuckoo filter. A
    query first checks the candidates against the filter and only scans the
    observation log when at least one candidate may have been seen. For a
    typical disclosed key none of the candidates were observed, so the scan
    is skipped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._keys = []
        self._observations = []
        # Number of stored observations per CEN. The filter holds each CEN
        # once, however often it was observed.
        self._token_counts = Counter()
        self._observed_filter = ScalableCuckooFilter(
            initial_capacity=CUCKOO_INITIAL_CAPACITY, error_rate=CUCKOO_FPR
        )

    def load_last_key(self):
        with self._lock:
            if not self._keys:
                return None
            return max(self._keys, key=lambda k: k.issued_at)

    def insert_key(self, key, timestamp):
        with self._lock:
            self._keys.append(SymmetricKey(bytes(key), int(timestamp)))

    def load_keys_since(self, timestamp):
        with self._lock:
            keys = [k for k in self._keys if k.issued_at >= timestamp]
        return sorted(keys, key=lambda k: k.issued_at)

    def insert_observed_token(self, token, observed_at):
        token = bytes(token)
        with self._lock:
            if self._token_counts[token] == 0:
                self._observed_filter.insert(token)
            self._token_counts[token] += 1
            self._observations.append(ObservedToken(token, int(observed_at)))

    def query_tokens_in_window(self, min_timestamp, max_timestamp, candidates):
        with self._lock:
            maybe_seen = {
                bytes(c) for c in candidates if self._observed_filter.contains(bytes(c))
            }
            if not maybe_seen:
                return []

            matches = [
                obs
                for obs in self._observations
                if min_timestamp <= obs.observed_at <= max_timestamp
                and obs.token in maybe_seen
            ]

        return sorted(matches, key=lambda obs: obs.observed_at)

    def delete_observations_before(self, timestamp):
        with self._lock:
            old = [obs for obs in self._observations if obs.observed_at < timestamp]
            self._observations = [
                obs for obs in self._observations if obs.observed_at >= timestamp
            ]
            for obs in old:
                self._token_counts[obs.token] -= 1
                if self._token_counts[obs.token] == 0:
                    del self._token_counts[obs.token]
                    self._observed_filter.delete(obs.token)

        return len(old)

    def __len__(self):
        with self._lock:
            return len(self._observations)


class SQLiteStore(KeyStore, ObservationStore):
    """Key and observation store backed by a SQLite database

    Args:
        path (str, optional): Database file. Default: an in-memory database
    """

    def __init__(self, path=":memory:"):
        if path != ":memory:":
            dir_path = os.path.dirname(path) or "."
            os.makedirs(dir_path, exist_ok=True)

        self._lock = threading.Lock()
        try:
            self.db = sqlite3.connect(path, check_same_thread=False)
            self._init()
        except sqlite3.Error as e:
            raise StorageFailure("Cannot open {}: {}".format(path, e)) from e

    def _init(self):
        c = self.db.cursor()
        c.execute(
            """CREATE TABLE IF NOT EXISTS cen_keys(
            key BLOB NOT NULL,
            issued_at INTEGER NOT NULL
        )"""
        )
        c.execute(
            """CREATE TABLE IF NOT EXISTS observed_cens(
            token BLOB NOT NULL,
            observed_at INTEGER NOT NULL
        )"""
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_observed_at ON observed_cens(observed_at)"
        )
        self.db.commit()

    def _execute(self, sql, params=(), commit=False):
        with self._lock:
            try:
                rows = self.db.execute(sql, params).fetchall()
                if commit:
                    self.db.commit()
                return rows
            except sqlite3.Error as e:
                log.error("SQLite statement failed: {}".format(e))
                raise StorageFailure(str(e)) from e

    def load_last_key(self):
        rows = self._execute(
            "SELECT key, issued_at FROM cen_keys ORDER BY issued_at DESC, rowid DESC LIMIT 1"
        )
        if not rows:
            return None
        key, issued_at = rows[0]
        return SymmetricKey(bytes(key), issued_at)

    def insert_key(self, key, timestamp):
        self._execute(
            "INSERT INTO cen_keys (key, issued_at) VALUES (?, ?)",
            (bytes(key), int(timestamp)),
            commit=True,
        )

    def load_keys_since(self, timestamp):
        rows = self._execute(
            "SELECT key, issued_at FROM cen_keys WHERE issued_at >= ? ORDER BY issued_at",
            (int(timestamp),),
        )
        return [SymmetricKey(bytes(key), issued_at) for (key, issued_at) in rows]

    def insert_observed_token(self, token, observed_at):
        self._execute(
            "INSERT INTO observed_cens (token, observed_at) VALUES (?, ?)",
            (bytes(token), int(observed_at)),
            commit=True,
        )

    def query_tokens_in_window(self, min_timestamp, max_timestamp, candidates):
        candidates = [bytes(c) for c in set(candidates)]

        matches = []
        for idx in range(0, len(candidates), SQLITE_BATCH_SIZE):
            batch = candidates[idx : idx + SQLITE_BATCH_SIZE]
            placeholders = ", ".join(["?"] * len(batch))
            rows = self._execute(
                "SELECT token, observed_at FROM observed_cens "
                "WHERE observed_at BETWEEN ? AND ? AND token IN ({})".format(
                    placeholders
                ),
                (int(min_timestamp), int(max_timestamp), *batch),
            )
            matches.extend(ObservedToken(bytes(t), ts) for (t, ts) in rows)

        return sorted(matches, key=lambda obs: obs.observed_at)

    def delete_observations_before(self, timestamp):
        with self._lock:
            try:
                cur = self.db.execute(
                    "DELETE FROM observed_cens WHERE observed_at < ?", (int(timestamp),)
                )
                self.db.commit()
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e
        return cur.rowcount

    def close(self):
        with self._lock:
            self.db.close()
