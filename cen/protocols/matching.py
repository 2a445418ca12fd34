"""
Reconstruction of disclosed CEN sequences and matching against observations
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

from collections import namedtuple

from cen.config import ProtocolConfig
from cen.protocols.derivation import check_key, derive_token, rounded_epoch


#: A key disclosed by an infected user and the UNIX time its first epoch started
DisclosedKey = namedtuple("DisclosedKey", ["key", "epoch_start"])


def candidate_timestamps(max_timestamp, config, epoch_start=0):
    """Timestamps at which CENs are regenerated for matching

    One timestamp per token lifetime, stepping back from max_timestamp over
    the lookback window. Timestamps before the UNIX epoch, and timestamps
    whose CEN epoch starts before the epoch of epoch_start, are dropped.

    Args:
        max_timestamp (int): In seconds since UNIX epoch
        config (:obj:`ProtocolConfig`): Lifetimes
        epoch_start (int, optional): Issuance time of the key. Default: 0

    Returns:
        list of int: Most recent first
    """
    timestamps = [
        max_timestamp - idx * config.token_lifetime
        for idx in range(config.num_candidates)
    ]
    first_epoch = rounded_epoch(max(epoch_start, 0), config.token_lifetime)
    return [
        ts
        for ts in timestamps
        if ts >= 0 and rounded_epoch(ts, config.token_lifetime) >= first_epoch
    ]


def reconstruct_tokens(key, max_timestamp, config=None, epoch_start=0):
    """Regenerate the CENs key produced during the lookback window

    Args:
        key (byte array): A 16-byte disclosed key
        max_timestamp (int): End of the lookback window, in seconds since UNIX epoch
        config (:obj:`ProtocolConfig`, optional): Lifetimes. Default: production
        epoch_start (int, optional): Issuance time of the key. Default: 0

    Returns:
        list of byte arrays: The CENs, most recent first

    Raises:
        InvalidKeyMaterial: If the key is not a 16-byte string
    """
    if config is None:
        config = ProtocolConfig()

    check_key(key)
    return [
        derive_token(key, ts, config.token_lifetime)
        for ts in candidate_timestamps(max_timestamp, config, epoch_start)
    ]


def match_with_key(key, max_timestamp, observation_store, config=None, epoch_start=0):
    """Find observations of CENs derived from a disclosed key

    Only CENs derived under this specific key are reconstructed. If the owner
    rotated keys during the disclosed period, call this once per key.

    Args:
        key (byte array): A 16-byte disclosed key
        max_timestamp (int): End of the lookback window, in seconds since UNIX epoch
        observation_store (:obj:`cen.storage.ObservationStore`): The local log
        config (:obj:`ProtocolConfig`, optional): Lifetimes. Default: production
        epoch_start (int, optional): Issuance time of the key. CENs of earlier
            epochs are not reconstructed. Default: 0

    Returns:
        list of :obj:`cen.storage.ObservedToken`: Matching observations made in
        ``[max_timestamp - lookback_window, max_timestamp]``

    Raises:
        InvalidKeyMaterial: If the key is not a 16-byte string
    """
    if config is None:
        config = ProtocolConfig()

    candidates = set(reconstruct_tokens(key, max_timestamp, config, epoch_start))
    if not candidates:
        return []

    min_timestamp = max_timestamp - config.lookback_window
    return observation_store.query_tokens_in_window(
        min_timestamp, max_timestamp, candidates
    )


class ContactMatcher:
    """Matches disclosed keys against a local observation log

    *Simplification* Like the rest of this package, the matcher only reports
    which observations match. It does not take signal strength or exposure
    duration into account.

    Args:
        observation_store (:obj:`cen.storage.ObservationStore`): The local log
        config (:obj:`ProtocolConfig`, optional): Lifetimes. Default: production
    """

    def __init__(self, observation_store, config=None):
        self.observation_store = observation_store
        self.config = config if config is not None else ProtocolConfig()

    def matches_with_key(self, disclosed_key, max_timestamp):
        """Observations of CENs derived from a single :obj:`DisclosedKey`

        CENs of epochs before the key's ``epoch_start`` are not matched, since
        the key did not exist yet.
        """
        return match_with_key(
            disclosed_key.key,
            max_timestamp,
            self.observation_store,
            self.config,
            disclosed_key.epoch_start,
        )

    def matches_with_batch(self, disclosed_keys, max_timestamp):
        """Match every key of a batch

        Args:
            disclosed_keys (list of :obj:`DisclosedKey`): Keys from the server
            max_timestamp (int): End of the lookback window

        Returns:
            list of (:obj:`DisclosedKey`, list of ObservedToken): Only keys
            with at least one matching observation are included
        """
        results = []
        for disclosed_key in disclosed_keys:
            observations = self.matches_with_key(disclosed_key, max_timestamp)
            if observations:
                results.append((disclosed_key, observations))
        return results
