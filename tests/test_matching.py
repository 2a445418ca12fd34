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

import pytest

from cen.config import ProtocolConfig, SECONDS_PER_DAY
from cen.errors import InvalidKeyMaterial
from cen.protocols.derivation import derive_token, generate_new_key
from cen.protocols.matching import (
    DisclosedKey,
    ContactMatcher,
    candidate_timestamps,
    reconstruct_tokens,
    match_with_key,
)
from cen.storage import MemoryStore, SQLiteStore, ObservedToken

START_TIME = 1587772800

KEY1 = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
KEY2 = bytes.fromhex("0f0e0d0c0b0a09080706050403020100")


@pytest.fixture(params=[MemoryStore, SQLiteStore])
def store(request):
    return request.param()


@pytest.fixture
def config():
    return ProtocolConfig()


###########################
### TEST RECONSTRUCTION ###
###########################


def test_candidate_timestamps_scenario():
    cfg = ProtocolConfig.testing(lookback_window=420)
    assert candidate_timestamps(420, cfg) == [420, 360, 300, 240, 180, 120, 60]


def test_candidate_timestamps_before_unix_epoch():
    cfg = ProtocolConfig.testing(lookback_window=420)
    assert candidate_timestamps(100, cfg) == [100, 40]


def test_reconstruct_tokens(config):
    cens = reconstruct_tokens(KEY1, START_TIME, config)
    assert len(cens) == 7 * 24 * 4
    assert len(set(cens)) == len(cens)
    assert cens[0] == derive_token(KEY1, START_TIME, config.token_lifetime)
    assert cens[-1] == derive_token(
        KEY1, START_TIME - (len(cens) - 1) * config.token_lifetime
    )


def test_reconstruct_tokens_invalid_key(config):
    with pytest.raises(InvalidKeyMaterial):
        reconstruct_tokens(bytes(8), START_TIME, config)


#####################
### TEST MATCHING ###
#####################


def test_match_scenario(store):
    # 15s keys, 60s CENs, looking back 420 seconds from t=420
    cfg = ProtocolConfig.testing(lookback_window=420)
    key = generate_new_key()

    store.insert_observed_token(derive_token(key, 300, 60), 305)
    store.insert_observed_token(derive_token(generate_new_key(), 300, 60), 305)
    store.insert_observed_token(derive_token(key, 420, 60), 480)

    matches = match_with_key(key, 420, store, cfg)
    assert matches == [ObservedToken(derive_token(key, 300, 60), 305)]


def test_match_within_lookback_window(store, config):
    key = generate_new_key()
    for hours in [1, 30, 7 * 24 - 1]:
        observed_at = START_TIME - hours * 3600
        store.insert_observed_token(derive_token(key, observed_at), observed_at)

    matches = match_with_key(key, START_TIME, store, config)
    assert len(matches) == 3


def test_match_outside_lookback_window(store, config):
    key = generate_new_key()
    observed_at = START_TIME
    store.insert_observed_token(derive_token(key, observed_at), observed_at)

    max_timestamp = START_TIME + 7 * SECONDS_PER_DAY + config.token_lifetime
    assert match_with_key(key, max_timestamp, store, config) == []


def test_match_different_key(store, config):
    observed_at = START_TIME - 3600
    store.insert_observed_token(derive_token(KEY2, observed_at), observed_at)
    assert match_with_key(KEY1, START_TIME, store, config) == []


def test_match_empty_log(store, config):
    assert match_with_key(KEY1, START_TIME, store, config) == []


def test_match_at_issuance(store, config):
    # Observation of the very first CEN of a key issued mid-epoch
    issued_at = START_TIME + 123
    cen = derive_token(KEY1, issued_at)
    store.insert_observed_token(cen, issued_at)

    assert match_with_key(KEY1, issued_at, store, config) == [
        ObservedToken(cen, issued_at)
    ]


def test_match_observation_after_max_timestamp(store, config):
    # A replay of a CEN after the disclosure is ignored
    cen = derive_token(KEY1, START_TIME)
    store.insert_observed_token(cen, START_TIME + 3600)
    assert match_with_key(KEY1, START_TIME, store, config) == []


def test_match_without_candidates(store):
    cfg = ProtocolConfig.testing(lookback_window=420)
    assert match_with_key(KEY1, -1000, store, cfg) == []


def test_contact_matcher_batch(store, config):
    observed_at = START_TIME - 3600
    store.insert_observed_token(derive_token(KEY1, observed_at), observed_at)
    store.insert_observed_token(derive_token(KEY1, observed_at + 900), observed_at + 900)

    matcher = ContactMatcher(store, config)
    disclosed = [DisclosedKey(KEY2, START_TIME - 86400), DisclosedKey(KEY1, START_TIME - 86400)]
    results = matcher.matches_with_batch(disclosed, START_TIME)

    assert len(results) == 1
    disclosed_key, observations = results[0]
    assert disclosed_key.key == KEY1
    assert len(observations) == 2


def test_candidate_timestamps_from_epoch_start():
    cfg = ProtocolConfig.testing(lookback_window=420)
    # The key was issued at 250, inside the CEN epoch [240, 300)
    assert candidate_timestamps(420, cfg, epoch_start=250) == [420, 360, 300, 240]


def test_contact_matcher_ignores_observations_before_issuance(store, config):
    issued_at = START_TIME - 1800
    early = START_TIME - 3600
    late = START_TIME - 900
    store.insert_observed_token(derive_token(KEY1, early), early)
    store.insert_observed_token(derive_token(KEY1, late), late)

    matcher = ContactMatcher(store, config)
    observations = matcher.matches_with_key(DisclosedKey(KEY1, issued_at), START_TIME)

    assert observations == [ObservedToken(derive_token(KEY1, late), late)]
    assert len(matcher.matches_with_key(DisclosedKey(KEY1, 0), START_TIME)) == 2
