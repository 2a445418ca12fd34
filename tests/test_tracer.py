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

import threading
import time
from concurrent.futures import Future

import pytest

from cen.config import ProtocolConfig
from cen.errors import NetworkFailure
from cen.network import LocalReportServer, LocalReportClient, SymptomReport
from cen.protocols.derivation import SymmetricKey
from cen.scheduler import ManualClock, Scheduler, SystemClock
from cen.storage import MemoryStore
from cen.tracer import ContactTracer

START_TIME = 1587772800

KEY1 = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
KEY2 = bytes.fromhex("0f0e0d0c0b0a09080706050403020100")
KEY3 = bytes.fromhex("00112233445566778899aabbccddeeff")


class PendingPollClient(LocalReportClient):
    """Polls never complete until released by the test"""

    def __init__(self, server):
        super().__init__(server)
        self.polls = []

    def poll_disclosed_keys(self, since):
        future = Future()
        self.polls.append(future)
        return future


class FailingClient(LocalReportClient):
    def __init__(self, server, fail_fetch=False):
        super().__init__(server)
        self.fail_fetch = fail_fetch
        self.poll_count = 0

    def _failure(self):
        future = Future()
        future.set_exception(NetworkFailure("unreachable"))
        return future

    def poll_disclosed_keys(self, since):
        self.poll_count += 1
        if self.fail_fetch:
            return super().poll_disclosed_keys(since)
        return self._failure()

    def fetch_report_for_key(self, key):
        return self._failure()


@pytest.fixture
def clock():
    return ManualClock(START_TIME)


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock)


@pytest.fixture
def server(clock):
    return LocalReportServer(clock)


@pytest.fixture
def config():
    return ProtocolConfig(
        key_lifetime=3600,
        token_lifetime=900,
        key_check_period=900,
        poll_period=1800,
        lookback_window=86400,
        retention_period=2 * 86400,
    )


def make_tracer(server, config, scheduler, client=None, **kwargs):
    if client is None:
        client = server.client()
    return ContactTracer(MemoryStore(), client, config, scheduler, **kwargs)


def interact(alice, bob):
    alice.record_observed_token(bob.current_token.get())
    bob.record_observed_token(alice.current_token.get())


############################
### TEST CONTACT TRACING ###
############################


def test_current_token_after_start(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    assert alice.current_token.get() is None
    alice.start()
    assert len(alice.current_token.get()) == 16


def test_contact_tracing_single_observation(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    bob = make_tracer(server, config, scheduler)
    alice.start()
    bob.start()

    scheduler.advance(1200)
    interact(alice, bob)
    scheduler.advance(3600)

    report = SymptomReport("bob-1", "fever", scheduler.clock.now())
    assert bob.submit_symptom_report(report).result() is True
    scheduler.advance(config.poll_period)

    exposures = alice.exposures.get()
    assert len(exposures) == 1
    assert len(exposures[0].observations) == 1
    assert exposures[0].reports == [report]
    assert bob.exposures.get() == []


def test_contact_tracing_multiple_observations(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    bob = make_tracer(server, config, scheduler)
    alice.start()
    bob.start()

    for _ in range(3):
        scheduler.advance(1000)
        interact(alice, bob)

    bob.submit_symptom_report(SymptomReport("bob-1", "fever", scheduler.clock.now()))
    scheduler.advance(config.poll_period)

    observations = [obs for e in alice.exposures.get() for obs in e.observations]
    assert len(observations) == 3


def test_contact_tracing_no_contact(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    bob = make_tracer(server, config, scheduler)
    carol = make_tracer(server, config, scheduler)
    for app in [alice, bob, carol]:
        app.start()

    scheduler.advance(1200)
    interact(alice, carol)

    bob.submit_symptom_report(SymptomReport("bob-1", "fever", scheduler.clock.now()))
    scheduler.advance(config.poll_period)
    assert alice.exposures.get() == []


def test_reset_key_after_release(server, config, scheduler):
    bob = make_tracer(server, config, scheduler)
    bob.start()
    key = bob.rotation.current_key

    bob.submit_symptom_report(SymptomReport("bob-1", "fever", START_TIME))
    assert bob.rotation.current_key != key


def test_keep_key_after_release(server, config, scheduler):
    bob = make_tracer(server, config, scheduler, reset_key_after_release=False)
    bob.start()
    key = bob.rotation.current_key

    bob.submit_symptom_report(SymptomReport("bob-1", "fever", START_TIME))
    assert bob.rotation.current_key == key


def test_keys_to_disclose(server, config, scheduler):
    bob = make_tracer(server, config, scheduler)
    now = START_TIME + 10 * 86400
    window_start = now - config.lookback_window

    old = SymmetricKey(KEY1, window_start - 7200)
    spanning = SymmetricKey(KEY2, window_start - 1800)
    recent = SymmetricKey(KEY3, window_start + 3600)
    for key in [old, spanning, recent]:
        bob.store.insert_key(key.key, key.issued_at)

    # The key in use at the start of the window is disclosed, older ones are not
    assert bob.keys_to_disclose(now) == [spanning, recent]


def test_keys_to_disclose_falls_back_to_last_key(server, config, scheduler):
    bob = make_tracer(server, config, scheduler)
    bob.store.insert_key(KEY1, START_TIME - 30 * 86400)
    assert bob.keys_to_disclose(START_TIME) == [SymmetricKey(KEY1, START_TIME - 30 * 86400)]


def test_submit_without_key(server, config, scheduler):
    bob = make_tracer(server, config, scheduler)
    with pytest.raises(ValueError):
        bob.submit_symptom_report(SymptomReport("bob-1", "fever", START_TIME))


####################
### TEST POLLING ###
####################


def test_no_overlapping_polls(server, config, scheduler):
    client = PendingPollClient(server)
    alice = make_tracer(server, config, scheduler, client=client)
    alice.start()

    scheduler.advance(3 * config.poll_period)
    assert len(client.polls) == 1
    assert alice.check_disclosed_keys() is None

    # Once the poll completes, the next one is scheduled
    client.polls[0].set_result([])
    assert alice.last_check == START_TIME
    scheduler.advance(config.poll_period)
    assert len(client.polls) == 2


def test_failed_poll_is_rescheduled(server, config, scheduler):
    errors = []
    client = FailingClient(server)
    alice = make_tracer(server, config, scheduler, client=client, on_error=errors.append)
    alice.start()

    scheduler.advance(2 * config.poll_period)
    assert client.poll_count == 3
    assert alice.last_check == 0
    assert all(isinstance(e, NetworkFailure) for e in errors)


def test_failed_report_fetch_still_records_exposure(server, config, scheduler):
    alice = make_tracer(
        server, config, scheduler, client=FailingClient(server, fail_fetch=True)
    )
    bob = make_tracer(server, config, scheduler)
    alice.start()
    bob.start()

    scheduler.advance(1200)
    interact(alice, bob)
    bob.submit_symptom_report(SymptomReport("bob-1", "fever", scheduler.clock.now()))
    scheduler.advance(config.poll_period)

    exposures = alice.exposures.get()
    assert len(exposures) == 1
    assert exposures[0].reports is None


def test_stop(server, config, scheduler):
    client = PendingPollClient(server)
    alice = make_tracer(server, config, scheduler, client=client)
    alice.start()
    scheduler.run_pending()

    alice.stop()
    assert scheduler.pending == 0
    assert client.closed
    assert client.polls[0].cancelled()

    scheduler.advance(10 * config.poll_period)
    assert len(client.polls) == 1


#########################
### TEST HOUSEKEEPING ###
#########################


def test_housekeeping(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    alice.record_observed_token(bytes(16), START_TIME)
    alice.record_observed_token(bytes(16), START_TIME + 86400)

    assert alice.housekeeping(START_TIME + config.retention_period) == 0
    assert alice.housekeeping(START_TIME + config.retention_period + 1) == 1
    assert len(alice.store) == 1


def test_housekeeping_runs_periodically(server, config, scheduler):
    alice = make_tracer(server, config, scheduler)
    alice.record_observed_token(bytes(16), START_TIME)
    alice.start()

    scheduler.advance(config.retention_period + 86400)
    assert len(alice.store) == 0


#########################
### TEST SYSTEM CLOCK ###
#########################


def test_default_scheduler_runs_in_background():
    config = ProtocolConfig(
        key_lifetime=1,
        token_lifetime=1,
        key_check_period=1,
        poll_period=1,
        lookback_window=60,
        retention_period=60,
    )
    server = LocalReportServer(SystemClock())
    alice = ContactTracer(MemoryStore(), server.client(), config)

    tokens = []
    enough_tokens = threading.Event()

    def on_token(token):
        tokens.append(token)
        if len(tokens) >= 3:
            enough_tokens.set()

    alice.current_token.subscribe(on_token)
    alice.start()
    first_key = alice.rotation.current_key

    try:
        assert enough_tokens.wait(10)
        assert alice.rotation.current_key.issued_at > first_key.issued_at
        assert alice.last_check > 0
    finally:
        alice.stop()

    assert alice.scheduler.pending == 0
    count = len(tokens)
    time.sleep(1.5)
    assert len(tokens) == count
