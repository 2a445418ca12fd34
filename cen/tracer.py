"""
Contact tracer: ties key rotation, observation logging, reporting and
matching together
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

import threading
from collections import namedtuple

from cen.config import ProtocolConfig, SECONDS_PER_DAY
from cen.errors import CENError
from cen.logger import get_logger
from cen.observable import ObservableValue
from cen.protocols.matching import ContactMatcher
from cen.protocols.rotation import KeyRotationManager
from cen.scheduler import Scheduler

log = get_logger("cen.tracer")


#: How often old observations are pruned, in seconds
HOUSEKEEPING_PERIOD = SECONDS_PER_DAY


#: A disclosed key that matched local observations, and the reports behind it.
#: reports is None when the reports could not be fetched.
Exposure = namedtuple("Exposure", ["disclosed_key", "observations", "reports"])


class ContactTracer:
    """Reference implementation of the contact tracing part of a phone app

    The BLE broadcaster reads :attr:`current_token`, the BLE scanner calls
    :meth:`record_observed_token`, and the UI calls
    :meth:`submit_symptom_report` and watches :attr:`exposures`.

    After :meth:`start`, the tracer rotates keys, refreshes the broadcast CEN,
    polls the report server for disclosed keys and prunes observations older
    than the retention period. A poll is only scheduled once the previous one
    has completed.

    *Simplification* Exposures only list the matching observations. Actual
    implementations would take signal strength and duration into account.

    Args:
        store: A :obj:`cen.storage.KeyStore` that is also a
            :obj:`cen.storage.ObservationStore`
        report_client (:obj:`cen.network.ReportClient`): The report server
        config (:obj:`ProtocolConfig`, optional): Lifetimes. Default: production
        scheduler (:obj:`Scheduler`, optional): Owner of all timers.
            Default: a scheduler on the system clock, running on a background
            thread between :meth:`start` and :meth:`stop`
        on_error (callable, optional): Called with every error of a periodic action
        reset_key_after_release (bool, optional): Whether to pick a new key
            after publishing a report. Default is True to preserve privacy of
            future CENs.
    """

    def __init__(
        self,
        store,
        report_client,
        config=None,
        scheduler=None,
        on_error=None,
        reset_key_after_release=True,
    ):
        self.config = config if config is not None else ProtocolConfig()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.clock = self.scheduler.clock
        self.store = store
        self.report_client = report_client
        self.on_error = on_error
        self.reset_key_after_release = reset_key_after_release

        self.rotation = KeyRotationManager(
            store, self.config, self.clock, on_error=on_error
        )
        self.matcher = ContactMatcher(store, self.config)

        #: List of :obj:`Exposure` found so far
        self.exposures = ObservableValue([])

        #: Time of the last successful disclosed-key poll
        self.last_check = 0

        self._lock = threading.Lock()
        self._running = False
        self._poll_future = None
        self._poll_task = None
        self._housekeeping_task = None
        self._requests = set()

    @property
    def current_token(self):
        """Observable CEN to broadcast"""
        return self.rotation.current_token

    #####################
    ### BLE CALLBACKS ###
    #####################

    def record_observed_token(self, token, observed_at=None):
        """Record a CEN received from a peer

        Args:
            token (byte array): The observed CEN
            observed_at (int, optional): Time of observation. Default: now

        Raises:
            StorageFailure: If the observation could not be stored
        """
        if observed_at is None:
            observed_at = self.clock.now()

        self.store.insert_observed_token(token, observed_at)

    #################
    ### REPORTING ###
    #################

    def keys_to_disclose(self, now=None):
        """Keys that were current at some point in the lookback window

        Returns:
            list of :obj:`SymmetricKey`: oldest first
        """
        if now is None:
            now = self.clock.now()

        window_start = now - self.config.lookback_window
        keys = self.store.load_keys_since(window_start - self.config.key_lifetime)

        # A key is in use until the next one is issued
        disclosed = []
        for idx, key in enumerate(keys):
            if key.issued_at > now:
                continue
            is_last = idx == len(keys) - 1
            if is_last or keys[idx + 1].issued_at > window_start:
                disclosed.append(key)

        if not disclosed:
            last_key = self.store.load_last_key()
            if last_key is not None:
                disclosed.append(last_key)

        return disclosed

    def submit_symptom_report(self, report, now=None):
        """Publish a symptom report together with the keys to disclose

        Args:
            report (:obj:`cen.network.SymptomReport`): The report

        Returns:
            :obj:`concurrent.futures.Future`: Resolves once the report is published

        Raises:
            ValueError: If there is no key to disclose
        """
        keys = self.keys_to_disclose(now)
        if not keys:
            raise ValueError("No key available to disclose")

        log.info("Publishing report with {} keys".format(len(keys)))
        future = self.report_client.publish_report(report, keys)
        self._track(future)
        future.add_done_callback(self._on_report_published)
        return future

    def _on_report_published(self, future):
        if future.cancelled():
            return

        error = future.exception()
        if error is not None:
            self._report("Report publication", error)
            return

        if self.reset_key_after_release:
            try:
                self.rotation.reset_key()
            except CENError as e:
                self._report("Key reset", e)

    ###############
    ### POLLING ###
    ###############

    def check_disclosed_keys(self):
        """Poll the report server once and match the disclosed keys

        Does nothing if a poll is already in flight.

        Returns:
            :obj:`concurrent.futures.Future` of the poll, or None if no poll was started
        """
        with self._lock:
            if self._poll_future is not None and not self._poll_future.done():
                log.info("Previous poll still in flight, skipping")
                return None

            started = self.clock.now()
            try:
                future = self.report_client.poll_disclosed_keys(self.last_check)
            except CENError as e:
                error = e
            else:
                error = None
                self._poll_future = future

        if error is not None:
            self._report("Disclosed key poll", error)
            return None

        self._track(future)
        future.add_done_callback(lambda f: self._on_poll_done(f, started))
        return future

    def _on_poll_done(self, future, started):
        if future.cancelled():
            return

        error = future.exception()
        if error is not None:
            self._report("Disclosed key poll", error)
            return

        try:
            matches = self.matcher.matches_with_batch(future.result(), started)
        except CENError as e:
            self._report("Matching disclosed keys", e)
            return

        self.last_check = started
        for (disclosed_key, observations) in matches:
            self._process_match(disclosed_key, observations)

    def _process_match(self, disclosed_key, observations):
        log.info("Match found: {} observations".format(len(observations)))

        try:
            future = self.report_client.fetch_report_for_key(disclosed_key.key)
        except CENError as e:
            self._report("Report fetch", e)
            self._add_exposure(Exposure(disclosed_key, observations, None))
            return

        self._track(future)

        def on_fetched(f):
            reports = None
            if f.cancelled():
                return
            if f.exception() is not None:
                self._report("Report fetch", f.exception())
            else:
                reports = f.result()
            self._add_exposure(Exposure(disclosed_key, observations, reports))

        future.add_done_callback(on_fetched)

    def _add_exposure(self, exposure):
        with self._lock:
            exposures = self.exposures.get() + [exposure]
        self.exposures.set(exposures)

    def _poll_cycle(self):
        future = self.check_disclosed_keys()
        if future is None:
            self._schedule_poll(self.config.poll_period)
        else:
            future.add_done_callback(
                lambda f: self._schedule_poll(self.config.poll_period)
            )

    def _schedule_poll(self, delay):
        with self._lock:
            if not self._running:
                return
            self._poll_task = self.scheduler.call_later(
                delay, self._poll_cycle, name="disclosed-key-poll"
            )

    ####################
    ### HOUSEKEEPING ###
    ####################

    def housekeeping(self, now=None):
        """Prune observations older than the retention period

        Returns:
            int: Number of pruned observations
        """
        if now is None:
            now = self.clock.now()

        pruned = self.store.delete_observations_before(
            now - self.config.retention_period
        )
        if pruned:
            log.info("Pruned {} old observations".format(pruned))
        return pruned

    def _run_housekeeping(self):
        try:
            self.housekeeping()
        except CENError as e:
            self._report("Housekeeping", e)

    #################
    ### LIFECYCLE ###
    #################

    def _track(self, future):
        with self._lock:
            self._requests.add(future)
        future.add_done_callback(self._untrack)

    def _untrack(self, future):
        with self._lock:
            self._requests.discard(future)

    def _report(self, action, error):
        log.error("{} failed: {!r}".format(action, error))
        if self.on_error is not None:
            self.on_error(error)

    def start(self):
        """Start rotation, polling and housekeeping"""
        with self._lock:
            if self._running:
                raise RuntimeError("ContactTracer already started")
            self._running = True

        self.rotation.start(self.scheduler)
        self._schedule_poll(0)
        self._housekeeping_task = self.scheduler.every(
            HOUSEKEEPING_PERIOD, self._run_housekeeping, name="housekeeping"
        )

        if self._owns_scheduler:
            self.scheduler.start()

    def stop(self):
        """Cancel all timers and in-flight requests, and close the client"""
        with self._lock:
            self._running = False
            tasks = [self._poll_task, self._housekeeping_task]
            self._poll_task = None
            self._housekeeping_task = None
            requests = list(self._requests)

        self.rotation.stop()
        for task in tasks:
            if task is not None:
                task.cancel()
        for future in requests:
            future.cancel()

        self.report_client.close()

        if self._owns_scheduler:
            self.scheduler.stop()
