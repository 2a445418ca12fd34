"""
Rotation of CEN keys and refreshing of the broadcast CEN
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

from cen.config import ProtocolConfig
from cen.errors import CENError
from cen.logger import get_logger
from cen.observable import ObservableValue
from cen.protocols.derivation import (
    SymmetricKey,
    derive_token,
    generate_new_key,
    rounded_epoch,
)
from cen.scheduler import SystemClock

log = get_logger("cen.rotation")


class KeyRotationManager:
    """Owns the current CEN key and the CEN derived from it

    Two periodic actions drive the manager:

     * the key check (every ``key_check_period``) issues a new key when the
       current time falls in a later key-lifetime bucket than the issuance
       time of the current key, or when there is no key at all;
     * the CEN refresh (every ``token_lifetime``) derives the CEN for the
       current time and publishes it in :attr:`current_token`, which the
       BLE broadcaster reads.

    A new key only becomes current after the key store has persisted it, so a
    restarted process always resumes with the key that was last broadcast.
    CENs are published while holding the key lock, so a published CEN is never
    derived from a key older than the current one.

    When a periodic action fails, the error is logged and passed to
    ``on_error``, and the previous key and CEN stay in force.

    Args:
        key_store (:obj:`cen.storage.KeyStore`): Where keys are persisted
        config (:obj:`ProtocolConfig`, optional): Lifetimes. Default: production
        clock (optional): Source of the current time. Default: the system clock
        on_error (callable, optional): Called with every error of a periodic action
    """

    def __init__(self, key_store, config=None, clock=None, on_error=None):
        self.key_store = key_store
        self.config = config if config is not None else ProtocolConfig()
        self.clock = clock if clock is not None else SystemClock()
        self.on_error = on_error

        #: The CEN to broadcast, None until a key is available
        self.current_token = ObservableValue(None)

        # Reentrant so that current_token subscribers can read the key
        self._lock = threading.RLock()
        self._tasks = []

        # Resume with the last persisted key, if there is one
        self._key = self.key_store.load_last_key()
        if self._key is not None:
            log.info("Loaded key issued at {}".format(self._key.issued_at))

    @property
    def current_key(self):
        """The current :obj:`SymmetricKey`, or None"""
        with self._lock:
            return self._key

    def needs_rotation(self, now):
        """Whether a key check at time now would issue a new key"""
        with self._lock:
            return self._needs_rotation(now)

    def _needs_rotation(self, now):
        if self._key is None:
            return True
        key_lifetime = self.config.key_lifetime
        return rounded_epoch(now, key_lifetime) > rounded_epoch(
            self._key.issued_at, key_lifetime
        )

    def _issue_key(self, now):
        # Caller holds the lock
        new_key = SymmetricKey(generate_new_key(), now)
        self.key_store.insert_key(new_key.key, new_key.issued_at)
        self._key = new_key
        log.info("Issued new key at {}".format(now))
        return new_key

    def check_key(self, now=None):
        """Rotate the key if its lifetime has passed

        Returns:
            :obj:`SymmetricKey`: The current key

        Raises:
            EntropySourceUnavailable: If a new key could not be generated
            StorageFailure: If the new key could not be persisted. The previous
                key remains current.
        """
        if now is None:
            now = self.clock.now()

        with self._lock:
            if self._needs_rotation(now):
                return self._issue_key(now)
            return self._key

    def reset_key(self, now=None):
        """Replace the current key by a fresh one, regardless of its age

        Used after disclosing keys, so that CENs broadcast from now on cannot
        be linked to the disclosed keys.

        Returns:
            :obj:`SymmetricKey`: The new key
        """
        if now is None:
            now = self.clock.now()

        with self._lock:
            new_key = self._issue_key(now)
            self._publish_token(now)
        return new_key

    def refresh_token(self, now=None):
        """Derive the CEN for the current time and publish it

        Returns:
            byte array: The published CEN, or None if there is no key yet

        Raises:
            InvalidKeyMaterial: If the current key cannot be used
        """
        if now is None:
            now = self.clock.now()

        with self._lock:
            return self._publish_token(now)

    def _publish_token(self, now):
        # Caller holds the lock
        if self._key is None:
            log.warning("No key available, not refreshing CEN")
            return None

        token = derive_token(self._key.key, now, self.config.token_lifetime)
        self.current_token.set(token)
        return token

    def _report(self, action, error):
        log.error("{} failed: {!r}".format(action, error))
        if self.on_error is not None:
            self.on_error(error)

    def run_key_check(self):
        """Periodic body of the key check. Errors are reported, not raised"""
        try:
            previous = self.current_key
            if self.check_key() is not previous:
                self.refresh_token()
        except CENError as e:
            self._report("Key check", e)

    def run_token_refresh(self):
        """Periodic body of the CEN refresh. Errors are reported, not raised"""
        try:
            self.refresh_token()
        except CENError as e:
            self._report("CEN refresh", e)

    def start(self, scheduler):
        """Run both periodic actions now, then on their cadence

        Args:
            scheduler (:obj:`cen.scheduler.Scheduler`): Owner of the timers
        """
        if self._tasks:
            raise RuntimeError("KeyRotationManager already started")

        self.run_key_check()
        if self.current_token.get() is None:
            self.run_token_refresh()

        self._tasks = [
            scheduler.every(
                self.config.key_check_period,
                self.run_key_check,
                name="key-check",
                delay=self.config.key_check_period,
            ),
            scheduler.every(
                self.config.token_lifetime,
                self.run_token_refresh,
                name="cen-refresh",
                delay=self.config.token_lifetime,
            ),
        ]

    def stop(self):
        """Cancel both periodic actions"""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
