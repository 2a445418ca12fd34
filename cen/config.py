"""
Global system constants and the configurable protocol parameters.
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


#: Seconds in a UNIX Epoch day
SECONDS_PER_DAY = 24 * 60 * 60

#: Length of a CEN key in bytes (AES-128)
LENGTH_KEY = 16

#: Length of a CEN in bytes (a single AES block)
LENGTH_CEN = 16

#: How long a key stays current before it is rotated, in seconds
KEY_LIFETIME = 7 * SECONDS_PER_DAY

#: How long a CEN is broadcast before it is re-derived, in seconds
TOKEN_LIFETIME = 15 * 60

#: How often the key rotation check runs, in seconds
KEY_CHECK_PERIOD = 30 * 60

#: How often we poll the server for disclosed keys, in seconds
POLL_PERIOD = 30 * 60

#: How far back matching looks for observed CENs, in seconds
LOOKBACK_WINDOW = 7 * SECONDS_PER_DAY

#: For how long observed CENs are kept before being pruned, in seconds
RETENTION_PERIOD = 14 * SECONDS_PER_DAY

#: Prefix of the environment variables read by :meth:`ProtocolConfig.from_env`
ENV_PREFIX = "CEN_"


class ProtocolConfig:
    """The timing parameters shared by rotation, derivation and matching.

    Key lifetime and token lifetime are independent knobs: keys are rotated
    when the current time enters a new key-lifetime bucket, while CENs are
    derived from timestamps rounded to the token lifetime. Matching
    regenerates ``lookback_window // token_lifetime`` candidates per
    disclosed key.

    All values are in seconds.
    """

    FIELDS = (
        "key_lifetime",
        "token_lifetime",
        "key_check_period",
        "poll_period",
        "lookback_window",
        "retention_period",
    )

    def __init__(
        self,
        key_lifetime=KEY_LIFETIME,
        token_lifetime=TOKEN_LIFETIME,
        key_check_period=KEY_CHECK_PERIOD,
        poll_period=POLL_PERIOD,
        lookback_window=LOOKBACK_WINDOW,
        retention_period=RETENTION_PERIOD,
    ):
        """Create a configuration

        Raises:
            ValueError: if a value is not a positive integer, or if the
                retention period is shorter than the lookback window
        """
        self.key_lifetime = key_lifetime
        self.token_lifetime = token_lifetime
        self.key_check_period = key_check_period
        self.poll_period = poll_period
        self.lookback_window = lookback_window
        self.retention_period = retention_period

        for field in self.FIELDS:
            value = getattr(self, field)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError("{} must be a positive integer".format(field))

        if retention_period < lookback_window:
            raise ValueError("Observations must be retained for the lookback window")

    @property
    def num_candidates(self):
        """Number of CENs regenerated per disclosed key"""
        return self.lookback_window // self.token_lifetime

    @classmethod
    def testing(cls, **overrides):
        """Short lifetimes for demos and tests: 15s keys and 60s CENs"""
        values = dict(key_lifetime=15, token_lifetime=60, key_check_period=15)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, environ=None):
        """Build a configuration, overriding defaults with CEN_* variables

        For example ``CEN_TOKEN_LIFETIME=60`` sets the token lifetime.

        Raises:
            ValueError: if a variable is not an integer
        """
        if environ is None:
            environ = os.environ

        values = {}
        for field in cls.FIELDS:
            name = ENV_PREFIX + field.upper()
            if name in environ:
                try:
                    values[field] = int(environ[name])
                except ValueError:
                    raise ValueError("{} must be an integer".format(name))

        return cls(**values)

    def __eq__(self, other):
        if not isinstance(other, ProtocolConfig):
            return NotImplemented
        return all(getattr(self, f) == getattr(other, f) for f in self.FIELDS)

    def __repr__(self):
        args = ", ".join("{}={}".format(f, getattr(self, f)) for f in self.FIELDS)
        return "ProtocolConfig({})".format(args)
