"""
Exceptions raised by the CEN protocol and its collaborators
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


class CENError(Exception):
    """Base class of all errors raised by this package"""


class InvalidKeyMaterial(CENError, ValueError):
    """The key has a length or encoding the cipher cannot use"""


class EntropySourceUnavailable(CENError):
    """A fresh key could not be generated"""


class NetworkFailure(CENError):
    """A request to the report server failed

    Attributes:
        status_code (int): HTTP status code, or None if no response was received
    """

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class StorageFailure(CENError):
    """Persisting or querying keys or observations failed"""
