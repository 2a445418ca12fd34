"""
Derivation of Contact Event Numbers (CENs) from rotating keys
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

import base64
import binascii
import secrets
from collections import namedtuple

from Cryptodome.Cipher import AES
from Cryptodome.Util.Padding import pad

from cen.config import LENGTH_KEY, TOKEN_LIFETIME
from cen.errors import InvalidKeyMaterial, EntropySourceUnavailable


#################################
### GLOBAL PROTOCOL CONSTANTS ###
#################################

#: Number of bytes used to encode a rounded timestamp before encryption
LENGTH_TIMESTAMP = 4


#: A CEN key together with the UNIX time (in seconds) at which it was issued
SymmetricKey = namedtuple("SymmetricKey", ["key", "issued_at"])


#########################
### UTILITY FUNCTIONS ###
#########################


def rounded_epoch(timestamp, epoch_length):
    """Round a timestamp down to the start of its epoch

    Args:
        timestamp (int): In seconds since UNIX epoch
        epoch_length (int): Length of an epoch in seconds

    Returns:
        int: The first second of the epoch containing timestamp
    """
    return (int(timestamp) // epoch_length) * epoch_length


def encode_key(key):
    """Encode a key for exchange with the report server (standard base64)"""
    return base64.b64encode(key).decode("ascii")


def decode_key(text):
    """Decode a base64 encoded key received from the report server

    Raises:
        InvalidKeyMaterial: If text is not valid base64 or has the wrong length
    """
    try:
        key = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise InvalidKeyMaterial("Key is not valid base64")

    check_key(key)
    return key


def check_key(key):
    """Verify that key can be used with AES-128

    Raises:
        InvalidKeyMaterial: If key is not a 16-byte string
    """
    if not isinstance(key, (bytes, bytearray)) or len(key) != LENGTH_KEY:
        raise InvalidKeyMaterial("CEN keys must be {} bytes".format(LENGTH_KEY))


#########################################
### BASIC CRYPTOGRAPHIC FUNCTIONALITY ###
#########################################


def generate_new_key():
    """Returns a fresh random key

    Raises:
        EntropySourceUnavailable: If the OS cannot provide random bytes
    """
    try:
        return secrets.token_bytes(LENGTH_KEY)
    except (OSError, NotImplementedError) as e:
        raise EntropySourceUnavailable("Cannot generate key: {}".format(e)) from e


def derive_token(key, timestamp, epoch_length=TOKEN_LIFETIME):
    """Compute the CEN broadcast under key at the given time

    The timestamp is rounded down to its epoch and encoded as a 4-byte
    big-endian integer. This block is PKCS#7 padded and encrypted with AES in
    ECB mode. No IV or other randomness is involved, so any party that learns
    the key can recompute the CEN for any epoch.

    Args:
        key (byte array): A 16-byte key
        timestamp (int): In seconds since UNIX epoch
        epoch_length (int, optional): Rounding quantum in seconds.
            Default: the token lifetime

    Returns:
        byte array: The 16-byte CEN

    Raises:
        InvalidKeyMaterial: If the key is not a 16-byte string
        ValueError: If the timestamp is before the UNIX epoch
    """
    check_key(key)

    epoch = rounded_epoch(timestamp, epoch_length)
    if epoch < 0:
        raise ValueError("Timestamps before the UNIX epoch have no CEN")

    epoch_bytes = epoch.to_bytes(LENGTH_TIMESTAMP, "big")

    cipher = AES.new(bytes(key), AES.MODE_ECB)
    return cipher.encrypt(pad(epoch_bytes, AES.block_size))
