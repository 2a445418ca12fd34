#!/usr/bin/env python3

""" Produces test vectors for CEN derivation """

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

from cen.config import TOKEN_LIFETIME
from cen.protocols.derivation import derive_token, encode_key, rounded_epoch

KEY0 = bytes.fromhex("00000000000000000000000000000000")
KEY1 = bytes.fromhex("000102030405060708090a0b0c0d0e0f")

TIMESTAMPS = [0, 899, 900, 1587772800, 1587828120]


def main():
    print("## Test vectors of keys and derived CENs ##")
    print("   Epoch length: {} seconds\n".format(TOKEN_LIFETIME))
    for key in [KEY0, KEY1]:
        print("  * Key: {} (base64 {})".format(key.hex(), encode_key(key)))
        for ts in TIMESTAMPS:
            epoch = rounded_epoch(ts, TOKEN_LIFETIME)
            cen = derive_token(key, ts, TOKEN_LIFETIME)
            print("    - CEN(t = {}, epoch = {}) = {}".format(ts, epoch, cen.hex()))


if __name__ == "__main__":
    main()
