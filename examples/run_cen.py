#!/usr/bin/env python3

""" Simple example/demo of the CEN protocol

This demo simulates two phones, Alice and Bob, on a shared virtual clock.
They exchange CENs for a few minutes, Bob later reports symptoms, and
Alice's next poll of the report server finds the exposure.
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


import logging
from datetime import datetime, timezone

from cen.config import ProtocolConfig
from cen.logger import get_logger
from cen.network import LocalReportServer, SymptomReport
from cen.scheduler import ManualClock, Scheduler
from cen.storage import MemoryStore
from cen.tracer import ContactTracer

START_TIME = int(datetime(2020, 4, 25, tzinfo=timezone.utc).timestamp())


def report_time(clock):
    """
    Convenience function to report the current virtual time
    """
    time = datetime.fromtimestamp(clock.now(), tz=timezone.utc)
    print("---- {} ({}) ----".format(time, clock.now()))


def report_broadcasted_cen(name, app):
    """
    Convenience function to report the CEN a phone currently broadcasts
    """
    print("{} broadcasts {}".format(name, app.current_token.get().hex()))


def main():
    # Keep the demo output readable
    get_logger(level=logging.WARNING)

    clock = ManualClock(START_TIME)
    scheduler = Scheduler(clock)
    server = LocalReportServer(clock)
    config = ProtocolConfig.testing(lookback_window=3600, poll_period=300)

    alice = ContactTracer(MemoryStore(), server.client(), config, scheduler)
    bob = ContactTracer(MemoryStore(), server.client(), config, scheduler)
    alice.start()
    bob.start()

    ### Interaction ###

    scheduler.advance(600)
    report_time(clock)
    print("Alice and Bob interact for three minutes:")
    for _ in range(3):
        cen_alice = alice.current_token.get()
        cen_bob = bob.current_token.get()
        alice.record_observed_token(cen_bob)
        bob.record_observed_token(cen_alice)
        print("  Alice observes Bob's CEN {}".format(cen_bob.hex()))
        print("  Bob observes Alice's CEN {}".format(cen_alice.hex()))
        scheduler.advance(60)

    print("\n... 20 minutes pass ...\n")
    scheduler.advance(20 * 60)

    ### Diagnosis and reporting ###

    report_time(clock)
    print("Bob reports symptoms")
    report_broadcasted_cen("Bob", bob)
    keys = bob.keys_to_disclose()
    print("[Bob -> Server] Bob discloses {} keys, the first one:".format(len(keys)))
    print(" * key {} issued at {}".format(keys[0].key.hex(), keys[0].issued_at))
    bob.submit_symptom_report(SymptomReport("bob-1", "fever, cough", clock.now()))
    print("Bob picks a fresh key after reporting")
    report_broadcasted_cen("Bob", bob)

    ### Contact tracing ###

    print("\n[Server -> Alice] Alice polls the server for disclosed keys")
    scheduler.advance(config.poll_period)
    report_time(clock)

    exposures = alice.exposures.get()
    if exposures:
        print("  * CORRECT: Alice's phone concludes she is at risk")
        for exposure in exposures:
            print(
                "    {} matching observations, reports: {}".format(
                    len(exposure.observations),
                    [r.report for r in exposure.reports or []],
                )
            )
    else:
        print("  * ERROR: Alice's phone does not conclude she is at risk")
        raise RuntimeError("Example code failed!")

    if bob.exposures.get():
        print("  * ERROR: Bob's phone should not match his own keys")
        raise RuntimeError("Example code failed!")

    alice.stop()
    bob.stop()


if __name__ == "__main__":
    main()
