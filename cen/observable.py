"""
Thread-safe values that readers can poll or subscribe to
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

from cen.logger import get_logger

log = get_logger("cen.observable")


class ObservableValue:
    """Holds a value written by one component and read by others

    Writers call :meth:`set`; readers either call :meth:`get` or register a
    callback with :meth:`subscribe`. Callbacks run on the writer's thread,
    outside the lock, and an exception in one callback does not stop the
    others from being notified.
    """

    def __init__(self, initial=None):
        self._value = initial
        self._lock = threading.Lock()
        self._subscribers = []

    def get(self):
        with self._lock:
            return self._value

    def set(self, value):
        with self._lock:
            self._value = value
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                log.exception("Subscriber {!r} failed".format(callback))

    def subscribe(self, callback):
        """Call callback with every new value

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
