"""
Cancellable timers for the periodic actions of the protocol

Periodic actions (key checks, CEN refreshes, disclosed-key polls) are owned
by a :class:`Scheduler` rather than rescheduling themselves. Each task gets a
handle that can be cancelled, and the scheduler can be driven either by a
background thread on the system clock or, in tests, by advancing a
:class:`ManualClock`.
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

import sched
import threading
import time

from cen.logger import get_logger

log = get_logger("cen.scheduler")


class SystemClock:
    """Wall clock time in whole UNIX seconds"""

    def now(self):
        return int(time.time())

    def time(self):
        return time.time()


class ManualClock:
    """A clock that only moves when told to

    Args:
        start (int, optional): Initial time in seconds since UNIX epoch
    """

    def __init__(self, start=0):
        self._now = start
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return int(self._now)

    def time(self):
        with self._lock:
            return self._now

    def set(self, timestamp):
        with self._lock:
            if timestamp < self._now:
                raise ValueError("ManualClock cannot go backwards")
            self._now = timestamp


class Task:
    """Handle of a scheduled action

    Attributes:
        name (str): Used in log messages
        period (int): Seconds between runs, or None for a one-shot task
    """

    def __init__(self, scheduler, name, action, period):
        self.name = name
        self.period = period
        self._scheduler = scheduler
        self._action = action
        self._event = None
        self._cancelled = False
        self.runs = 0

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        """Stop this task. It will not run again, nor reschedule itself"""
        self._cancelled = True
        self._scheduler._cancel_event(self)

    def _run(self, deadline):
        if self._cancelled:
            return

        self.runs += 1
        try:
            self._action()
        except Exception:
            # A failing cycle must never break the timer chain
            log.exception("Task {} failed".format(self.name))

        if self.period is not None and not self._cancelled:
            self._scheduler._enter(self, deadline + self.period)
        elif self.period is None:
            # One-shot tasks are done after their first run
            self.cancel()


class Scheduler:
    """Runs periodic and one-shot tasks against a clock

    With a :class:`SystemClock`, call :meth:`start` to run tasks from a
    background thread. With a :class:`ManualClock`, call :meth:`advance` to
    run every task that falls due in virtual time, in order.

    Args:
        clock (optional): A :class:`SystemClock` (default) or :class:`ManualClock`
    """

    def __init__(self, clock=None):
        if clock is None:
            clock = SystemClock()

        self.clock = clock
        self._wakeup = threading.Event()
        self._sched = sched.scheduler(clock.time, self._delay)
        self._tasks = []
        self._lock = threading.Lock()
        self._thread = None
        self._stopped = False

    def every(self, period, action, name=None, delay=0):
        """Run action every period seconds, the first time after delay seconds

        Returns:
            Task: A handle to cancel the task
        """
        if period <= 0:
            raise ValueError("Period must be positive")

        task = Task(self, name or action.__name__, action, period)
        self._enter(task, self.clock.time() + delay)
        return task

    def call_later(self, delay, action, name=None):
        """Run action once, delay seconds from now

        Returns:
            Task: A handle to cancel the task
        """
        task = Task(self, name or action.__name__, action, None)
        self._enter(task, self.clock.time() + delay)
        return task

    @property
    def pending(self):
        """Number of scheduled runs"""
        return len(self._sched.queue)

    def _enter(self, task, deadline):
        with self._lock:
            if self._stopped:
                return
            task._event = self._sched.enterabs(deadline, 0, task._run, (deadline,))
            if task not in self._tasks:
                self._tasks.append(task)
        self._wakeup.set()

    def _cancel_event(self, task):
        with self._lock:
            if task._event is not None:
                try:
                    self._sched.cancel(task._event)
                except ValueError:
                    # Already popped from the queue, _run will see the flag
                    pass
                task._event = None
            if task in self._tasks:
                self._tasks.remove(task)

    def _delay(self, seconds):
        if seconds > 0:
            self._wakeup.wait(seconds)
        self._wakeup.clear()

    def run_pending(self):
        """Run every task that is due at the current clock time"""
        self._sched.run(blocking=False)

    def advance(self, seconds):
        """Move a :class:`ManualClock` forward, running tasks as they fall due

        Raises:
            TypeError: If the scheduler does not use a ManualClock
        """
        if not isinstance(self.clock, ManualClock):
            raise TypeError("Only a ManualClock can be advanced")

        target = self.clock.time() + seconds
        self.run_pending()
        while True:
            queue = self._sched.queue
            if not queue or queue[0].time > target:
                break
            self.clock.set(queue[0].time)
            self.run_pending()

        self.clock.set(target)
        self.run_pending()

    def start(self):
        """Run tasks on a background thread until :meth:`stop` is called"""
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")

        self._thread = threading.Thread(
            target=self._run_loop, name="cen-scheduler", daemon=True
        )
        self._thread.start()

    def _run_loop(self):
        while not self._stopped:
            self._sched.run(blocking=True)
            if not self._stopped:
                self._delay(1)

    def stop(self, timeout=5):
        """Cancel every task; nothing is rescheduled afterwards"""
        with self._lock:
            self._stopped = True
            tasks = list(self._tasks)

        for task in tasks:
            task.cancel()

        self._wakeup.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
