"""
Client of the report server

Infected users publish a symptom report together with their recent CEN keys.
Other users periodically poll for keys disclosed since their last check and
fetch the report behind any key that matches their observations.

All requests run in the background and return a
:class:`concurrent.futures.Future`. Failed requests resolve the future with a
:class:`cen.errors.NetworkFailure`.
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
from concurrent.futures import Future, ThreadPoolExecutor

import requests

from cen.errors import CENError, NetworkFailure
from cen.logger import get_logger
from cen.protocols.derivation import decode_key, encode_key
from cen.protocols.matching import DisclosedKey

log = get_logger("cen.network")


#: A symptom report as entered by the user. The report itself is opaque text.
SymptomReport = namedtuple("SymptomReport", ["report_id", "report", "timestamp"])

#: Default timeout of a request, in seconds
REQUEST_TIMEOUT = 5


def report_to_json(report, keys):
    """Serialize a report and the disclosed keys for publication

    Args:
        report (:obj:`SymptomReport`): The report
        keys (list of :obj:`cen.protocols.derivation.SymmetricKey`): Keys to disclose

    Returns:
        dict: The JSON body of the publication request
    """
    return {
        "reportID": report.report_id,
        "report": report.report,
        "cenKeys": ",".join(encode_key(k.key) for k in keys),
        "cenKeyTimestamps": ",".join(str(k.issued_at) for k in keys),
        "reportTimeStamp": report.timestamp,
    }


def report_from_json(data):
    """Parse a report returned by the server"""
    try:
        return SymptomReport(
            data.get("reportID"), data["report"], int(data.get("reportTimeStamp", 0))
        )
    except (AttributeError, KeyError, TypeError, ValueError):
        raise NetworkFailure("Malformed report: {!r}".format(data))


def disclosed_keys_from_json(data):
    """Parse the answer to a disclosed-key poll

    The server answers ``{"keys": [...]}`` where every entry is either
    ``{"key": <base64>, "timestamp": <epoch start>}`` or a bare base64 string,
    whose epoch start is then unknown (0).

    Raises:
        NetworkFailure: If the answer is malformed
    """
    if not isinstance(data, dict):
        raise NetworkFailure("Malformed key list: {!r}".format(data))

    disclosed = []
    for entry in data.get("keys") or []:
        try:
            if isinstance(entry, str):
                disclosed.append(DisclosedKey(decode_key(entry), 0))
            else:
                disclosed.append(
                    DisclosedKey(decode_key(entry["key"]), int(entry.get("timestamp", 0)))
                )
        except (CENError, KeyError, TypeError, ValueError, AttributeError) as e:
            # One bad entry does not invalidate the rest of the batch
            log.warning("Skipping malformed disclosed key {!r}: {}".format(entry, e))

    return disclosed


class ReportClient:
    """Interface to the report server"""

    def publish_report(self, report, keys):
        """Publish report and disclose keys. Returns a Future"""
        raise NotImplementedError

    def poll_disclosed_keys(self, since):
        """Keys disclosed since the given UNIX time. Returns a Future of a
        list of :obj:`DisclosedKey`"""
        raise NotImplementedError

    def fetch_report_for_key(self, key):
        """Reports published with key. Returns a Future of a list of
        :obj:`SymptomReport`"""
        raise NotImplementedError

    def close(self):
        """Cancel outstanding requests"""


class HTTPReportClient(ReportClient):
    """Report server client over HTTP

    Endpoints:
     * ``POST /cenreport`` publishes a report
     * ``GET /exposurecheck?timestamp=<since>`` lists disclosed keys
     * ``GET /cenreport/<base64 key>`` fetches the reports of a key

    Args:
        base_url (str): Root URL of the report server
        session (:obj:`requests.Session`, optional): Session to send requests with
        timeout (int, optional): Timeout of each request in seconds
        max_workers (int, optional): Number of concurrent requests
    """

    def __init__(self, base_url, session=None, timeout=REQUEST_TIMEOUT, max_workers=2):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cen-http"
        )
        self._pending = set()
        self._lock = threading.Lock()
        self._closed = False

    def _submit(self, fn, *args):
        with self._lock:
            if self._closed:
                raise NetworkFailure("Client is closed")
            future = self._executor.submit(fn, *args)
            self._pending.add(future)

        future.add_done_callback(self._forget)
        return future

    def _forget(self, future):
        with self._lock:
            self._pending.discard(future)

    def _request(self, method, path, **kwargs):
        url = "{}{}".format(self.base_url, path)
        log.debug("[HTTP] {} {}".format(method, url))

        try:
            res = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log.error("[HTTP] {} {} failed: {}".format(method, url, e))
            raise NetworkFailure("{} {} failed: {}".format(method, url, e)) from e

        if not res.ok:
            log.error("[HTTP] {} {} -> {}".format(method, url, res.status_code))
            raise NetworkFailure(
                "{} {} returned {}".format(method, url, res.status_code),
                status_code=res.status_code,
            )

        return res

    @staticmethod
    def _json(res):
        try:
            return res.json()
        except ValueError as e:
            raise NetworkFailure("Response is not JSON: {}".format(e)) from e

    def _publish(self, report, keys):
        self._request("POST", "/cenreport", json=report_to_json(report, keys))
        log.info("[HTTP] Published report {}".format(report.report_id))
        return True

    def _poll(self, since):
        res = self._request("GET", "/exposurecheck", params={"timestamp": int(since)})
        return disclosed_keys_from_json(self._json(res))

    def _fetch(self, key):
        path = "/cenreport/{}".format(requests.utils.quote(encode_key(key), safe=""))
        data = self._json(self._request("GET", path))
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise NetworkFailure("Malformed report list: {!r}".format(data))
        return [report_from_json(entry) for entry in data]

    def publish_report(self, report, keys):
        return self._submit(self._publish, report, list(keys))

    def poll_disclosed_keys(self, since):
        return self._submit(self._poll, since)

    def fetch_report_for_key(self, key):
        return self._submit(self._fetch, key)

    def close(self):
        with self._lock:
            self._closed = True
            pending = list(self._pending)

        for future in pending:
            future.cancel()

        self._executor.shutdown(wait=False)
        self.session.close()


class LocalReportServer:
    """An in-process report server, for simulations and tests

    Every phone of a simulation gets its own client from :meth:`client`.
    Requests complete immediately.
    """

    def __init__(self, clock):
        self.clock = clock
        self._lock = threading.Lock()
        # (publication time, SymmetricKey, SymptomReport)
        self._published = []

    def client(self):
        return LocalReportClient(self)

    def publish(self, report, keys):
        now = self.clock.now()
        with self._lock:
            for key in keys:
                self._published.append((now, key, report))
        return True

    def disclosed_since(self, since):
        with self._lock:
            return [
                DisclosedKey(key.key, key.issued_at)
                for (published_at, key, _) in self._published
                if published_at >= since
            ]

    def reports_for_key(self, key):
        with self._lock:
            return [report for (_, k, report) in self._published if k.key == key]


class LocalReportClient(ReportClient):
    """Client of a :class:`LocalReportServer`"""

    def __init__(self, server):
        self.server = server
        self.closed = False

    def _call(self, fn, *args):
        future = Future()
        if self.closed:
            future.set_exception(NetworkFailure("Client is closed"))
            return future

        try:
            future.set_result(fn(*args))
        except CENError as e:
            future.set_exception(e)
        return future

    def publish_report(self, report, keys):
        return self._call(self.server.publish, report, list(keys))

    def poll_disclosed_keys(self, since):
        return self._call(self.server.disclosed_since, since)

    def fetch_report_for_key(self, key):
        return self._call(self.server.reports_for_key, key)

    def close(self):
        self.closed = True
