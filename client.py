import argparse
import csv
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)


class PermitError(RuntimeError):
    """Raised when a permit is released that the controller does not hold."""


class Stats:
    """Success/error counters shared by every request of one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self.success = 0
        self.error = 0

    def record_success(self):
        with self._lock:
            self.success += 1

    def record_error(self):
        with self._lock:
            self.error += 1

    def snapshot(self):
        with self._lock:
            return self.success, self.error


class Permit:
    """One unit of concurrency capacity, held by a single in-flight request."""

    __slots__ = ("owner", "held")

    def __init__(self, owner):
        self.owner = owner
        self.held = True


class AdmissionController:
    """Counting permit pool that admits at most `capacity` requests at once.

    acquire() blocks until a unit is free. Every release wakes both blocked
    acquirers and anyone waiting in wait_idle(), so completion is detected
    without polling.
    """

    def __init__(self, capacity):
        if capacity < 1:
            raise ValueError(f"Capacity {capacity} must be a positive integer")
        self.capacity = capacity
        self._free = capacity
        self._cond = threading.Condition()

    def acquire(self):
        with self._cond:
            self._cond.wait_for(lambda: self._free > 0)
            self._free -= 1
            return Permit(self)

    def release(self, permit):
        with self._cond:
            if permit.owner is not self or not permit.held:
                raise PermitError("Permit is not held by this controller")
            permit.held = False
            self._free += 1
            self._cond.notify_all()

    def available(self):
        with self._cond:
            return self._free

    def wait_idle(self, timeout=None):
        """Block until every permit is back. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._free == self.capacity, timeout=timeout)


class RunResult:
    def __init__(self, url, count, max_conn, success, error, elapsed):
        self.url = url
        self.count = count
        self.max_conn = max_conn
        self.success = success
        self.error = error
        self.elapsed = elapsed

    @property
    def requests_per_second(self):
        # A run that finishes instantly has no meaningful rate
        return self.count / self.elapsed if self.elapsed > 0 else 0.0

    def __repr__(self):
        return (f"RunResult(url={self.url!r}, count={self.count}, success={self.success}, "
                f"error={self.error}, elapsed={self.elapsed:.3f})")


def build_url(address, port, time_in_queue):
    return f"http://{address}:{port}/json/{time_in_queue}"


def make_session(max_conn):
    """Build a pooled session sized to the concurrency limit, with retries disabled."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=max_conn, pool_maxsize=max_conn, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def send_request(session, url, stats, controller, permit, timeout=None):
    """Send one GET and count its outcome.

    Any HTTP response counts as a success, whatever the status code; only
    transport failures count as errors. The permit is always released last.
    """
    try:
        session.get(url, timeout=timeout)
    except requests.exceptions.RequestException:
        stats.record_error()
    else:
        stats.record_success()
    finally:
        controller.release(permit)


def dispatch(count, url, controller, stats, session, executor, timeout=None):
    """Submit `count` requests, acquiring a permit before each submission."""
    futures = []
    for _ in range(count):
        permit = controller.acquire()
        futures.append(executor.submit(send_request, session, url, stats, controller, permit, timeout))
    return futures


def wait_for_completion(futures, controller):
    """Join every submitted request, then wait for all permits to come back."""
    for future in futures:
        future.result()
    controller.wait_idle()


def run_load(url, count, max_conn, timeout=None, session=None):
    """Issue `count` GET requests to `url` with at most `max_conn` in flight."""
    if count < 0:
        raise ValueError(f"Count {count} must be non-negative")
    controller = AdmissionController(max_conn)
    stats = Stats()
    own_session = session is None
    if own_session:
        session = make_session(max_conn)

    logger.info(f"Sending {count} requests to {url} with at most {max_conn} in flight...")
    start_time = time.perf_counter()
    try:
        with ThreadPoolExecutor(max_workers=max_conn) as executor:
            futures = dispatch(count, url, controller, stats, session, executor, timeout)
            logger.debug(f"All {count} requests dispatched, draining...")
            wait_for_completion(futures, controller)
    finally:
        if own_session:
            session.close()
    elapsed = time.perf_counter() - start_time

    success, error = stats.snapshot()
    logger.debug(f"Run complete: {success} succeeded, {error} failed in {elapsed:.3f}s")
    return RunResult(url, count, max_conn, success, error, elapsed)


def format_report(result):
    return (f"total_time: {result.elapsed:.2f} success {result.success} errors {result.error}\n"
            f"rps: {result.requests_per_second:.2f}")


def save_results_to_csv(filename, result):
    """Append the run's results to a CSV file, writing the header if the file is new."""
    headers = ["Timestamp", "URL", "Total Requests", "Max Connections", "Successful Requests",
               "Failed Requests", "Execution Time (seconds)", "Requests Per Second"]
    row = [
        datetime.now().strftime("%Y-%m-%d-%H%M%S"),
        result.url,
        result.count,
        result.max_conn,
        result.success,
        result.error,
        result.elapsed,
        result.requests_per_second,
    ]

    os.makedirs(os.path.dirname(filename) or '.', exist_ok=True)
    file_exists = os.path.isfile(filename)
    with open(filename, mode='a', newline='') as file:
        writer = csv.writer(file)
        if not file_exists:
            writer.writerow(headers)
        writer.writerow(row)
    logger.info(f"Results appended to {filename}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Send GET requests to an HTTP server with bounded concurrency.")
    parser.add_argument('-t', '--time', type=int, default=10000, help="Time in queue, appended to the URL as /json/<time>")
    parser.add_argument('-c', '--count', type=int, default=1000, help="Total number of requests to send")
    parser.add_argument('-a', '--address', type=str, default="0.0.0.0", help="Target host")
    parser.add_argument('-p', '--port', type=int, default=42069, help="Target port")
    parser.add_argument('-m', '--max_conn', type=int, default=100, help="Maximum number of requests in flight")
    parser.add_argument('--timeout', type=float, default=None,
                        help="Per-request timeout in seconds (default: wait indefinitely)")
    parser.add_argument('--output_csv', type=str, default=None, help="Append results to this CSV file")
    parser.add_argument('--verbose', action='store_true', help="Enable verbose logging")

    args = parser.parse_args(argv)
    if args.count < 0:
        parser.error(f"--count must be non-negative, got {args.count}")
    if args.max_conn < 1:
        parser.error(f"--max_conn must be at least 1, got {args.max_conn}")
    if args.timeout is not None and args.timeout <= 0:
        parser.error(f"--timeout must be positive, got {args.timeout}")
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(message)s')

    url = build_url(args.address, args.port, args.time)
    result = run_load(url, args.count, args.max_conn, timeout=args.timeout)
    print(format_report(result))

    if args.output_csv:
        try:
            save_results_to_csv(args.output_csv, result)
        except OSError as e:
            logger.error(f"Could not write results to {args.output_csv}: {e}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
