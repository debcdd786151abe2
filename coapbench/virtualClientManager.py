"""
The VirtualClient manager creates the virtual clients for the benchmarks and
runs them through a series of timed concurrency phases.

Each phase resizes the pool, starts one thread per client, stops them after
the phase duration and emits one PhaseResult to the stats sink.
"""
import ipaddress
import logging as log
import numbers
import queue
import socket
import threading
import time

import psutil

from coapbench.latencyBuffer import LatencyBuffer
from coapbench.phaseResult import PhaseResult
from coapbench.virtualClient import TIMEOUT, VirtualClient

SETTLE_MS = 5000
FINAL_SETTLE_MS = 1000
JOIN_GRACE_MS = 1000

IDLE = "idle"
RUNNING = "running"
STOPPING = "stopping"
AGGREGATED = "aggregated"


class PhaseTimer:
    """One-shot, cancellable timer that ends a phase."""

    def __init__(self, timeout, handler, *args):
        self.timeout = timeout
        self.handler = handler
        self.args = args
        self.timer = None
        self.lock = threading.Lock()

    def reset(self, timeout=None):
        with self.lock:
            if self.timer is not None:
                self.timer.cancel()
            if timeout is not None:
                self.timeout = timeout
            self.timer = threading.Timer(self.timeout, self.handler, args=self.args)
            self.timer.daemon = True
            self.timer.start()

    def stop(self):
        with self.lock:
            if self.timer is not None:
                self.timer.cancel()

    def fire(self):
        self.reset(0)


def local_addresses():
    addresses = set()
    for addrs in psutil.net_if_addrs().values():
        for addr in addrs:
            if addr.family in (socket.AF_INET, socket.AF_INET6):
                addresses.add(addr.address.split("%")[0])
    return addresses


class VirtualClientManager:

    def __init__(self, target, bind_addr=None, method="GET", payload=None, multiple_addr=False,
                 sink=None, timeout=TIMEOUT, settle_ms=SETTLE_MS, final_settle_ms=FINAL_SETTLE_MS,
                 interface=None):
        if interface is not None and interface not in psutil.net_if_stats():
            raise ValueError(f"Unknown network interface {interface}")
        self.target = target
        self.bind_addr = bind_addr
        self.method = method
        self.payload = payload
        self.multiple_addr = multiple_addr
        self.sink = sink
        self.timeout = timeout
        self.settle_ms = settle_ms
        self.final_settle_ms = final_settle_ms
        self.interface = interface
        self.register = False
        self.scheme = None
        self.enable_latency = False
        self.verbose = False
        self.clients = []
        self.count = 0
        self.lock = threading.Lock()
        self.state = IDLE
        self.phase = 0
        self.timer = None
        self.armed = False
        self.threads = []
        self.reports = queue.Queue()
        self.last_reports = []
        self.timestamp = 0.0
        self.net_start = None
        self.failure = None
        self.phase_done = threading.Event()
        self.results = []

    def set_registration(self, registration):
        self.register = registration

    def set_scheme(self, scheme):
        self.scheme = scheme

    def set_enable_latency(self, enable_latency):
        log.info("Measure latency: %s", enable_latency)
        self.enable_latency = enable_latency
        for vc in self.clients:
            vc.check_latency = enable_latency

    def set_verbose(self, verbose):
        self.verbose = verbose
        if self.sink is not None and hasattr(self.sink, "verbose"):
            self.sink.verbose = verbose

    def is_active(self):
        with self.lock:
            return self.state in (RUNNING, STOPPING)

    def client_address(self, i):
        if self.bind_addr is None:
            return None
        host, port = self.bind_addr
        if self.multiple_addr:
            host = str(ipaddress.ip_address(host) + i)
            if host not in local_addresses():
                log.warning("Address %s is not assigned to a local interface", host)
        return host, port

    def create_client(self, i):
        uri = self.target + str(i) if self.register else self.target
        vc = VirtualClient(uri, self.client_address(i), self.method, self.payload, index=i, timeout=self.timeout)
        vc.registration = self.register
        vc.scheme = self.scheme
        vc.check_latency = self.enable_latency
        vc.on_failure = self.on_client_failure
        return vc

    def set_client_count(self, c):
        if c < 0:
            raise ValueError(f"Client count must not be negative: {c}")
        if self.is_active():
            raise RuntimeError("Cannot resize the client pool during a phase")
        if c < len(self.clients):
            for i in range(len(self.clients) - 1, c - 1, -1):
                self.clients.pop(i).close()
        else:
            for i in range(len(self.clients), c):
                self.clients.append(self.create_client(i))
        self.count = c

    def set_uri(self, uri):
        self.target = uri
        for vc in self.clients:
            vc.set_uri(uri, self.method, self.payload)

    def on_client_failure(self, client, error):
        with self.lock:
            if self.failure is None:
                self.failure = error
            # before the phase is armed, start() fires the timer itself
            armed = self.state == RUNNING and self.armed
        if armed:
            self.timer.fire()

    def net_counters(self):
        if self.interface is not None:
            return psutil.net_io_counters(pernic=True)[self.interface]
        return psutil.net_io_counters()

    def run_concurrency_series(self, series, time_ms):
        series = list(series)
        if not series:
            raise ValueError("Empty concurrency series")
        for c in series:
            if not isinstance(c, numbers.Integral) or isinstance(c, bool) or c <= 0:
                raise ValueError(f"Concurrency levels must be positive integers, got {c!r}")
        if time_ms <= 0:
            raise ValueError(f"Phase duration must be positive, got {time_ms}")
        log.info("Run series: %s", ", ".join(str(c) for c in series))
        n = len(series)
        first = len(self.results)
        for i, c in enumerate(series):
            self.start(c, time_ms)
            started = self.timestamp
            self.phase_done.wait()
            if self.failure is not None:
                raise self.failure
            # sleep between two runs
            settle = self.settle_ms if i < n - 1 else self.final_settle_ms
            remaining = started + (time_ms + settle) / 1000 - time.perf_counter()
            if remaining > 0:
                time.sleep(remaining)
        return self.results[first:]

    def start(self, count, time_ms):
        self.set_client_count(count)
        self.reports = queue.Queue()
        self.threads = []
        self.phase_done.clear()
        for vc in self.clients[:count]:
            vc.reset()
            self.threads.append(threading.Thread(target=vc.run, args=(self.reports,),
                                                 name=f"virtual-client-{vc.index}", daemon=True))
        log.info("Start %d virtual clients for %d ms", count, time_ms)
        self.net_start = self.net_counters()
        with self.lock:
            self.phase += 1
            self.failure = None
            self.armed = False
            self.timer = PhaseTimer(time_ms / 1000, self.stop, self.phase)
            self.state = RUNNING
        self.timestamp = time.perf_counter()
        for t in self.threads:
            t.start()
        with self.lock:
            self.armed = True
            self.timer.reset()
            if self.failure is not None:
                self.timer.fire()

    def stop(self, phase=None):
        with self.lock:
            if self.state != RUNNING or (phase is not None and phase != self.phase):
                return None
            self.state = STOPPING
            self.armed = False
            timer = self.timer
        timer.stop()
        try:
            dt = (time.perf_counter() - self.timestamp) * 1000
            if self.verbose:
                log.info("Stop virtual clients and collect results")
            active = self.clients[:self.count]
            for vc in active:
                vc.stop()
            deadline = time.perf_counter() + (self.timeout + JOIN_GRACE_MS) / 1000
            for t in self.threads:
                if t.ident is None:
                    continue
                t.join(max(0.0, deadline - time.perf_counter()))
            reports = self.collect_reports(active)
            result = self.aggregate(reports, dt)
            try:
                if self.sink is not None:
                    self.sink.emit(result)
            except OSError as e:
                log.exception("Cannot write phase result")
                with self.lock:
                    if self.failure is None:
                        self.failure = e
            self.results.append(result)
            return result
        finally:
            with self.lock:
                self.state = AGGREGATED
            self.phase_done.set()

    def collect_reports(self, active):
        reports = {}
        while True:
            try:
                report = self.reports.get_nowait()
            except queue.Empty:
                break
            reports[report.index] = report
        stragglers = 0
        for vc in active:
            if vc.index not in reports:
                reports[vc.index] = vc.snapshot()
                stragglers += 1
        if stragglers:
            log.warning("%d virtual clients did not finish within %d ms, using their live counters",
                        stragglers, self.timeout + JOIN_GRACE_MS)
        self.last_reports = [reports[vc.index] for vc in active]
        return self.last_reports

    def aggregate(self, reports, dt):
        total = 0
        total_lost = 0
        latencies = LatencyBuffer()
        for report in reports:
            total += report.count
            total_lost += report.timeouts
            latencies.extend(report.latencies)
            if self.verbose:
                log.info("Virtual client %2d received %7d, timeout %3d, throughput %d /s",
                         report.index, report.count, report.timeouts,
                         int(report.count * 1000 / dt) if dt > 0 else 0)
        net = self.net_counters()
        sent = recv = None
        if net is not None and self.net_start is not None:
            sent = net.bytes_sent - self.net_start.bytes_sent
            recv = net.bytes_recv - self.net_start.bytes_recv
        return PhaseResult.from_counts(total_lost, self.count, dt, total, latencies,
                                       target=self.target, bytes_sent=sent, bytes_recv=recv)

    def close(self):
        if self.timer is not None:
            self.timer.stop()
        for vc in self.clients:
            vc.stop()
            vc.close()
        self.clients = []
        self.count = 0
