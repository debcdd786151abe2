import logging as log
import socket
import threading
import time
from collections import namedtuple

from coapbench import coapMessage
from coapbench.coapMessage import MessageProducer
from coapbench.errors import BenchError, BindError, ProtocolViolationError, TargetResolutionError
from coapbench.latencyBuffer import LatencyBuffer

TIMEOUT = 10000  # ms
RECV_BUFFER = 2048

ClientReport = namedtuple("ClientReport", ["index", "count", "timeouts", "latencies", "error"])


class VirtualClient:
    """
    A virtual client sends requests to the server as fast as it answers them.

    At most one request is outstanding: the next one goes out only after the
    previous one was answered or timed out. Every request cycle has a single
    deadline of `timeout` ms after the send, so responses with a foreign
    message id cannot keep the client waiting longer than that.
    """

    def __init__(self, uri, addr=None, method="GET", payload=None, index=0, timeout=TIMEOUT):
        self.index = index
        self.timeout = timeout
        self.producer = MessageProducer()
        self.latencies = LatencyBuffer()
        self.lock = threading.Lock()
        self.socket = None
        self.closed = False
        self.family = socket.AF_INET
        self.dest = None
        self.mid = None
        self.timestamp = 0.0
        self.deadline = 0.0
        self.runnable = True
        self.counter = 0
        self.lost = 0
        self.registration = False
        self.scheme = None
        self.check_mid = True
        self.check_code = True
        self.check_latency = False
        self.on_failure = None
        self.set_uri(uri, method, payload)
        self.bind(addr)

    def bind(self, addr=None):
        family = self.family
        if addr is not None:
            family = socket.AF_INET6 if ":" in addr[0] else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind(addr if addr is not None else ("", 0))
        except OSError as e:
            sock.close()
            raise BindError(addr, e) from e
        sock.settimeout(self.timeout / 1000)
        if self.socket is not None:
            self.socket.close()
        self.socket = sock
        self.closed = False

    def set_uri(self, uri, method="GET", payload=None):
        self.producer.set_uri(uri, method, payload)
        host, port = self.producer.host, self.producer.port
        try:
            family, _, _, _, sockaddr = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
        except socket.gaierror as e:
            raise TargetResolutionError(host, e) from e
        self.family = family
        self.dest = sockaddr

    @property
    def method(self):
        return self.producer.method

    def run(self, reports=None):
        error = None
        try:
            self.latencies.clear()
            if self.registration and self.runnable:
                if self.producer.method != "POST":
                    self.producer.set_uri(self.producer.uri, "POST", self.producer.payload)
                self.send_request()
                self.receive_registration()
            while self.runnable:
                self.send_request()
                self.receive_response()
        except BenchError as e:
            error = e
            self.runnable = False
            log.error("Virtual client %d failed: %s", self.index, e)
            if self.on_failure is not None:
                self.on_failure(self, e)
        except OSError as e:
            # socket closed while the client was being stopped
            if self.runnable:
                error = e
                self.runnable = False
                log.exception("Virtual client %d lost its socket", self.index)
                if self.on_failure is not None:
                    self.on_failure(self, e)
        finally:
            if reports is not None:
                reports.put(self.snapshot(error))

    def send_request(self):
        data = self.producer.next()
        self.mid = coapMessage.message_id(data)
        self.timestamp = time.perf_counter()
        self.deadline = self.timestamp + self.timeout / 1000
        self.socket.sendto(data, self.dest)

    def receive(self):
        """One receive attempt bounded by the cycle deadline; None on timeout."""
        remaining = self.deadline - time.perf_counter()
        if remaining <= 0:
            return None
        self.socket.settimeout(remaining)
        try:
            data, _ = self.socket.recvfrom(RECV_BUFFER)
        except socket.timeout:
            return None
        return data

    def receive_registration(self):
        data = self.receive()
        if data is None or len(data) < coapMessage.HEADER_LENGTH:
            self.record_loss()
            return False
        latency = time.perf_counter() - self.timestamp
        self.validate_code(data)
        if self.scheme is not None:
            rd = coapMessage.location(data)
            if rd is None:
                log.warning("Virtual client %d: registration response without location, keeping %s",
                            self.index, self.producer.uri)
            else:
                base = self.scheme if self.scheme.endswith("/") else self.scheme + "/"
                self.producer.set_uri(base + "rd/" + rd, "POST", None)
                log.debug("Virtual client %d registered at %s", self.index, self.producer.uri)
        self.record(latency)
        return True

    def receive_response(self):
        while True:
            data = self.receive()
            if data is None:
                self.record_loss()
                return False
            latency = time.perf_counter() - self.timestamp
            if len(data) < coapMessage.HEADER_LENGTH:
                log.warning("Virtual client %d: discarding %d byte datagram", self.index, len(data))
                continue
            self.validate_code(data)
            if self.matches_mid(data):
                break
        self.record(latency)
        return True

    def matches_mid(self, data):
        if not self.check_mid:
            return True
        actual = coapMessage.message_id(data)
        if actual != self.mid:
            log.warning("Received message with wrong MID, expected %d but received %d", self.mid, actual)
            return False
        return True

    def validate_code(self, data):
        code = coapMessage.response_code(data)
        if self.check_code and code not in coapMessage.accepted_codes(self.producer.method):
            raise ProtocolViolationError(code, self.producer.method, self.index, coapMessage.code_name(code))

    def record(self, latency):
        with self.lock:
            self.counter += 1
            if self.check_latency:
                self.latencies.add(int(latency * 1000))

    def record_loss(self):
        with self.lock:
            self.lost += 1

    def is_running(self):
        return self.runnable

    def stop(self):
        self.runnable = False

    def reset(self):
        with self.lock:
            self.runnable = True
            self.counter = 0
            self.lost = 0

    def get_count(self):
        return self.counter

    def get_timeouts(self):
        return self.lost

    def get_latencies(self):
        return self.latencies.to_list()

    def snapshot(self, error=None):
        with self.lock:
            return ClientReport(self.index, self.counter, self.lost, self.latencies.to_list(), error)

    def close(self):
        self.runnable = False
        if not self.closed:
            self.closed = True
            self.socket.close()
