"""Shared fixtures: a loopback UDP server whose behaviour each test scripts."""

import socket
import struct
import threading

import pytest

from coapbench import coapMessage


def build_response(code, mid, payload=b""):
    """Piggybacked ACK echoing the request's message id."""
    first = (coapMessage.VERSION << 6) | (coapMessage.ACK << 4)
    return struct.pack("!BBH", first, code, mid) + payload


class UdpResponder:
    """Answers every datagram through `handler(responder, data, addr)`."""

    def __init__(self, handler=None):
        self.handler = handler
        self.received = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.05)
        self.port = self.sock.getsockname()[1]
        self.running = threading.Event()
        self.thread = threading.Thread(target=self.serve, daemon=True)

    @property
    def uri(self):
        return f"coap://127.0.0.1:{self.port}/"

    def start(self):
        self.running.set()
        self.thread.start()
        return self

    def serve(self):
        while self.running.is_set():
            try:
                data, addr = self.sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError:
                break
            self.received.append(data)
            if self.handler is not None:
                self.handler(self, data, addr)

    def send(self, data, addr):
        self.sock.sendto(data, addr)

    def close(self):
        self.running.clear()
        self.thread.join(1)
        self.sock.close()


def echo_content(responder, data, addr):
    responder.send(build_response(coapMessage.CONTENT, coapMessage.message_id(data)), addr)


@pytest.fixture
def responder_factory():
    """Creates started responders and closes them after the test."""
    created = []

    def make(handler=echo_content):
        r = UdpResponder(handler).start()
        created.append(r)
        return r

    yield make
    for r in created:
        r.close()


@pytest.fixture
def silent_port():
    """A bound port that never answers."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock.getsockname()[1]
    sock.close()
