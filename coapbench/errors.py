"""Failures that abort a benchmark run."""


class BenchError(Exception):
    """Base class for fatal benchmark errors."""


class BindError(BenchError):
    """The local datagram endpoint could not be bound."""

    def __init__(self, addr, reason):
        self.addr = addr
        super().__init__(f"Cannot bind virtual client to {addr}: {reason}")


class TargetResolutionError(BenchError):
    """The target host (or a bind host) does not resolve."""

    def __init__(self, host, reason):
        self.host = host
        super().__init__(f"Cannot resolve host '{host}': {reason}")


class ProtocolViolationError(BenchError):
    """The server answered with a code outside the success set of the request method."""

    def __init__(self, code, method, index=None, description=None):
        self.code = code
        self.method = method
        self.index = index
        text = description if description is not None else str(code)
        where = f" (virtual client {index})" if index is not None else ""
        super().__init__(f"Wrong response code {text} for {method}{where}")
