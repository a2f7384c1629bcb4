"""
Intcode I/O Ports: Channels and Pluggable Endpoints
===================================================
Everything an Intcode VM reads or writes passes through one of these.

Endpoint hierarchy:
  InputPort              abstract inbound endpoint (read by IN)
  ├─ ChannelInput        blocking or polling receive from a Channel
  ├─ StreamInput         one integer per line from a text stream
  ├─ CallbackInput       value supplied by an injected strategy
  └─ NullInput           no producer; every read is end-of-stream
  OutputPort             abstract outbound endpoint (written by OUT)
  ├─ ChannelOutput       send on a Channel
  ├─ StreamOutput        one integer per line to a text stream
  ├─ CallbackOutput      hand each value to a function
  ├─ ListOutput          collect values in a list
  └─ NullOutput          discard

Channels are thread-safe FIFO queues with close semantics.  A Selector
waits on many channels at once, which is how a dispatcher multiplexes the
outputs of concurrently running VMs.

Usage:
  from ports import Channel
  wire = Channel("a->b")
  a = Intcode(program, inbound=[...], outbound=wire)
  b = Intcode(program, inbound=wire, outbound=print)
"""

from __future__ import annotations

import abc
import threading
import time
from collections import deque
from typing import Callable, Iterable, Optional, TextIO

from intcode import ChannelClosed, IntcodeError

# ── Constants ─────────────────────────────────────────────────────────
EMPTY_VALUE = -1   # what a polling IN sees when nothing is queued


# ══════════════════════════════════════════════════════════════════════
#  Channel
# ══════════════════════════════════════════════════════════════════════

class Channel:
    """Unbounded FIFO of integers shared between threads.

    Once closed, no more values may be sent; receivers drain whatever is
    left and then get ChannelClosed.
    """

    def __init__(self, name: str = "channel", values: Iterable[int] = ()):
        self.name = name
        self._items: deque[int] = deque(values)
        self._cond = threading.Condition()
        self._closed = False
        self._watchers: list[threading.Condition] = []

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Channel {self.name} {state} pending={len(self._items)}>"

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Producer side --

    def send(self, value: int):
        self.send_many((value,))

    def send_many(self, values: Iterable[int]):
        """Enqueue *values* as one unit; no receiver sees a partial batch."""
        with self._cond:
            if self._closed:
                raise ChannelClosed(f"send on closed channel {self.name}")
            self._items.extend(values)
            self._cond.notify_all()
        self._notify_watchers()

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._notify_watchers()

    # -- Consumer side --

    def recv(self, timeout: Optional[float] = None) -> int:
        """Block until a value arrives.

        Raises ChannelClosed once the channel is closed and drained, and
        TimeoutError if *timeout* seconds pass with nothing to read.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    raise ChannelClosed(f"channel {self.name} closed")
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(f"recv on {self.name} timed out")
                    self._cond.wait(remaining)
            return self._items.popleft()

    def try_recv(self) -> Optional[int]:
        """Return the next value, or None if nothing is queued right now."""
        with self._cond:
            if self._items:
                return self._items.popleft()
            if self._closed:
                raise ChannelClosed(f"channel {self.name} closed")
            return None

    def ready(self) -> bool:
        """True if a value can be received without blocking."""
        with self._cond:
            return bool(self._items)

    def drain(self) -> list[int]:
        """Remove and return everything queued, without blocking."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def __iter__(self):
        """Yield values until the channel is closed and empty."""
        while True:
            try:
                yield self.recv()
            except ChannelClosed:
                return

    # -- Selector support --

    def _watch(self, cond: threading.Condition):
        with self._cond:
            self._watchers.append(cond)

    def _unwatch(self, cond: threading.Condition):
        with self._cond:
            if cond in self._watchers:
                self._watchers.remove(cond)

    def _notify_watchers(self):
        # Called without holding our own lock so a Selector holding its
        # condition may inspect us.
        with self._cond:
            watchers = list(self._watchers)
        for cond in watchers:
            with cond:
                cond.notify_all()


class Selector:
    """Multiplexed wait over several channels.

    ``wait()`` returns the index of a channel with data ready, or None when
    the timeout expires or the *until* predicate becomes true.  Other
    threads may share the selector's condition (``selector.cond``) to
    guard their own state and wake the waiter with ``notify()``.  Pass
    *lock* to build further conditions over the same lock.
    """

    def __init__(self, channels: Iterable[Channel] = (), lock=None):
        self.cond = threading.Condition(lock)
        self.channels: list[Channel] = []
        for ch in channels:
            self.add(ch)

    def add(self, channel: Channel) -> int:
        channel._watch(self.cond)
        self.channels.append(channel)
        return len(self.channels) - 1

    def close(self):
        for ch in self.channels:
            ch._unwatch(self.cond)

    def notify(self):
        with self.cond:
            self.cond.notify_all()

    def _first_ready(self) -> Optional[int]:
        for i, ch in enumerate(self.channels):
            if ch.ready():
                return i
        return None

    def wait(self, timeout: Optional[float] = None,
             until: Optional[Callable[[], bool]] = None) -> Optional[int]:
        """Wait for any channel to become readable.

        *until* is evaluated with ``self.cond`` held.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.cond:
            while True:
                index = self._first_ready()
                if index is not None:
                    return index
                if until is not None and until():
                    return None
                if deadline is None:
                    self.cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self.cond.wait(remaining)


# ══════════════════════════════════════════════════════════════════════
#  Inbound endpoints
# ══════════════════════════════════════════════════════════════════════

class InputPort(abc.ABC):
    """Abstract inbound endpoint.  The VM calls read() once per IN."""

    def __init__(self):
        self.vm = None

    def attach(self, vm):
        """Called by the VM that owns this port."""
        self.vm = vm

    @abc.abstractmethod
    def read(self) -> int:
        """Return the next input value or raise ChannelClosed."""
        ...

    @property
    def name(self) -> str:
        return type(self).__name__


class NullInput(InputPort):
    """No producer is attached."""

    def read(self) -> int:
        raise ChannelClosed("no input attached")

    @property
    def name(self) -> str:
        return "none"


class ChannelInput(InputPort):
    """Receive from a Channel.

    In blocking mode (the default) IN suspends the VM until a value
    arrives.  In polling mode IN never waits: an empty channel yields
    *empty_value* instead.
    """

    def __init__(self, channel: Channel, blocking: bool = True,
                 empty_value: int = EMPTY_VALUE):
        super().__init__()
        self.channel = channel
        self.blocking = blocking
        self.empty_value = empty_value
        self.count = 0

    def read(self) -> int:
        if self.blocking:
            value = self.channel.recv()
        else:
            value = self.channel.try_recv()
            if value is None:
                return self.empty_value
        self.count += 1
        return value

    @property
    def name(self) -> str:
        mode = "block" if self.blocking else "poll"
        return f"channel:{self.channel.name}({mode})"


class StreamInput(InputPort):
    """Read one integer per line from a text stream (e.g. stdin)."""

    def __init__(self, stream: TextIO, prompt: Optional[str] = None,
                 prompt_stream: Optional[TextIO] = None):
        super().__init__()
        self.stream = stream
        self.prompt = prompt
        self.prompt_stream = prompt_stream

    def read(self) -> int:
        if self.prompt and self.prompt_stream is not None:
            self.prompt_stream.write(self.prompt)
            self.prompt_stream.flush()
        line = self.stream.readline()
        if not line:
            raise ChannelClosed("input stream exhausted")
        try:
            return int(line.strip())
        except ValueError:
            raise IntcodeError(f"Bad input line {line.strip()!r}") from None

    @property
    def name(self) -> str:
        return "stream"


class CallbackInput(InputPort):
    """Ask an injected strategy for each value.

    The strategy is called with the owning VM, so a policy may look at the
    program's memory without the interpreter knowing anything about it.
    """

    def __init__(self, strategy: Callable):
        super().__init__()
        self.strategy = strategy

    def read(self) -> int:
        return self.strategy(self.vm)

    @property
    def name(self) -> str:
        return "callback"


# ══════════════════════════════════════════════════════════════════════
#  Outbound endpoints
# ══════════════════════════════════════════════════════════════════════

class OutputPort(abc.ABC):
    """Abstract outbound endpoint.  The VM calls write() once per OUT."""

    def __init__(self):
        self.count = 0
        self.last: Optional[int] = None

    def write(self, value: int):
        self._write(value)
        self.count += 1
        self.last = value

    @abc.abstractmethod
    def _write(self, value: int):
        ...

    def close(self):
        """Signal that no more values will follow."""
        pass

    @property
    def name(self) -> str:
        return type(self).__name__


class NullOutput(OutputPort):
    def _write(self, value: int):
        pass

    @property
    def name(self) -> str:
        return "none"


class ChannelOutput(OutputPort):
    def __init__(self, channel: Channel):
        super().__init__()
        self.channel = channel

    def _write(self, value: int):
        self.channel.send(value)

    def close(self):
        self.channel.close()

    @property
    def name(self) -> str:
        return f"channel:{self.channel.name}"


class StreamOutput(OutputPort):
    """Write one integer per line to a text stream (e.g. stdout)."""

    def __init__(self, stream: TextIO):
        super().__init__()
        self.stream = stream

    def _write(self, value: int):
        self.stream.write(f"{value}\n")
        self.stream.flush()

    @property
    def name(self) -> str:
        return "stream"


class CallbackOutput(OutputPort):
    def __init__(self, fn: Callable[[int], None]):
        super().__init__()
        self.fn = fn

    def _write(self, value: int):
        self.fn(value)

    @property
    def name(self) -> str:
        return "callback"


class ListOutput(OutputPort):
    """Collect every value written."""

    def __init__(self, values: Optional[list[int]] = None):
        super().__init__()
        self.values: list[int] = values if values is not None else []

    def _write(self, value: int):
        self.values.append(value)

    @property
    def name(self) -> str:
        return "list"


# ══════════════════════════════════════════════════════════════════════
#  Coercion
# ══════════════════════════════════════════════════════════════════════

def as_input(obj) -> InputPort:
    """Wrap *obj* as an InputPort.

    Accepts an InputPort, a Channel, a list/tuple of preset values, a
    callable strategy, or None.
    """
    if obj is None:
        return NullInput()
    if isinstance(obj, InputPort):
        return obj
    if isinstance(obj, Channel):
        return ChannelInput(obj)
    if isinstance(obj, (list, tuple)):
        ch = Channel("preset", obj)
        ch.close()
        return ChannelInput(ch)
    if callable(obj):
        return CallbackInput(obj)
    raise TypeError(f"Cannot use {type(obj).__name__} as an input port")


def as_output(obj) -> OutputPort:
    """Wrap *obj* as an OutputPort.

    Accepts an OutputPort, a Channel, a list to append to, a callable, or
    None (discard).
    """
    if obj is None:
        return NullOutput()
    if isinstance(obj, OutputPort):
        return obj
    if isinstance(obj, Channel):
        return ChannelOutput(obj)
    if isinstance(obj, list):
        return ListOutput(obj)
    if callable(obj):
        return CallbackOutput(obj)
    raise TypeError(f"Cannot use {type(obj).__name__} as an output port")
