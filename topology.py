"""
Intcode Topologies
==================
Wires together:
  - N Intcode VMs (intcode.py), each on its own worker thread
  - Channels between their ports (ports.py)

Three shapes recur:
  Pipeline        amplifier chain: stage i's output feeds stage i+1
  FeedbackRing    a pipeline whose last stage feeds the first again
  Network         addressed nodes exchanging (dest, x, y) packets through
                  a dispatcher, plus a NAT monitor that restarts the
                  network whenever it goes quiet

Each VM stays single-threaded; the only state shared between workers is
the queues.  A worker always closes its outbound port when its VM stops,
so whoever reads from it sees end-of-stream instead of hanging.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from intcode import Intcode, IntcodeError, ChannelClosed, ISA_EXTENDED
from ports import (
    Channel, ChannelOutput, InputPort, Selector, EMPTY_VALUE,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

NAT_ADDRESS   = 255
NETWORK_SIZE  = 50
IDLE_POLLS    = 2      # empty polls answered at once before a node parks
PARK_TIMEOUT  = 0.01   # longest a parked node sleeps before polling again


class TopologyError(IntcodeError):
    """A topology could not produce its result."""
    pass


# ---------------------------------------------------------------------------
#  Node: one VM on one worker thread
# ---------------------------------------------------------------------------

class Node:
    """Runs a VM on a daemon thread and records how it ended."""

    def __init__(self, vm: Intcode,
                 on_exit: Optional[Callable[[], None]] = None):
        self.vm = vm
        self.error: Optional[Exception] = None
        self.finished = threading.Event()
        self.on_exit = on_exit
        self._thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return self.vm.name

    def start(self):
        self._thread = threading.Thread(
            target=self._worker, daemon=True, name=f"intcode-{self.name}"
        )
        self._thread.start()

    def _worker(self):
        try:
            self.vm.run()
        except ChannelClosed as e:
            self.error = e
            log.debug("%s: end of stream (%s)", self.name, e)
        except Exception as e:
            self.error = e
            log.warning("%s stopped: %s", self.name, e)
        finally:
            self.vm.output.close()
            self.finished.set()
            if self.on_exit:
                self.on_exit()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker.  Returns True if it has finished."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self.finished.is_set()

    @property
    def alive(self) -> bool:
        return self._thread is not None and not self.finished.is_set()

    @property
    def fatal(self) -> Optional[Exception]:
        """The error that stopped this node, unless it was end-of-stream."""
        if isinstance(self.error, ChannelClosed):
            return None
        return self.error


def _join_all(nodes: list[Node], timeout: Optional[float]):
    stuck = [n.name for n in nodes if not n.join(timeout)]
    if stuck:
        raise TopologyError(f"Workers still running: {', '.join(stuck)}")


# ---------------------------------------------------------------------------
#  Pipeline / FeedbackRing
# ---------------------------------------------------------------------------

class Pipeline:
    """Amplifier chain: stage i writes to stage i+1's inbound channel.

    Every stage's inbound channel is seeded with its phase setting; the
    first stage also receives the initial signal.  The result is the last
    value written by the final stage.  A Pipeline runs once.
    """

    feedback = False

    def __init__(self, program, phases, isa: int = ISA_EXTENDED,
                 join_timeout: Optional[float] = None):
        if not phases:
            raise ValueError("A pipeline needs at least one stage")
        self.phases = list(phases)
        self.join_timeout = join_timeout

        self.inbound = [Channel(f"amp{i}.in", (phase,))
                        for i, phase in enumerate(self.phases)]
        if self.feedback:
            outbound = self.inbound[1:] + self.inbound[:1]
            self.sink = None
        else:
            self.sink = Channel("pipeline.out")
            outbound = self.inbound[1:] + [self.sink]

        self.nodes = [
            Node(Intcode(program, self.inbound[i], outbound[i], isa=isa,
                         name=f"amp{i}"))
            for i in range(len(self.phases))
        ]

    @property
    def head(self) -> Channel:
        return self.inbound[0]

    @property
    def outputs(self) -> list[int]:
        """Values left unread on the pipeline's sink."""
        return self.sink.drain() if self.sink is not None else []

    def run(self, signal: int = 0) -> int:
        self.head.send(signal)
        for node in self.nodes:
            node.start()
        _join_all(self.nodes, self.join_timeout)

        for node in self.nodes:
            if node.fatal is not None:
                raise node.fatal
        tail = self.nodes[-1].vm.output
        if tail.count == 0:
            raise TopologyError(f"{self.nodes[-1].name} produced no output")
        return tail.last


class FeedbackRing(Pipeline):
    """Pipeline whose last stage feeds the first.

    Runs until every stage halts; the result is the last value sent back
    to the first stage.
    """

    feedback = True


def max_signal(program, phases, feedback: bool = False, signal: int = 0,
               isa: int = ISA_EXTENDED,
               join_timeout: Optional[float] = None) -> tuple[int, list[int]]:
    """Try every ordering of *phases*; return (best signal, its ordering)."""
    cls = FeedbackRing if feedback else Pipeline
    best, best_order = None, None
    for order in itertools.permutations(phases):
        result = cls(program, order, isa=isa,
                     join_timeout=join_timeout).run(signal)
        if best is None or result > best:
            best, best_order = result, order
    if best is None:
        raise ValueError("No phase settings given")
    return best, list(best_order)


# ---------------------------------------------------------------------------
#  Network
# ---------------------------------------------------------------------------

@dataclass
class Packet:
    source: int
    dest: int
    x: int
    y: int


@dataclass
class NetworkResult:
    first_nat_y: Optional[int] = None      # y of the first packet to the NAT
    repeated_nat_y: Optional[int] = None   # first y the NAT sent twice running
    packets: int = 0
    rebroadcasts: int = 0
    dropped: int = 0
    timed_out: bool = False
    errors: dict = field(default_factory=dict)   # address -> exception


class NodeInput(InputPort):
    """Polling inbound port backed by the network's queue for one node."""

    def __init__(self, network: "Network", address: int):
        super().__init__()
        self.network = network
        self.address = address

    def read(self) -> int:
        return self.network._poll(self.address)

    @property
    def name(self) -> str:
        return f"nic:{self.address}"


class NodeOutput(ChannelOutput):
    """Outbound port that also marks its node busy."""

    def __init__(self, network: "Network", address: int, channel: Channel):
        super().__init__(channel)
        self.network = network
        self.address = address

    def _write(self, value: int):
        self.network._touch(self.address)
        super()._write(value)


class Network:
    """Addressed nodes, a dispatcher, and a NAT monitor.

    Each node's inbound queue starts with its own address.  Nodes poll
    (an empty queue reads as -1) and emit packets as three consecutive
    outputs: destination, x, y.  The dispatcher waits on every node's
    output channel at once and routes each packet to its destination's
    queue, or to the NAT when addressed to ``nat_address``.

    After ``idle_polls`` empty polls in a row a node parks inside its
    next poll until a delivery arrives or ``park_timeout`` passes.  The
    network is idle only while no packet is in flight, every live
    node's queue is empty and every live node is parked.  Idleness wakes
    the NAT, which resends its last packet to address 0.  The run ends
    the first time the NAT would send the same y twice in a row, or when
    every node has stopped.  An idle network whose NAT has nothing to
    send keeps waiting for traffic; pass *timeout* to ``run()`` to bound
    that.
    """

    def __init__(self, program, size: int = NETWORK_SIZE,
                 nat_address: int = NAT_ADDRESS,
                 idle_polls: int = IDLE_POLLS,
                 isa: int = ISA_EXTENDED,
                 park_timeout: float = PARK_TIMEOUT,
                 join_timeout: Optional[float] = 1.0):
        if size < 1:
            raise ValueError("A network needs at least one node")
        if idle_polls < 1:
            raise ValueError("idle_polls must be at least 1")
        if 0 <= nat_address < size:
            raise ValueError(f"NAT address {nat_address} collides with a node")
        self.size = size
        self.nat_address = nat_address
        self.idle_polls = idle_polls
        self.park_timeout = park_timeout
        self.join_timeout = join_timeout

        # One lock guards the state below; the dispatcher waits on
        # selector.cond, each parked node on its own condition.
        mutex = threading.RLock()
        self.selector = Selector(lock=mutex)
        self._lock = self.selector.cond
        self._wakeup = [threading.Condition(mutex) for _ in range(size)]
        self._inbox = [deque((addr,)) for addr in range(size)]
        self._idle = [0] * size
        self._parked: set[int] = set()
        self._shutdown = False

        self.nat: Optional[Packet] = None
        self._last_nat_y: Optional[int] = None
        self._stalled = False
        self._done = False
        self.result = NetworkResult()

        self.nodes: list[Node] = []
        for addr in range(size):
            ch = Channel(f"node{addr}.out")
            self.selector.add(ch)
            vm = Intcode(program, NodeInput(self, addr),
                         NodeOutput(self, addr, ch), isa=isa,
                         name=f"node{addr}")
            self.nodes.append(Node(vm, on_exit=self.selector.notify))

    # -- Node side (called from worker threads) --

    def _poll(self, addr: int) -> int:
        with self._lock:
            if self._shutdown:
                raise ChannelClosed("network shut down")
            queue = self._inbox[addr]
            if not queue:
                self._idle[addr] += 1
                if self._idle[addr] <= self.idle_polls:
                    return EMPTY_VALUE
                self._park(addr, queue)
                if self._shutdown:
                    raise ChannelClosed("network shut down")
                if not queue:
                    return EMPTY_VALUE
            self._idle[addr] = 0
            return queue.popleft()

    def _park(self, addr: int, queue: deque):
        """Sleep until a delivery, shutdown, or the park timeout.

        Called with the lock held.  The node counts as parked only while
        it is in here.
        """
        deadline = time.monotonic() + self.park_timeout
        self._parked.add(addr)
        self._lock.notify_all()
        try:
            while not queue and not self._shutdown:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._wakeup[addr].wait(remaining)
        finally:
            self._parked.discard(addr)

    def _touch(self, addr: int):
        with self._lock:
            self._idle[addr] = 0

    # -- Dispatcher side --

    def _live(self) -> list[int]:
        return [a for a, n in enumerate(self.nodes)
                if not n.finished.is_set()]

    def _stopped(self) -> bool:
        return not self._live()

    def _quiescent(self) -> bool:
        """Called with the lock held."""
        live = self._live()
        if not live:
            return True
        if any(self._inbox[a] for a in live):
            return False
        if any(ch.ready() for ch in self.selector.channels):
            return False
        return all(a in self._parked for a in live)

    def _deliver(self, dest: int, x: int, y: int):
        """Queue x and y for *dest* in one step.  Called with the lock held."""
        if self.nodes[dest].finished.is_set():
            log.debug("dropping packet for stopped node%d", dest)
            self.result.dropped += 1
            return
        self._inbox[dest].extend((x, y))
        self._wakeup[dest].notify_all()

    def _route_from(self, index: int):
        ch = self.selector.channels[index]
        try:
            dest = ch.recv()
            x = ch.recv()
            y = ch.recv()
        except ChannelClosed:
            log.warning("node%d stopped mid-packet; discarding it", index)
            self.result.dropped += 1
            return

        packet = Packet(index, dest, x, y)
        self.result.packets += 1
        if dest == self.nat_address:
            if self.result.first_nat_y is None:
                self.result.first_nat_y = y
                log.info("first packet to NAT: x=%d y=%d", x, y)
            self.nat = packet
        elif 0 <= dest < self.size:
            with self._lock:
                self._deliver(dest, x, y)
        else:
            log.warning("dropping packet from node%d to unknown address %d",
                        index, dest)
            self.result.dropped += 1

    def _wake(self):
        """Network looks idle: let the NAT restart it, or finish."""
        with self._lock:
            if not self._quiescent():
                return
            if not self._live():
                log.info("every node has stopped")
                self._done = True
                return
            if self.nat is None:
                if not self._stalled:
                    log.debug("network idle before any packet reached the NAT")
                self._stalled = True
                return
            y = self.nat.y
            if self._last_nat_y == y:
                self.result.repeated_nat_y = y
                self._done = True
                return
            self._last_nat_y = y
            self.result.rebroadcasts += 1
            log.debug("NAT rebroadcast x=%d y=%d", self.nat.x, y)
            self._deliver(0, self.nat.x, y)

    def run(self, timeout: Optional[float] = None) -> NetworkResult:
        """Run until the NAT repeats itself or every node stops.

        With *timeout*, give up after that many seconds and set
        ``result.timed_out``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for node in self.nodes:
            node.start()
        try:
            while not self._done:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        log.warning("network run timed out after %.2fs",
                                    timeout)
                        self.result.timed_out = True
                        break
                # Stalled: nothing changes until traffic or node exits.
                until = self._stopped if self._stalled else self._quiescent
                index = self.selector.wait(remaining, until=until)
                if index is not None:
                    self._stalled = False
                    self._route_from(index)
                else:
                    self._wake()
        finally:
            self.shutdown()
        return self.result

    def shutdown(self):
        with self._lock:
            self._shutdown = True
            self._lock.notify_all()
            for cond in self._wakeup:
                cond.notify_all()
        for addr, node in enumerate(self.nodes):
            if not node.join(self.join_timeout):
                log.warning("%s did not stop", node.name)
            elif node.fatal is not None:
                self.result.errors[addr] = node.fatal
        self.selector.close()
