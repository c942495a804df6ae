"""
The device server: keeps track of the device state and turns state changes into
commands for the device.

Three background loops run while the server is running:

- the transmitter sends at most one queued command per tick
- the receiver assembles feedback lines from the device and updates the reported speed
- the console reads operator commands, one per line
"""
import logging
import sys
import threading
from enum import Enum

from remotebridge.command_queue import CommandQueue
from remotebridge.loop import AsyncLoop
from remotebridge.model import MAX_SPEED, DeviceState, Mode, check_speed
from remotebridge.monitor import MonitorRef
from remotebridge.protocol import Command, FeedbackLineReader, apply_feedback, decode_feedback
from remotebridge.support.events import EventSource

logger = logging.getLogger(__name__)

default_tick = 0.001


class StateChangedEvent:
    """ fired by the server after the device state changed """

    def __init__(self, server, state: DeviceState):
        self.server = server
        self.state = state


class DeviceServer:
    """
    Owns the transport, the device state and the command queue.

    State is changed through set_is_on(), set_speed() and set_mode(). Each mutator
    validates the request against the current state, queues the commands that move
    the device there and records the new state straight away, before the device
    confirms it. Only device feedback changes the actual speed.

    :param transport: the SerialTransport to the device
    :param tick: seconds the transmitter and receiver wait between iterations
    :param console: a file-like source of operator commands, None to disable the console
    """

    def __init__(self, transport, tick=default_tick, console=sys.stdin):
        self.transport = transport
        self.tick = tick
        self.console = console
        self.queue = CommandQueue()
        self.events = EventSource()
        self._state = DeviceState()
        self._lock = threading.RLock()
        self._monitor = MonitorRef()
        self._stop_requested = threading.Event()
        self._reader = FeedbackLineReader()
        self.transmitter = TransmitterLoop(self)
        self.receiver = ReceiverLoop(self)
        self.console_loop = ConsoleLoop(self) if console is not None else None

    @property
    def device_name(self):
        return self.transport.device

    def attach_monitor(self, monitor):
        self._monitor.attach(monitor)

    @property
    def monitor(self):
        return self._monitor()

    # lifecycle

    def start(self):
        logger.info("Starting device server on %s", self.device_name)
        self.transmitter.start()
        self.receiver.start()
        if self.console_loop is not None:
            self.console_loop.start()

    def request_stop(self):
        """ asks all loops to finish at their next tick """
        self._stop_requested.set()

    def shut_down(self):
        """
        Switches the device off and asks the loops to finish. Both happen under the state
        lock, so no state change can be queued after the final OFF.
        """
        with self._lock:
            switched = self._switch(False)
            self._stop_requested.set()
            state = self._state.copy()
        if switched:
            self._state_changed(state, target_changed=True)

    def stop(self, console_timeout=0.1):
        """
        Stops the loops and closes the transport. The transmitter sends any commands still
        queued before it exits. The console thread may be blocked reading input, so it is
        only waited on for console_timeout seconds.
        """
        self.request_stop()
        self.transmitter.stop()
        self.receiver.stop()
        if self.console_loop is not None:
            self.console_loop.stop(console_timeout)
        self.transport.close()

    @property
    def running(self) -> bool:
        return not self._stop_requested.is_set()

    def wait(self, timeout=None) -> bool:
        """ blocks until the server is asked to stop. Returns True if it was. """
        return self._stop_requested.wait(timeout)

    # state accessors

    @property
    def state(self) -> DeviceState:
        with self._lock:
            return self._state.copy()

    @property
    def is_on(self) -> bool:
        return self._state.is_on

    @property
    def mode(self) -> Mode:
        return self._state.mode

    @property
    def target_speed(self) -> int:
        return self._state.target_speed

    @property
    def actual_speed(self) -> int:
        return self._state.actual_speed

    @property
    def accepts_commands(self) -> bool:
        with self._lock:
            return self._state.accepts_commands

    @property
    def pending(self):
        """ the commands not yet sent, oldest first """
        return self.queue.snapshot()

    # mutators

    def set_is_on(self, is_on: bool):
        """
        Switches the device on or off. Switching on requests speed 1, switching off speed 0.
        Does nothing when the device is already in the requested state or the server is stopping.
        """
        with self._lock:
            if not self.running:
                logger.debug("Server is stopping, ignoring power change")
                return
            if not self._switch(is_on):
                return
            state = self._state.copy()
        self._state_changed(state, target_changed=True)

    def _switch(self, is_on):
        """ queues the power command and records the new power state. The caller holds the lock. """
        if self._state.is_on == is_on:
            return False
        self.queue.push(Command.ON if is_on else Command.OFF)
        self._state.is_on = is_on
        self._state.target_speed = 1 if is_on else 0
        return True

    def set_speed(self, speed: int):
        """
        Requests a new speed. The device only knows relative steps, so one LOWER or HIGHER
        command is queued per unit of difference from the current target speed.

        Requesting a speed above 0 while off switches the device on first, and the steps are
        counted from the speed requested before the call. Requesting speed 0 while on
        switches it off and queues no steps.
        Ignored once the server is stopping.

        :raises ValueError: if the speed is outside [MIN_SPEED, MAX_SPEED]
        """
        check_speed(speed)
        with self._lock:
            if not self.running:
                logger.debug("Server is stopping, ignoring speed change")
                return
            previous = self._state.target_speed
            if not self._state.is_on and speed > 0:
                self._switch(True)
            elif self._state.is_on and speed == 0:
                self._switch(False)
                speed = None
            if speed is not None:
                diff = speed - previous
                if diff > 0:
                    self.queue.push(Command.HIGHER, diff)
                elif diff < 0:
                    self.queue.push(Command.LOWER, -diff)
                self._state.target_speed = speed
            state = self._state.copy()
        self._state_changed(state, target_changed=True)

    def set_mode(self, mode: Mode):
        """
        Selects the operating mode. Ignored while the device is off or the server is stopping.
        No device command is sent, the mode is only recorded.
        """
        with self._lock:
            if not self._state.is_on or not self.running:
                return
            self._state.mode = mode
            state = self._state.copy()
        self._state_changed(state)

    def _state_changed(self, state, target_changed=False):
        monitor = self.monitor
        if target_changed and monitor is not None:
            monitor.on_target_speed(state.target_speed)
        self.events.fire(StateChangedEvent(self, state))

    # device I/O

    def transmit(self):
        """
        Sends the oldest queued command, if any. A command that fails to send is dropped.
        :return: the command taken from the queue, or None
        """
        command = self.queue.pop()
        if command is not None:
            self._send(command)
        return command

    def drain(self):
        """
        Sends every queued command.
        :return: the commands sent, oldest first
        """
        commands = self.queue.drain()
        for command in commands:
            self._send(command)
        return commands

    def _send(self, command):
        if not self.transport.write(command.token):
            logger.warning("Dropped packet while sending, ignoring")
        self._log_device("[Host -> %s] %s" % (self.device_name, command))

    def receive(self):
        """
        Reads the bytes available from the device and handles a completed feedback line.
        :return: the line handled, or None if no line was completed
        """
        line = self._reader.read_line(self.transport.try_read)
        if not line:
            return None
        self.handle_feedback(line)
        self._log_device("[%s -> Host] %s" % (self.device_name, line))
        return line

    def handle_feedback(self, line):
        """ updates the actual speed from a feedback line. Unrecognized lines are ignored. """
        feedback = decode_feedback(line)
        if feedback is None:
            return
        with self._lock:
            self._state.actual_speed = apply_feedback(feedback, self._state.actual_speed)
            state = self._state.copy()
        self._state_changed(state)

    def _log_device(self, message):
        logger.debug(message)
        monitor = self.monitor
        if monitor is not None:
            monitor.log_device(message)


class ServerLoop(AsyncLoop):
    """ a loop that runs at the server tick for as long as the server is running """

    def __init__(self, server: DeviceServer, name, interval=None):
        super().__init__(interval=server.tick if interval is None else interval, name=name)
        self.server = server

    def running(self):
        return super().running() and self.server.running


class TransmitterLoop(ServerLoop):

    def __init__(self, server):
        super().__init__(server, "serial-tx")

    def startup(self):
        self.logger.info("Starting serial TX thread")

    def loop(self):
        self.server.transmit()

    def shutdown(self):
        self.server.drain()


class ReceiverLoop(ServerLoop):

    def __init__(self, server):
        super().__init__(server, "serial-rx")

    def startup(self):
        self.logger.info("Starting serial RX thread")

    def loop(self):
        self.server.receive()


class ConsoleLoop(ServerLoop):
    """ reads operator commands from the server console, one per line, until the input ends """

    def __init__(self, server):
        super().__init__(server, "console", interval=0)

    def startup(self):
        self.logger.info("Starting command thread")

    def loop(self):
        line = self.server.console.readline()
        if not line:
            self.request_stop()
            return
        run_command_line(self.server, line)


class ConsoleCommand(Enum):
    HELP = 'help'
    EXIT = 'exit'
    POWER = 'power'
    MODE = 'mode'
    LOWER = 'lower'
    HIGHER = 'higher'


def run_command_line(server: DeviceServer, line: str):
    """
    Parses and runs one line of operator input.
    :return: the ConsoleCommand run, or None if the line was empty or not a command
    """
    name = line.strip()
    if not name:
        return None
    try:
        command = ConsoleCommand(name)
    except ValueError:
        logger.info("Unrecognized command, try help")
        return None
    dispatch(server, command)
    return command


def dispatch(server: DeviceServer, command: ConsoleCommand):
    """ runs an operator command against the server """
    if command is ConsoleCommand.HELP:
        for c in ConsoleCommand:
            logger.info(c.value)

    elif command is ConsoleCommand.EXIT:
        logger.info("Shutting down gracefully")
        server.shut_down()
        monitor = server.monitor
        if monitor is not None and monitor.running:
            monitor.request_close()

    elif command is ConsoleCommand.POWER:
        logger.info("Requesting change of power status")
        server.set_is_on(not server.is_on)

    elif command is ConsoleCommand.MODE:
        if not server.is_on:
            logger.info("This command only works if the machine is on")
            return
        logger.info("Requesting change of mode")
        server.set_mode(Mode.DEFAULT)

    elif command is ConsoleCommand.LOWER:
        speed = server.target_speed
        if not server.is_on or speed == 0:
            logger.info("This command only works if the machine is on and if the speed is > 0")
            return
        logger.info("Requesting change of speed")
        server.set_speed(speed - 1)

    elif command is ConsoleCommand.HIGHER:
        speed = server.target_speed
        if not server.is_on or speed == MAX_SPEED:
            logger.info("This command only works if the machine is on and the speed is < %d", MAX_SPEED)
            return
        logger.info("Requesting change of speed")
        server.set_speed(speed + 1)
