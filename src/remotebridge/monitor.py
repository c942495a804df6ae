"""
The interface through which a monitoring front end observes the bridge.

A monitor is optional. The device server and gateway session hold only a weak
reference to it and tell it about log lines and speed changes. The monitor reads
state through the public accessors of DeviceServer and GatewaySession and changes
it through their public mutators.
"""
import logging
import threading
import weakref
from collections import deque

from remotebridge.loop import AsyncLoop

logger = logging.getLogger(__name__)

max_log_lines = 256


class LogBuffer:
    """ An append only log that keeps the most recent lines, dropping the oldest first. """

    def __init__(self, max_lines=max_log_lines):
        self._lines = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    @property
    def max_lines(self):
        return self._lines.maxlen

    def append(self, line):
        with self._lock:
            self._lines.append(str(line))

    def clear(self):
        with self._lock:
            self._lines.clear()

    def lines(self):
        with self._lock:
            return list(self._lines)

    def text(self):
        return "\n".join(self.lines())

    def __len__(self):
        with self._lock:
            return len(self._lines)


class Monitor:
    """
    Receives notifications from the device server and gateway session.
    """

    def __init__(self, log_lines=max_log_lines):
        self.device_log = LogBuffer(log_lines)
        self.gateway_log = LogBuffer(log_lines)
        self._close_requested = threading.Event()

    def log_device(self, line):
        self.device_log.append(line)

    def log_gateway(self, line):
        self.gateway_log.append(line)

    def on_target_speed(self, speed):
        """ the requested speed changed """

    def request_close(self):
        self._close_requested.set()

    @property
    def running(self):
        return not self._close_requested.is_set()


class MonitorRef:
    """
    A weak, non-owning handle on a monitor that may be absent.
    The monitor can be attached once.
    """

    def __init__(self):
        self._ref = None

    def attach(self, monitor: Monitor):
        if self._ref is not None and self._ref() is not None and self._ref() is not monitor:
            raise ValueError("a monitor is already attached")
        self._ref = weakref.ref(monitor)

    def __call__(self):
        ref = self._ref
        return ref() if ref is not None else None


class ConsoleMonitor(Monitor):
    """
    A text monitor that logs the bridge status whenever it changes. It follows the
    device state through the server's state change events while it is started.

    :param server: the DeviceServer to report on
    :param gateway: the GatewaySession to report on, may be None
    :param interval: seconds between status checks
    """

    def __init__(self, server, gateway=None, interval=0.5, log_lines=max_log_lines, log=logger):
        super().__init__(log_lines)
        self.server = server
        self.gateway = gateway
        self.logger = log
        self._last_status = None
        self._state = server.state
        self.async_loop = AsyncLoop(self.report, interval=interval, name="monitor", log=log)

    def start(self):
        self._state = self.server.state
        self.server.events.add(self.on_state_changed)
        self.async_loop.start()

    def stop(self):
        self.async_loop.stop()
        self.server.events.remove(self.on_state_changed)

    def on_state_changed(self, event):
        """ keeps the latest state published by the server """
        self._state = event.state

    def report(self):
        status = self.status_line()
        if status != self._last_status:
            self.logger.info(status)
            self._last_status = status

    def status_line(self):
        state = self._state
        line = "power=%s mode=%s speed=%d/%d %s" % (
            "on" if state.is_on else "off", state.mode.display_name,
            state.actual_speed, state.target_speed,
            "ready" if state.accepts_commands else "busy")
        if self.gateway is not None:
            session = self.gateway.session_password
            line += " session=%s" % (session if session else "<none>")
        return line

    def request_close(self):
        super().request_close()
        self.async_loop.request_stop()
