import threading
from collections import deque

from remotebridge.protocol import Command


class CommandQueue:
    """
    Pending commands for the device, transmitted in the order they were queued.

    The queue is unbounded. Relative speed steps only add up to the requested speed
    when they are sent in order, so commands are never reordered.
    """

    def __init__(self):
        self._commands = deque()
        self._lock = threading.Lock()

    def push(self, command: Command, count=1):
        """ appends count copies of the command """
        with self._lock:
            self._commands.extend([command] * count)

    def pop(self):
        """
        :return: the oldest command, or None when the queue is empty
        """
        with self._lock:
            return self._commands.popleft() if self._commands else None

    def drain(self):
        """ removes and returns all pending commands """
        with self._lock:
            commands = list(self._commands)
            self._commands.clear()
        return commands

    def snapshot(self):
        with self._lock:
            return list(self._commands)

    def __len__(self):
        with self._lock:
            return len(self._commands)

    def __bool__(self):
        return len(self) > 0
