"""
Values shared between the device server, the gateway session and monitors.
"""
from enum import Enum

from remotebridge.support.mixins import CommonEqualityMixin, StringerMixin

MIN_SPEED = 0
MAX_SPEED = 32


class Mode(Enum):
    DEFAULT = 'default'

    @property
    def display_name(self):
        return self.name.capitalize()

    @classmethod
    def parse(cls, value):
        """
        Resolves a mode from its wire name or ordinal.

        >>> Mode.parse('default')
        <Mode.DEFAULT: 'default'>
        >>> Mode.parse(0)
        <Mode.DEFAULT: 'default'>
        """
        if isinstance(value, bool):
            raise ValueError("not a mode: %r" % value)
        if isinstance(value, int):
            modes = list(cls)
            if 0 <= value < len(modes):
                return modes[value]
            raise ValueError("no mode with ordinal %d" % value)
        if isinstance(value, str):
            return cls(value.lower())
        raise ValueError("not a mode: %r" % (value,))


def check_speed(speed):
    if isinstance(speed, bool) or not isinstance(speed, int):
        raise ValueError("speed must be an integer, not %r" % (speed,))
    if not MIN_SPEED <= speed <= MAX_SPEED:
        raise ValueError("speed %d outside [%d, %d]" % (speed, MIN_SPEED, MAX_SPEED))
    return speed


class DeviceState(CommonEqualityMixin, StringerMixin):
    """ A point in time copy of the device state. """

    def __init__(self, is_on=False, mode=Mode.DEFAULT, target_speed=0, actual_speed=0):
        self.is_on = is_on
        self.mode = mode
        self.target_speed = target_speed
        self.actual_speed = actual_speed

    @property
    def accepts_commands(self) -> bool:
        """ the device is busy while the reported speed has not caught up with the requested speed """
        return self.actual_speed == self.target_speed

    def copy(self):
        return DeviceState(self.is_on, self.mode, self.target_speed, self.actual_speed)

    def to_json(self):
        return {
            'is_on': self.is_on,
            'accepts_commands': self.accepts_commands,
            'target_speed': self.target_speed,
            'actual_speed': self.actual_speed,
            'mode': self.mode.value,
        }


class TaskDecodeError(ValueError):
    """ A task received from the gateway could not be understood. """


class Task(CommonEqualityMixin, StringerMixin):
    """ A remote instruction fetched from the gateway. """
    type_name = None

    def apply(self, server):
        raise NotImplementedError

    @classmethod
    def from_json(cls, obj):
        raise NotImplementedError


class PowerTask(Task):
    type_name = 'power'

    def __init__(self, is_on: bool):
        self.is_on = is_on

    def apply(self, server):
        server.set_is_on(self.is_on)

    @classmethod
    def from_json(cls, obj):
        is_on = _field(obj, 'is_on')
        if not isinstance(is_on, bool):
            raise TaskDecodeError("is_on must be a boolean, not %r" % (is_on,))
        return cls(is_on)


class SpeedTask(Task):
    type_name = 'speed'

    def __init__(self, speed: int):
        self.speed = speed

    def apply(self, server):
        server.set_speed(self.speed)

    @classmethod
    def from_json(cls, obj):
        try:
            return cls(check_speed(_field(obj, 'speed')))
        except TaskDecodeError:
            raise
        except ValueError as e:
            raise TaskDecodeError(str(e)) from e


class ModeTask(Task):
    type_name = 'mode'

    def __init__(self, mode: Mode):
        self.mode = mode

    def apply(self, server):
        server.set_mode(self.mode)

    @classmethod
    def from_json(cls, obj):
        try:
            return cls(Mode.parse(_field(obj, 'mode')))
        except TaskDecodeError:
            raise
        except ValueError as e:
            raise TaskDecodeError(str(e)) from e


task_types = {t.type_name: t for t in (PowerTask, SpeedTask, ModeTask)}


def _field(obj, name):
    try:
        return obj[name]
    except KeyError:
        raise TaskDecodeError("task is missing field '%s'" % name) from None


def decode_task(obj) -> Task:
    """
    Decodes one element of the task list returned by the gateway.

    >>> decode_task({'type': 'speed', 'speed': 5}).speed
    5

    :raises TaskDecodeError: when the element is not a task object, the type is unknown
        or a field is missing or invalid.
    """
    if not isinstance(obj, dict):
        raise TaskDecodeError("task must be an object, not %r" % (obj,))
    name = _field(obj, 'type')
    task_type = task_types.get(name) if isinstance(name, str) else None
    if task_type is None:
        raise TaskDecodeError("unknown task type %r" % (name,))
    return task_type.from_json(obj)
