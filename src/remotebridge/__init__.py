"""
Serial to gateway bridge for a remote controlled device.

- Transport: the serial port the device is attached to. Moves single bytes.
- DeviceServer: tracks the device state, turns state changes into single byte
  commands sent through a FIFO queue, and reads the device's feedback lines.
- GatewaySession: polls the remote gateway over HTTPS for tasks, applies them to the
  DeviceServer, and reports the device state back.
- Monitor: an optional observer that receives log lines and speed changes.

## Threading

The server runs a transmitter, a receiver and a console thread. The gateway session
runs its own polling thread. Each thread is an AsyncLoop that logs any exception
and carries on with its next iteration, so a failure in one cycle never ends a loop.

The transmitter and receiver poll at a short fixed tick rather than blocking. The
serial link is slow, and one command per tick paces the device.

Shared state is guarded by a lock per owner: the device state by the server's lock,
the command queue by its own mutex, and the session password by a read/write lock.
"""

__version__ = '1.5'
