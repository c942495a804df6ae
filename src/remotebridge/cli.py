"""
Command line entry point: parses options, sets up logging and runs the bridge
until the operator exits.
"""
import argparse
import logging
import sys

from configobj import ConfigObjError

from remotebridge import __version__
from remotebridge.config.config import BridgeSettings, load_config
from remotebridge.gateway import GatewaySession, ReauthPolicy
from remotebridge.monitor import ConsoleMonitor
from remotebridge.server import ConsoleCommand, DeviceServer, dispatch
from remotebridge.transport import SerialTransport, TransportError

logger = logging.getLogger(__name__)

log_format = '[%(asctime)s] [%(name)s] [%(levelname)s] [thread %(threadName)s] %(message)s'
log_date_format = '%H:%M:%S'


def argument_parser():
    parser = argparse.ArgumentParser(prog='remote-bridge', description='Serial to HTTPS gateway bridge server')
    parser.add_argument('-d', '--device', help='the serial device to connect to')
    parser.add_argument('-r', '--rate', type=int, help='the serial IO baud rate (default 19200)')
    parser.add_argument('-a', '--address', help='the address of the HTTPS gateway to connect to')
    parser.add_argument('-p', '--port', type=int, help='the port of the HTTPS gateway (default 443)')
    parser.add_argument('-u', '--updaterate', dest='update_rate', type=int,
                        help='the gateway fetch rate in milliseconds (default 500)')
    parser.add_argument('-c', '--certificate', help='the X509 certificate used to verify the gateway '
                                                    '(default ./certificate.crt)')
    parser.add_argument('-P', '--password', help='the password used to authenticate against the gateway')
    parser.add_argument('-m', '--monitor', action='store_const', const=True, help='log the device status as it changes')
    parser.add_argument('-V', '--verbose', action='store_true', help='enable verbose logging')
    parser.add_argument('-v', '--version', action='version', version='%(prog)s ' + __version__)
    parser.add_argument('--config', help='a configuration file to load after the default files')
    return parser


def configure_logging(verbose=False, stream=None):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=log_format,
                        datefmt=log_date_format, stream=stream or sys.stderr)
    if verbose:
        logger.debug("Verbose logging enabled")


def load_settings(args) -> BridgeSettings:
    """
    Loads the configuration files and applies the command line options on top.
    :raises ConfigObjError: when the configuration is invalid
    :raises IOError: when the file named by --config cannot be read
    """
    settings = BridgeSettings.from_config(load_config(local_file=args.config))
    return settings.override(device=args.device, rate=args.rate, address=args.address, port=args.port,
                             update_rate=args.update_rate, certificate=args.certificate,
                             password=args.password, monitor=args.monitor)


class Bridge:
    """
    Wires together the device server, the gateway session and the optional monitor.
    """

    def __init__(self, settings: BridgeSettings, console=sys.stdin, transport_factory=SerialTransport):
        self.settings = settings
        transport = transport_factory(settings.device, settings.rate)
        self.server = DeviceServer(transport, settings.tick, console)
        self.gateway = None
        if settings.address:
            self.gateway = GatewaySession(self.server, settings.address, settings.port, settings.update_rate,
                                          settings.certificate, settings.password,
                                          verify_certificate=settings.verify_certificate,
                                          timeout=settings.timeout,
                                          reauth=ReauthPolicy(settings.reauth_after, settings.reauth_period))
        self.monitor = None
        if settings.monitor:
            self.monitor = ConsoleMonitor(self.server, self.gateway, settings.update_rate / 1000.0,
                                          settings.log_lines)
            self.server.attach_monitor(self.monitor)
            if self.gateway is not None:
                self.gateway.attach_monitor(self.monitor)

    def start(self):
        self.server.start()
        if self.gateway is not None:
            self.gateway.start()
        if self.monitor is not None:
            self.monitor.start()

    def run(self, poll=0.25):
        """ runs until the server is asked to stop, by the exit command or an interrupt """
        self.start()
        try:
            while not self.server.wait(poll):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
            dispatch(self.server, ConsoleCommand.EXIT)
        finally:
            self.stop()

    def stop(self):
        if self.monitor is not None:
            self.monitor.stop()
        if self.gateway is not None:
            self.gateway.stop()
        self.server.stop()


def main(argv=None, console=sys.stdin, transport_factory=SerialTransport):
    args = argument_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = load_settings(args)
    except (ConfigObjError, IOError) as e:
        logger.error("Malformed configuration: %s", e)
        return 1

    missing = settings.missing()
    if missing:
        logger.error("Missing required options: %s", ", ".join(missing))
        return 1

    try:
        bridge = Bridge(settings, console, transport_factory)
    except TransportError:
        return 1
    bridge.run()
    return 0
