"""
The gateway session: polls the remote gateway for tasks, applies them to the device
server and reports the device state back.

Every request is a JSON POST carrying the gateway password and a millisecond timestamp.
The gateway answers /newsession with a session password that operators use to reach
the device. That credential can be replaced at any time with reset_session().
"""
import logging
import os
import time

import requests

from remotebridge.loop import AsyncLoop
from remotebridge.model import TaskDecodeError, decode_task
from remotebridge.monitor import MonitorRef
from remotebridge.support.locks import ReadWriteLock

logger = logging.getLogger(__name__)

default_headers = {
    'Cache-Control': 'private,max-age=0',
    'Content-Type': 'application/json',
}

auth_failure_codes = (401, 403)


class SessionError(Exception):
    """ The gateway did not issue a session. """


def timestamp():
    """ the current time in milliseconds since the epoch """
    return int(time.time() * 1000)


def error_message(response):
    """
    Extracts the 'error' field from a gateway error response.
    :raises ValueError: when the body is not JSON or carries no error field
    """
    body = response.json()
    if not isinstance(body, dict) or 'error' not in body:
        raise ValueError("Could not decode gateway error")
    return body['error']


def check_status(response, action="fetch session data") -> bool:
    """
    Determines if a gateway request succeeded. Failures are logged, never raised.
    :param response: the requests.Response, or None if no response was received
    :return: True only for HTTP 200
    """
    if response is None:
        logger.error("Could not %s: invalid response", action)
        return False
    status = response.status_code
    if status == 200:
        return True
    try:
        logger.error("Could not %s: code %d/%s", action, status, error_message(response))
    except ValueError as e:
        logger.error("Could not %s: code %d/%s", action, status, e)
    return False


class ReauthPolicy:
    """
    Decides when repeated authentication failures should replace the session.

    :param threshold: consecutive failures that trigger a reset, 0 to never reset
    :param period: the least number of seconds between resets
    """

    def __init__(self, threshold=3, period=60, clock=time.monotonic):
        self.threshold = threshold
        self.period = period
        self.clock = clock
        self.failures = 0
        self.last_reset = None

    def success(self):
        self.failures = 0

    def failure(self) -> bool:
        """
        Records an authentication failure.
        :return: True if the session should be reset now
        """
        self.failures += 1
        if not self.threshold or self.failures < self.threshold:
            return False
        now = self.clock()
        if self.last_reset is not None and now - self.last_reset < self.period:
            return False
        self.last_reset = now
        self.failures = 0
        return True


class GatewaySession:
    """
    A session with the remote gateway for one device server.

    :param server: the DeviceServer that tasks are applied to
    :param address: the gateway host name
    :param port: the gateway HTTPS port
    :param update_rate: milliseconds between polls
    :param certificate: path of the CA certificate used to verify the gateway
    :param password: the long lived gateway password
    :param verify_certificate: False to skip verifying the gateway certificate
    :param timeout: (connect, read) timeout in seconds for each request
    :param reauth: the ReauthPolicy applied to authentication failures
    :param http: the requests.Session to use
    """

    def __init__(self, server, address, port=443, update_rate=500, certificate='./certificate.crt', password='',
                 verify_certificate=True, timeout=(5, 10), reauth=None, http=None):
        self.server = server
        self.address = address
        self.port = port
        self.update_rate = update_rate
        self.certificate = certificate
        self.timeout = timeout
        self.reauth = reauth if reauth is not None else ReauthPolicy()
        self._password = password
        self._session_password = ''
        self._session_lock = ReadWriteLock()
        self._monitor = MonitorRef()
        self.http = http if http is not None else requests.Session()
        self.http.headers.update(default_headers)
        self.http.verify = self._verify_setting(verify_certificate)
        self.async_loop = GatewayLoop(self)

    def _verify_setting(self, verify_certificate):
        if not verify_certificate:
            return False
        if self.certificate and os.path.exists(self.certificate):
            return self.certificate
        logger.warning("Certificate %s not found, verifying against the system certificates", self.certificate)
        return True

    @property
    def base_url(self):
        return "https://%s:%d" % (self.address, self.port)

    def attach_monitor(self, monitor):
        self._monitor.attach(monitor)

    @property
    def monitor(self):
        return self._monitor()

    @property
    def session_password(self) -> str:
        with self._session_lock.read_locked():
            return self._session_password

    @property
    def running(self) -> bool:
        return self.async_loop.running()

    def start(self):
        self.async_loop.start()

    def stop(self):
        self.async_loop.stop()

    def _log_gateway(self, message, *args):
        logger.info(message, *args)
        monitor = self.monitor
        if monitor is not None:
            monitor.log_gateway(message % args)

    # requests

    def post(self, path, **fields):
        """
        Posts a JSON body with the password, timestamp and the given fields.
        :return: the requests.Response, or None if the request failed
        """
        body = {'password': self._password, 'timestamp': timestamp()}
        body.update(fields)
        try:
            return self.http.post(self.base_url + path, json=body, timeout=self.timeout)
        except (requests.RequestException, OSError) as e:
            logger.error("Request to %s%s failed: %s", self.base_url, path, e)
            return None

    def broadcast_is_online(self, is_online: bool) -> bool:
        return check_status(self.post('/setonline', is_online=is_online), "set online status")

    def broadcast_state(self) -> bool:
        state = self.server.state
        return check_status(self.post('/setstate', state=state.to_json()), "report state")

    def create_session(self) -> bool:
        """
        Asks the gateway for a new session password and stores it.
        :return: True if a session was created
        """
        response = self.post('/newsession')
        if not check_status(response, "create session"):
            logger.warning("Received invalid new session response")
            return False
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not isinstance(body.get('password'), str):
            logger.warning("Received invalid new session response")
            return False
        with self._session_lock.write_locked():
            self._session_password = body['password']
        self._log_gateway("Created session password: %s", body['password'])
        return True

    def reset_session(self) -> bool:
        """
        Discards the session password and asks the gateway for a new one.
        Readers see either no password or the new one, never the old one.
        :return: True if a new session was created
        """
        with self._session_lock.write_locked():
            self._session_password = ''
        self._log_gateway("Session reset requested")
        self.broadcast_is_online(False)
        self.broadcast_is_online(True)
        return self.create_session()

    # polling

    def fetch_tasks(self):
        """
        Fetches the pending task list from the gateway.
        :return: the list of raw task objects, or None if the fetch failed
        """
        response = self.post('/fetch')
        if not check_status(response, "fetch tasks"):
            if response is not None and response.status_code in auth_failure_codes:
                self._authentication_failed()
            return None
        self.reauth.success()
        try:
            body = response.json()
        except ValueError:
            logger.warning("Malformed response body")
            return None
        if not isinstance(body, dict) or 'tasks' not in body:
            logger.warning("Malformed response body")
            return None
        tasks = body['tasks']
        if not isinstance(tasks, list):
            logger.warning("Tasks list must be an array")
            return None
        if tasks:
            self._log_gateway("Fetched %d tasks from endpoint", len(tasks))
        return tasks

    def _authentication_failed(self):
        if self.reauth.failure():
            logger.warning("Gateway keeps rejecting our credentials, resetting session")
            self.reset_session()

    def apply_tasks(self, tasks):
        """
        Applies each task to the device server in order. Tasks that cannot be decoded are skipped.
        :return: the number of tasks applied
        """
        applied = 0
        for obj in tasks:
            try:
                task = decode_task(obj)
            except TaskDecodeError as e:
                logger.warning("Ignoring malformed task %r: %s", obj, e)
                continue
            logger.debug("Applying %s", task)
            task.apply(self.server)
            applied += 1
        return applied

    def poll(self) -> bool:
        """
        Runs one fetch, apply and report cycle.
        :return: True if tasks were fetched
        """
        tasks = self.fetch_tasks()
        if tasks is None:
            return False
        self.apply_tasks(tasks)
        self.broadcast_state()
        return True


class GatewayLoop(AsyncLoop):
    """
    Runs a gateway session on a background thread.

    On start the session announces the device online and creates a session. If no
    session can be created the loop ends. Otherwise it polls every update_rate
    milliseconds and announces the device offline when stopped.
    """

    def __init__(self, gateway: GatewaySession):
        super().__init__(interval=gateway.update_rate / 1000.0, name="gateway")
        self.gateway = gateway
        self.online = False

    def startup(self):
        gateway = self.gateway
        self.logger.info("Starting gateway client")
        self.logger.info("Connecting to %s:%d", gateway.address, gateway.port)
        gateway.broadcast_is_online(True)
        self.online = True
        if not gateway.create_session():
            self.request_stop()
            raise SessionError("could not create a session with %s" % gateway.base_url)

    def loop(self):
        self.gateway.poll()

    def shutdown(self):
        if self.online:
            self.gateway.broadcast_is_online(False)
            self.online = False
