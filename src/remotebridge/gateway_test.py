import threading
import time
import unittest
from unittest.mock import Mock, patch

import requests
import timeout_decorator
from hamcrest import assert_that, contains_exactly, has_entries, has_item, is_, is_not

from remotebridge.gateway import GatewaySession, ReauthPolicy, check_status, timestamp
from remotebridge.model import Mode
from remotebridge.monitor import Monitor
from remotebridge.protocol import Command
from remotebridge.server import ConsoleCommand, DeviceServer, dispatch
from remotebridge.server_test import FakeTransport


def response(status=200, body=None, invalid_json=False):
    r = Mock()
    r.status_code = status
    if invalid_json:
        r.json.side_effect = ValueError("not json")
    else:
        r.json.return_value = body
    return r


class FakeGateway:
    """ routes posted paths to canned responses and records the posted bodies """

    def __init__(self):
        self.routes = {
            '/setonline': response(200, {}),
            '/newsession': response(200, {'password': 'abc123'}),
            '/fetch': response(200, {'tasks': []}),
            '/setstate': response(200, {}),
        }
        self.posts = []
        self.headers = {}
        self.verify = None
        self.lock = threading.Lock()

    def post(self, url, json=None, timeout=None):
        path = url[url.index('/', len('https://')):]
        with self.lock:
            self.posts.append((path, json))
            result = self.routes[path]
        if isinstance(result, Exception):
            raise result
        if isinstance(result, list):
            return result.pop(0) if len(result) > 1 else result[0]
        return result

    def paths(self):
        with self.lock:
            return [p for p, _ in self.posts]

    def bodies(self, path):
        with self.lock:
            return [b for p, b in self.posts if p == path]


class CheckStatusTest(unittest.TestCase):

    def test_ok(self):
        assert_that(check_status(response(200)), is_(True))

    def test_no_response(self):
        assert_that(check_status(None), is_(False))

    def test_error_with_message(self):
        with patch('remotebridge.gateway.logger') as log:
            assert_that(check_status(response(403, {'error': 'bad password'})), is_(False))
        assert_that(log.error.call_args[0], has_item('bad password'))

    def test_error_without_message(self):
        assert_that(check_status(response(500, {'other': 1})), is_(False))
        assert_that(check_status(response(502, invalid_json=True)), is_(False))
        assert_that(check_status(response(500, ['x'])), is_(False))


class TimestampTest(unittest.TestCase):

    def test_milliseconds(self):
        with patch('time.time', return_value=1680000000.1234):
            assert_that(timestamp(), is_(1680000000123))


class ReauthPolicyTest(unittest.TestCase):

    def test_threshold(self):
        sut = ReauthPolicy(3, 60, clock=Mock(return_value=100))
        assert_that(sut.failure(), is_(False))
        assert_that(sut.failure(), is_(False))
        assert_that(sut.failure(), is_(True))
        assert_that(sut.failures, is_(0))

    def test_success_resets_count(self):
        sut = ReauthPolicy(2, 60, clock=Mock(return_value=100))
        sut.failure()
        sut.success()
        assert_that(sut.failure(), is_(False))

    def test_period_limits_resets(self):
        clock = Mock(return_value=100)
        sut = ReauthPolicy(1, 60, clock=clock)
        assert_that(sut.failure(), is_(True))
        clock.return_value = 130
        assert_that(sut.failure(), is_(False))
        clock.return_value = 160
        assert_that(sut.failure(), is_(True))

    def test_disabled(self):
        sut = ReauthPolicy(0)
        for _ in range(10):
            assert_that(sut.failure(), is_(False))


class GatewaySessionTest(unittest.TestCase):

    def setUp(self):
        self.server = DeviceServer(FakeTransport(), console=None)
        self.http = FakeGateway()
        self.sut = GatewaySession(self.server, 'gateway.example', 8443, update_rate=10,
                                  certificate='/nonexistent/cert.crt', password='secret', http=self.http)

    def test_client_setup(self):
        assert_that(self.sut.base_url, is_('https://gateway.example:8443'))
        assert_that(self.http.headers, has_entries({'Cache-Control': 'private,max-age=0'}))
        assert_that(self.http.verify, is_(True))

    def test_certificate_path_used_when_present(self):
        with patch('os.path.exists', return_value=True):
            GatewaySession(self.server, 'a', certificate='cert.crt', http=self.http)
        assert_that(self.http.verify, is_('cert.crt'))

    def test_verification_disabled(self):
        GatewaySession(self.server, 'a', verify_certificate=False, http=self.http)
        assert_that(self.http.verify, is_(False))

    def test_requests_carry_password_and_timestamp(self):
        with patch('remotebridge.gateway.timestamp', return_value=42):
            self.sut.broadcast_is_online(True)
        assert_that(self.http.bodies('/setonline'), is_([{'password': 'secret', 'timestamp': 42, 'is_online': True}]))

    def test_request_exception_is_a_failure(self):
        self.http.routes['/setonline'] = requests.ConnectionError("down")
        assert_that(self.sut.broadcast_is_online(True), is_(False))

    def test_create_session(self):
        assert_that(self.sut.session_password, is_(''))
        assert_that(self.sut.create_session(), is_(True))
        assert_that(self.sut.session_password, is_('abc123'))

    def test_create_session_rejected(self):
        self.http.routes['/newsession'] = response(401, {'error': 'no'})
        assert_that(self.sut.create_session(), is_(False))
        assert_that(self.sut.session_password, is_(''))

    def test_create_session_malformed(self):
        for r in (response(200, {}), response(200, invalid_json=True), response(200, {'password': 5})):
            self.http.routes['/newsession'] = r
            assert_that(self.sut.create_session(), is_(False))

    def test_fetch_applies_speed_task(self):
        self.http.routes['/fetch'] = response(200, {'tasks': [{'type': 'speed', 'speed': 5}]})
        assert_that(self.sut.poll(), is_(True))
        assert_that(self.server.target_speed, is_(5))
        assert_that(self.server.pending, contains_exactly(Command.ON, *[Command.HIGHER] * 5))
        state = self.http.bodies('/setstate')[-1]['state']
        assert_that(state, is_({'is_on': True, 'accepts_commands': False, 'target_speed': 5,
                                'actual_speed': 0, 'mode': 'default'}))

    def test_tasks_applied_in_order(self):
        self.http.routes['/fetch'] = response(200, {'tasks': [
            {'type': 'power', 'is_on': True},
            {'type': 'mode', 'mode': 'default'},
            {'type': 'jump'},
            {'type': 'speed', 'speed': 3},
            {'type': 'speed', 'speed': 2},
        ]})
        self.sut.poll()
        assert_that(self.server.pending, contains_exactly(Command.ON, Command.HIGHER, Command.HIGHER, Command.LOWER))
        assert_that(self.server.mode, is_(Mode.DEFAULT))

    def test_task_with_unhashable_type_is_skipped(self):
        self.http.routes['/fetch'] = response(200, {'tasks': [
            {'type': 'power', 'is_on': True},
            {'type': ['x']},
            {'type': {'speed': 3}},
            {'type': 'speed', 'speed': 2},
        ]})
        assert_that(self.sut.poll(), is_(True))
        assert_that(self.server.target_speed, is_(2))
        assert_that(len(self.http.bodies('/setstate')), is_(1))
        assert_that(self.http.bodies('/setstate')[0]['state']['target_speed'], is_(2))

    def test_tasks_fetched_after_exit_do_not_power_on(self):
        self.server.set_speed(3)
        dispatch(self.server, ConsoleCommand.EXIT)
        self.http.routes['/fetch'] = response(200, {'tasks': [{'type': 'power', 'is_on': True},
                                                              {'type': 'speed', 'speed': 2}]})
        self.sut.poll()
        assert_that(self.server.pending, contains_exactly(Command.ON, *[Command.HIGHER] * 3 + [Command.OFF]))
        assert_that(self.server.is_on, is_(False))

    def test_fetch_failures_skip_the_cycle(self):
        for r in (response(500, {'error': 'oops'}), response(200, invalid_json=True), response(200, []),
                  response(200, {'other': []}), response(200, {'tasks': {}})):
            self.http.routes['/fetch'] = r
            assert_that(self.sut.poll(), is_(False))
        self.http.routes['/fetch'] = requests.Timeout("slow")
        assert_that(self.sut.poll(), is_(False))
        assert_that(self.http.bodies('/setstate'), is_([]))

    def test_reset_session(self):
        self.sut.create_session()
        self.http.routes['/newsession'] = response(200, {'password': 'fresh'})
        del self.http.posts[:]
        assert_that(self.sut.reset_session(), is_(True))
        assert_that(self.sut.session_password, is_('fresh'))
        assert_that(self.http.paths(), is_(['/setonline', '/setonline', '/newsession']))
        assert_that([b['is_online'] for b in self.http.bodies('/setonline')], is_([False, True]))

    def test_reset_session_never_exposes_old_password(self):
        self.sut.create_session()
        seen = []
        original_post = self.http.post

        def observing_post(url, json=None, timeout=None):
            seen.append(self.sut.session_password)
            return original_post(url, json=json, timeout=timeout)

        self.http.post = observing_post
        self.http.routes['/newsession'] = response(200, {'password': 'fresh'})
        self.sut.reset_session()
        assert_that(seen, is_(['', '', '']))
        assert_that(self.sut.session_password, is_('fresh'))

    def test_repeated_auth_failures_reset_session(self):
        self.sut.reauth = ReauthPolicy(2, 60, clock=Mock(return_value=0))
        self.http.routes['/fetch'] = response(401, {'error': 'expired'})
        self.sut.poll()
        assert_that(self.http.paths().count('/newsession'), is_(0))
        self.sut.poll()
        assert_that(self.http.paths().count('/newsession'), is_(1))
        assert_that(self.sut.session_password, is_('abc123'))

    def test_monitor_gateway_log(self):
        monitor = Monitor()
        self.sut.attach_monitor(monitor)
        self.http.routes['/fetch'] = response(200, {'tasks': [{'type': 'power', 'is_on': True}]})
        self.sut.create_session()
        self.sut.poll()
        assert_that(monitor.gateway_log.lines(),
                    is_(['Created session password: abc123', 'Fetched 1 tasks from endpoint']))


class GatewayLoopTest(unittest.TestCase):

    def setUp(self):
        self.server = DeviceServer(FakeTransport(), console=None)
        self.http = FakeGateway()
        self.sut = GatewaySession(self.server, 'gateway.example', update_rate=5, password='secret', http=self.http)

    def wait_for(self, condition, timeout=2.0):
        end = time.time() + timeout
        while not condition():
            if time.time() > end:
                raise AssertionError("condition not met")
            time.sleep(0.001)

    @timeout_decorator.timeout(5)
    def test_lifecycle(self):
        self.http.routes['/fetch'] = [response(200, {'tasks': [{'type': 'speed', 'speed': 2}]}),
                                      response(200, {'tasks': []})]
        self.sut.start()
        self.wait_for(lambda: len(self.http.bodies('/setstate')) >= 2)
        self.sut.stop()
        paths = self.http.paths()
        assert_that(paths[:3], is_(['/setonline', '/newsession', '/fetch']))
        assert_that(paths[-1], is_('/setonline'))
        assert_that([b['is_online'] for b in self.http.bodies('/setonline')], is_([True, False]))
        assert_that(self.server.target_speed, is_(2))
        assert_that(self.sut.running, is_(False))

    @timeout_decorator.timeout(5)
    def test_session_failure_ends_loop(self):
        self.http.routes['/newsession'] = response(500, {'error': 'down'})
        self.sut.async_loop.exception_handler = Mock()
        self.sut.start()
        self.wait_for(lambda: not self.sut.running)
        self.sut.stop()
        assert_that(self.http.paths(), is_not(has_item("/fetch")))
        self.sut.async_loop.exception_handler.assert_called_once()

    @timeout_decorator.timeout(5)
    def test_fetch_failures_keep_polling(self):
        self.http.routes['/fetch'] = response(503, {'error': 'busy'})
        self.sut.start()
        self.wait_for(lambda: self.http.paths().count('/fetch') >= 3)
        self.sut.stop()
        assert_that(self.http.bodies('/setstate'), is_([]))

