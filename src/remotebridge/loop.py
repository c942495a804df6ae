"""
Background worker threads.
"""
import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class AsyncLoop:
    """ Continually runs a given function on a background thread.
        Exceptions are logged and posted to exception_handler, and the loop carries on.
        Between iterations the loop waits for `interval` seconds, or until stopped.
        The background thread is registered as a daemon.
    """

    def __init__(self, fn: Callable=None, args=(), interval=0, name=None, log=logger):
        """
        :param fn the function to run
        :param args arguments to pass to fn
        :param interval seconds to wait between calls
        :param name the name given to the background thread
        """
        self.fn = fn
        self.args = args
        self.interval = interval
        self.name = name
        self.stop_event = threading.Event()
        self.background_thread = None
        self.logger = log
        self._start_lock = threading.Lock()

    def start(self):
        """
        Starts the background thread. Calling start on a running loop does nothing.
        """
        with self._start_lock:
            if self.background_thread is None:
                t = threading.Thread(target=self._run, name=self.name, daemon=True)
                self.background_thread = t
                t.start()

    def exception_handler(self, e):
        self.logger.exception(e)

    def _run(self):
        """ The processing loop for the background thread.
             Invokes the callable for as long as the stop signal is not received.
        """
        self._do(self.startup)
        while self.running():
            self._do(self.loop)
            self.wait(self.interval)
        self._do(self.shutdown)
        self.logger.info("background thread %s exiting", threading.current_thread().name)

    def _do(self, callme):
        """ runs a function and captures any exceptions """
        try:
            callme()
        except Exception as e:
            time.sleep(0)
            self.exception_handler(e)

    def startup(self):
        """ template method called when the thread starts"""
        pass

    def loop(self):
        self.fn(*self.args)

    def shutdown(self):
        """ template method called when the thread exits """
        pass

    def wait(self, seconds):
        """ sleeps for the given time, returning early with True when the loop is stopped """
        if seconds:
            return self.stop_event.wait(seconds)
        time.sleep(0)
        return self.stop_event.is_set()

    def running(self):
        return not self.stop_event.is_set()

    def request_stop(self):
        """ signals the loop to stop without waiting for it """
        self.stop_event.set()

    def stop(self, timeout=None):
        """
        Signals the loop to stop and waits for the background thread to exit.
        :param timeout: the longest time to wait for the thread, None to wait until it exits.
        """
        self.stop_event.set()
        with self._start_lock:
            thread = self.background_thread
            self.background_thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout)
