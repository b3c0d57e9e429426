import logging
import threading

from tidings.config import Config


class BaseOperator(threading.Thread):
    """
    Base class for all operators
    """

    interval_short: float = 1
    interval_long: float = 30
    error_delay: float = 30
    log_name = "base-operator"

    def __init__(self, config: Config):
        self.config = config
        self.running: bool = False
        self.stopped = threading.Event()
        self.logger = logging.getLogger(self.log_name)
        super().__init__(daemon=True, name=self.log_name)

    def run(self):
        self.running = True
        interval = self.interval_short
        while self.running:
            try:
                active = self.step()
                if active:
                    interval = self.interval_short
                else:
                    interval = min(interval * 2, self.interval_long)
                self.stopped.wait(interval)
            except Exception as e:
                self.logger.exception(f"{self.log_name}: {e}")
                self.stopped.wait(self.error_delay)

    def stop(self):
        self.running = False
        self.stopped.set()

    def step(self) -> bool:
        """
        Called to do an iteration of the loop.
        Returns if it did work or not; if True, then the next loop is quick.
        If False, then a backoff happens.
        """
        raise NotImplementedError()
