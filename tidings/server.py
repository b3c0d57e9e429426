import logging
import time

from tidings.config import Config
from tidings.operators.base import BaseOperator
from tidings.operators.content_archiver import ContentArchiverOperator
from tidings.operators.package_cleanup import PackageCleanupOperator

logger = logging.getLogger(__name__)


class Server:
    """
    Main server.

    Runs the housekeeping operator loops and the collector schedule.
    """

    operators: list[type[BaseOperator]] = [
        PackageCleanupOperator,
        ContentArchiverOperator,
    ]

    def __init__(self, config: Config):
        self.config = config
        self.threads: list[BaseOperator] = []

    def start(self):
        # Create a thread per operator and start it
        self.threads = [operator(self.config) for operator in self.operators]
        [thread.start() for thread in self.threads]
        self.config.scheduler.start()

    def stop(self):
        self.config.scheduler.stop()
        for thread in self.threads:
            thread.stop()
        for thread in self.threads:
            thread.join(timeout=5)

    def run(self):
        """
        Main daemon loop.
        """
        logger.debug("Main loop starting")
        self.start()

        # Wait for a shutdown signal
        logger.info("Running. Ctrl-C to exit.")
        try:
            while True:
                time.sleep(0.1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
