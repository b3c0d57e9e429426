from datetime import timedelta

from tidings.versioning import utc_now

from .base import BaseOperator


class ContentArchiverOperator(BaseOperator):
    """
    Archives active content once it is older than the configured age, so
    it stops appearing in new update packages.
    """

    log_name = "content-archiver"

    def __init__(self, config):
        super().__init__(config)
        self.interval_short = self.interval_long = config.config_data.cleanup.interval

    def step(self) -> bool:
        cutoff = utc_now() - timedelta(
            days=self.config.config_data.cleanup.archive_after_days
        )
        archived = self.config.store.archive_older_than(cutoff)
        if archived:
            self.logger.info(f"{archived} content items archived (older than {cutoff})")
        return archived > 0
