from .base import BaseOperator


class PackageCleanupOperator(BaseOperator):
    """
    Deletes update packages nobody has touched for a while, and drops
    expired entries from the shared cache tier.
    """

    log_name = "package-cleanup"

    def __init__(self, config):
        super().__init__(config)
        self.interval_short = self.interval_long = config.config_data.cleanup.interval

    def step(self) -> bool:
        max_age_days = self.config.config_data.cleanup.max_age_days
        deleted = self.config.builder.cleanup(max_age_days)
        if deleted:
            self.logger.info(f"Package cleanup completed: {deleted} files deleted")
        purged = 0
        if self.config.shared_cache is not None:
            purged = self.config.shared_cache.purge_expired()
            if purged:
                self.logger.debug(f"{purged} expired cache entries purged")
        return deleted > 0 or purged > 0
