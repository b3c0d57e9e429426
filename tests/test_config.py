import json
from datetime import UTC, datetime, timedelta

import pytest
from click.testing import CliRunner
from pydantic import ValidationError as PydanticValidationError

from tidings.cli import main
from tidings.collectors.sample import NewsCollector
from tidings.config import Config, ConfigSchema
from tidings.constants import CONTENT_STATUS
from tidings.operators.content_archiver import ContentArchiverOperator
from tidings.operators.package_cleanup import PackageCleanupOperator
from tidings.types import RegionScope

CONFIG_TEXT = """
paths:
  content: data/content
update:
  compression_level: 9
  next_check_idle_hours: 12
cache:
  shared: false
  ttls:
    News: 60
collectors:
  headlines:
    type: news
    schedule: "0 */30 * * * *"
    scopes: ["FR", "FR:IDF"]
"""


@pytest.fixture
def root(tmp_path):
    (tmp_path / ".tidings").mkdir()
    (tmp_path / ".tidings" / "config").write_text(CONFIG_TEXT)
    return tmp_path


@pytest.fixture
def config(root):
    config = Config(root)
    yield config
    config.close()


class TestConfig:

    def test_reads_file(self, config):
        assert config.content_path == config.root_path / "data" / "content"
        assert config.packages_path == config.root_path / "packages"
        assert config.builder.compression_level == 9
        assert config.orchestrator.next_check_idle == timedelta(hours=12)
        assert config.shared_cache is None
        assert config.cache.ttl_for("news") == 60

    def test_builds_collectors(self, config):
        (collector,) = config.collectors
        assert isinstance(collector, NewsCollector)
        assert collector.id == "headlines"
        assert collector.scopes == [RegionScope("FR"), RegionScope("FR", "IDF")]
        assert config.scheduler.status("headlines").schedule == "0 */30 * * * *"

    def test_defaults(self, tmp_path):
        config = Config(tmp_path, ConfigSchema())
        try:
            assert config.shared_cache is not None
            assert config.builder.max_package_size == 50 * 1024 * 1024
            assert config.orchestrator.download_url == "/api/v1/update/download"
            assert config.collectors == []
        finally:
            config.close()

    def test_misconfigured_collectors_are_disabled(self, tmp_path):
        config_data = ConfigSchema(
            collectors={
                "drop": {
                    "type": "inbox",
                    "scopes": ["FR"],
                    "options": {"path": str(tmp_path / "missing")},
                },
                "nowhere": {"type": "news"},
                "fine": {"type": "news", "scopes": ["FR"]},
            }
        )
        config = Config(tmp_path, config_data)
        try:
            enabled = {c.id: c.enabled for c in config.collectors}
            assert enabled == {"drop": False, "nowhere": False, "fine": True}
            assert config.scheduler.status("drop").status == "DISABLED"
        finally:
            config.close()

    def test_rejects_bad_collector(self):
        with pytest.raises(PydanticValidationError):
            ConfigSchema(collectors={"x": {"type": "telepathy"}})
        with pytest.raises(PydanticValidationError):
            ConfigSchema(collectors={"x": {"type": "news", "schedule": "every day"}})

    def test_find_root(self, root):
        nested = root / "a" / "b"
        nested.mkdir(parents=True)
        assert Config.find_root(nested) == root.resolve()

    def test_initialize(self, tmp_path):
        path = Config.initialize(tmp_path)
        config = Config(tmp_path)
        try:
            assert {c.id for c in config.collectors} == {"news", "weather"}
        finally:
            config.close()
        with pytest.raises(FileExistsError):
            Config.initialize(tmp_path)
        assert path.exists()


class TestEndToEnd:

    def test_collect_then_update(self, config):
        scope = RegionScope("FR", "IDF")
        # Pin the scope to a version from before anything was collected
        config.version_clock.update_version(scope, "2000.01.01.00")
        config.scheduler.run_now("headlines").result(timeout=10)

        body = config.api.check_update(
            {"countryCode": "FR", "regionCode": "IDF", "currentVersion": "2000.01.01"}
        )

        assert body["hasUpdates"] is True
        assert body["changesSummary"] == {"news": 2}
        package = config.api.download_package(body["latestVersion"], "FR", "IDF")
        assert package.checksum == body["checksum"]


class TestOperators:

    def test_package_cleanup_step(self, config):
        config.builder.build(RegionScope("FR"), "1.0.0", "2024.03.02.10", [])
        operator = PackageCleanupOperator(config)
        assert operator.interval_long == config.config_data.cleanup.interval
        # Nothing is old enough yet
        assert operator.step() is False

    def test_content_archiver_step(self, config):
        old = config.store.save_content(
            "news",
            RegionScope("FR"),
            "old.json",
            b"{}",
            published_at=datetime.now(UTC) - timedelta(days=60),
        )
        config.store.save_content("news", RegionScope("FR"), "new.json", b"{}")

        assert ContentArchiverOperator(config).step() is True

        statuses = {c.file_path: c.status for c in config.store.all_content()}
        assert statuses[old.file_path] == CONTENT_STATUS.ARCHIVED
        assert statuses["fr/national/news/new.json"] == CONTENT_STATUS.ACTIVE


class TestCli:

    def test_init_and_check(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(main, ["-r", str(tmp_path), "init"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(main, ["-r", str(tmp_path), "check", "FR", "1.0.0"])
        assert result.exit_code == 0, result.output

    def test_invalid_check_is_reported(self, root):
        result = CliRunner().invoke(main, ["-r", str(root), "check", "fr", "1.0.0"])
        assert result.exit_code != 0
        assert "countryCode" in result.output

    def test_publish_advances_version(self, root, tmp_path):
        source = tmp_path / "story.txt"
        source.write_text("hello")
        runner = CliRunner()
        result = runner.invoke(
            main, ["-r", str(root), "publish", "FR", str(source), "--type", "stories"]
        )
        assert result.exit_code == 0, result.output
        assert "fr/national/stories/story.txt" in result.output
        assert "FR:national is now at" in result.output

    def test_no_root(self, tmp_path):
        result = CliRunner().invoke(main, ["-r", str(tmp_path), "version"])
        assert result.exit_code != 0
        assert "tidings init" in result.output


def test_update_response_json_is_camel_case(config):
    body = config.api.check_update({"countryCode": "US", "currentVersion": "9999.1.1"})
    assert json.loads(json.dumps(body))["hasUpdates"] is False
