import json
from datetime import timedelta

from winget_upgrader import LIST_COMMAND, ExclusionList, UpgraderConfig


def test_defaults(config):
    assert config.cache_expiration == timedelta(minutes=15)
    assert config.list_command == LIST_COMMAND
    assert config.list_timeout == 10
    assert "{package_id}" in config.upgrade_command
    assert config.enable_upgrade_all is False
    assert list(config.exclusions) == []


def test_loads_and_merges_file(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(
        json.dumps(
            {
                "cache": {"expiration_minutes": 5},
                "commands": {"upgrade_timeout_seconds": None},
                "exclusions": ["Teams", "slack"],
            }
        ),
        encoding="utf-8",
    )

    config = UpgraderConfig(config_dir)

    assert config.cache_expiration == timedelta(minutes=5)
    assert config.upgrade_timeout is None
    assert config.list_timeout == 10
    assert list(config.exclusions) == ["Teams", "slack"]


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.json").write_text("{not json", encoding="utf-8")

    config = UpgraderConfig(config_dir)

    assert config.cache_expiration == timedelta(minutes=15)


def test_home_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("WINGET_UPGRADER_HOME", str(tmp_path / "from-env"))

    config = UpgraderConfig()

    assert config.config_dir == tmp_path / "from-env"
    assert config.config_dir.is_dir()


def test_exclusion_changes_are_persisted(config):
    config.exclusions.add("slack")
    config.exclusions.add("Zoom")
    config.exclusions.remove("SLACK")

    reloaded = UpgraderConfig(config.config_dir)
    assert list(reloaded.exclusions) == ["Zoom"]


def test_upgrade_all_setting_persists(config):
    config.enable_upgrade_all = True
    assert UpgraderConfig(config.config_dir).enable_upgrade_all is True

    config.enable_upgrade_all = False
    assert UpgraderConfig(config.config_dir).enable_upgrade_all is False


def test_exclusion_list_semantics():
    exclusions = ExclusionList(["Slack", " slack ", ""])
    seen = []
    exclusions.subscribe(seen.append)

    assert list(exclusions) == ["Slack"]
    assert not exclusions.add("SLACK")
    assert not exclusions.add("  ")
    assert exclusions.add("edge")
    assert "EDGE" in exclusions
    assert not exclusions.remove("teams")
    exclusions.replace(["a", "b"])
    exclusions.clear()

    assert seen == [("Slack", "edge"), ("a", "b"), ()]
    assert len(exclusions) == 0


def test_failing_listener_does_not_block_others():
    exclusions = ExclusionList()
    seen = []

    def broken(terms):
        raise RuntimeError("listener bug")

    exclusions.subscribe(broken)
    exclusions.subscribe(seen.append)
    exclusions.add("slack")

    assert seen == [("slack",)]
