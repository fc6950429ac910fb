import pytest

from code_nexus.config import NexusConfig
from code_nexus.errors import ConfigValidationError


def test_defaults_are_valid():
    config = NexusConfig()

    assert config.validate() == []
    assert config.learning.batch_size == 50
    assert config.learning.queue_timeout_ms == 5000
    assert config.learning.max_pending_tasks == 1000
    assert config.storage.resolved_global_db_path().endswith("global-patterns.db")


def test_environment_overrides():
    config = NexusConfig.load({
        "NEXUS_BATCH_SIZE": "20",
        "NEXUS_BACKGROUND_LEARNING": "false",
        "NEXUS_ORACLE_TIMEOUT_S": "2.5",
        "NEXUS_GLOBAL_DB": "/tmp/nexus/global.db",
        "NEXUS_QUEUE_TIMEOUT_MS": "",
    })

    assert config.learning.batch_size == 20
    assert config.learning.background_learning is False
    assert config.learning.oracle_timeout_s == 2.5
    assert config.learning.queue_timeout_ms == 5000
    assert config.storage.resolved_global_db_path() == "/tmp/nexus/global.db"


def test_unparseable_value_is_rejected():
    with pytest.raises(ConfigValidationError):
        NexusConfig.from_env({"NEXUS_BATCH_SIZE": "fifty"})


def test_out_of_range_values_are_collected():
    with pytest.raises(ConfigValidationError) as excinfo:
        NexusConfig.load({"NEXUS_BATCH_SIZE": "0", "NEXUS_ORACLE_TIMEOUT_S": "-1"})

    assert len(excinfo.value.errors) == 2
    assert isinstance(excinfo.value, ValueError)
