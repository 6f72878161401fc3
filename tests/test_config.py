import tomllib
from pathlib import Path

import pytest

from taskwarden import __version__
from taskwarden.config import SupervisionConfig, WardenConfig, dumps_toml, load_config, save_config
from taskwarden.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwarden.toml"
    config = WardenConfig.default()
    config.supervision.timeout_seconds = 900.0
    config.supervision.max_retries = 5
    config.supervision.max_concurrent_tasks = 1
    config.supervision.notify_on_progress = False
    config.executor.kind = "codex"
    config.executor.binary = "/opt/bin/codex"
    config.quality.lint_command = "ruff check src tests"
    config.quality.test_command = "pytest --cov"
    config.state.directory = "state"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.supervision.retry_delay_seconds == 5.0
    assert loaded.supervision.notify_on_progress is False
    assert loaded.executor.kind == "codex"
    assert loaded.quality.test_command == "pytest --cov"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(WardenConfig.default())

    for section in ("[supervision]", "[notifications]", "[executor]", "[quality]", "[state]"):
        assert section in rendered
    assert "timeout_seconds = 3600.0" in rendered
    assert "max_retries = 3" in rendered
    assert "on_progress = true" in rendered
    assert 'kind = "claude"' in rendered
    assert tomllib.loads(rendered)["supervision"]["min_test_coverage"] == 80.0


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "absent.toml") == WardenConfig.default()


def test_notifications_section_maps_onto_supervision(tmp_path: Path) -> None:
    config_path = tmp_path / "taskwarden.toml"
    config_path.write_text(
        "[supervision]\nmax_concurrent_tasks = 2\n\n[notifications]\nenabled = false\n",
        encoding="utf-8",
    )

    loaded = load_config(config_path)

    assert loaded.supervision.max_concurrent_tasks == 2
    assert loaded.supervision.enable_notifications is False
    assert loaded.supervision.notify_on_error is True


@pytest.mark.parametrize(
    "content",
    [
        "[supervision]\nmax_concurrent_tasks = 0\n",
        "[supervision]\nmin_quality_score = 120\n",
        "[supervision]\ntimeout_seconds = -1\n",
        "[supervision]\nunknown_option = 1\n",
        '[executor]\nkind = "gemini"\n',
        "[supervision\nbroken",
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    config_path = tmp_path / "taskwarden.toml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_supervision_from_dict_validates() -> None:
    assert SupervisionConfig.from_dict({"max_retries": 0}).max_retries == 0
    with pytest.raises(ConfigError):
        SupervisionConfig.from_dict({"max_retries": -1})
    with pytest.raises(ConfigError):
        SupervisionConfig.from_dict({"retries": 2})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
