from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from context_watch.config import CONFIG_PATH, ContextConfig, OutputFormat, default_config
from context_watch.config_provider import ConfigProvider
from context_watch.exceptions import ConfigurationError, ProfileNotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from conftest import FakeChangeSource


@pytest.mark.unit
def test_config_reads_camel_case_keys() -> None:
    config = ContextConfig.model_validate(
        {
            "globalSettings": {"debounceMs": 500, "maxFileSizeKB": 2, "maxTotalFiles": 10, "tokenizerModel": "gpt-4"},
            "profiles": [
                {
                    "name": "api",
                    "outputFile": "ctx\\api.xml",
                    "forceInclude": ["openapi.yaml"],
                    "options": {"outputFormat": "xml", "useGitIgnore": False},
                },
            ],
            "activeProfile": "api",
            "someFutureKey": True,
        },
    )

    profile = config.get_profile("api")
    assert profile is not None
    assert profile.output_file == "ctx/api.xml"
    assert profile.force_include == ["openapi.yaml"]
    assert profile.options.output_format is OutputFormat.XML
    assert profile.options.use_git_ignore is False
    assert profile.options.show_file_tree is True
    assert config.global_settings.debounce_ms == 500  # noqa: PLR2004
    assert config.global_settings.max_file_size_bytes == 2048  # noqa: PLR2004
    assert config.get_profile("missing") is None


@pytest.mark.unit
@pytest.mark.parametrize(
    "profiles",
    [
        [{"name": "a", "outputFile": "out.md", "options": {"outputFormat": "json"}}],
        [{"name": "a", "outputFile": "/abs/out.md"}],
        [{"name": "a", "outputFile": "a.md"}, {"name": "a", "outputFile": "b.md"}],
        [{"name": "", "outputFile": "a.md"}],
    ],
    ids=["unknown-format", "absolute-output", "duplicate-name", "empty-name"],
)
def test_config_rejects_invalid_profiles(profiles: list[dict[str, Any]]) -> None:
    with pytest.raises(ValidationError):
        ContextConfig.model_validate({"profiles": profiles})


@pytest.mark.unit
def test_default_config_round_trips_through_aliases() -> None:
    data = default_config().model_dump(mode="json", by_alias=True)

    assert data["activeProfile"] == "default"
    assert data["profiles"][0]["outputFile"] == ".context/context.md"
    assert data["globalSettings"]["maxFileSizeKB"] == 1024  # noqa: PLR2004
    assert ContextConfig.model_validate(data) == default_config()


@pytest.mark.unit
def test_provider_load_and_get_profile(tmp_path: Path, write_config: Callable[..., Path]) -> None:
    write_config(tmp_path)
    provider = ConfigProvider(tmp_path)

    assert provider.path == tmp_path.resolve() / CONFIG_PATH
    assert provider.get_profile("default") is None

    config = provider.load()

    assert provider.current == config
    assert provider.get_profile("default") is not None


@pytest.mark.unit
def test_provider_load_errors_are_configuration_errors(tmp_path: Path) -> None:
    provider = ConfigProvider(tmp_path)
    with pytest.raises(ConfigurationError, match="file not found"):
        provider.load()

    provider.path.parent.mkdir(parents=True)
    provider.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="parse error"):
        provider.load()

    provider.path.write_text(json.dumps({"profiles": [{"name": "a"}]}), encoding="utf-8")
    with pytest.raises(ConfigurationError, match="profiles.0.outputFile"):
        provider.load()
    assert provider.current is None


@pytest.mark.unit
def test_provider_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "context.yaml"
    path.write_text(
        "activeProfile: docs\nprofiles:\n  - name: docs\n    outputFile: docs.md\n    include: ['docs/**']\n",
        encoding="utf-8",
    )

    config = ConfigProvider(tmp_path, "context.yaml").load()

    assert config.active_profile == "docs"
    assert config.profiles[0].include == ["docs/**"]


@pytest.mark.unit
@pytest.mark.parametrize("name", ["config.json", "config.yml"])
def test_create_default_writes_a_loadable_config(tmp_path: Path, name: str) -> None:
    provider = ConfigProvider(tmp_path, f".context/{name}")

    path = provider.create_default()

    assert path.is_file()
    assert provider.load() == default_config()
    with pytest.raises(ConfigurationError, match="already exists"):
        provider.create_default()
    provider.create_default(overwrite=True)


@pytest.mark.unit
def test_provider_watch_reports_reload_outcomes(
    tmp_path: Path,
    write_config: Callable[..., Path],
    change_source: FakeChangeSource,
) -> None:
    path = write_config(tmp_path)
    provider = ConfigProvider(tmp_path)
    seen: list[tuple[ContextConfig | None, ConfigurationError | None]] = []

    provider.watch(change_source, lambda config, error: seen.append((config, error)))
    (patterns, on_change, _handle) = change_source.watches[0]
    on_change(path)
    path.write_text("[]", encoding="utf-8")
    on_change(path)

    assert patterns == [CONFIG_PATH]
    assert seen[0][0] is not None
    assert seen[0][1] is None
    assert seen[1][0] is None
    assert isinstance(seen[1][1], ConfigurationError)


@pytest.mark.unit
def test_error_messages_are_readable() -> None:
    assert str(ProfileNotFoundError(name="api")) == 'Profile "api" not found.'
    assert str(ProfileNotFoundError(name="")) == "No profile selected for build."
    assert str(ConfigurationError(path=Path("c.json"), reason="boom")) == "Invalid configuration c.json: boom"
