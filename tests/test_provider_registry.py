import pytest

from agent_rpc.infra.provider_registry import ModelSpec, ProviderRegistry


@pytest.fixture
def isolated_registry():
    saved = dict(ProviderRegistry._custom), ProviderRegistry._custom_loaded_from
    yield ProviderRegistry
    ProviderRegistry._custom, ProviderRegistry._custom_loaded_from = saved


def test_bundled_model():
    spec = ProviderRegistry.find_model("openai", "o1")
    assert spec.api == "openai"
    assert spec.reasoning is True
    assert spec.context_window == 200000
    assert spec.base_url == "https://api.openai.com/v1"


def test_unknown_models():
    assert ProviderRegistry.find_model("openai", "gpt-99") is None
    assert ProviderRegistry.find_model("nobody", "x") is None
    assert ProviderRegistry.resolve_model("no-slash") is None


def test_custom_model_from_default_catalog():
    spec = ProviderRegistry.resolve_model("google/model-x")
    assert spec == ModelSpec(api="google", id="model-x", context_window=32000, reasoning=False)


def test_load_custom_models(tmp_path, isolated_registry):
    catalog = tmp_path / "models.yaml"
    catalog.write_text(
        "providers:\n"
        "  local:\n"
        "    api_base: http://localhost:11434/v1\n"
        "    models:\n"
        "      - qwen2.5\n"
        "      - id: r1-distill\n"
        "        reasoning: true\n"
        "      - context_window: 10\n",
        encoding="utf-8",
    )
    isolated_registry.clear_custom_models()
    assert isolated_registry.load_custom_models(str(catalog)) == 2

    plain = isolated_registry.find_model("local", "qwen2.5")
    assert plain.base_url == "http://localhost:11434/v1"
    assert plain.context_window == 128000
    assert isolated_registry.find_model("local", "r1-distill").reasoning is True


def test_broken_catalog_is_ignored(tmp_path, isolated_registry):
    catalog = tmp_path / "models.yaml"
    catalog.write_text("providers: [unclosed", encoding="utf-8")
    isolated_registry.clear_custom_models()
    assert isolated_registry.load_custom_models(str(catalog)) == 0
    assert isolated_registry.load_custom_models(str(tmp_path / "missing.yaml")) == 0


def test_register_model_overrides_bundled(isolated_registry):
    isolated_registry.register_model(ModelSpec(api="openai", id="gpt-4o", context_window=1))
    assert isolated_registry.find_model("openai", "gpt-4o").context_window == 1


def test_discover_available_models():
    models = ProviderRegistry.discover_available_models()
    keys = [(m.api, m.id) for m in models]
    assert ("openai", "gpt-4o") in keys
    assert ("google", "model-x") in keys
    assert keys.index(("google", "model-x")) > keys.index(("deepseek", "deepseek-reasoner"))
    assert len(keys) == len(set(keys))
