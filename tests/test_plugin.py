import pytest

from logpipe.plugin import (
    DEFAULT_CAPACITY,
    DEFAULT_STREAM_FIELD,
    ActionPlugin,
    ActionPluginInfo,
    ActionPluginStaticInfo,
    ActionResult,
    InputPlugin,
    InputPluginInfo,
    MatchCondition,
    MatchMode,
    OutputPlugin,
    PluginDefaultParams,
    PluginKind,
    PluginParams,
    PluginRuntimeInfo,
    PluginStaticInfo,
    Settings,
    match_mode_from_string,
)


@pytest.mark.parametrize(
    "text, mode",
    [
        ("", MatchMode.AND),
        ("and", MatchMode.AND),
        ("or", MatchMode.OR),
        ("and_prefix", MatchMode.AND_PREFIX),
        ("or_prefix", MatchMode.OR_PREFIX),
        ("  OR_Prefix  ", MatchMode.OR_PREFIX),
        ("xor", MatchMode.UNKNOWN),
    ],
)
def test_match_mode_from_string(text, mode):
    assert match_mode_from_string(text) is mode


def test_value_exists_exact():
    cond = MatchCondition(field=["k8s_namespace"], values=["payment", "tarifficator"])
    assert cond.value_exists("payment", False) is True
    assert cond.value_exists("pay", False) is False


def test_value_exists_prefix():
    cond = MatchCondition(field=["k8s_pod"], values=["payment-api-"])
    assert cond.value_exists("payment-api-abcd-1234", True) is True
    assert cond.value_exists("payment-api", True) is False


def test_value_exists_without_values():
    cond = MatchCondition(field=["ns"])
    assert cond.value_exists("map", False) is False
    assert cond.value_exists("map", True) is False


def test_plugin_kind_from_value():
    assert PluginKind("action") is PluginKind.ACTION


def test_settings_defaults_follow_constants():
    settings = Settings()
    assert settings.capacity == DEFAULT_CAPACITY
    assert settings.stream_field == DEFAULT_STREAM_FIELD
    assert settings.is_strict is False


def test_plugin_params_expose_defaults():
    settings = Settings(capacity=5)
    params = PluginParams(PluginDefaultParams("test_pipeline", settings))
    assert params.pipeline_name == "test_pipeline"
    assert params.pipeline_settings is settings


@pytest.mark.parametrize("cls", [InputPlugin, ActionPlugin, OutputPlugin])
def test_plugin_interfaces_are_abstract(cls):
    with pytest.raises(TypeError):
        cls()


class _Discard(ActionPlugin):
    def start(self, config, params):
        self.config = config

    def stop(self):
        self.config = None

    def do(self, event):
        return ActionResult.DISCARD

    def register_metrics(self, ctl):
        self.ctl = ctl


def test_concrete_action_plugin():
    runtime = PluginRuntimeInfo(plugin=_Discard(), id="0_0")
    settings = Settings(capacity=5)
    params = PluginParams(PluginDefaultParams("test_pipeline", settings))
    runtime.plugin.start({"a": 1}, params)
    assert runtime.plugin.config == {"a": 1}
    assert runtime.plugin.do(object()) is ActionResult.DISCARD
    assert runtime.id == "0_0"


def test_action_plugin_info_delegates():
    plugin = _Discard()
    static = ActionPluginStaticInfo(
        static_info=PluginStaticInfo(type="discard", config={"k": "v"}),
        metric_name="discarded",
        match_mode=MatchMode.OR,
        match_invert=True,
    )
    info = ActionPluginInfo(static, PluginRuntimeInfo(plugin=plugin, id="0_1"))
    assert info.type == "discard"
    assert info.config == {"k": "v"}
    assert info.plugin is plugin
    assert info.id == "0_1"
    assert info.match_mode is MatchMode.OR
    assert info.match_invert is True


def test_input_plugin_info_delegates():
    handler = lambda request: request  # noqa: E731
    static = PluginStaticInfo(type="fake", endpoints={"reset": handler})
    info = InputPluginInfo(static, PluginRuntimeInfo(id="input"))
    assert info.type == "fake"
    assert info.endpoints["reset"] is handler
    assert info.plugin is None
    assert info.id == "input"