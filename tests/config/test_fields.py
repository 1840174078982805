import pytest

from stolos_bootstrap.config.fields import CLUSTER_FIELDS, FieldSpec, collect_cluster_parameters, collect_fields
from stolos_bootstrap.errors import ConfigError


def scripted(answers):
    asked = []

    def prompt(spec, default):
        asked.append((spec.name, default))
        return answers.get(spec.name, "")

    prompt.asked = asked
    return prompt


def test_empty_answers_keep_defaults():
    prompt = scripted({"http_hostname": "10.1.1.1"})
    params = collect_cluster_parameters(prompt)
    assert params.cluster_name == "mycluster"
    assert params.http_port == 8082
    assert params.http_hostname == "10.1.1.1"
    assert [name for name, _ in prompt.asked] == [f.name for f in CLUSTER_FIELDS]


def test_answers_are_coerced():
    params = collect_cluster_parameters(scripted({
        "cluster_name": "edge",
        "http_port": " 9000 ",
        "talos_extra_args": "console=ttyS0 net.ifnames=0",
        "http_hostname": "10.1.1.1",
    }))
    assert params.cluster_name == "edge"
    assert params.http_port == 9000
    assert params.extra_kernel_args() == ["console=ttyS0", "net.ifnames=0"]


def test_default_factory_is_evaluated_when_asked():
    calls = []
    spec = FieldSpec("host", "Host", default_factory=lambda: calls.append(1) or "192.0.2.1")
    assert calls == []
    values = collect_fields([spec], scripted({}))
    assert values == {"host": "192.0.2.1"}
    assert calls == [1]


def test_required_field_without_default():
    with pytest.raises(ConfigError, match="token is required"):
        collect_fields([FieldSpec("token", "Token")], scripted({}))


def test_optional_field_without_default_is_empty():
    assert collect_fields([FieldSpec("note", "Note", required=False)], scripted({})) == {"note": ""}


def test_bad_integer():
    with pytest.raises(ConfigError, match="http_port"):
        collect_cluster_parameters(scripted({"http_port": "eighty", "http_hostname": "h"}))


@pytest.mark.parametrize("raw,expected", [("yes", True), ("N", False), ("1", True), ("false", False)])
def test_bool_fields(raw, expected):
    assert FieldSpec("flag", "Flag", type=bool).coerce(raw) is expected


def test_bool_field_rejects_garbage():
    with pytest.raises(ConfigError):
        FieldSpec("flag", "Flag", type=bool).coerce("maybe")
