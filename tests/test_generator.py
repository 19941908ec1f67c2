import json
from unittest import mock

import pytest

from thickcni.generator import (
    MultusConf,
    check_version_compatibility,
    extract_capabilities,
    find_master_plugin,
    parse_multus_config,
)

PRIMARY_CNI_NAME = "myCNI"
CNI_VERSION = "0.4.0"
PRIMARY_CNI_FILE = "/etc/cni/net.d/10-flannel.conf"


@pytest.fixture
def multus_config(tmp_path):
    path = tmp_path / "10-testcni.conf"
    path.write_text(
        json.dumps({"name": PRIMARY_CNI_NAME, "cniVersion": CNI_VERSION, "clusterNetwork": PRIMARY_CNI_FILE})
    )
    return parse_multus_config(path)


def expected(**extra):
    base = {
        "cniVersion": "0.4.0",
        "clusterNetwork": PRIMARY_CNI_FILE,
        "name": "multus-cni-network",
        "type": "multus-shim",
    }
    base.update(extra)
    return base


def test_basic_multus_config(multus_config):
    assert json.loads(multus_config.generate()) == expected()


def test_basic_multus_config_exact_text(multus_config):
    assert multus_config.generate() == (
        '{"cniVersion":"0.4.0","name":"multus-cni-network",'
        '"clusterNetwork":"/etc/cni/net.d/10-flannel.conf","type":"multus-shim"}'
    )


def test_parse_defaults(multus_config):
    assert multus_config.multus_config_file == "auto"
    assert multus_config.cni_config_dir == "/etc/cni/net.d"
    assert multus_config.type == "multus-shim"
    assert multus_config.name == "multus-cni-network"


def test_generate_flushes_daemon_fields():
    conf = MultusConf(
        cni_version="0.4.0",
        name="n",
        type="t",
        cni_config_dir="/a",
        multus_config_file="auto",
        multus_autoconfig_dir="/b",
        multus_master_cni="c.conf",
        force_cni_version=True,
        readiness_indicator_file="/r",
    )
    assert json.loads(conf.generate()) == {"cniVersion": "0.4.0", "name": "n", "type": "t"}
    assert conf.readiness_indicator_file == ""


@pytest.mark.parametrize(
    "document, capabilities",
    [
        ({"capabilities": {"portMappings": True}}, {"portMappings": True}),
        ({"capabilities": {"portMappings": True, "tuning": True}}, {"portMappings": True, "tuning": True}),
        ({"capabilities": {"portMappings": True, "tuning": False}}, {"portMappings": True}),
        (
            {"plugins": [{"capabilities": {"portMappings": True, "tuning": True}}]},
            {"portMappings": True, "tuning": True},
        ),
        (
            {"plugins": [{"capabilities": {"portMappings": True}}, {"capabilities": {"tuning": True}}]},
            {"portMappings": True, "tuning": True},
        ),
        (
            {"plugins": [{"capabilities": {"portMappings": True}}, {"capabilities": {"tuning": False}}]},
            {"portMappings": True},
        ),
    ],
)
def test_capabilities(multus_config, document, capabilities):
    multus_config.set_capabilities(document)
    assert json.loads(multus_config.generate()) == expected(capabilities=capabilities)


def test_capabilities_are_sorted(multus_config):
    multus_config.set_capabilities({"capabilities": {"tuning": True, "portMappings": True}})
    assert multus_config.generate().startswith('{"capabilities":{"portMappings":true,"tuning":true},')


def test_set_capabilities_rejects_non_object(multus_config):
    with pytest.raises(ValueError, match="couldn't get cni config from delegate"):
        multus_config.set_capabilities(["not", "a", "dict"])


def test_extract_capabilities():
    assert extract_capabilities({"capabilities": {"a": True, "b": False}}) == ["a"]
    assert extract_capabilities("nope") == []
    assert extract_capabilities({"capabilities": "nope"}) == []


def test_extract_capabilities_rejects_non_bool():
    with pytest.raises(ValueError):
        extract_capabilities({"capabilities": {"a": "yes"}})


def test_parse_is_case_insensitive(tmp_path):
    path = tmp_path / "c.conf"
    path.write_text('{"cniVersion": "0.4.0", "multusmastercni": "x.conf"}')
    assert parse_multus_config(path).multus_master_cni == "x.conf"


def test_parse_invalid_json(tmp_path):
    path = tmp_path / "c.conf"
    path.write_text("{not json")
    with pytest.raises(ValueError, match="failed to unmarshall the daemon configuration"):
        parse_multus_config(path)


def test_parse_wrong_type(tmp_path):
    path = tmp_path / "c.conf"
    path.write_text('{"cniVersion": 4}')
    with pytest.raises(ValueError, match="failed to unmarshall the daemon configuration"):
        parse_multus_config(path)


def test_parse_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_multus_config(tmp_path / "missing.conf")


def test_version_incompatible():
    with pytest.raises(ValueError) as info:
        check_version_compatibility(MultusConf(cni_version="0.4.0"), {"cniVersion": "0.3.1"})
    assert str(info.value) == "delegate cni version is 0.3.1 while top level cni version is 0.4.0"


def test_version_compatible():
    assert check_version_compatibility(MultusConf(cni_version="0.4.0"), {"cniVersion": "1.0.0"}) is None
    assert check_version_compatibility(MultusConf(cni_version="0.3.1"), {"cniVersion": "0.2.0"}) is None


def test_version_bad_top_level():
    with pytest.raises(ValueError, match="couldn't get top level cni version"):
        check_version_compatibility(MultusConf(cni_version="bogus"), {"cniVersion": "1.0.0"})


def test_version_delegate_without_version():
    with pytest.raises(ValueError, match="couldn't get cni version of delegate"):
        check_version_compatibility(MultusConf(cni_version="1.0.0"), {"name": "x"})


def test_find_master_plugin(tmp_path):
    for name in ("00-multus.conf", "10-b.conflist", "05-a.conf", "readme.txt"):
        (tmp_path / name).write_text("{}")
    assert find_master_plugin(tmp_path, 1) == "05-a.conf"


def test_find_master_plugin_no_tries(tmp_path):
    with pytest.raises(FileNotFoundError, match="could not find a plugin configuration"):
        find_master_plugin(tmp_path, 0)


def test_find_master_plugin_retries(tmp_path):
    (tmp_path / "00-multus.conf").write_text("{}")
    with mock.patch("thickcni.generator.time.sleep") as sleep:
        with pytest.raises(FileNotFoundError):
            find_master_plugin(tmp_path, 2)
    assert sleep.call_count == 2


def test_find_master_plugin_missing_dir(tmp_path):
    with pytest.raises(OSError):
        find_master_plugin(tmp_path / "missing", 1)