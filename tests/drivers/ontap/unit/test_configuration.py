"""Unit tests for ONTAP driver configuration."""

from oslo_config import cfg
import pytest

from ontap_storage.drivers.ontap import configuration
from ontap_storage.drivers.ontap import exceptions


def _opt(name):
    return next(opt for opt in configuration.get_ontap_storage_opts() if opt.name == name)


def test_get_ontap_storage_opts_smoke():
    opts = configuration.get_ontap_storage_opts()
    assert isinstance(opts, list)
    assert any(opt.name == "ontap_management_lif" for opt in opts)
    assert any(opt.name == "ontap_limit_aggregate_usage" for opt in opts)


def test_list_opts_group():
    [(group, opts)] = configuration.list_opts()
    assert group == "ontap_storage"
    assert len(opts) == len(configuration.get_ontap_storage_opts())


def test_driver_name_choices():
    driver_opt = _opt("ontap_storage_driver_name")
    assert set(driver_opt.type.choices.keys()) == {
        "ontap-nas",
        "ontap-nas-flexgroup",
        "ontap-san",
        "ontap-san-economy",
    }


@pytest.mark.parametrize(
    "name",
    ["ontap_password", "ontap_chap_initiator_secret", "ontap_chap_target_initiator_secret"],
)
def test_secrets_are_masked(name):
    assert _opt(name).secret is True


def test_virtual_pools_is_multistr():
    assert _opt("ontap_virtual_pools").__class__.__name__ == "MultiStrOpt"


def test_from_conf():
    conf = cfg.ConfigOpts()
    configuration.register_opts(conf)
    conf(args=[], default_config_files=[])
    conf.set_override("ontap_storage_driver_name", "ontap-san", group="ontap_storage")
    conf.set_override("ontap_svm", "svm0", group="ontap_storage")
    conf.set_override("ontap_use_chap", True, group="ontap_storage")
    conf.set_override("ontap_labels", {"tier": "gold"}, group="ontap_storage")
    conf.set_override(
        "ontap_virtual_pools", ["zone=z1;spaceReserve=volume", "size=2Gi"], group="ontap_storage"
    )

    config = configuration.OntapStorageDriverConfig.from_conf(conf.ontap_storage)

    assert config.storage_driver_name == "ontap-san"
    assert config.is_san()
    assert config.svm == "svm0"
    assert config.use_chap is True
    assert config.storage_prefix == "ontap_"
    assert config.labels == {"tier": "gold"}
    assert [vp.zone for vp in config.virtual_pools] == ["z1", ""]
    assert config.virtual_pools[1].size == "2Gi"


class TestPopulateDefaults:
    """Test configuration defaults."""

    def test_defaults(self):
        config = configuration.OntapStorageDriverConfig(data_lif="10.0.0.1")

        configuration.populate_configuration_defaults(config)

        assert config.backend_name == "ontap-nas_10.0.0.1"
        assert config.storage_prefix == "ontap_"
        assert config.size == "1G"
        assert config.space_reserve == "none"
        assert config.snapshot_policy == "none"
        assert config.export_policy == "default"
        assert config.split_on_clone == "false"
        assert config.file_system_type == "ext4"
        assert config.auto_export_cidrs == ["0.0.0.0/0", "::/0"]
        assert config.igroup_name == ""

    def test_ipv6_backend_name(self):
        config = configuration.OntapStorageDriverConfig(data_lif="[fd00::1]")

        configuration.populate_configuration_defaults(config)

        assert config.backend_name == "ontap-nas_fd00..1"

    def test_explicit_values_kept(self):
        config = configuration.OntapStorageDriverConfig(
            backend_name="b1", storage_prefix="", size="5Gi", space_reserve="volume"
        )

        configuration.populate_configuration_defaults(config)

        assert config.backend_name == "b1"
        assert config.storage_prefix == ""
        assert config.size == "5Gi"
        assert config.space_reserve == "volume"

    def test_auto_export_policy(self):
        config = configuration.OntapStorageDriverConfig(auto_export_policy=True, export_policy="mine")

        configuration.populate_configuration_defaults(config)

        assert config.export_policy == "<automatic>"

    def test_san_igroup(self):
        config = configuration.OntapStorageDriverConfig(
            storage_driver_name="ontap-san-economy", backend_name="eco"
        )

        configuration.populate_configuration_defaults(config)

        assert config.igroup_name == "ontap-eco"

    def test_invalid_size(self):
        with pytest.raises(exceptions.InvalidConfiguration, match="default volume size"):
            configuration.populate_configuration_defaults(
                configuration.OntapStorageDriverConfig(size="lots")
            )

    def test_invalid_split_on_clone(self):
        with pytest.raises(exceptions.InvalidConfiguration, match="splitOnClone"):
            configuration.populate_configuration_defaults(
                configuration.OntapStorageDriverConfig(split_on_clone="often")
            )


class TestParseVirtualPool:
    """Test virtual pool definitions."""

    def test_parse(self):
        pool = configuration.parse_virtual_pool(
            "zone=z1; spaceReserve=volume;labels=tier:gold,team:a;splitOnClone=true"
        )

        assert pool.zone == "z1"
        assert pool.space_reserve == "volume"
        assert pool.split_on_clone == "true"
        assert pool.labels == {"tier": "gold", "team": "a"}

    def test_empty_terms_ignored(self):
        assert configuration.parse_virtual_pool(";;size=2Gi;") == configuration.VirtualPool(size="2Gi")

    @pytest.mark.parametrize(
        "definition, message",
        [
            ("colour=blue", "unknown virtual pool attribute"),
            ("zone", "malformed virtual pool term"),
            ("labels=tier", "malformed virtual pool label"),
        ],
    )
    def test_invalid(self, definition, message):
        with pytest.raises(exceptions.InvalidConfiguration, match=message):
            configuration.parse_virtual_pool(definition)


def test_redacted_hides_secrets(san_config):
    san_config.password = "hunter2"

    redacted = configuration.redacted(san_config)

    assert redacted["password"] == "<REDACTED>"
    assert redacted["chap_initiator_secret"] == "<REDACTED>"
    assert redacted["chap_username"] == "initiator"
    assert "hunter2" not in str(redacted)
