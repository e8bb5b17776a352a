"""
Tests for host discovery: cloud chain, tier classification, ethtool
parsing, storage classification and the full FactCollector on a fake tree.
"""

from unittest.mock import MagicMock

import pytest
import requests

from hwtune.discovery.cloud import (
    AWS_IMDS,
    AZURE_IMDS,
    GCP_IMDS,
    INSTANCE_TYPE_URLS,
    CloudDetector,
    MetadataClient,
    classify_net_tier,
)
from hwtune.discovery.host import CommandRunner, HostFS
from hwtune.discovery.network import (
    NicScanner,
    parse_combined_max,
    parse_features,
    parse_maxmtu,
    parse_priv_flags,
    parse_ring_max,
)
from hwtune.discovery.storage import StorageScanner, classify_cloud_storage, parse_schedulers
from hwtune.discovery.system import CollectorConfig, FactCollector
from hwtune.protocol.facts import CloudClass, CloudProvider, NetTier
from hwtune.tests.mocks import FakeHostTree, MockCommandRunner, MockMetadataClient
from hwtune.tests.mocks.golden_data import (
    ENA_PRIV_FLAGS,
    ETHTOOL_CHANNELS,
    ETHTOOL_COALESCE,
    ETHTOOL_EEE,
    ETHTOOL_FEATURES,
    ETHTOOL_PRIV_FLAGS,
    ETHTOOL_RINGS,
    IMDS_AWS_ROOT,
    IMDS_AZURE_ROOT,
    IMDS_GCP_ROOT,
    IP_LINK_DETAIL,
)


def collector(tree, runner, metadata=None, **kwargs):
    config = CollectorConfig(root=tree.root, env={}, uid=1000, **kwargs)
    return FactCollector(config=config, runner=runner, metadata=metadata or MockMetadataClient())


class TestNetTier:

    @pytest.mark.parametrize("provider,instance_type,tier", [
        (CloudProvider.AWS, "c5n.18xlarge", NetTier.HIGH),
        (CloudProvider.AWS, "m5.metal", NetTier.ULTRA),
        (CloudProvider.AWS, "r6i.24xlarge", NetTier.ULTRA),
        (CloudProvider.AWS, "m5.12xlarge", NetTier.HIGH),
        (CloudProvider.AWS, "m5.2xlarge", NetTier.MEDIUM),
        (CloudProvider.AWS, "t3.micro", NetTier.LOW),
        (CloudProvider.AZURE, "Standard_D16s_v5", NetTier.ULTRA),
        (CloudProvider.AZURE, "Standard_D32s_v3", NetTier.HIGH),
        (CloudProvider.AZURE, "Standard_D8s_v3", NetTier.MEDIUM),
        (CloudProvider.AZURE, "Standard_B2s", NetTier.LOW),
        (CloudProvider.GCP, "c3-standard-8", NetTier.ULTRA),
        (CloudProvider.GCP, "n2-standard-32", NetTier.HIGH),
        (CloudProvider.GCP, "e2-medium", NetTier.MEDIUM),
        (CloudProvider.ALIBABA, "ecs.g7.8xlarge", NetTier.HIGH),
        (CloudProvider.ALIBABA, "ecs.g7.2xlarge", NetTier.MEDIUM),
        (CloudProvider.ALIBABA, "ecs.g7.large", NetTier.LOW),
    ])
    def test_classification(self, provider, instance_type, tier):
        assert classify_net_tier(provider, instance_type) == tier

    def test_unknown_instance_type(self):
        assert classify_net_tier(CloudProvider.AWS, "") == NetTier.NONE
        assert classify_net_tier(CloudProvider.NONE, "m5.large") == NetTier.NONE


class TestCloudChain:
    """DMI -> metadata service -> service markers; first match wins."""

    def test_dmi_identifies_without_probing_metadata(self, empty_host, probe_runner):
        empty_host.dmi("Amazon EC2", product_name="m5.24xlarge")
        url, _ = INSTANCE_TYPE_URLS[CloudProvider.AWS]
        metadata = MockMetadataClient({url: "m5.24xlarge"})

        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()

        assert identity.provider == CloudProvider.AWS
        assert identity.method == "dmi"
        assert identity.confidence == "high"
        assert identity.net_tier == NetTier.ULTRA
        assert metadata.urls == [url]

    def test_metadata_only_when_dmi_unreadable(self, empty_host, probe_runner):
        metadata = MockMetadataClient({
            GCP_IMDS: IMDS_GCP_ROOT,
            INSTANCE_TYPE_URLS[CloudProvider.GCP][0]: "projects/1234/machineTypes/n2-standard-16",
        })

        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()

        assert identity.provider == CloudProvider.GCP
        assert identity.method == "imds"
        assert identity.confidence == "medium"
        assert identity.instance_type == "n2-standard-16"
        assert metadata.urls[:2] == [AWS_IMDS, GCP_IMDS]

    def test_imds_order_stops_at_first_match(self, empty_host, probe_runner):
        metadata = MockMetadataClient({AZURE_IMDS: IMDS_AZURE_ROOT})
        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()
        assert identity.provider == CloudProvider.AZURE
        assert metadata.urls[:3] == [AWS_IMDS, GCP_IMDS, AZURE_IMDS]

    def test_readable_generic_dmi_skips_metadata(self, empty_host, probe_runner):
        empty_host.dmi("QEMU", product_name="Standard PC (Q35 + ICH9, 2009)")
        metadata = MockMetadataClient({AWS_IMDS: "ami-id"})

        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()

        assert identity.provider == CloudProvider.NONE
        assert metadata.urls == []

    def test_alibaba_ecs_product_name(self, empty_host, probe_runner):
        empty_host.dmi("Intel Corporation", product_name="ECS")
        identity = CloudDetector(HostFS(empty_host.root), probe_runner,
                                 MockMetadataClient()).detect()
        assert identity.provider == CloudProvider.ALIBABA
        assert identity.method == "dmi"

    def test_service_markers_are_last_resort(self, empty_host, probe_runner):
        probe_runner.on("systemctl", "is-active", "--quiet", "waagent", returncode=0)
        metadata = MockMetadataClient()

        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()

        assert identity.provider == CloudProvider.AZURE
        assert identity.method == "service"
        assert identity.confidence == "low"

    def test_amazon_marker_directory(self, empty_host, probe_runner):
        empty_host.mkdir("/etc/amazon")
        identity = CloudDetector(HostFS(empty_host.root), probe_runner,
                                 MockMetadataClient(), use_metadata=False).detect()
        assert identity.provider == CloudProvider.AWS
        assert identity.instance_type == ""

    def test_aws_metadata_first(self, empty_host, probe_runner):
        metadata = MockMetadataClient({
            AWS_IMDS: IMDS_AWS_ROOT,
            INSTANCE_TYPE_URLS[CloudProvider.AWS][0]: "c6in.32xlarge",
        })

        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()

        assert identity.provider == CloudProvider.AWS
        assert identity.method == "imds"
        assert identity.net_tier == NetTier.HIGH
        assert metadata.urls[0] == AWS_IMDS
        assert GCP_IMDS not in metadata.urls

    def test_request_budget(self, empty_host, probe_runner):
        metadata = MockMetadataClient()
        identity = CloudDetector(HostFS(empty_host.root), probe_runner, metadata).detect()
        assert identity.provider == CloudProvider.NONE
        assert metadata.requests_made <= 5

    def test_metadata_disabled(self, empty_host, probe_runner):
        metadata = MockMetadataClient({AWS_IMDS: "ami-id"})
        CloudDetector(HostFS(empty_host.root), probe_runner, metadata,
                      use_metadata=False).detect()
        assert metadata.requests_made == 0


class TestMetadataClient:

    def test_connection_error_returns_empty(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("no route to host")
        client = MetadataClient(timeout=1.0, session=session)

        assert client.fetch(AWS_IMDS) == ""
        assert client.requests_made == 1
        session.get.assert_called_once_with(AWS_IMDS, headers={}, timeout=1.0)

    def test_non_200_returns_empty(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=404, text="not found")
        assert MetadataClient(session=session).fetch(AWS_IMDS) == ""

    def test_body_is_stripped(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, text="m5.large\n")
        assert MetadataClient(session=session).fetch(AWS_IMDS) == "m5.large"


class TestEthtoolParsers:

    def test_ring_max(self):
        assert parse_ring_max(ETHTOOL_RINGS) == (4096, 4096)
        assert parse_ring_max("") == (0, 0)

    def test_combined_max(self):
        assert parse_combined_max(ETHTOOL_CHANNELS) == 63

    def test_features(self):
        features = parse_features(ETHTOOL_FEATURES)
        assert features["rx-checksumming"] == "on"
        assert features["tcp-segmentation-offload"] == "off"
        assert features["generic-receive-offload"] == "off"
        assert "Features for eth0" not in features

    def test_priv_flags(self):
        assert parse_priv_flags(ETHTOOL_PRIV_FLAGS) == ("flow-director-atr", "legacy-rx")

    def test_maxmtu(self):
        assert parse_maxmtu(IP_LINK_DETAIL) == 9710
        assert parse_maxmtu("") == 1500


class TestNicScanner:

    def test_skips_virtual_and_deviceless_interfaces(self, empty_host, probe_runner):
        empty_host.nic("eth0")
        empty_host.mkdir("/sys/class/net/lo")
        empty_host.nic("docker0", driver="bridge")
        empty_host.mkdir("/sys/class/net/bond0")

        names = NicScanner(HostFS(empty_host.root), probe_runner).interfaces()
        assert names == ["eth0"]

    def test_scan_interface(self, empty_host, probe_runner):
        empty_host.nic("eth0", driver="ixgbe", speed=10000, mtu=1500)
        (probe_runner
            .on("ethtool", "-g", "eth0", stdout=ETHTOOL_RINGS)
            .on("ethtool", "-l", "eth0", stdout=ETHTOOL_CHANNELS)
            .on("ethtool", "-k", "eth0", stdout=ETHTOOL_FEATURES)
            .on("ethtool", "-c", "eth0", stdout=ETHTOOL_COALESCE)
            .on("ethtool", "--show-priv-flags", "eth0", stdout=ETHTOOL_PRIV_FLAGS)
            .on("ip", "-d", "link", "show", "eth0", stdout=IP_LINK_DETAIL))

        nic = NicScanner(HostFS(empty_host.root), probe_runner).scan_interface("eth0")

        assert nic.driver == "ixgbe"
        assert nic.speed_mbps == 10000
        assert (nic.ring_max_rx, nic.ring_max_tx) == (4096, 4096)
        assert nic.queue_max == 63
        assert nic.mtu_max == 9710
        assert nic.adaptive_coalesce
        assert not nic.eee_supported
        assert nic.rx_queues == ("rx-0", "rx-1")
        assert nic.backed_by is None

    def test_ena_flags_and_eee(self, empty_host, probe_runner):
        empty_host.nic("eth0", driver="ena", speed=25000, mtu=9001)
        (probe_runner
            .on("ethtool", "--show-priv-flags", "eth0", stdout=ENA_PRIV_FLAGS)
            .on("ethtool", "--show-eee", "eth0", stdout=ETHTOOL_EEE))

        nic = NicScanner(HostFS(empty_host.root), probe_runner).scan_interface("eth0")

        assert nic.priv_flags == ("enable_llq",)
        assert nic.eee_supported
        assert probe_runner.calls_to("ethtool")
        assert probe_runner.calls_to("ip") == [["ip", "-d", "link", "show", "eth0"]]

    def test_unknown_speed_defaults(self, empty_host, probe_runner):
        empty_host.nic("eth0", speed=-1)
        nic = NicScanner(HostFS(empty_host.root), probe_runner).scan_interface("eth0")
        assert nic.speed_mbps == 1000
        assert nic.mtu_max == 1500

    def test_lower_device_edge(self, empty_host, probe_runner):
        empty_host.nic("eth0", driver="hv_netvsc", lower="enP1s1")
        empty_host.nic("enP1s1", driver="mlx5_core")

        nics = {n.iface: n for n in NicScanner(HostFS(empty_host.root), probe_runner).scan()}

        assert nics["eth0"].backed_by == "enP1s1"
        assert nics["eth0"].driver == "hv_netvsc"
        assert nics["enP1s1"].backed_by is None


class TestStorage:

    @pytest.mark.parametrize("provider,dev,model,vendor,expected", [
        (CloudProvider.AWS, "nvme0n1", "Amazon Elastic Block Store", "", CloudClass.EBS),
        (CloudProvider.AWS, "nvme1n1", "Amazon EC2 NVMe Instance Storage", "",
         CloudClass.INSTANCE_STORE),
        (CloudProvider.AWS, "xvda", "", "", CloudClass.EBS),
        (CloudProvider.AZURE, "sda", "Virtual Disk", "Msft    ", CloudClass.AZURE_DISK),
        (CloudProvider.AZURE, "sdb", "Virtual Disk", "Msft    ", CloudClass.AZURE_TEMP),
        (CloudProvider.AZURE, "nvme0n1", "Microsoft NVMe Direct Disk", "",
         CloudClass.AZURE_LOCAL),
        (CloudProvider.GCP, "sda", "PersistentDisk", "Google", CloudClass.GCP_PD),
        (CloudProvider.GCP, "nvme0n1", "nvme_card", "", CloudClass.GCP_LOCAL_SSD),
        (CloudProvider.ALIBABA, "vda", "", "", CloudClass.CLOUD_DISK),
        (CloudProvider.NONE, "nvme0n1", "Samsung SSD 980 PRO", "", CloudClass.LOCAL),
    ])
    def test_cloud_classification(self, provider, dev, model, vendor, expected):
        assert classify_cloud_storage(provider, dev, model, vendor) == expected

    def test_parse_schedulers(self):
        assert parse_schedulers("[none] mq-deadline kyber") == ("none", "mq-deadline", "kyber")

    def test_scan(self, empty_host):
        empty_host.block("nvme0n1", model="Amazon Elastic Block Store")
        empty_host.block("sda", rotational=1, scheduler="mq-deadline [bfq] none")
        empty_host.block("loop0")

        devices = StorageScanner(HostFS(empty_host.root)).scan(CloudProvider.AWS)

        by_name = {d.name: d for d in devices}
        assert sorted(by_name) == ["nvme0n1", "sda"]
        assert by_name["nvme0n1"].is_ssd
        assert by_name["nvme0n1"].cloud_class == CloudClass.EBS
        assert not by_name["sda"].is_ssd
        assert by_name["sda"].supports("bfq")


class TestFactCollector:

    def test_bare_metal_server_tree(self, host, probe_runner):
        probe_runner.on("ethtool", "-g", "eth0", stdout=ETHTOOL_RINGS)

        facts = collector(host, probe_runner).collect()

        assert facts.cpu_cores == 8
        assert facts.is_intel
        assert facts.ram_gb_ceil == 64
        assert facts.distro_id == "ubuntu"
        assert facts.kernel_version == "6.8"
        assert facts.is_vm == "none"
        assert facts.cloud_provider == CloudProvider.NONE
        assert facts.available_congestion == ("reno", "cubic", "bbr")
        assert facts.swap_active
        assert facts.eevdf_base_slice and not facts.cfs_tunables
        assert facts.thp_available
        assert facts.ipv6_enabled
        assert not facts.graphical_session
        assert [n.iface for n in facts.nics] == ["eth0"]
        assert facts.nics[0].ring_max_rx == 4096
        assert [d.name for d in facts.storage] == ["nvme0n1"]
        assert [m.mountpoint for m in facts.mounts] == ["/"]
        assert "GRUB_CMDLINE_LINUX_DEFAULT" in facts.grub_default

    def test_vm_runs_cloud_detection(self, host, probe_runner):
        host.dmi("Amazon EC2", product_name="m5.24xlarge")
        probe_runner.on("systemd-detect-virt", stdout="kvm\n")
        metadata = MockMetadataClient({INSTANCE_TYPE_URLS[CloudProvider.AWS][0]: "m5.24xlarge"})

        facts = collector(host, probe_runner, metadata).collect()

        assert facts.is_vm == "kvm"
        assert facts.cloud_provider == CloudProvider.AWS
        assert facts.instance_net_tier == NetTier.ULTRA

    def test_bare_metal_never_touches_metadata(self, host, probe_runner):
        metadata = MockMetadataClient()
        collector(host, probe_runner, metadata).collect()
        assert metadata.requests_made == 0

    def test_empty_tree_yields_defaults(self, empty_host, probe_runner):
        probe = collector(empty_host, probe_runner)
        facts = probe.collect()
        assert probe.failures == ["cpu: /proc/cpuinfo unreadable",
                                  "memory: MemTotal missing from /proc/meminfo"]
        assert facts.cpu_cores == 1
        assert facts.cpu_vendor == "unknown"
        assert facts.mem_total_kb == 0
        assert facts.distro_id == "unknown"
        assert facts.nics == ()
        assert facts.storage == ()
        assert not facts.ipv6_enabled

    def test_graphical_session_from_environment(self, host, probe_runner):
        config = CollectorConfig(root=host.root, env={"WAYLAND_DISPLAY": "wayland-0"}, uid=1000)
        facts = FactCollector(config, probe_runner, MockMetadataClient()).collect()
        assert facts.graphical_session

    def test_active_services_are_probed(self, host, probe_runner):
        probe_runner.on("systemctl", "is-active", "--quiet", "cups", returncode=0)
        facts = collector(host, probe_runner, services=("cups", "avahi-daemon")).collect()
        assert facts.active_services == ("cups",)

    def test_battery(self, host, probe_runner):
        host.mkdir("/sys/class/power_supply/BAT0")
        assert collector(host, probe_runner).collect().has_battery


class TestCommandRunner:

    def test_missing_binary_is_not_found(self):
        result = CommandRunner(timeout=1.0).run(["hwtune-no-such-binary-xyz"])
        assert result.missing
        assert not result.ok
