"""
Tests for system plan derivation.
"""

import pytest

from hwtune.protocol.facts import CloudProvider, MountPoint, StorageDevice
from hwtune.protocol.plan import Layer
from hwtune.tuning.artifacts import (
    GRUB_DEFAULT,
    SYSTEM_JOURNALD,
    SYSTEM_LIMITS,
    SYSTEM_MODPROBE,
    SYSTEM_SERVICE,
    SYSTEM_SYSCTL,
    SYSTEMD_SYSTEM_DROPIN,
    rewrite_grub,
)
from hwtune.tuning.profiles import SYSTEM_PROFILES, Profile, TuningFlags
from hwtune.tuning.system import (
    derive_system_plan,
    kernel_version_tuple,
    memory_tier,
    pick_scheduler,
    probed_services,
    services_to_disable,
)
from hwtune.tests.mocks import GB_KB, bare_metal_server, cloud_vm, small_laptop


def commands(plan):
    return [list(e.argv) for e in plan.commands()]


def scalar(plan, target):
    values = [e.value for e in plan.scalars() if e.target == target]
    return values[-1] if values else None


class TestLimits:

    def test_nofile_clamped_to_cap(self):
        plan = derive_system_plan(bare_metal_server(ram_gb=256), Profile.SERVER, TuningFlags())
        assert plan.param("nofile") == 1048576

    def test_nofile_64gb_server(self):
        plan = derive_system_plan(bare_metal_server(ram_gb=64), Profile.SERVER, TuningFlags())
        assert plan.param("nofile") == min(64 * 65536, 1048576)

    def test_nofile_floored_on_small_laptop(self):
        plan = derive_system_plan(small_laptop(ram_gb=2), Profile.LAPTOP, TuningFlags())
        assert plan.param("nofile") == 65536

    def test_nproc(self):
        plan = derive_system_plan(bare_metal_server(cores=32), Profile.SERVER, TuningFlags())
        assert plan.param("nproc") == 32 * 8192
        plan = derive_system_plan(bare_metal_server(cores=128), Profile.SERVER, TuningFlags())
        assert plan.param("nproc") == 524288
        plan = derive_system_plan(small_laptop(), Profile.LAPTOP, TuningFlags())
        assert plan.param("nproc") == 32768

    def test_memlock_is_half_of_ram(self):
        plan = derive_system_plan(bare_metal_server(ram_gb=64), Profile.SERVER, TuningFlags())
        assert plan.param("memlock") == 32 * 1024 ** 3

    def test_limits_files(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        files = plan.expected_files()
        assert "* soft nofile 1048576" in files[SYSTEM_LIMITS]
        assert "DefaultLimitNOFILE=1048576" in files[SYSTEMD_SYSTEM_DROPIN]
        assert SYSTEM_MODPROBE in files
        assert SYSTEM_SERVICE in files
        assert plan.sysctl["fs.file-max"] == str(max(64 * GB_KB * 10, 2097152))


class TestMemory:

    @pytest.mark.parametrize("ram_gb,swappiness,dirty", [
        (128, 5, 20),
        (32, 10, 15),
        (8, 30, 10),
        (2, 40, 5),
    ])
    def test_memory_tiers(self, ram_gb, swappiness, dirty):
        values = memory_tier(ram_gb, 10, 15)
        assert values["swappiness"] == swappiness
        assert values["dirty_ratio"] == dirty

    def test_cloud_forces_thp_never_and_low_swappiness(self):
        plan = derive_system_plan(cloud_vm(), Profile.VM, TuningFlags())
        assert plan.param("thp") == "never"
        assert plan.param("swappiness") == 10
        assert plan.params["swappiness"].layer == Layer.CLOUD_TIER
        assert plan.sysctl["vm.swappiness"] == "10"

    def test_vm_dirty_ratio_follows_provider(self):
        plan = derive_system_plan(cloud_vm(), Profile.VM, TuningFlags())
        # 32GB tier keeps the base; AWS base is 5
        assert plan.param("dirty_ratio") == 5

    def test_thp_written_when_available(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert scalar(plan, "/sys/kernel/mm/transparent_hugepage/enabled") == "madvise"
        assert scalar(plan, "/sys/kernel/mm/transparent_hugepage/defrag") == "defer+madvise"

    def test_ksm_off_on_bare_metal(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert scalar(plan, "/sys/kernel/mm/ksm/run") == "0"

    def test_numa_writes_only_with_multiple_nodes(self):
        plan = derive_system_plan(bare_metal_server(numa_nodes=1), Profile.SERVER, TuningFlags())
        assert scalar(plan, "/proc/sys/vm/zone_reclaim_mode") is None
        plan = derive_system_plan(bare_metal_server(numa_nodes=2), Profile.SERVER, TuningFlags())
        assert scalar(plan, "/proc/sys/vm/zone_reclaim_mode") == "0"
        assert scalar(plan, "/proc/sys/kernel/numa_balancing") == "1"


class TestSchedulerCapability:
    """CFS tunables vs EEVDF: a capability branch, not a profile branch."""

    def test_cfs_kernel_gets_latency_tunables(self):
        plan = derive_system_plan(small_laptop(), Profile.LAPTOP, TuningFlags())
        table = SYSTEM_PROFILES[Profile.LAPTOP]
        assert plan.sysctl["kernel.sched_latency_ns"] == str(table.sched_latency_ns)
        assert scalar(plan, "/proc/sys/kernel/sched_base_slice_ns") is None

    def test_eevdf_kernel_gets_base_slice(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert "kernel.sched_latency_ns" not in plan.sysctl
        assert scalar(plan, "/proc/sys/kernel/sched_base_slice_ns") == "3000000"

    def test_same_profile_different_capability(self):
        cfs = derive_system_plan(bare_metal_server(cfs_tunables=True, eevdf_base_slice=False),
                                 Profile.SERVER, TuningFlags())
        eevdf = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert "kernel.sched_latency_ns" in cfs.sysctl
        assert "kernel.sched_latency_ns" not in eevdf.sysctl
        assert cfs.param("sched_autogroup_enabled") == 0
        assert eevdf.param("sched_autogroup_enabled") == 0

    def test_kernel_version_tuple(self):
        assert kernel_version_tuple("6.8") == (6, 8)
        assert kernel_version_tuple("5.15") == (5, 15)
        assert kernel_version_tuple("") == (0, 0)

    def test_old_kernel_skips_mglru(self):
        plan = derive_system_plan(bare_metal_server(kernel_version="5.15"), Profile.SERVER,
                                  TuningFlags())
        assert scalar(plan, "/sys/kernel/mm/lru_gen/enabled") is None
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert scalar(plan, "/sys/kernel/mm/lru_gen/enabled") == "Y"

    def test_readback_shaped_nodes_are_not_verified(self):
        plan = derive_system_plan(bare_metal_server(cpu_vendor="AuthenticAMD"), Profile.SERVER,
                                  TuningFlags())
        unverified = {e.target for e in plan.scalars() if not e.verify}
        assert "/sys/kernel/mm/lru_gen/enabled" in unverified
        assert "/sys/devices/system/cpu/amd_pstate/prefcore" in unverified


class TestStorage:

    def test_server_schedulers(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert plan.param("nvme0n1.scheduler") == "none"
        assert plan.param("sda.scheduler") == "mq-deadline"
        assert scalar(plan, "/sys/block/nvme0n1/queue/read_ahead_kb") == "256"
        assert scalar(plan, "/sys/block/sda/queue/read_ahead_kb") == "1024"

    def test_scheduler_fallback(self):
        table = SYSTEM_PROFILES[Profile.LAPTOP]
        device = StorageDevice("nvme0n1", is_ssd=True, schedulers=("mq-deadline", "none"))
        assert pick_scheduler(device, table) == "mq-deadline"
        device = StorageDevice("nvme0n1", is_ssd=True, schedulers=("none",))
        assert pick_scheduler(device, table) is None

    def test_ebs_overrides_profile_queue_depth(self):
        plan = derive_system_plan(cloud_vm(), Profile.VM, TuningFlags())
        assert plan.param("nvme0n1.nr_requests") == 256
        assert plan.params["nvme0n1.nr_requests"].layer == Layer.CLOUD_TIER
        assert scalar(plan, "/sys/block/nvme0n1/queue/nomerges") == "2"
        assert scalar(plan, "/sys/block/nvme0n1/queue/read_ahead_kb") == "128"

    def test_nr_requests_floor(self):
        facts = bare_metal_server(storage=(
            StorageDevice("sdb", is_ssd=True, schedulers=("none",), nr_requests=64),
        ))
        plan = derive_system_plan(facts, Profile.LATENCY, TuningFlags())
        assert plan.param("sdb.nr_requests") == 32


class TestDangerousFlags:

    def test_mitigations_rewrite_grub(self):
        flags = TuningFlags(disable_mitigations=True)
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, flags)
        grub = plan.expected_files()[GRUB_DEFAULT]
        assert 'GRUB_CMDLINE_LINUX_DEFAULT="mitigations=off tsx=on' in grub
        assert "quiet splash" in grub
        assert ["update-grub"] in commands(plan)

    def test_no_grub_changes_by_default(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert GRUB_DEFAULT not in plan.expected_files()
        assert ["update-grub"] not in commands(plan)

    def test_missing_grub_is_a_note(self):
        facts = bare_metal_server(grub_default="")
        plan = derive_system_plan(facts, Profile.SERVER, TuningFlags(isolate_cpus="2-5"))
        assert GRUB_DEFAULT not in plan.expected_files()
        assert any("boot parameters unchanged" in n for n in plan.notes)

    def test_grub_rewrite_is_idempotent(self):
        content = 'GRUB_CMDLINE_LINUX_DEFAULT="quiet isolcpus=1"\n'
        once, found = rewrite_grub(content, ["isolcpus=2-5"])
        twice, _ = rewrite_grub(once, ["isolcpus=2-5"])
        assert found
        assert once == twice == 'GRUB_CMDLINE_LINUX_DEFAULT="isolcpus=2-5 quiet"\n'

    def test_disable_services_by_profile_letter(self):
        facts = bare_metal_server(active_services=("cups", "bluetooth", "ModemManager", "sshd"))
        assert services_to_disable(facts, "s") == ["cups", "ModemManager", "bluetooth"]
        assert services_to_disable(facts, "w") == ["ModemManager"]

        plan = derive_system_plan(facts, Profile.SERVER, TuningFlags(disable_services=True))
        assert ["systemctl", "mask", "cups"] in commands(plan)
        assert not any("sshd" in c for c in commands(plan))

    def test_relax_security(self):
        facts = bare_metal_server(active_services=("auditd",))
        plan = derive_system_plan(facts, Profile.SERVER, TuningFlags(relax_security=True))
        assert ["systemctl", "stop", "auditd"] in commands(plan)
        assert plan.sysctl["kernel.kptr_restrict"] == "0"
        assert SYSTEM_JOURNALD in plan.expected_files()

    def test_fs_tuning_skips_root(self):
        facts = bare_metal_server(mounts=(
            MountPoint("/dev/nvme0n1p2", "/", "ext4"),
            MountPoint("/dev/sda1", "/data", "ext4"),
            MountPoint("/dev/sdb1", "/scratch", "xfs"),
        ))
        plan = derive_system_plan(facts, Profile.SERVER, TuningFlags(apply_fs_tuning=True))
        cmds = commands(plan)
        assert ["tune2fs", "-m", "1", "/dev/sda1"] in cmds
        assert ["tune2fs", "-m", "1", "/dev/nvme0n1p2"] not in cmds
        assert ["xfs_io", "-c", "extsize 1m", "/scratch"] in cmds
        assert ["fstrim", "-av"] in cmds
        assert plan.sysctl["fs.xfs.xfssyncd_centisecs"] == "3000"


class TestLowLatency:

    def test_latency_profile_turns_off_watchdogs(self):
        plan = derive_system_plan(bare_metal_server(), Profile.LATENCY, TuningFlags())
        assert plan.param("watchdog") == 0
        assert plan.param("sched_rt_runtime_us") == -1
        assert scalar(plan, "/proc/sys/kernel/watchdog") == "0"
        assert scalar(plan, "/sys/devices/system/cpu/cpu0/cpuidle/state2/disable") == "1"
        assert "ExecStart=/bin/bash -c 'for c in" in plan.expected_files()[SYSTEM_SERVICE]

    def test_latency_profile_adds_boot_params(self):
        plan = derive_system_plan(bare_metal_server(), Profile.LATENCY, TuningFlags())
        assert "processor.max_cstate=1" in plan.expected_files()[GRUB_DEFAULT]


class TestSystemPlanShape:

    def test_deterministic(self):
        facts = cloud_vm(provider=CloudProvider.AZURE, instance_type="Standard_D8s_v3")
        first = derive_system_plan(facts, Profile.VM, TuningFlags())
        second = derive_system_plan(facts, Profile.VM, TuningFlags())
        assert first.to_json() == second.to_json()

    def test_sysctl_file_and_unit(self):
        plan = derive_system_plan(bare_metal_server(), Profile.SERVER, TuningFlags())
        assert plan.file_targets()[-1] == SYSTEM_SERVICE
        assert SYSTEM_SYSCTL in plan.file_targets()
        assert ["systemctl", "enable", "system-optimize.service"] in commands(plan)

    def test_probed_services_cover_every_rule(self):
        names = probed_services()
        assert "cups" in names
        assert "auditd" in names
        assert "irqbalance" in names
