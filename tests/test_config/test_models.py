"""Tests for configuration models."""

from datetime import date, time

import pytest
from pydantic import ValidationError

from buildfarm.config.models import (
    ActiveWindow,
    BuildFarm,
    DayOfWeek,
    HealthConfig,
    MachineConfig,
    Metadata,
    PoolConfig,
    StorageConfig,
    WorkloadConfig,
)
from buildfarm.types import BoundState, ResourceQuantities


class TestMetadata:
    """Tests for Metadata model."""

    def test_valid_metadata(self):
        """Test valid metadata."""
        metadata = Metadata(name="ci-farm", namespace="builds")
        assert metadata.name == "ci-farm"
        assert metadata.namespace == "builds"

    def test_default_namespace(self):
        """Test default namespace."""
        assert Metadata(name="ci").namespace == "default"

    @pytest.mark.parametrize("name", ["", "CI", "ci_farm", "-ci", "ci-", "a" * 64])
    def test_invalid_names(self, name):
        """Test names that break Kubernetes naming rules."""
        with pytest.raises(ValidationError):
            Metadata(name=name)


class TestMachineConfig:
    """Tests for MachineConfig model."""

    def test_defaults(self):
        machine = MachineConfig()
        assert machine.type == "e2-standard-2"
        assert machine.preemptible is True
        assert machine.hourly_cost is None

    def test_alias(self):
        assert MachineConfig(hourlyCost=0.03).hourly_cost == 0.03

    def test_invalid_quantity(self):
        with pytest.raises(ValidationError):
            MachineConfig(cpu="lots")

    def test_zero_capacity(self):
        with pytest.raises(ValidationError):
            MachineConfig(cpu="0", memory="5Gi")


class TestPoolConfig:
    """Tests for PoolConfig model."""

    def test_valid_limits(self):
        pool = PoolConfig(name="ci-pool", minNodes=0, maxNodes=3, activeNodes=2)
        assert pool.min_nodes == 0
        assert pool.max_nodes == 3
        assert pool.active_nodes == 2

    def test_min_greater_than_max(self):
        with pytest.raises(ValidationError) as exc_info:
            PoolConfig(name="ci-pool", minNodes=3, maxNodes=1)
        assert "cannot be greater than" in str(exc_info.value)

    def test_active_greater_than_max(self):
        with pytest.raises(ValidationError):
            PoolConfig(name="ci-pool", maxNodes=1, activeNodes=2)


class TestStorageConfig:
    """Tests for StorageConfig model."""

    def test_defaults(self):
        storage = StorageConfig(claimName="home")
        assert storage.size == "10Gi"
        assert storage.storage_class == "standard"
        assert storage.access_mode == "ReadWriteOnce"
        assert storage.bind_timeout_seconds == 300

    def test_invalid_size(self):
        with pytest.raises(ValidationError):
            StorageConfig(claimName="home", size="ten gigs")

    def test_invalid_access_mode(self):
        with pytest.raises(ValidationError):
            StorageConfig(claimName="home", accessMode="ReadOnlyMany")


class TestHealthConfig:
    """Tests for HealthConfig model."""

    def test_defaults(self):
        health = HealthConfig()
        assert health.path == "/login"
        assert health.cold_start_grace_seconds == 600
        assert health.warm_start_grace_seconds == 180
        assert health.failure_threshold == 3

    def test_warm_grace_must_be_shorter(self):
        with pytest.raises(ValidationError) as exc_info:
            HealthConfig(coldStartGraceSeconds=120, warmStartGraceSeconds=120)
        assert "must be less than" in str(exc_info.value)

    def test_jitter_bounds(self):
        with pytest.raises(ValidationError):
            HealthConfig(jitter=1.0)


class TestActiveWindow:
    """Tests for ActiveWindow model."""

    def test_days_window(self):
        window = ActiveWindow(
            name="Workday",
            days=["Monday", "Friday"],
            timeStart="08:00",
            timeEnd="19:00",
            timezone="Europe/Berlin",
        )
        assert window.days == [DayOfWeek.MONDAY, DayOfWeek.FRIDAY]
        assert window.time_start == time(8, 0)
        assert window.time_end == time(19, 0)

    def test_dates_window(self):
        window = ActiveWindow(name="Release", dates=["2025-03-01"])
        assert window.dates == [date(2025, 3, 1)]

    def test_requires_days_or_dates(self):
        with pytest.raises(ValidationError) as exc_info:
            ActiveWindow(name="Never", timeStart="08:00", timeEnd="10:00")
        assert "days" in str(exc_info.value)

    def test_empty_range_rejected(self):
        with pytest.raises(ValidationError):
            ActiveWindow(name="Empty", days=["Monday"], timeStart="08:00", timeEnd="08:00")

    def test_overnight_window_allowed(self):
        window = ActiveWindow(name="Nightly", days=["Monday"], timeStart="22:00", timeEnd="02:00")
        assert window.time_start > window.time_end

    def test_invalid_day(self):
        with pytest.raises(ValidationError):
            ActiveWindow(name="Bad", days=["Funday"])


class TestWorkloadConfig:
    """Tests for WorkloadConfig model."""

    def test_defaults(self):
        workload = WorkloadConfig(name="jenkins")
        assert workload.replicas == 1
        assert workload.port == 8080
        assert workload.mount_path == "/var/jenkins_home"
        assert workload.resources.requests.cpu == "500m"

    def test_negative_replicas(self):
        with pytest.raises(ValidationError):
            WorkloadConfig(name="jenkins", replicas=-1)


class TestBuildFarm:
    """Tests for the root BuildFarm model."""

    def test_valid_farm(self, farm_data):
        farm = BuildFarm.model_validate(farm_data)
        assert farm.api_version == "buildfarm.io/v1"
        assert farm.kind == "BuildFarm"
        assert farm.key == "builds/ci"
        assert farm.spec.pool.machine.hourly_cost == 0.02

    def test_wrong_kind(self, farm_data):
        farm_data["kind"] = "ScalingRule"
        with pytest.raises(ValidationError):
            BuildFarm.model_validate(farm_data)

    def test_requests_exceed_limits(self, farm_data):
        farm_data["spec"]["workload"]["resources"]["requests"] = {"cpu": "2", "memory": "1Gi"}
        with pytest.raises(ValidationError) as exc_info:
            BuildFarm.model_validate(farm_data)
        assert "exceed limits" in str(exc_info.value)

    def test_to_pool(self, farm):
        pool = farm.to_pool()
        assert pool.name == "ci-pool"
        assert pool.zone == "europe-west1-b"
        assert pool.node_count == 0
        assert pool.parked
        assert pool.machine_profile.allocatable == ResourceQuantities(1930, 5 * 1024**3)
        assert pool.machine_profile.hourly_cost == 0.02

    def test_to_pool_clamps_node_count(self, farm):
        assert farm.to_pool(node_count=10).node_count == 2

    def test_to_claim(self, farm):
        claim = farm.to_claim()
        assert claim.key == "builds/jenkins-home"
        assert claim.requested_size == "10Gi"
        assert claim.bound_state == BoundState.UNBOUND

    def test_to_workload(self, farm):
        workload = farm.to_workload("gcr.io/acme-ci/jenkins@sha256:abc")
        assert workload.key == "builds/jenkins"
        assert workload.image == "gcr.io/acme-ci/jenkins@sha256:abc"
        assert workload.replicas == 1
        assert workload.volume_claim == "jenkins-home"
        assert workload.requests == ResourceQuantities(500, 1024**3)
        assert workload.max_surge == 1
        assert workload.max_unavailable == 0

    def test_to_workload_replica_override(self, farm):
        assert farm.to_workload("img", replicas=0).replicas == 0

    def test_default_health_url(self, farm):
        assert farm.health_url() == "http://jenkins.builds.svc.cluster.local:8080/login"

    def test_explicit_health_url(self, farm_data):
        farm_data["spec"]["health"]["url"] = "https://ci.example.com/login"
        assert BuildFarm.model_validate(farm_data).health_url() == "https://ci.example.com/login"
