"""Shared fixtures for buildfarm tests."""

import copy
from datetime import datetime

import pytest
import pytz

from buildfarm.config.models import BuildFarm

FARM_DATA = {
    "apiVersion": "buildfarm.io/v1",
    "kind": "BuildFarm",
    "metadata": {"name": "ci", "namespace": "builds"},
    "spec": {
        "cluster": {"project": "acme-ci", "location": "europe-west1-b", "name": "tools"},
        "pool": {
            "name": "ci-pool",
            "minNodes": 0,
            "maxNodes": 2,
            "activeNodes": 1,
            "machine": {
                "type": "e2-standard-2",
                "cpu": "1930m",
                "memory": "5Gi",
                "preemptible": True,
                "hourlyCost": 0.02,
            },
        },
        "storage": {"claimName": "jenkins-home", "size": "10Gi", "storageClass": "standard"},
        "image": {"reference": "gcr.io/acme-ci/jenkins:lts"},
        "workload": {
            "name": "jenkins",
            "replicas": 1,
            "resources": {
                "requests": {"cpu": "500m", "memory": "1Gi"},
                "limits": {"cpu": "1", "memory": "2Gi"},
            },
        },
        "health": {"coldStartGraceSeconds": 600, "warmStartGraceSeconds": 180, "failureThreshold": 3},
        "cost": {"idleWindowMinutes": 30, "cooldownMinutes": 10},
    },
}


@pytest.fixture
def farm_data():
    """A valid BuildFarm document as a dictionary."""
    return copy.deepcopy(FARM_DATA)


@pytest.fixture
def farm(farm_data):
    """A valid BuildFarm."""
    return BuildFarm.model_validate(farm_data)


@pytest.fixture
def now():
    """A fixed, timezone-aware point in time (Monday 2025-01-06 12:00 UTC)."""
    return pytz.UTC.localize(datetime(2025, 1, 6, 12, 0, 0))
