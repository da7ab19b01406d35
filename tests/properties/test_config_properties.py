"""Property-based tests for provisioning configuration validation."""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from k3d_pipeline.models import ProvisioningConfig
from k3d_pipeline.models.config import ALLOWED_INSTANCE_TYPES, ENVIRONMENTS, MIN_VOLUME_SIZE


@st.composite
def valid_region(draw):
    """Generate region names shaped like us-east-1."""
    geo = draw(st.sampled_from(["us", "eu", "ap", "ca", "sa"]))
    direction = draw(st.sampled_from(["east", "west", "central", "north", "south", "southeast"]))
    number = draw(st.integers(min_value=1, max_value=9))
    return f"{geo}-{direction}-{number}"


@st.composite
def valid_cidr(draw):
    """Generate IPv4 CIDR blocks."""
    octets = [draw(st.integers(min_value=0, max_value=255)) for _ in range(4)]
    prefix = draw(st.integers(min_value=0, max_value=32))
    return f"{'.'.join(map(str, octets))}/{prefix}"


@st.composite
def provisioning_settings(draw):
    """Generate a valid provisioning configuration dict."""
    return {
        "region": draw(valid_region()),
        "instance_type": draw(st.sampled_from(ALLOWED_INSTANCE_TYPES)),
        "volume_size": draw(st.integers(min_value=MIN_VOLUME_SIZE, max_value=16384)),
        "key_name": draw(st.text(alphabet="abcdefghijklmnopqrstuvwxyz-0123456789", min_size=1, max_size=30)),
        "allowed_cidrs": draw(st.lists(valid_cidr(), min_size=1, max_size=4)),
        "environment": draw(st.sampled_from(ENVIRONMENTS)),
        "enable_monitoring": draw(st.booleans()),
    }


@given(settings=provisioning_settings())
def test_valid_settings_are_accepted(settings):
    """Any combination of valid field values forms a valid configuration."""
    config = ProvisioningConfig(**settings)

    assert config.volume_size >= MIN_VOLUME_SIZE
    assert config.allowed_cidrs == settings["allowed_cidrs"]


@given(settings=provisioning_settings(), volume_size=st.integers(max_value=MIN_VOLUME_SIZE - 1))
def test_small_volumes_are_rejected(settings, volume_size):
    """A root volume below the minimum is rejected whatever else is set."""
    settings["volume_size"] = volume_size

    with pytest.raises(ValidationError) as exc_info:
        ProvisioningConfig(**settings)

    assert "volume_size" in str(exc_info.value)


@given(settings=provisioning_settings())
def test_tfvars_carry_every_setting(settings):
    """Rendered Terraform variables reflect the configuration exactly."""
    tfvars = ProvisioningConfig(**settings).to_tfvars()

    assert tfvars["aws_region"] == settings["region"]
    assert tfvars["instance_type"] == settings["instance_type"]
    assert tfvars["volume_size"] == settings["volume_size"]
    assert tfvars["key_name"] == settings["key_name"]
    assert tfvars["allowed_cidrs"] == settings["allowed_cidrs"]
    assert tfvars["environment"] == settings["environment"]
    assert tfvars["enable_monitoring"] == settings["enable_monitoring"]
    assert "ami_id" not in tfvars


@given(
    settings=provisioning_settings(),
    cidr=st.text(alphabet="abcxyz./", min_size=1, max_size=12),
)
def test_malformed_cidrs_are_rejected(settings, cidr):
    """Allowed sources that are not CIDR blocks fail validation."""
    settings["allowed_cidrs"] = [cidr]

    with pytest.raises(ValidationError):
        ProvisioningConfig(**settings)
