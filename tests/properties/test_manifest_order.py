"""Property-based tests for manifest set ordering."""

import pytest
from hypothesis import assume, given
from hypothesis import strategies as st

from k3d_pipeline.exceptions import ManifestOrderError
from k3d_pipeline.models import HelmChart, ManifestEntry, ManifestSet, ManifestTier

tiers = st.sampled_from(list(ManifestTier))


def inline_entry(index: int, tier: ManifestTier) -> ManifestEntry:
    return ManifestEntry(name=f"entry-{index}", tier=tier, declares_namespaces=[f"ns-{index}"])


@given(tier_list=st.lists(tiers, min_size=1, max_size=12))
def test_sorted_tiers_are_valid(tier_list):
    """Entries listed in non-decreasing tier order always validate."""
    manifests = ManifestSet(
        entries=[inline_entry(i, tier) for i, tier in enumerate(sorted(tier_list))]
    )

    manifests.validate_order()


@given(tier_list=st.lists(tiers, min_size=2, max_size=12))
def test_tier_decrease_is_rejected(tier_list):
    """Any entry listed after a higher tier fails validation, naming that entry."""
    assume(tier_list != sorted(tier_list))
    manifests = ManifestSet(entries=[inline_entry(i, tier) for i, tier in enumerate(tier_list)])
    first_bad = next(i for i in range(1, len(tier_list)) if tier_list[i] < tier_list[i - 1])

    with pytest.raises(ManifestOrderError) as exc_info:
        manifests.validate_order()

    assert exc_info.value.failed == f"entry-{first_bad}"
    assert exc_info.value.not_attempted == manifests.names[first_bad:]


@given(
    namespace=st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=3, max_size=12),
    declared_first=st.booleans(),
)
def test_namespace_must_be_declared_earlier(namespace, declared_first):
    """A chart may only target a namespace declared by an earlier entry."""
    assume(namespace != "default")
    declaring = ManifestEntry(
        name="namespaces", tier=ManifestTier.NAMESPACE, declares_namespaces=[namespace]
    )
    chart = ManifestEntry(
        name="chart",
        tier=ManifestTier.SERVICE,
        chart=HelmChart(release="app", chart="repo/app", namespace=namespace),
    )
    entries = [declaring, chart] if declared_first else [chart]
    manifests = ManifestSet(entries=entries)

    if declared_first:
        manifests.validate_order()
    else:
        with pytest.raises(ManifestOrderError):
            manifests.validate_order()
