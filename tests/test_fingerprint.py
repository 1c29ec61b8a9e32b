"""Fingerprint policies and freshness checks."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from satchel.archive.assets import AssetRef
from satchel.archive.fingerprint import (
    EMPTY_FINGERPRINT,
    FingerprintComputer,
    available_policies,
    register_fingerprint_policy,
)

T0 = datetime(2026, 10, 1, 12, 0, 0)


def _assets(count, *, touched=None):
    assets = []
    for index in range(count):
        updated = T0 + timedelta(minutes=index)
        if touched == index:
            updated = T0 + timedelta(days=2)
        assets.append(AssetRef(
            id=f"asset-{index}",
            storage_key=f"k/{index}.jpg",
            original_filename=f"{index}.jpg",
            position=index,
            updated_at=updated,
        ))
    return assets


def test_empty_gallery_has_empty_fingerprint():
    fingerprint = FingerprintComputer().compute([])

    assert fingerprint.value == EMPTY_FINGERPRINT
    assert fingerprint.is_empty
    assert fingerprint.asset_count == 0


def test_count_policy_changes_only_with_asset_count():
    computer = FingerprintComputer("count")

    assert computer.compute(_assets(3)).value == "n3"
    assert computer.compute(_assets(3, touched=1)).value == "n3"
    assert computer.compute(_assets(4)).value == "n4"


def test_count_mtime_policy_detects_replaced_asset():
    computer = FingerprintComputer("count_mtime")

    before = computer.compute(_assets(5))
    after = computer.compute(_assets(5, touched=2))

    assert before.value.startswith("n5:t")
    assert before != after


def test_membership_policy_detects_swapped_asset_with_same_count():
    computer = FingerprintComputer("membership")
    original = _assets(3)
    swapped = original[:2] + [AssetRef(id="asset-new", storage_key="k/new.jpg", original_filename="n.jpg", position=2)]

    assert computer.compute(original).value != computer.compute(swapped).value
    # Order does not matter for membership.
    assert computer.compute(original).value == computer.compute(list(reversed(original))).value


def test_ordered_policy_detects_reorder():
    computer = FingerprintComputer("ordered")
    original = _assets(3)
    reordered = [
        AssetRef(id=a.id, storage_key=a.storage_key, original_filename=a.original_filename,
                 position=2 - a.position, updated_at=a.updated_at)
        for a in original
    ]

    assert computer.compute(original).value != computer.compute(reordered).value


def test_fingerprint_is_deterministic():
    computer = FingerprintComputer("ordered")

    assert computer.compute(_assets(4)) == computer.compute(_assets(4))


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        FingerprintComputer("nope")


def test_custom_policy_can_be_registered():
    register_fingerprint_policy("first-key", lambda assets: f"first:{assets[0].storage_key}")

    assert "first-key" in available_policies()
    assert FingerprintComputer("first-key").compute(_assets(2)).value == "first:k/0.jpg"


def test_is_fresh_requires_completed_archive_with_matching_fingerprint():
    current = FingerprintComputer().compute(_assets(2))
    completed = SimpleNamespace(status="completed", fingerprint=current.value)
    pending = SimpleNamespace(status="pending", fingerprint=current.value)
    outdated = SimpleNamespace(status="completed", fingerprint="n1:t-")

    assert FingerprintComputer.is_fresh(completed, current)
    assert not FingerprintComputer.is_fresh(pending, current)
    assert not FingerprintComputer.is_fresh(outdated, current)
    assert not FingerprintComputer.is_fresh(None, current)


def test_fingerprint_reads_gallery_assets(test_db, make_gallery):
    gallery = make_gallery(4)

    fingerprint = FingerprintComputer("count").fingerprint(test_db, gallery.id)

    assert fingerprint.value == "n4"
    assert fingerprint.asset_count == 4
